"""
Signaling mailbox protocol.

One record per pairing code holds the host's offer, the sender's answer
and the accumulated ICE candidates. Every post is a read-modify-write of
that record through MailboxStore.update, which also resets the record's
time-to-live.
"""

import logging
from typing import Any, Callable

from config import MAX_CREATE_ATTEMPTS, ROOM_KEY_PREFIX, ROOM_TTL
from exceptions import FieldAlreadySet, SessionNotFound, StorageUnavailable
from signaling.codes import generate_code, normalize_code
from signaling.models import MessageKind, SessionRecord
from signaling.store import MailboxStore

logger = logging.getLogger(__name__)


def apply_message(
    code: str,
    current: dict[str, Any] | None,
    kind: MessageKind,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """Merge one signaling message into a (possibly absent) record.

    offer/answer are write-once: re-posting the same payload is a no-op,
    a different payload raises FieldAlreadySet. ice appends, skipping a
    candidate that is already present so retried posts stay idempotent.
    """
    if current is None:
        logger.warning(f"Room {code} missing on post, reconstituting empty record")
        record = SessionRecord()
    else:
        record = SessionRecord.model_validate(current)

    if kind in (MessageKind.OFFER, MessageKind.ANSWER):
        field = kind.value
        existing = getattr(record, field)
        if existing is not None and existing != payload:
            raise FieldAlreadySet(code, field)
        setattr(record, field, payload)
    elif kind == MessageKind.ICE:
        if payload not in record.ice:
            record.ice.append(payload)
    else:
        raise ValueError(f"Unknown signaling message kind: {kind!r}")

    return record.model_dump()


class SignalingService:
    """create / post / poll operations against an injected MailboxStore."""

    def __init__(
        self,
        store: MailboxStore,
        ttl: int = ROOM_TTL,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._code_factory = code_factory

    @property
    def store(self) -> MailboxStore:
        return self._store

    @staticmethod
    def _key(code: str) -> str:
        return f"{ROOM_KEY_PREFIX}{code}"

    async def create_session(self) -> str:
        """Reserve a fresh code with an empty record and return it."""
        empty = SessionRecord().model_dump()
        for _ in range(MAX_CREATE_ATTEMPTS):
            code = self._code_factory()
            if await self._store.set(self._key(code), empty, self._ttl, only_if_absent=True):
                logger.info(f"Created room {code} (ttl {self._ttl}s)")
                return code
            logger.debug(f"Room code {code} already in use, regenerating")

        raise StorageUnavailable(
            f"Could not allocate a free room code after {MAX_CREATE_ATTEMPTS} attempts"
        )

    async def post_message(
        self, code: str, kind: MessageKind | str, payload: dict[str, Any]
    ) -> SessionRecord:
        """Apply one offer/answer/ice message to the room's record."""
        code = normalize_code(code)
        kind = MessageKind(kind)
        value = await self._store.update(
            self._key(code),
            lambda current: apply_message(code, current, kind, payload),
            self._ttl,
        )
        logger.debug(f"Room {code}: applied {kind.value}")
        return SessionRecord.model_validate(value)

    async def poll_session(self, code: str) -> SessionRecord:
        """Return the current record; raises SessionNotFound if absent."""
        code = normalize_code(code)
        value = await self._store.get(self._key(code))
        if value is None:
            raise SessionNotFound(code)
        return SessionRecord.model_validate(value)
