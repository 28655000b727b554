"""
Offer/answer/ICE negotiation through the signaling mailbox.

The host creates a room, posts an offer and polls for the answer. The
sender looks the room up once, answers it, opens the data channel and
trickles its ICE candidates. The mailbox is not consulted again once the
channel is open.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from config import CONNECT_TIMEOUT, POLL_DEADLINE, POLL_INTERVAL
from exceptions import (
    NegotiationTimeout,
    SessionNotFound,
    SignalingError,
    TransferAborted,
)
from rtc.channel import MessageChannel
from rtc.polling import PollHandle, Poller
from rtc.transport import PeerTransport
from signaling.codes import normalize_code
from signaling.models import MessageKind, SessionRecord
from transfer.models import TransferState, advance

logger = logging.getLogger(__name__)


class SignalingBackend(Protocol):
    """Implemented by SignalingService (in-process) and SignalingClient (HTTP)."""

    async def create_session(self) -> str: ...

    async def post_message(
        self, code: str, kind: MessageKind | str, payload: dict[str, Any]
    ) -> Any: ...

    async def poll_session(self, code: str) -> SessionRecord: ...


class _PeerSession:
    """State shared by both negotiating roles."""

    role = "peer"

    def __init__(
        self,
        signaling: SignalingBackend,
        transport_factory: Callable[[], PeerTransport] = PeerTransport,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self._signaling = signaling
        self._transport_factory = transport_factory
        self._connect_timeout = connect_timeout
        self._transport: PeerTransport | None = None
        self.state = TransferState.IDLE
        self.code: str | None = None
        self.error: Exception | None = None

    @property
    def transport(self) -> PeerTransport | None:
        return self._transport

    def _set_state(self, new: TransferState) -> None:
        self.state = advance(self.state, new)
        logger.info(f"{self.role} {self.code or '-'}: {new.value}")

    async def _fail(self, error: Exception) -> None:
        self.error = error
        if not self.state.is_terminal:
            self.state = TransferState.FAILED
        logger.error(f"{self.role} {self.code or '-'} failed: {error}")
        await self.close()

    async def close(self) -> None:
        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
            self._transport = None


class HostSession(_PeerSession):
    """Receiving side: waits for a sender to answer its offer."""

    role = "host"

    def __init__(
        self,
        signaling: SignalingBackend,
        transport_factory: Callable[[], PeerTransport] = PeerTransport,
        poll_interval: float = POLL_INTERVAL,
        poll_deadline: float = POLL_DEADLINE,
        connect_timeout: float = CONNECT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(signaling, transport_factory, connect_timeout)
        self._poller = Poller(
            self._poll_step,
            interval=poll_interval,
            deadline=poll_deadline,
            clock=clock,
            sleep=sleep,
        )
        self._poll_handle: PollHandle | None = None
        self._answer_applied = False
        self._applied_candidates = 0
        self._channels: asyncio.Queue[MessageChannel] = asyncio.Queue()

    @property
    def poll_attempts(self) -> int:
        return self._poller.attempts

    async def start(self) -> str:
        """Create the room, post the offer and start polling. Returns the code."""
        self._set_state(TransferState.NEGOTIATING)
        try:
            self.code = await self._signaling.create_session()
            self._transport = self._transport_factory()
            self._transport.on_datachannel(self._on_datachannel)
            offer = await self._transport.create_offer()
            await self._signaling.post_message(self.code, MessageKind.OFFER, offer)
        except SignalingError as e:
            await self._fail(e)
            raise

        logger.info(f"Room {self.code} waiting for a sender")
        self._poll_handle = self._poller.start()
        return self.code

    async def _poll_step(self) -> bool:
        try:
            record = await self._signaling.poll_session(self.code)
        except SessionNotFound:
            logger.debug(f"Room {self.code} not visible yet")
            return False

        if record.answer is None:
            return False

        if not self._answer_applied:
            await self._transport.apply_remote_description(record.answer)
            self._answer_applied = True
            logger.info(f"Room {self.code}: answer applied")

        # Each poll is a full snapshot, so candidates arrive in posting order
        for candidate in record.ice[self._applied_candidates:]:
            await self._transport.add_remote_candidate(candidate)
            self._applied_candidates += 1
        return True

    def _on_datachannel(self, channel) -> None:
        logger.info(f"Room {self.code}: incoming data channel '{channel.label}'")
        # Wrap immediately so messages sent right after open are buffered
        self._channels.put_nowait(MessageChannel(channel))

    async def wait_ready(self) -> MessageChannel:
        """Wait for the answer and the first open data channel."""
        try:
            if self._poll_handle is None:
                raise RuntimeError("HostSession.start() was not called")
            await self._poll_handle.wait()
            channel = await self.next_channel(self._connect_timeout)
        except asyncio.CancelledError:
            # cancel() already recorded why the poll stopped
            if isinstance(self.error, NegotiationTimeout):
                raise self.error from None
            await self._fail(NegotiationTimeout("Negotiation cancelled"))
            raise
        except SignalingError as e:
            await self._fail(e)
            raise
        self._set_state(TransferState.READY)
        return channel

    async def next_channel(self, timeout: float | None = None) -> MessageChannel:
        """Next data channel the sender opens on this connection.

        `timeout` bounds the arrival and the opening together.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        try:
            channel = await asyncio.wait_for(self._channels.get(), timeout)
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            await channel.wait_open(remaining)
        except asyncio.TimeoutError as e:
            raise NegotiationTimeout("Answer applied but no data channel opened") from e
        return channel

    async def cancel(self) -> None:
        """Stop waiting for a sender."""
        if self._poll_handle is not None:
            self._poll_handle.cancel()
        await self._fail(NegotiationTimeout("Negotiation cancelled"))


class SenderSession(_PeerSession):
    """Sending side: answers an existing room and opens the data channel."""

    role = "sender"

    def __init__(
        self,
        signaling: SignalingBackend,
        transport_factory: Callable[[], PeerTransport] = PeerTransport,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        super().__init__(signaling, transport_factory, connect_timeout)
        self._answer_posted = asyncio.Event()
        self._post_lock = asyncio.Lock()
        self._candidate_tasks: set[asyncio.Task] = set()

    async def connect(self, code: str) -> MessageChannel:
        """Pair with the host waiting on `code` and return the open channel.

        The room is looked up once; a missing room or offer fails
        immediately instead of being retried.
        """
        self._set_state(TransferState.NEGOTIATING)
        try:
            self.code = normalize_code(code)
            record = await self._signaling.poll_session(self.code)
            if record.offer is None:
                raise SessionNotFound(self.code, "Room not found / not ready")

            self._transport = self._transport_factory()
            channel = MessageChannel(self._transport.create_data_channel())
            self._transport.on_icecandidate(self._on_local_candidate)

            await self._transport.apply_remote_description(record.offer)
            answer = await self._transport.create_answer()
            await self._signaling.post_message(self.code, MessageKind.ANSWER, answer)
            self._answer_posted.set()

            await self._wait_open(channel)
        except SignalingError as e:
            await self._fail(e)
            raise

        self._set_state(TransferState.READY)
        return channel

    async def open_channel(self) -> MessageChannel:
        """Open another data channel on the established connection."""
        if self._transport is None or self.state != TransferState.READY:
            raise TransferAborted("Peer connection is not established")
        channel = MessageChannel(self._transport.create_data_channel())
        await self._wait_open(channel)
        return channel

    async def _wait_open(self, channel: MessageChannel) -> None:
        try:
            await channel.wait_open(self._connect_timeout)
        except asyncio.TimeoutError as e:
            raise NegotiationTimeout("Data channel did not open") from e

    def _on_local_candidate(self, candidate: dict[str, Any]) -> None:
        task = asyncio.ensure_future(self._post_candidate(candidate))
        self._candidate_tasks.add(task)
        task.add_done_callback(self._candidate_tasks.discard)

    async def _post_candidate(self, candidate: dict[str, Any]) -> None:
        # Candidates follow the answer, one at a time, in discovery order
        await self._answer_posted.wait()
        async with self._post_lock:
            try:
                await self._signaling.post_message(self.code, MessageKind.ICE, candidate)
            except SignalingError as e:
                logger.warning(f"Failed to post ICE candidate for {self.code}: {e}")

    async def flush_candidates(self) -> None:
        """Wait for candidate posts already scheduled."""
        if self._candidate_tasks:
            await asyncio.gather(*self._candidate_tasks)

    async def close(self) -> None:
        for task in list(self._candidate_tasks):
            task.cancel()
        await super().close()
