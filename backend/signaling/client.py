"""HTTP client for the signaling server.

Mirrors SignalingService's coroutines so negotiation can run either
in-process or against a remote server.
"""

import logging
from typing import Any

import httpx

from config import HTTP_TIMEOUT, SIGNALING_URL
from exceptions import (
    FieldAlreadySet,
    InvalidPairingCode,
    SessionNotFound,
    StorageUnavailable,
)
from signaling.codes import normalize_code
from signaling.models import CreateRoomResponse, MessageKind, SessionRecord

logger = logging.getLogger(__name__)


class SignalingClient:
    """Talks to the /api/signaling routes."""

    def __init__(
        self,
        base_url: str = SIGNALING_URL,
        timeout: float = HTTP_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "SignalingClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, url: str, code: str = "", field: str = "", **kwargs
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StorageUnavailable(f"Signaling server timed out: {e}") from e
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"Signaling server unreachable: {e}") from e

        if response.status_code >= 400:
            detail = _detail(response)
            if response.status_code == 400:
                raise InvalidPairingCode(detail)
            if response.status_code == 404:
                raise SessionNotFound(code)
            if response.status_code == 409:
                raise FieldAlreadySet(code, field)
            raise StorageUnavailable(
                f"Signaling server error {response.status_code}: {detail}"
            )
        return response

    async def create_session(self) -> str:
        response = await self._request("POST", "/api/signaling/create")
        return CreateRoomResponse.model_validate(response.json()).room_id

    async def post_message(
        self, code: str, kind: MessageKind | str, payload: dict[str, Any]
    ) -> None:
        code = normalize_code(code)
        kind = MessageKind(kind)
        await self._request(
            "POST",
            f"/api/signaling/{code}",
            code=code,
            field=kind.value,
            json={"type": kind.value, "data": payload},
        )

    async def poll_session(self, code: str) -> SessionRecord:
        code = normalize_code(code)
        response = await self._request(
            "GET", f"/api/signaling/poll/{code}", code=code
        )
        return SessionRecord.model_validate(response.json())


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)
