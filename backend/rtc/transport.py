"""
Peer transport adapter over aiortc.

Descriptors cross the mailbox as plain dicts: session descriptions as
{"type", "sdp"} and candidates as {"candidate", "sdpMid", "sdpMLineIndex"},
the same shapes a browser's toJSON() produces.
"""

import logging
from typing import Any, Callable

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from config import DATA_CHANNEL_LABEL, ICE_SERVERS
from exceptions import TransportRejected

logger = logging.getLogger(__name__)

_CANDIDATE_PREFIX = "candidate:"


def description_to_dict(description: RTCSessionDescription) -> dict[str, Any]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: dict[str, Any]) -> RTCSessionDescription:
    try:
        return RTCSessionDescription(sdp=data["sdp"], type=data["type"])
    except (KeyError, TypeError, ValueError) as e:
        raise TransportRejected(f"Malformed session description: {e}") from e


def candidate_to_dict(candidate) -> dict[str, Any]:
    return {
        "candidate": _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict[str, Any]):
    try:
        sdp = data["candidate"]
        if sdp.startswith(_CANDIDATE_PREFIX):
            sdp = sdp[len(_CANDIDATE_PREFIX):]
        candidate = candidate_from_sdp(sdp)
    except (AssertionError, AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
        raise TransportRejected(f"Malformed ICE candidate: {e}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class PeerTransport:
    """One RTCPeerConnection plus the hooks negotiation needs."""

    def __init__(self, ice_servers: list[str] | None = None) -> None:
        servers = ICE_SERVERS if ice_servers is None else ice_servers
        self._pc = RTCPeerConnection(
            RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in servers])
        )
        self._pc.on("connectionstatechange", self._on_connection_state)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def _on_connection_state(self) -> None:
        logger.debug(f"Peer connection state: {self._pc.connectionState}")

    def on_datachannel(self, callback: Callable[[RTCDataChannel], None]) -> None:
        self._pc.on("datachannel", callback)

    def on_icecandidate(self, callback: Callable[[dict[str, Any]], None]) -> None:
        # aiortc bundles gathered candidates into the SDP, but forward any
        # trickled ones for peers that do emit them.
        def _forward(candidate) -> None:
            if candidate is not None:
                callback(candidate_to_dict(candidate))

        self._pc.on("icecandidate", _forward)

    def create_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> RTCDataChannel:
        # The transfer protocol needs ordered, reliable delivery.
        return self._pc.createDataChannel(label, ordered=True)

    async def create_offer(self) -> dict[str, Any]:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> dict[str, Any]:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return description_to_dict(self._pc.localDescription)

    async def apply_remote_description(self, data: dict[str, Any]) -> None:
        description = description_from_dict(data)
        try:
            await self._pc.setRemoteDescription(description)
        except (InvalidStateError, ValueError) as e:
            raise TransportRejected(f"Remote {description.type} rejected: {e}") from e

    async def add_remote_candidate(self, data: dict[str, Any]) -> None:
        candidate = candidate_from_dict(data)
        try:
            await self._pc.addIceCandidate(candidate)
        except (InvalidStateError, ValueError) as e:
            raise TransportRejected(f"ICE candidate rejected: {e}") from e

    async def close(self) -> None:
        await self._pc.close()
