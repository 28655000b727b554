"""
Transfer Manager: orchestrates pairing and file transfers for one device.

Drives a HostSession or SenderSession through negotiation, runs the
chunked transfer on the resulting channel, tracks TransferInfo state and
forwards events to registered listeners.
"""

import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Callable

from config import (
    CHUNK_SIZE,
    CONNECT_TIMEOUT,
    DEFAULT_SAVE_DIR,
    POLL_DEADLINE,
    POLL_INTERVAL,
    ROOM_TTL,
)
from exceptions import (
    NegotiationTimeout,
    SessionNotFound,
    SignalingError,
    TransferAborted,
    TransportRejected,
)
from rtc.channel import MessageChannel
from rtc.negotiation import HostSession, SenderSession, SignalingBackend
from rtc.transport import PeerTransport
from signaling.codes import normalize_code
from transfer.models import (
    ReceivedFile,
    TransferDirection,
    TransferInfo,
    TransferState,
)
from transfer.service import receive_file, send_file

logger = logging.getLogger(__name__)

FALLBACK_FILE_NAME = "received-file"


class TransferManager:
    """Manages pairing sessions and the transfers run over them."""

    def __init__(
        self,
        signaling: SignalingBackend,
        transport_factory: Callable[[], PeerTransport] = PeerTransport,
        save_dir: str = DEFAULT_SAVE_DIR,
        chunk_size: int = CHUNK_SIZE,
        poll_interval: float = POLL_INTERVAL,
        poll_deadline: float = POLL_DEADLINE,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self._signaling = signaling
        self._transport_factory = transport_factory
        self._save_dir = save_dir
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval
        self._poll_deadline = poll_deadline
        self._connect_timeout = connect_timeout
        self._transfers: dict[str, TransferInfo] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._sessions: list[HostSession | SenderSession] = []
        self._senders: dict[str, SenderSession] = {}
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def get_transfers(self) -> list[TransferInfo]:
        """Return all transfers."""
        return list(self._transfers.values())

    async def _track(self, info: TransferInfo) -> None:
        async with self._lock:
            self._transfers[info.transfer_id] = info

    def _new_info(self, direction: TransferDirection, **fields) -> TransferInfo:
        return TransferInfo(transfer_id=str(uuid.uuid4()), direction=direction, **fields)

    # --- Receiving (host) ---

    async def host(self) -> HostSession:
        """Create a room and start waiting for a sender."""
        session = HostSession(
            self._signaling,
            transport_factory=self._transport_factory,
            poll_interval=self._poll_interval,
            poll_deadline=self._poll_deadline,
            connect_timeout=self._connect_timeout,
        )
        self._sessions.append(session)
        try:
            code = await session.start()
        except SignalingError as e:
            await self._emit_failure("Could not create a room", e)
            raise
        await self._emit("room_created", {"room_id": code, "expires_in": ROOM_TTL})
        return session

    async def receive(self, session: HostSession) -> TransferInfo:
        """Wait for the sender and receive one file on the first channel."""
        info = self._new_info(
            TransferDirection.RECEIVING,
            room_id=session.code or "",
            state=TransferState.NEGOTIATING,
        )
        await self._on_state_change(info)
        try:
            channel = await session.wait_ready()
        except SignalingError as e:
            info.fail(_negotiation_message(e))
            await self._on_state_change(info)
            return info

        info.move_to(TransferState.READY)
        await self._on_state_change(info)
        return await self._receive_on(channel, info)

    async def receive_next(self, session: HostSession) -> TransferInfo:
        """Receive another file over the already-established connection."""
        info = self._new_info(
            TransferDirection.RECEIVING,
            room_id=session.code or "",
            state=TransferState.NEGOTIATING,
        )
        try:
            channel = await session.next_channel()
        except SignalingError as e:
            info.fail(_negotiation_message(e))
            await self._on_state_change(info)
            return info
        info.move_to(TransferState.READY)
        await self._on_state_change(info)
        return await self._receive_on(channel, info)

    async def _receive_on(self, channel: MessageChannel, info: TransferInfo) -> TransferInfo:
        task = asyncio.create_task(
            receive_file(
                channel=channel,
                transfer_info=info,
                progress_callback=self._on_progress,
                state_callback=self._on_state_change,
            )
        )
        self._tasks[info.transfer_id] = task
        try:
            received = await task
        finally:
            self._tasks.pop(info.transfer_id, None)

        if received is not None:
            try:
                info.saved_path = str(await asyncio.to_thread(self._save, received))
            except OSError as e:
                logger.error(f"Could not save '{received.name}': {e}")
                info.error_message = f"Received but not saved: {e}"
            await self._emit("file_saved", info.model_dump())
        return info

    def _save(self, received: ReceivedFile) -> Path:
        """Write the file into save_dir without overwriting anything."""
        save_dir = Path(self._save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        name = Path(received.name.replace("\\", "/")).name
        if name in ("", ".", ".."):
            name = FALLBACK_FILE_NAME
        path = save_dir / name
        stem, suffix = path.stem, path.suffix
        counter = 1
        while path.exists():
            path = save_dir / f"{stem} ({counter}){suffix}"
            counter += 1
        path.write_bytes(received.data)
        logger.info(f"Saved '{received.name}' to {path}")
        return path

    # --- Sending ---

    async def connect(self, code: str) -> tuple[SenderSession, MessageChannel]:
        """Pair with a waiting host; returns the session and its open channel."""
        session = SenderSession(
            self._signaling,
            transport_factory=self._transport_factory,
            connect_timeout=self._connect_timeout,
        )
        self._sessions.append(session)
        channel = await session.connect(code)
        self._senders[session.code] = session
        return session, channel

    async def send(self, code: str, file_path: str) -> TransferInfo:
        """Pair with the host waiting on `code` and send one file."""
        info = self._file_info(file_path, room_id=code)
        if info.state == TransferState.FAILED:
            await self._on_state_change(info)
            return info
        info.move_to(TransferState.NEGOTIATING)
        await self._on_state_change(info)
        try:
            session, channel = await self.connect(code)
        except SignalingError as e:
            info.fail(_negotiation_message(e))
            await self._on_state_change(info)
            return info

        info.room_id = session.code
        info.move_to(TransferState.READY)
        await self._on_state_change(info)
        return await self._send_on(channel, file_path, info)

    async def send_another(self, code: str, file_path: str) -> TransferInfo:
        """Send a further file over the connection paired with `code`,
        without renegotiating."""
        info = self._file_info(file_path, room_id=code)
        if info.state == TransferState.FAILED:
            await self._on_state_change(info)
            return info
        info.move_to(TransferState.NEGOTIATING)
        try:
            session = self._senders.get(normalize_code(code))
            if session is None:
                raise TransferAborted(f"No connection paired with {code}")
            channel = await session.open_channel()
        except SignalingError as e:
            info.fail(str(e))
            await self._on_state_change(info)
            return info
        info.move_to(TransferState.READY)
        await self._on_state_change(info)
        return await self._send_on(channel, file_path, info)

    def _file_info(self, file_path: str, room_id: str) -> TransferInfo:
        """New SENDING info; already FAILED if the file cannot be read."""
        info = self._new_info(
            TransferDirection.SENDING,
            file_name=os.path.basename(file_path),
            room_id=room_id,
        )
        try:
            info.file_size = os.path.getsize(file_path)
        except OSError as e:
            logger.error(f"Cannot read {file_path}: {e}")
            info.fail(f"Cannot read file: {e}")
        return info

    async def _send_on(self, channel: MessageChannel, file_path: str, info: TransferInfo) -> TransferInfo:
        task = asyncio.create_task(
            send_file(
                channel=channel,
                file_path=file_path,
                transfer_info=info,
                progress_callback=self._on_progress,
                state_callback=self._on_state_change,
                chunk_size=self._chunk_size,
            )
        )
        self._tasks[info.transfer_id] = task
        try:
            await task
        finally:
            self._tasks.pop(info.transfer_id, None)
        return info

    # --- Control ---

    async def cancel_transfer(self, transfer_id: str) -> None:
        """Cancel a running transfer; its channel is closed early."""
        task = self._tasks.get(transfer_id)
        if task and not task.done():
            task.cancel()

    async def stop(self) -> None:
        """Cancel all transfers and close every peer connection."""
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
        for session in self._sessions:
            await session.close()
        self._sessions.clear()
        self._senders.clear()
        logger.info("Transfer manager stopped")

    async def _on_progress(self, info: TransferInfo) -> None:
        """Called by transfer service on progress updates."""
        await self._emit("transfer_progress", info.model_dump())

    async def _on_state_change(self, info: TransferInfo) -> None:
        """Called on every state change."""
        await self._track(info)
        await self._emit("transfer_state", info.model_dump())

        # Generate user-facing notifications
        notification = None
        if info.state == TransferState.COMPLETE:
            direction = "sent" if info.direction == TransferDirection.SENDING else "received"
            notification = {
                "type": "success",
                "message": f"'{info.file_name}' {direction} successfully!",
            }
        elif info.state == TransferState.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{info.file_name or 'file'}' failed: {info.error_message}",
            }

        if notification:
            await self._emit("notification", notification)

    async def _emit_failure(self, message: str, error: Exception) -> None:
        await self._emit("notification", {"type": "error", "message": f"{message}: {error}"})


def _negotiation_message(error: Exception) -> str:
    if isinstance(error, NegotiationTimeout):
        return f"No one connected: {error}"
    if isinstance(error, TransportRejected):
        return f"Connection failed: {error}"
    if isinstance(error, SessionNotFound):
        return f"Room not found / not ready: {error.code}"
    return str(error)
