"""
Chunked file transfer over an open data channel.

Wire protocol: one text message carrying the TransferDescriptor
({"name", "size"}), then the file as binary messages of at most
CHUNK_SIZE bytes, in order. The sender closing the channel is the only
end-of-transfer signal. Correctness relies on the channel being ordered
and reliable; there are no sequence numbers or checksums.
"""

import asyncio
import logging
import time

from config import CHUNK_SIZE
from exceptions import SignalingError, TransferAborted
from rtc.channel import MessageChannel
from transfer.models import (
    ReceivedFile,
    TransferDescriptor,
    TransferInfo,
    TransferState,
    advance,
)

logger = logging.getLogger(__name__)


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


def update_progress(info: TransferInfo, tracker: SpeedTracker, byte_count: int) -> None:
    info.transferred_bytes += byte_count
    tracker.record(byte_count)
    info.speed_bps = tracker.get_speed()
    # file_size comes from the peer and may be wrong; >100% is tolerated
    info.progress_percent = (
        info.transferred_bytes / info.file_size * 100 if info.file_size > 0 else 100.0
    )
    remaining = max(info.file_size - info.transferred_bytes, 0)
    info.eta_seconds = remaining / info.speed_bps if info.speed_bps > 0 else 0.0


def _mark_complete(info: TransferInfo) -> None:
    info.move_to(TransferState.COMPLETE)
    info.speed_bps = 0
    info.eta_seconds = 0


class TransferReceiver:
    """Receiving state machine, driven by channel message/close events.

    Kept free of I/O so message sequences can be fed to it directly.
    """

    def __init__(self) -> None:
        self.state = TransferState.READY
        self.descriptor: TransferDescriptor | None = None
        self.bytes_received = 0
        self._chunks: list[bytes] = []

    @property
    def progress(self) -> float | None:
        if self.descriptor is None:
            return None
        if self.descriptor.size == 0:
            return 1.0
        return self.bytes_received / self.descriptor.size

    def _abort(self, reason: str) -> TransferAborted:
        self.state = TransferState.FAILED
        return TransferAborted(reason)

    def on_message(self, message: str | bytes) -> int:
        """Feed one message. Returns the payload bytes it added."""
        if self.state.is_terminal:
            raise TransferAborted(f"Message after transfer {self.state.value}")

        if isinstance(message, str):
            try:
                descriptor = TransferDescriptor.from_message(message)
            except TransferAborted:
                self.state = TransferState.FAILED
                raise
            if self.descriptor is not None:
                logger.warning(
                    f"New descriptor for '{descriptor.name}' discards "
                    f"{self.bytes_received} bytes of '{self.descriptor.name}'"
                )
            self.descriptor = descriptor
            self.bytes_received = 0
            self._chunks = []
            self.state = advance(self.state, TransferState.TRANSFERRING)
            return 0

        if self.descriptor is None:
            raise self._abort("Payload received before the transfer descriptor")

        data = bytes(message)
        self._chunks.append(data)
        self.bytes_received += len(data)
        return len(data)

    def on_close(self) -> ReceivedFile:
        """Channel closed: return the file or raise TransferAborted."""
        if self.state.is_terminal:
            raise TransferAborted(f"Close after transfer {self.state.value}")
        if self.descriptor is None:
            raise self._abort("Channel closed before the transfer descriptor arrived")
        if self.bytes_received < self.descriptor.size:
            raise self._abort(
                f"Channel closed after {self.bytes_received} of "
                f"{self.descriptor.size} bytes"
            )
        if self.bytes_received > self.descriptor.size:
            logger.warning(
                f"Received {self.bytes_received} bytes, sender announced "
                f"{self.descriptor.size}"
            )
        self.state = advance(self.state, TransferState.COMPLETE)
        return ReceivedFile(name=self.descriptor.name, data=b"".join(self._chunks))


async def send_file(
    channel: MessageChannel,
    file_path: str,
    transfer_info: TransferInfo,
    progress_callback,
    state_callback,
    chunk_size: int = CHUNK_SIZE,
) -> None:
    """
    Send a single file over an open data channel, then close it.

    Args:
        channel: Open, ordered and reliable channel.
        file_path: Local path of the file to send.
        transfer_info: TransferInfo object (mutated in-place for progress);
            file_name and file_size are sent in the descriptor.
        progress_callback: async fn(transfer_info) called after each chunk.
        state_callback: async fn(transfer_info) called on state change.
    """
    try:
        if not channel.is_reliable:
            raise TransferAborted("Data channel must be ordered and reliable")

        transfer_info.move_to(TransferState.TRANSFERRING)
        await state_callback(transfer_info)

        # 1. Descriptor
        descriptor = TransferDescriptor(
            name=transfer_info.file_name, size=transfer_info.file_size
        )
        channel.send(descriptor.to_message())

        # 2. Chunks, yielding between each so progress and cancellation run
        tracker = SpeedTracker()
        with open(file_path, "rb") as f:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                await channel.wait_writable()
                channel.send(chunk)
                update_progress(transfer_info, tracker, len(chunk))
                await progress_callback(transfer_info)
                await asyncio.sleep(0)

        if transfer_info.transferred_bytes != transfer_info.file_size:
            logger.warning(
                f"'{transfer_info.file_name}' changed size while sending: "
                f"{transfer_info.transferred_bytes} of {transfer_info.file_size}"
            )

        # 3. Close is the end-of-transfer signal
        await channel.drain()
        await channel.close()

        _mark_complete(transfer_info)
        transfer_info.progress_percent = 100.0
        await state_callback(transfer_info)

    except asyncio.CancelledError:
        logger.info(f"Send of {transfer_info.file_name} cancelled")
        transfer_info.fail("Transfer cancelled")
        await _close_quietly(channel)
        await state_callback(transfer_info)
    except (SignalingError, OSError) as e:
        logger.error(f"Send error for {transfer_info.file_name}: {e}")
        transfer_info.fail(str(e))
        await _close_quietly(channel)
        await state_callback(transfer_info)


async def receive_file(
    channel: MessageChannel,
    transfer_info: TransferInfo,
    progress_callback,
    state_callback,
) -> ReceivedFile | None:
    """
    Receive one file from a data channel until the sender closes it.

    Returns:
        The received file, or None if the transfer was aborted
        (transfer_info then carries the reason).
    """
    receiver = TransferReceiver()
    tracker = SpeedTracker()

    try:
        if not channel.is_reliable:
            raise TransferAborted("Data channel must be ordered and reliable")

        while True:
            message = await channel.recv()
            if message is None:
                result = receiver.on_close()
                _mark_complete(transfer_info)
                if transfer_info.file_size == 0:
                    transfer_info.progress_percent = 100.0
                await state_callback(transfer_info)
                return result

            added = receiver.on_message(message)
            if isinstance(message, str):
                transfer_info.file_name = receiver.descriptor.name
                transfer_info.file_size = receiver.descriptor.size
                transfer_info.transferred_bytes = 0
                transfer_info.progress_percent = 0.0
                if transfer_info.state != TransferState.TRANSFERRING:
                    transfer_info.move_to(TransferState.TRANSFERRING)
                await state_callback(transfer_info)
            else:
                update_progress(transfer_info, tracker, added)
                await progress_callback(transfer_info)

    except asyncio.CancelledError:
        transfer_info.fail("Transfer cancelled")
        await _close_quietly(channel)
        await state_callback(transfer_info)
    except TransferAborted as e:
        logger.error(f"Receive error: {e}")
        transfer_info.fail(str(e))
        await _close_quietly(channel)
        await state_callback(transfer_info)

    return None


async def _close_quietly(channel: MessageChannel) -> None:
    try:
        await channel.close()
    except TransferAborted as e:
        logger.debug(f"Ignoring close error: {e}")
