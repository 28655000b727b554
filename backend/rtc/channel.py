"""
Awaitable wrapper around a data channel.

aiortc channels report open/message/close through event callbacks. The
wrapper subscribes as soon as it is constructed, so no message that
arrives before the consumer starts reading is lost, and exposes them as
coroutines.
"""

import asyncio
import logging

from aiortc.exceptions import InvalidStateError

from config import BUFFER_HIGH_WATER, BUFFER_LOW_WATER, CLOSE_TIMEOUT
from exceptions import TransferAborted

logger = logging.getLogger(__name__)


class MessageChannel:
    """Ordered message stream over an RTCDataChannel-like object."""

    def __init__(self, channel) -> None:
        self._channel = channel
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

        channel.on("open", self._on_open)
        channel.on("message", self._on_message)
        channel.on("close", self._on_close)
        channel.on("bufferedamountlow", self._on_buffered_amount_low)

        if channel.readyState == "open":
            self._opened.set()
        elif channel.readyState == "closed":
            self._on_close()

    # --- Event handlers ---

    def _on_open(self) -> None:
        logger.debug(f"Data channel '{self.label}' open")
        self._opened.set()

    def _on_message(self, message) -> None:
        if not self._closed.is_set():
            self._inbox.put_nowait(message)

    def _on_close(self) -> None:
        if self._closed.is_set():
            return
        logger.debug(f"Data channel '{self.label}' closed")
        self._closed.set()
        self._writable.set()
        self._inbox.put_nowait(None)

    def _on_buffered_amount_low(self) -> None:
        self._writable.set()

    # --- Properties ---

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def is_open(self) -> bool:
        return self._opened.is_set() and not self._closed.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    @property
    def is_reliable(self) -> bool:
        """Ordered with no retransmit or lifetime limit."""
        return (
            self._channel.ordered
            and self._channel.maxRetransmits is None
            and self._channel.maxPacketLifeTime is None
        )

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    # --- Operations ---

    async def wait_open(self, timeout: float | None = None) -> None:
        opened = asyncio.ensure_future(self._opened.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait(
                {opened, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            opened.cancel()
            closed.cancel()
        if self._closed.is_set():
            raise TransferAborted(f"Data channel '{self.label}' closed before opening")
        if not self._opened.is_set():
            raise asyncio.TimeoutError(f"Data channel '{self.label}' did not open")

    def send(self, data: str | bytes) -> None:
        if not self.is_open:
            raise TransferAborted(f"Data channel '{self.label}' is not open")
        try:
            self._channel.send(data)
        except InvalidStateError as e:
            raise TransferAborted(f"Data channel '{self.label}' closed: {e}") from e

    async def wait_writable(
        self, high_water: int = BUFFER_HIGH_WATER, low_water: int = BUFFER_LOW_WATER
    ) -> None:
        """Block while more than high_water bytes are queued for sending."""
        if self._channel.bufferedAmount <= high_water:
            return
        self._channel.bufferedAmountLowThreshold = low_water
        self._writable.clear()
        await self._writable.wait()
        if self._closed.is_set():
            raise TransferAborted(f"Data channel '{self.label}' closed while sending")

    async def drain(self, poll: float = 0.05) -> None:
        """Wait until every queued byte has been handed to the transport."""
        while self._channel.bufferedAmount > 0 and not self._closed.is_set():
            await asyncio.sleep(poll)

    async def recv(self) -> str | bytes | None:
        """Next message in arrival order, or None once the channel closed."""
        if self._inbox.empty() and self._closed.is_set():
            return None
        return await self._inbox.get()

    async def close(self, timeout: float = CLOSE_TIMEOUT) -> None:
        """Close and wait for the transport to acknowledge it."""
        if not self._closed.is_set():
            self._channel.close()
        try:
            await asyncio.wait_for(self._closed.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise TransferAborted(
                f"Data channel '{self.label}' close was not acknowledged"
            ) from e
