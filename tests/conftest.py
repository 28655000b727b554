import asyncio
import itertools

import pytest
from aiortc.exceptions import InvalidStateError
from pyee import EventEmitter

from exceptions import TransportRejected
from signaling.service import SignalingService
from signaling.store import MemoryMailboxStore


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class SteppedClock(FakeClock):
    """Clock whose sleep only returns when the test calls step()."""

    def __init__(self) -> None:
        super().__init__()
        self._tick = asyncio.Event()

    async def sleep(self, seconds: float) -> None:
        await self._tick.wait()
        self._tick.clear()
        self.now += seconds

    def step(self) -> None:
        self._tick.set()


class FakeDataChannel(EventEmitter):
    """In-memory stand-in for aiortc's RTCDataChannel."""

    def __init__(self, label="fileTransfer", ordered=True, max_retransmits=None):
        super().__init__()
        self.label = label
        self.ordered = ordered
        self.maxRetransmits = max_retransmits
        self.maxPacketLifeTime = None
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.peer: "FakeDataChannel | None" = None
        self.sent: list = []

    def open(self) -> None:
        self.readyState = "open"
        self.emit("open")

    def send(self, data) -> None:
        if self.readyState != "open":
            raise InvalidStateError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.peer is not None and self.peer.readyState == "open":
            self.peer.emit("message", data)

    def close(self) -> None:
        if self.readyState in ("closing", "closed"):
            return
        self.readyState = "closing"
        asyncio.get_running_loop().call_soon(self._finish_close)

    def _finish_close(self) -> None:
        for channel in (self, self.peer):
            if channel is not None and channel.readyState != "closed":
                channel.readyState = "closed"
                channel.emit("close")


def channel_pair(label="fileTransfer", **kwargs) -> tuple[FakeDataChannel, FakeDataChannel]:
    local = FakeDataChannel(label, **kwargs)
    remote = FakeDataChannel(label, **kwargs)
    local.peer = remote
    remote.peer = local
    return local, remote


class FakeNetwork:
    """Routes fake transports to each other by the id embedded in their SDP."""

    def __init__(self) -> None:
        self.transports: dict[str, "FakeTransport"] = {}
        self.candidates_on_answer: list[dict] = []

    def factory(self) -> "FakeTransport":
        return FakeTransport(self)


class FakeTransport:
    """PeerTransport double: no network, channels open once the answer lands."""

    _ids = itertools.count()

    def __init__(self, network: FakeNetwork) -> None:
        self.id = f"peer{next(self._ids)}"
        self.network = network
        network.transports[self.id] = self
        self.remote: FakeTransport | None = None
        self.remote_description: dict | None = None
        self.applied_candidates: list[dict] = []
        self.connected = False
        self.closed = False
        self._pending: list[tuple[FakeDataChannel, FakeDataChannel]] = []
        self._datachannel_cb = None
        self._icecandidate_cb = None

    def on_datachannel(self, callback) -> None:
        self._datachannel_cb = callback

    def on_icecandidate(self, callback) -> None:
        self._icecandidate_cb = callback

    def create_data_channel(self, label="fileTransfer") -> FakeDataChannel:
        local, remote = channel_pair(label)
        if self.connected:
            asyncio.get_running_loop().call_soon(self._deliver, local, remote)
        else:
            self._pending.append((local, remote))
        return local

    async def create_offer(self) -> dict:
        return {"type": "offer", "sdp": f"fake {self.id}"}

    async def create_answer(self) -> dict:
        if self.remote_description is None:
            raise TransportRejected("No remote offer")
        for candidate in self.network.candidates_on_answer:
            if self._icecandidate_cb is not None:
                self._icecandidate_cb(candidate)
        return {"type": "answer", "sdp": f"fake {self.id}"}

    async def apply_remote_description(self, data: dict) -> None:
        parts = str(data.get("sdp", "")).split()
        if len(parts) != 2 or parts[0] != "fake" or parts[1] not in self.network.transports:
            raise TransportRejected(f"Unparseable description: {data!r}")
        self.remote_description = data
        self.remote = self.network.transports[parts[1]]
        if data.get("type") == "answer":
            self._connect()
            self.remote._connect()

    async def add_remote_candidate(self, data: dict) -> None:
        if self.remote_description is None:
            raise TransportRejected("Candidate before remote description")
        if "candidate" not in data:
            raise TransportRejected(f"Malformed candidate: {data!r}")
        self.applied_candidates.append(data)

    def _connect(self) -> None:
        self.connected = True
        loop = asyncio.get_running_loop()
        for local, remote in self._pending:
            loop.call_soon(self._deliver, local, remote)
        self._pending.clear()

    def _deliver(self, local: FakeDataChannel, remote: FakeDataChannel) -> None:
        if self.remote is not None and self.remote._datachannel_cb is not None:
            self.remote._datachannel_cb(remote)
        remote.open()
        local.open()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryMailboxStore(clock=clock)


@pytest.fixture
def service(store):
    return SignalingService(store)


@pytest.fixture
def network():
    return FakeNetwork()
