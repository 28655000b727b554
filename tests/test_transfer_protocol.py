import asyncio
import json
import os

import pytest

from exceptions import TransferAborted
from rtc.channel import MessageChannel
from transfer.models import (
    TransferDescriptor,
    TransferDirection,
    TransferInfo,
    TransferState,
)
from transfer.service import TransferReceiver, receive_file, send_file

from conftest import channel_pair

CHUNK = 16384


def _open_pair(**kwargs):
    local, remote = channel_pair(**kwargs)
    sender, receiver = MessageChannel(local), MessageChannel(remote)
    remote.open()
    local.open()
    return sender, receiver, local, remote


def _info(direction, path=None):
    fields = {}
    if path is not None:
        fields = {"file_name": os.path.basename(path), "file_size": os.path.getsize(path)}
    return TransferInfo(
        transfer_id="t1", direction=direction, state=TransferState.READY, **fields
    )


class Recorder:
    def __init__(self):
        self.progress = []
        self.states = []

    async def on_progress(self, info):
        self.progress.append(info.transferred_bytes)

    async def on_state(self, info):
        self.states.append(info.state)


# --- TransferReceiver ---

def test_receiver_collects_chunks_in_order():
    receiver = TransferReceiver()
    receiver.on_message(TransferDescriptor(name="a.txt", size=6).to_message())
    assert receiver.state == TransferState.TRANSFERRING
    assert receiver.on_message(b"abc") == 3
    assert receiver.progress == 0.5
    receiver.on_message(b"def")

    received = receiver.on_close()

    assert received.name == "a.txt"
    assert received.data == b"abcdef"
    assert receiver.state == TransferState.COMPLETE


def test_receiver_zero_byte_file():
    receiver = TransferReceiver()
    receiver.on_message(json.dumps({"name": "empty", "size": 0}))
    assert receiver.progress == 1.0
    received = receiver.on_close()
    assert received.size == 0


def test_receiver_rejects_payload_before_descriptor():
    receiver = TransferReceiver()
    with pytest.raises(TransferAborted):
        receiver.on_message(b"\x00\x01")
    assert receiver.state == TransferState.FAILED


def test_receiver_short_close_aborts():
    receiver = TransferReceiver()
    receiver.on_message(TransferDescriptor(name="big", size=10).to_message())
    receiver.on_message(b"12345")
    with pytest.raises(TransferAborted):
        receiver.on_close()
    assert receiver.state == TransferState.FAILED


def test_receiver_close_without_descriptor_aborts():
    with pytest.raises(TransferAborted):
        TransferReceiver().on_close()


def test_receiver_tolerates_extra_bytes():
    receiver = TransferReceiver()
    receiver.on_message(TransferDescriptor(name="x", size=2).to_message())
    receiver.on_message(b"abc")
    assert receiver.on_close().data == b"abc"


def test_new_descriptor_restarts_transfer():
    receiver = TransferReceiver()
    receiver.on_message(TransferDescriptor(name="first", size=4).to_message())
    receiver.on_message(b"ab")
    receiver.on_message(TransferDescriptor(name="second", size=2).to_message())
    receiver.on_message(b"xy")
    received = receiver.on_close()
    assert received.name == "second"
    assert received.data == b"xy"


@pytest.mark.parametrize(
    "message",
    ["not json", '{"name": "x"}', '{"name": "x", "size": -1}', '{"name": 5, "size": 1}', '{"name": "x", "size": "3"}'],
)
def test_malformed_descriptor_aborts(message):
    receiver = TransferReceiver()
    with pytest.raises(TransferAborted):
        receiver.on_message(message)
    assert receiver.state == TransferState.FAILED


def test_descriptor_wire_format():
    message = TransferDescriptor(name="report.pdf", size=1024).to_message()
    assert json.loads(message) == {"name": "report.pdf", "size": 1024}


# --- send_file / receive_file ---

@pytest.mark.asyncio
@pytest.mark.parametrize("size", [0, 1, CHUNK, 3 * CHUNK + 100])
async def test_file_arrives_intact(tmp_path, size):
    path = tmp_path / "payload.bin"
    payload = os.urandom(size)
    path.write_bytes(payload)
    sender, receiver, local, _ = _open_pair()
    send_info = _info(TransferDirection.SENDING, str(path))
    recv_info = _info(TransferDirection.RECEIVING)
    sent, got = Recorder(), Recorder()

    receiving = asyncio.create_task(receive_file(receiver, recv_info, got.on_progress, got.on_state))
    await send_file(sender, str(path), send_info, sent.on_progress, sent.on_state, chunk_size=CHUNK)
    received = await receiving

    assert received.name == "payload.bin"
    assert received.data == payload
    assert send_info.state == TransferState.COMPLETE
    assert recv_info.state == TransferState.COMPLETE
    assert send_info.progress_percent == 100.0
    assert recv_info.progress_percent == 100.0
    assert isinstance(local.sent[0], str)
    assert all(isinstance(m, bytes) and len(m) <= CHUNK for m in local.sent[1:])
    assert len(local.sent) - 1 == -(-size // CHUNK)


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_bounded(tmp_path):
    size = 5 * CHUNK + 7
    path = tmp_path / "steps.bin"
    path.write_bytes(b"x" * size)
    sender, receiver, _, _ = _open_pair()
    send_info = _info(TransferDirection.SENDING, str(path))
    recv_info = _info(TransferDirection.RECEIVING)
    sent, got = Recorder(), Recorder()

    receiving = asyncio.create_task(receive_file(receiver, recv_info, got.on_progress, got.on_state))
    await send_file(sender, str(path), send_info, sent.on_progress, sent.on_state, chunk_size=CHUNK)
    await receiving

    for series in (sent.progress, got.progress):
        steps = [b - a for a, b in zip([0] + series, series)]
        assert all(0 < step <= CHUNK for step in steps)
        assert series[-1] == size
    assert sent.states == [TransferState.TRANSFERRING, TransferState.COMPLETE]
    assert got.states[-1] == TransferState.COMPLETE


@pytest.mark.asyncio
async def test_cancelled_send_aborts_receiver(tmp_path):
    path = tmp_path / "stuck.bin"
    path.write_bytes(b"y" * (4 * CHUNK))
    sender, receiver, local, _ = _open_pair()
    send_info = _info(TransferDirection.SENDING, str(path))
    recv_info = _info(TransferDirection.RECEIVING)
    sent, got = Recorder(), Recorder()

    receiving = asyncio.create_task(receive_file(receiver, recv_info, got.on_progress, got.on_state))
    # Congested channel: the sender blocks before its first chunk
    local.bufferedAmount = 4 * 1024 * 1024
    sending = asyncio.create_task(
        send_file(sender, str(path), send_info, sent.on_progress, sent.on_state, chunk_size=CHUNK)
    )
    while send_info.state != TransferState.TRANSFERRING:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    sending.cancel()
    await sending

    assert await receiving is None
    assert send_info.state == TransferState.FAILED
    assert send_info.error_message == "Transfer cancelled"
    assert recv_info.state == TransferState.FAILED
    assert "0 of" in recv_info.error_message


@pytest.mark.asyncio
async def test_unreliable_channel_is_refused(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"z")
    sender, _, local, _ = _open_pair(max_retransmits=0)
    info = _info(TransferDirection.SENDING, str(path))
    rec = Recorder()

    await send_file(sender, str(path), info, rec.on_progress, rec.on_state)

    assert info.state == TransferState.FAILED
    assert "reliable" in info.error_message
    assert local.sent == []


@pytest.mark.asyncio
async def test_missing_file_fails_transfer(tmp_path):
    sender, _, _, _ = _open_pair()
    info = TransferInfo(
        transfer_id="t2",
        direction=TransferDirection.SENDING,
        state=TransferState.READY,
        file_name="gone.bin",
        file_size=3,
    )
    rec = Recorder()
    await send_file(sender, str(tmp_path / "gone.bin"), info, rec.on_progress, rec.on_state)
    assert info.state == TransferState.FAILED
    assert sender.is_closed


@pytest.mark.asyncio
async def test_wait_writable_respects_watermarks():
    sender, _, local, _ = _open_pair()
    local.bufferedAmount = 100
    await sender.wait_writable(high_water=1000, low_water=10)

    local.bufferedAmount = 2000
    waiting = asyncio.create_task(sender.wait_writable(high_water=1000, low_water=10))
    await asyncio.sleep(0)
    assert not waiting.done()
    assert local.bufferedAmountLowThreshold == 10

    local.bufferedAmount = 5
    local.emit("bufferedamountlow")
    await waiting


@pytest.mark.asyncio
async def test_messages_before_recv_are_kept():
    sender, receiver, _, _ = _open_pair()
    sender.send("one")
    sender.send(b"two")
    await sender.close()
    assert await receiver.recv() == "one"
    assert await receiver.recv() == b"two"
    assert await receiver.recv() is None
    assert await receiver.recv() is None


@pytest.mark.asyncio
async def test_send_after_close_is_aborted():
    sender, _, _, _ = _open_pair()
    await sender.close()
    with pytest.raises(TransferAborted):
        sender.send(b"late")
