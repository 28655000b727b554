import logging

import pytest

from peer import ProgressPrinter, build_parser, run_send


def test_host_arguments():
    args = build_parser().parse_args(["--server", "http://sig:9000", "host", "--save-dir", "/tmp/in", "--keep"])
    assert args.command == "host"
    assert args.server == "http://sig:9000"
    assert args.save_dir == "/tmp/in"
    assert args.keep is True


def test_send_arguments():
    args = build_parser().parse_args(["send", "ab12cd", "a.txt", "b.txt"])
    assert args.command == "send"
    assert args.code == "ab12cd"
    assert args.files == ["a.txt", "b.txt"]


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.asyncio
async def test_send_rejects_missing_files(tmp_path):
    assert await run_send("http://127.0.0.1:1", "AB12CD", [str(tmp_path / "nope")]) == 2


@pytest.mark.asyncio
async def test_progress_printer_logs_each_percent_once(caplog, capsys):
    printer = ProgressPrinter()
    caplog.set_level(logging.INFO, logger="peer")

    await printer("room_created", {"room_id": "AB12CD", "expires_in": 300})
    for percent in (10.2, 10.8, 11.0):
        await printer(
            "transfer_progress",
            {"transfer_id": "t", "file_name": "f.bin", "progress_percent": percent},
        )

    assert "AB12CD" in capsys.readouterr().out
    progress = [r.getMessage() for r in caplog.records if "f.bin" in r.getMessage()]
    assert progress == ["f.bin: 10%", "f.bin: 11%"]
