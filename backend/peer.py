"""
Quick Transfer peer: command line for the two pairing roles.

    python peer.py host [--save-dir DIR]     wait for a file, print the code
    python peer.py send CODE FILE            send FILE to the host showing CODE
"""

import argparse
import asyncio
import logging
import os
import sys

from config import DEFAULT_SAVE_DIR, SIGNALING_URL
from exceptions import SignalingError
from signaling.client import SignalingClient
from transfer.manager import TransferManager
from transfer.models import TransferState

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class ProgressPrinter:
    """Logs whole-percent progress steps and notifications."""

    def __init__(self) -> None:
        self._last_percent: dict[str, int] = {}

    async def __call__(self, event_type: str, data: dict) -> None:
        if event_type == "room_created":
            print(f"\n  Pairing code: {data['room_id']}  (expires in {data['expires_in']}s)\n")
        elif event_type == "transfer_progress":
            percent = int(data["progress_percent"])
            if percent != self._last_percent.get(data["transfer_id"]):
                self._last_percent[data["transfer_id"]] = percent
                logger.info(f"{data['file_name']}: {percent}%")
        elif event_type == "notification":
            log = logger.error if data["type"] == "error" else logger.info
            log(data["message"])
        elif event_type == "file_saved" and data.get("saved_path"):
            logger.info(f"Saved to {data['saved_path']}")


async def run_host(server: str, save_dir: str, keep_receiving: bool) -> int:
    async with SignalingClient(server) as signaling:
        manager = TransferManager(signaling, save_dir=save_dir)
        manager.on_event(ProgressPrinter())
        try:
            session = await manager.host()
            info = await manager.receive(session)
            while keep_receiving and info.state == TransferState.COMPLETE:
                info = await manager.receive_next(session)
        except SignalingError as e:
            logger.error(f"Could not start receiving: {e}")
            return 1
        finally:
            await manager.stop()
    return 0 if info.state == TransferState.COMPLETE else 1


async def run_send(server: str, code: str, file_paths: list[str]) -> int:
    for path in file_paths:
        if not os.path.isfile(path):
            logger.error(f"Not a file: {path}")
            return 2

    async with SignalingClient(server) as signaling:
        manager = TransferManager(signaling)
        manager.on_event(ProgressPrinter())
        try:
            info = await manager.send(code, file_paths[0])
            for path in file_paths[1:]:
                if info.state != TransferState.COMPLETE:
                    break
                info = await manager.send_another(code, path)
        finally:
            await manager.stop()
    return 0 if info.state == TransferState.COMPLETE else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Direct peer-to-peer file transfer")
    parser.add_argument(
        "--server", default=SIGNALING_URL, help="signaling server base URL"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    host = sub.add_parser("host", help="wait for a sender and receive")
    host.add_argument("--save-dir", default=DEFAULT_SAVE_DIR)
    host.add_argument(
        "--keep", action="store_true", help="keep receiving files on the same connection"
    )

    send = sub.add_parser("send", help="send files to a waiting host")
    send.add_argument("code", help="pairing code shown by the host")
    send.add_argument("files", nargs="+")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "host":
        return asyncio.run(run_host(args.server, args.save_dir, args.keep))
    return asyncio.run(run_send(args.server, args.code, args.files))


if __name__ == "__main__":
    sys.exit(main())
