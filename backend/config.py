"""Application-wide configuration constants."""

import os
import string
from pathlib import Path

# --- Networking ---
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8765"))
SIGNALING_URL = os.getenv("SIGNALING_URL", f"http://127.0.0.1:{API_PORT}")
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "5.0"))  # seconds

ICE_SERVERS = [
    url.strip()
    for url in os.getenv("ICE_SERVERS", "stun:stun.l.google.com:19302").split(",")
    if url.strip()
]

# --- Mailbox ---
REDIS_URL = os.getenv("REDIS_URL", "")  # empty -> in-memory mailbox
ROOM_KEY_PREFIX = "room:"
ROOM_TTL = int(os.getenv("ROOM_TTL", "300"))  # seconds
MAX_CREATE_ATTEMPTS = 5
MAX_UPDATE_RETRIES = 10

# --- Pairing codes ---
CODE_LENGTH = 6
CODE_ALPHABET = string.digits + string.ascii_uppercase  # base-36

# --- Negotiation ---
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "2"))  # seconds
POLL_DEADLINE = float(os.getenv("POLL_DEADLINE", str(ROOM_TTL)))  # seconds
DATA_CHANNEL_LABEL = "fileTransfer"
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "30"))  # answer applied -> channel open

# --- Transfer ---
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "16384"))  # 16 KB
BUFFER_HIGH_WATER = 1024 * 1024  # pause sending above this many queued bytes
BUFFER_LOW_WATER = 256 * 1024
CLOSE_TIMEOUT = 10.0  # seconds to wait for the channel close to be acknowledged

# --- Storage ---
DEFAULT_SAVE_DIR = os.getenv(
    "SAVE_DIR", str(Path.home() / "Downloads" / "QuickTransfer")
)
