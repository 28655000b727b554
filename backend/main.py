"""
Quick Transfer signaling server: FastAPI application entry point.

Serves the pairing mailbox used by host and sender to exchange
connection-setup descriptors before their direct data channel exists.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from config import API_HOST, API_PORT, REDIS_URL, ROOM_TTL
from signaling.service import SignalingService
from signaling.store import MailboxStore, MemoryMailboxStore, RedisMailboxStore

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_store() -> MailboxStore:
    if REDIS_URL:
        return RedisMailboxStore.from_url(REDIS_URL)
    logger.warning("REDIS_URL not set, rooms are kept in process memory")
    return MemoryMailboxStore()


# --- Service singletons ---
mailbox_store = build_store()
signaling_service = SignalingService(mailbox_store, ttl=ROOM_TTL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info(
        f"Signaling server ready. API: {API_HOST}:{API_PORT}, "
        f"store: {mailbox_store.name}, room ttl: {ROOM_TTL}s"
    )
    try:
        yield
    finally:
        logger.info("Shutting down signaling server...")
        await mailbox_store.close()


# --- FastAPI app ---
app = FastAPI(
    title="Quick Transfer Signaling",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(signaling_service)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
