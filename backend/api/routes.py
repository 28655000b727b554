"""REST API routes for the signaling mailbox."""

import logging

from fastapi import APIRouter, HTTPException

from exceptions import (
    FieldAlreadySet,
    InvalidPairingCode,
    SessionNotFound,
    StorageUnavailable,
)
from signaling.models import (
    CreateRoomResponse,
    PostResponse,
    SessionRecord,
    SignalMessage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_signaling_service = None


def init_routes(signaling_service) -> None:
    """Inject service dependencies into the routes module."""
    global _signaling_service
    _signaling_service = signaling_service


def _storage_error(e: StorageUnavailable) -> HTTPException:
    logger.error(f"Mailbox unavailable: {e}")
    return HTTPException(status_code=503, detail="Signaling storage unavailable")


@router.get("/health")
async def health():
    return {"status": "ok", "store": _signaling_service.store.name}


# --- Signaling ---

@router.post("/signaling/create", response_model=CreateRoomResponse, response_model_by_alias=True)
async def create_room():
    """Allocate a pairing code with an empty mailbox record."""
    try:
        room_id = await _signaling_service.create_session()
    except StorageUnavailable as e:
        raise _storage_error(e)
    return CreateRoomResponse(room_id=room_id)


@router.post("/signaling/{room_id}", response_model=PostResponse)
async def post_signal(room_id: str, body: SignalMessage):
    """Apply one offer / answer / ice message to a room."""
    try:
        await _signaling_service.post_message(room_id, body.type, body.data)
    except InvalidPairingCode as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FieldAlreadySet as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageUnavailable as e:
        raise _storage_error(e)
    return PostResponse(ok=True)


@router.get("/signaling/poll/{room_id}", response_model=SessionRecord)
async def poll_room(room_id: str):
    """Return the room's current record."""
    try:
        return await _signaling_service.poll_session(room_id)
    except InvalidPairingCode as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except StorageUnavailable as e:
        raise _storage_error(e)
