"""Pydantic models for the signaling mailbox."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    """The three signaling messages a peer can post."""
    OFFER = "offer"
    ANSWER = "answer"
    ICE = "ice"


class SessionRecord(BaseModel):
    """The persisted mailbox record for one pairing code.

    Descriptors and candidates are opaque JSON objects at this layer.
    """
    offer: dict[str, Any] | None = None
    answer: dict[str, Any] | None = None
    ice: list[dict[str, Any]] = Field(default_factory=list)


class SignalMessage(BaseModel):
    """API body for posting to a room."""
    type: MessageKind
    data: dict[str, Any]


class CreateRoomResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")


class PostResponse(BaseModel):
    ok: bool = True
