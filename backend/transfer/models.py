"""Pydantic models for file transfer."""

import json
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exceptions import TransferAborted


class TransferState(str, Enum):
    """Lifecycle of one side of a pairing and its transfer."""
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    READY = "ready"
    TRANSFERRING = "transferring"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETE, TransferState.FAILED)

    def can_advance(self, new: "TransferState") -> bool:
        if new == TransferState.FAILED:
            return not self.is_terminal
        return new in _TRANSITIONS[self]


_TRANSITIONS = {
    TransferState.IDLE: {TransferState.NEGOTIATING},
    TransferState.NEGOTIATING: {TransferState.READY},
    TransferState.READY: {TransferState.TRANSFERRING},
    # A fresh descriptor on the same channel restarts the transfer
    TransferState.TRANSFERRING: {TransferState.TRANSFERRING, TransferState.COMPLETE},
    TransferState.COMPLETE: set(),
    TransferState.FAILED: set(),
}


def advance(current: TransferState, new: TransferState) -> TransferState:
    """Return `new` if the transition is legal, else raise ValueError."""
    if not current.can_advance(new):
        raise ValueError(f"Illegal transfer state change {current.value} -> {new.value}")
    return new


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferInfo(BaseModel):
    """Full state of a single file transfer, exposed to event listeners."""
    transfer_id: str
    file_name: str = ""
    file_size: int = 0
    transferred_bytes: int = 0
    state: TransferState = TransferState.IDLE
    direction: TransferDirection
    room_id: str = ""
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    eta_seconds: float = 0.0
    saved_path: str | None = None
    error_message: str | None = None

    def move_to(self, new: TransferState) -> None:
        self.state = advance(self.state, new)

    def fail(self, reason: str) -> None:
        if not self.state.is_terminal:
            self.state = TransferState.FAILED
        self.error_message = reason


# --- Wire protocol ---

class TransferDescriptor(BaseModel):
    """Control message sent once, as text, before the payload chunks."""
    model_config = ConfigDict(strict=True)

    name: str
    size: int = Field(ge=0)

    def to_message(self) -> str:
        return json.dumps({"name": self.name, "size": self.size})

    @classmethod
    def from_message(cls, message: str) -> "TransferDescriptor":
        try:
            return cls.model_validate_json(message)
        except ValidationError as e:
            raise TransferAborted(f"Malformed transfer descriptor: {e}") from e


class ReceivedFile(BaseModel):
    """A completely received file, tagged with the sender's name for it."""
    name: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)
