"""Error taxonomy shared by the signaling server, negotiation and transfer."""


class SignalingError(Exception):
    """Base class for all pairing and transfer errors."""


class StorageUnavailable(SignalingError):
    """The mailbox could not be read or written."""


class SessionNotFound(SignalingError):
    """No live mailbox record exists for a pairing code."""

    def __init__(self, code: str, message: str = "Room not found"):
        super().__init__(f"{message}: {code}")
        self.code = code


class InvalidPairingCode(SignalingError):
    """A user supplied pairing code has the wrong length or characters."""


class FieldAlreadySet(SignalingError):
    """An offer or answer was posted twice with different payloads."""

    def __init__(self, code: str, field: str):
        super().__init__(f"'{field}' already set for room {code}")
        self.code = code
        self.field = field


class NegotiationTimeout(SignalingError):
    """The host stopped waiting without seeing an answer."""


class TransportRejected(SignalingError):
    """The peer connection refused a descriptor or candidate."""


class TransferAborted(SignalingError):
    """The data channel closed before a transfer completed."""
