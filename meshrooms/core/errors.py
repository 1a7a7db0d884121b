# meshrooms/core/errors.py


class MeshRoomsError(Exception):
    """Base class for errors raised by meshrooms."""


class MediaAcquisitionError(MeshRoomsError):
    """Camera, microphone or screen capture could not be opened."""


class NegotiationError(MeshRoomsError):
    """Offer/answer exchange with one remote peer failed."""

    def __init__(self, user_id: str, message: str):
        super().__init__(f"{user_id}: {message}")
        self.user_id = user_id


class SignalingError(MeshRoomsError):
    """The signaling server could not be reached."""
