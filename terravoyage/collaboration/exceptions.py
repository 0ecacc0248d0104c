"""Collaboration system exceptions."""

from typing import Any, Dict, Optional

from terravoyage.exceptions import TerraVoyageException


class CollaborationError(TerraVoyageException):
    """Base exception for collaboration errors."""

    def __init__(
        self,
        message: str,
        trip_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.trip_id = trip_id
        self.details = details or {}


class ChannelError(CollaborationError):
    """Raised when a duplex channel cannot connect or deliver a frame."""
    pass


class ChannelClosedError(ChannelError):
    """Raised when sending on a channel that is not open."""

    def __init__(self, event: str):
        super().__init__(
            f"Cannot send '{event}': channel is closed",
            details={"event": event},
        )


class InvalidEventError(CollaborationError):
    """Raised when an inbound collaboration payload fails validation."""

    def __init__(self, reason: str, payload: Any = None):
        super().__init__(
            f"Invalid collaboration event: {reason}",
            details={"reason": reason, "payload": payload},
        )
