"""Collaboration event model and room protocol for trip rooms.

Every message that crosses a trip room is described here: the room protocol
message names, the ``CollaborationEvent`` envelope, presence records and the
typed change payload carried by each event type. Inbound payloads are parsed
and validated once at the boundary with :func:`parse_event`; everything past
that point works with fully typed models.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from terravoyage.collaboration.exceptions import InvalidEventError

logger = structlog.get_logger()


def utcnow() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def room_name(trip_id: str) -> str:
    """Broadcast room key for a trip."""
    return f"trip-{trip_id}"


class EventType(str, Enum):
    """Collaboration event types."""
    ACTIVITY_UPDATED = "activity_updated"
    TRIP_UPDATED = "trip_updated"
    COMMENT_ADDED = "comment_added"
    VOTE_ADDED = "vote_added"
    USER_TYPING = "user_typing"
    CURSOR_MOVE = "cursor_move"
    PRESENCE_UPDATE = "presence_update"
    JOIN = "join"
    LEAVE = "leave"


# Event types that represent edits to a shared trip or activity
EDIT_EVENT_TYPES = frozenset({EventType.ACTIVITY_UPDATED, EventType.TRIP_UPDATED})


class RoomMessage(str, Enum):
    """Messages a client sends to its trip room."""
    JOIN_TRIP = "join-trip"
    LEAVE_TRIP = "leave-trip"
    ACTIVITY_UPDATED = "activity-updated"
    TRIP_UPDATED = "trip-updated"
    COMMENT_ADDED = "comment-added"
    VOTE_ADDED = "vote-added"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    CURSOR_MOVE = "cursor-move"


class RoomBroadcast(str, Enum):
    """Messages a trip room pushes to its clients."""
    COLLABORATION_EVENT = "collaboration-event"
    USER_PRESENCE_UPDATED = "user-presence-updated"
    ONLINE_USERS = "online-users"
    USER_TYPING = "user-typing"
    USER_CURSOR = "user-cursor"
    ERROR = "error"


class WireModel(BaseModel):
    """Base model serialised with camelCase keys on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialise to a JSON-compatible dict with wire field names."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class CursorPosition(WireModel):
    """Pointer coordinates shared with the room."""

    x: float = Field(..., description="X coordinate")
    y: float = Field(..., description="Y coordinate")


class ActivityUpdate(WireModel):
    """Changes made to one activity of the itinerary."""

    activity_id: str = Field(..., min_length=1, description="Activity ID")
    changes: Dict[str, Any] = Field(default_factory=dict, description="Changed fields")


class TripUpdate(WireModel):
    """Changes made to the trip itself."""

    changes: Dict[str, Any] = Field(default_factory=dict, description="Changed fields")


class CommentAdded(WireModel):
    """A comment already persisted by the comment service."""

    comment_id: str = Field(..., min_length=1, description="Comment ID")
    comment: Dict[str, Any] = Field(default_factory=dict, description="Persisted comment")


class VoteAdded(WireModel):
    """A vote cast on an activity."""

    activity_id: str = Field(..., min_length=1, description="Activity ID")
    vote: Dict[str, Any] = Field(default_factory=dict, description="Persisted vote")


class TypingUpdate(WireModel):
    """Typing state of a user."""

    is_typing: bool = Field(default=True, description="Whether the user is typing")
    location: Optional[str] = Field(default=None, description="Where the user is typing")


class CursorUpdate(WireModel):
    """Cursor movement of a user."""

    position: CursorPosition = Field(..., description="Cursor position")
    element: Optional[str] = Field(default=None, description="Hovered element")


ChangePayload = Union[
    ActivityUpdate, TripUpdate, CommentAdded, VoteAdded, TypingUpdate, CursorUpdate
]

_PAYLOAD_MODELS: Dict[EventType, Type[WireModel]] = {
    EventType.ACTIVITY_UPDATED: ActivityUpdate,
    EventType.TRIP_UPDATED: TripUpdate,
    EventType.COMMENT_ADDED: CommentAdded,
    EventType.VOTE_ADDED: VoteAdded,
    EventType.USER_TYPING: TypingUpdate,
    EventType.CURSOR_MOVE: CursorUpdate,
}


class CollaborationEvent(WireModel):
    """One unit of activity broadcast across a trip room."""

    type: EventType = Field(..., description="Event type")
    trip_id: str = Field(..., min_length=1, description="Owning trip (room key)")
    user_id: str = Field(..., min_length=1, description="Acting user ID")
    user_name: Optional[str] = Field(default=None, description="Acting user display name")
    timestamp: datetime = Field(default_factory=utcnow, description="Event creation time")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific payload")

    @field_validator("timestamp")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def payload(self) -> Optional[ChangePayload]:
        """Typed view of ``data`` for event types that carry a change payload."""
        model = _PAYLOAD_MODELS.get(self.type)
        if model is None:
            return None
        return model.model_validate(self.data)

    @property
    def target_entity_id(self) -> Optional[str]:
        """Activity the event targets, or None when it targets the trip."""
        activity_id = self.data.get("activityId")
        return str(activity_id) if activity_id else None

    @property
    def changes(self) -> Dict[str, Any]:
        """Changed fields carried by the event, falling back to the whole payload."""
        changes = self.data.get("changes")
        if isinstance(changes, Mapping):
            return dict(changes)
        return dict(self.data)

    @property
    def is_edit(self) -> bool:
        """Whether the event edits a trip or activity."""
        return self.type in EDIT_EVENT_TYPES

    @classmethod
    def from_wire(cls, raw: Any) -> "CollaborationEvent":
        """Validate an inbound payload, raising InvalidEventError when malformed."""
        if not isinstance(raw, Mapping):
            raise InvalidEventError("payload is not an object", payload=raw)

        try:
            event = cls.model_validate(raw)
            payload_model = _PAYLOAD_MODELS.get(event.type)
            if payload_model is not None:
                payload_model.model_validate(event.data)
        except PydanticValidationError as e:
            raise InvalidEventError(
                "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ),
                payload=dict(raw),
            )
        return event


class UserPresence(WireModel):
    """Ephemeral online state of a user within a trip room."""

    user_id: str = Field(..., min_length=1, description="User ID")
    user_name: Optional[str] = Field(default=None, description="Display name")
    user_image: Optional[str] = Field(default=None, description="Avatar URL")
    is_online: bool = Field(default=True, description="Whether the user is online")
    last_seen: datetime = Field(default_factory=utcnow, description="Last seen timestamp")
    current_page: Optional[str] = Field(default=None, description="Room the user is viewing")


class TypingNotice(WireModel):
    """Broadcast telling a room that a user started or stopped typing."""

    user_id: str = Field(..., description="User ID")
    user_name: Optional[str] = Field(default=None, description="Display name")
    is_typing: bool = Field(..., description="Whether the user is typing")
    location: Optional[str] = Field(default=None, description="Where the user is typing")


class CursorNotice(WireModel):
    """Broadcast telling a room where a user's cursor is."""

    user_id: str = Field(..., description="User ID")
    user_name: Optional[str] = Field(default=None, description="Display name")
    position: CursorPosition = Field(..., description="Cursor position")
    element: Optional[str] = Field(default=None, description="Hovered element")


def parse_event(raw: Any) -> Optional[CollaborationEvent]:
    """Parse an inbound event, returning None for malformed payloads."""
    try:
        return CollaborationEvent.from_wire(raw)
    except InvalidEventError as e:
        logger.warning(
            "Dropping malformed collaboration event",
            reason=e.details.get("reason"),
        )
        return None


def encode_frame(event: str, data: Any = None) -> str:
    """Encode a room message as a JSON text frame."""
    return json.dumps({"event": event, "data": data})


def decode_frame(text: Union[str, bytes]) -> Tuple[str, Any]:
    """Decode a JSON text frame into ``(event, data)``."""
    try:
        frame = json.loads(text)
    except (TypeError, ValueError):
        raise InvalidEventError("frame is not valid JSON", payload=text)

    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise InvalidEventError("frame has no event name", payload=frame)
    return frame["event"], frame.get("data")
