"""Real-time trip collaboration: rooms, presence, typing and conflicts."""

from terravoyage.collaboration.channel import DuplexChannel, InMemoryChannel, WebSocketChannel
from terravoyage.collaboration.client import CollaborationClient
from terravoyage.collaboration.conflicts import (
    ConflictEvent,
    ConflictResolution,
    ConflictResolver,
    ConflictSeverity,
    ConflictSummary,
    ConflictType,
    EntityType,
    ResolutionInput,
    ResolutionOutcome,
    ResolutionStrategy,
    detect_conflicts,
    format_conflict_message,
    get_conflict_severity,
    merge_changes,
)
from terravoyage.collaboration.events import (
    CollaborationEvent,
    CursorNotice,
    CursorPosition,
    EventType,
    RoomBroadcast,
    RoomMessage,
    TypingNotice,
    UserPresence,
    parse_event,
)
from terravoyage.collaboration.exceptions import (
    ChannelClosedError,
    ChannelError,
    CollaborationError,
    InvalidEventError,
)
from terravoyage.collaboration.hub import CollaborationHub, HubConnection
from terravoyage.collaboration.monitor import ConflictMonitor
from terravoyage.collaboration.presence import PresenceTracker
from terravoyage.collaboration.typing_indicator import TypingIndicator

__all__ = [
    # Transport
    "DuplexChannel",
    "InMemoryChannel",
    "WebSocketChannel",
    "CollaborationClient",
    "CollaborationHub",
    "HubConnection",
    # Events
    "CollaborationEvent",
    "CursorNotice",
    "CursorPosition",
    "EventType",
    "RoomBroadcast",
    "RoomMessage",
    "TypingNotice",
    "UserPresence",
    "parse_event",
    # State
    "PresenceTracker",
    "TypingIndicator",
    "ConflictMonitor",
    # Conflicts
    "ConflictEvent",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictSeverity",
    "ConflictSummary",
    "ConflictType",
    "EntityType",
    "ResolutionInput",
    "ResolutionOutcome",
    "ResolutionStrategy",
    "detect_conflicts",
    "format_conflict_message",
    "get_conflict_severity",
    "merge_changes",
    # Exceptions
    "CollaborationError",
    "ChannelError",
    "ChannelClosedError",
    "InvalidEventError",
]
