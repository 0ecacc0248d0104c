"""Conflict detection and resolution for concurrent trip edits.

Edits from different travellers to the same trip or activity that land within
a short window of each other are clustered into a ``ConflictEvent``. The
``ConflictResolver`` turns a conflict into a ``ConflictResolution`` using one
of four strategies, and keeps a process-local index of active conflicts and
per-entity strategy overrides. Nothing here is persisted: conflicts are an
advisory signal and a restart simply drops them.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

import structlog
from pydantic import Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from terravoyage.collaboration.events import CollaborationEvent, WireModel, utcnow
from terravoyage.config import settings

logger = structlog.get_logger()

DEFAULT_CONFLICT_WINDOW = timedelta(milliseconds=5000)


class ConflictType(str, Enum):
    """Kinds of detected conflicts."""
    EDIT_CONFLICT = "edit_conflict"
    CONCURRENT_UPDATE = "concurrent_update"
    VERSION_MISMATCH = "version_mismatch"


class EntityType(str, Enum):
    """Entities that can be edited concurrently."""
    TRIP = "trip"
    ACTIVITY = "activity"
    COMMENT = "comment"


class ResolutionStrategy(str, Enum):
    """Conflict resolution strategies."""
    LAST_WRITE_WINS = "last_write_wins"
    FIRST_WRITE_WINS = "first_write_wins"
    MANUAL_MERGE = "manual_merge"
    USER_CHOICE = "user_choice"


class ResolutionOutcome(str, Enum):
    """How a resolved conflict was settled."""
    MERGE = "merge"
    OVERRIDE = "override"
    MANUAL = "manual"


class ConflictSeverity(str, Enum):
    """Severity levels shown next to a conflict."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


DEFAULT_STRATEGIES: Dict[EntityType, ResolutionStrategy] = {
    EntityType.TRIP: ResolutionStrategy.LAST_WRITE_WINS,
    EntityType.ACTIVITY: ResolutionStrategy.MANUAL_MERGE,
    EntityType.COMMENT: ResolutionStrategy.FIRST_WRITE_WINS,
}

_RECOMMENDED_ACTIONS: Dict[EntityType, str] = {
    EntityType.TRIP: "Review changes and choose the version to keep",
    EntityType.ACTIVITY: "Merge changes manually or choose a winner",
    EntityType.COMMENT: "All comments will be preserved automatically",
}


def _conflict_id() -> str:
    return f"conflict_{int(utcnow().timestamp() * 1000)}_{uuid4().hex[:9]}"


class ConflictEvent(WireModel):
    """A detected disagreement over a shared entity."""

    id: str = Field(default_factory=_conflict_id, description="Conflict ID")
    type: ConflictType = Field(
        default=ConflictType.CONCURRENT_UPDATE, description="Conflict type"
    )
    entity_type: EntityType = Field(..., description="Type of the contested entity")
    entity_id: str = Field(..., description="Contested entity ID")
    trip_id: Optional[str] = Field(default=None, description="Owning trip")
    user_id: str = Field(..., description="Actor of the earliest event")
    user_name: Optional[str] = Field(default=None, description="Display name of the base actor")
    timestamp: datetime = Field(..., description="Time of the earliest event")
    changes: Dict[str, Any] = Field(default_factory=dict, description="Base event changes")
    conflicts_with: List[str] = Field(
        default_factory=list, description="Other actors involved, in arrival order"
    )
    resolved: bool = Field(default=False, description="Whether the conflict is resolved")
    resolution: Optional[ResolutionOutcome] = Field(default=None, description="How it was resolved")
    resolved_by: Optional[str] = Field(default=None, description="User who resolved it")
    resolved_at: Optional[datetime] = Field(default=None, description="Resolution timestamp")

    @model_validator(mode="after")
    def check_invariants(self) -> "ConflictEvent":
        self.conflicts_with = [u for u in self.conflicts_with if u != self.user_id]
        if not self.resolved and (self.resolution is not None or self.resolved_at is not None):
            raise ValueError("an unresolved conflict cannot carry a resolution")
        return self

    def mark_resolved(
        self,
        resolution: ResolutionOutcome,
        resolved_by: Optional[str] = None,
    ) -> bool:
        """Mark the conflict resolved. Returns False if it already was."""
        if self.resolved:
            return False
        self.resolved = True
        self.resolution = resolution
        self.resolved_by = resolved_by
        self.resolved_at = utcnow()
        return True


class ConflictResolution(WireModel):
    """Outcome of resolving a conflict."""

    strategy: ResolutionStrategy = Field(..., description="Strategy used")
    winner: Optional[str] = Field(default=None, description="User whose changes take precedence")
    merged_changes: Optional[Dict[str, Any]] = Field(default=None, description="Merged payload")
    requires_user_input: bool = Field(
        default=False, description="Caller must collect input and resolve again"
    )


class ResolutionInput(WireModel):
    """User-supplied input for strategies that cannot decide on their own."""

    conflicting_changes: Optional[Dict[str, Any]] = Field(
        default=None, description="Changes from the other side of the conflict"
    )
    winner: Optional[str] = Field(default=None, description="Chosen winning user")


class ConflictSummary(WireModel):
    """Human readable description of a conflict for the UI."""

    title: str = Field(..., description="Short title")
    description: str = Field(..., description="What happened")
    affected_users: List[str] = Field(default_factory=list, description="Users involved")
    recommended_action: str = Field(..., description="Suggested next step")


def merge_changes(base: Mapping[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    """Structurally merge ``incoming`` into ``base``.

    Keys only present in ``incoming`` are added, lists are unioned without
    duplicates, nested mappings are merged recursively and, for any other
    collision, the base value is kept.
    """
    merged = dict(base)

    for key, value in incoming.items():
        if key not in base:
            merged[key] = value
        elif isinstance(base[key], list) and isinstance(value, list):
            merged[key] = _union(base[key], value)
        elif isinstance(base[key], Mapping) and isinstance(value, Mapping):
            merged[key] = merge_changes(base[key], value)

    return merged


def _union(first: List[Any], second: List[Any]) -> List[Any]:
    # Items may be unhashable (dicts), so compare by equality
    result: List[Any] = []
    for item in [*first, *second]:
        if item not in result:
            result.append(item)
    return result


def _find_simultaneous_events(
    events: List[CollaborationEvent],
    window: timedelta,
) -> List[CollaborationEvent]:
    """Collect every event that has a different-user neighbour within the window."""
    clustered: List[CollaborationEvent] = []

    for i, current in enumerate(events):
        if not current.user_id:
            continue

        neighbours = [
            other
            for other in events[i + 1:]
            if other.user_id
            and other.user_id != current.user_id
            and abs(other.timestamp - current.timestamp) <= window
        ]
        if not neighbours:
            continue

        for event in [current, *neighbours]:
            if event not in clustered:
                clustered.append(event)

    return clustered


def _build_conflict(
    cluster: List[CollaborationEvent],
    trip_id: str,
    activity_id: Optional[str],
) -> ConflictEvent:
    ordered = sorted(cluster, key=lambda e: e.timestamp)
    base = ordered[0]

    conflicts_with: List[str] = []
    for event in ordered[1:]:
        if event.user_id != base.user_id and event.user_id not in conflicts_with:
            conflicts_with.append(event.user_id)

    return ConflictEvent(
        entity_type=EntityType.ACTIVITY if activity_id else EntityType.TRIP,
        entity_id=activity_id or trip_id,
        trip_id=trip_id,
        user_id=base.user_id,
        user_name=base.user_name,
        timestamp=base.timestamp,
        changes=base.changes,
        conflicts_with=conflicts_with,
    )


def detect_conflicts(
    events: Iterable[CollaborationEvent],
    window: timedelta = DEFAULT_CONFLICT_WINDOW,
) -> List[ConflictEvent]:
    """Find conflicting edits in a batch of events.

    Events are bucketed by trip and target activity. A bucket yields one
    conflict when at least two of its events come from different users no
    more than ``window`` apart (the boundary is inclusive).
    """
    buckets: Dict[Tuple[str, Optional[str]], List[CollaborationEvent]] = {}
    for event in events:
        buckets.setdefault((event.trip_id, event.target_entity_id), []).append(event)

    conflicts = []
    for (trip_id, activity_id), bucket in buckets.items():
        cluster = _find_simultaneous_events(bucket, window)
        if len(cluster) > 1:
            conflicts.append(_build_conflict(cluster, trip_id, activity_id))

    return conflicts


def get_conflict_severity(conflict: ConflictEvent) -> ConflictSeverity:
    """Rank a conflict by how many users it touches and what it touches."""
    user_count = len(conflict.conflicts_with) + 1
    entity_importance = 2 if conflict.entity_type == EntityType.TRIP else 1
    severity = user_count * entity_importance

    if severity >= 4:
        return ConflictSeverity.HIGH
    if severity >= 2:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


def format_conflict_message(conflict: ConflictEvent) -> str:
    """One-line description of a conflict."""
    user_count = len(conflict.conflicts_with) + 1
    return f"{user_count} users made conflicting changes to this {conflict.entity_type.value}"


class ConflictResolver:
    """Resolves conflicts and tracks the active ones for each entity.

    One resolver is owned by whoever hosts the collaboration state (a client
    session or a server process). Its maps are in-memory only.
    """

    def __init__(
        self,
        conflict_window: Optional[timedelta] = None,
        default_strategies: Optional[Mapping[EntityType, ResolutionStrategy]] = None,
    ):
        self.logger = logger.bind(component="conflict_resolver")
        self.conflict_window = (
            conflict_window
            if conflict_window is not None
            else timedelta(milliseconds=settings.conflict_window_ms)
        )
        self._active_conflicts: Dict[str, List[ConflictEvent]] = {}
        self._strategy_overrides: Dict[str, Union[ResolutionStrategy, str]] = {}
        self._default_strategies: Dict[EntityType, ResolutionStrategy] = dict(DEFAULT_STRATEGIES)
        if default_strategies:
            self._default_strategies.update(default_strategies)

    def detect_conflict(self, events: Iterable[CollaborationEvent]) -> List[ConflictEvent]:
        """Detect conflicts in a batch of events using this resolver's window."""
        conflicts = detect_conflicts(events, self.conflict_window)
        if conflicts:
            self.logger.info("Detected conflicts", count=len(conflicts))
        return conflicts

    async def resolve_conflict(
        self,
        conflict: ConflictEvent,
        strategy: Optional[Union[ResolutionStrategy, str]] = None,
        user_input: Optional[Union[ResolutionInput, Mapping[str, Any]]] = None,
        resolved_by: Optional[str] = None,
    ) -> ConflictResolution:
        """Resolve a conflict.

        The strategy is taken from ``strategy``, then the entity override, then
        the default for the entity type. When the result does not need user
        input the conflict is marked resolved. Resolving an already resolved
        conflict leaves it untouched.
        """
        selected = self._select_strategy(conflict, strategy)

        if conflict.resolved:
            self.logger.info(
                "Conflict already resolved",
                conflict_id=conflict.id,
                resolution=conflict.resolution,
            )
            return ConflictResolution(strategy=selected, requires_user_input=False)

        parsed_input = self._parse_input(user_input)

        if selected == ResolutionStrategy.FIRST_WRITE_WINS:
            resolution = self._resolve_first_write_wins(conflict)
        elif selected == ResolutionStrategy.MANUAL_MERGE:
            resolution = self._resolve_manual_merge(conflict, parsed_input)
        elif selected == ResolutionStrategy.USER_CHOICE:
            resolution = self._resolve_user_choice(conflict, parsed_input)
        else:
            resolution = self._resolve_last_write_wins(conflict)

        if not resolution.requires_user_input:
            outcome = (
                ResolutionOutcome.MERGE
                if resolution.strategy == ResolutionStrategy.MANUAL_MERGE
                else ResolutionOutcome.OVERRIDE
            )
            conflict.mark_resolved(outcome, resolved_by=resolved_by)
            self.logger.info(
                "Resolved conflict",
                conflict_id=conflict.id,
                strategy=resolution.strategy.value,
                outcome=outcome.value,
            )
        else:
            self.logger.debug(
                "Conflict needs user input",
                conflict_id=conflict.id,
                strategy=resolution.strategy.value,
            )

        return resolution

    def get_active_conflicts(self, entity_id: str) -> List[ConflictEvent]:
        """Get tracked conflicts for a trip or entity."""
        return list(self._active_conflicts.get(entity_id, []))

    def add_conflict(self, entity_id: str, conflict: ConflictEvent) -> None:
        """Track a conflict under an entity."""
        self._active_conflicts.setdefault(entity_id, []).append(conflict)

    def remove_resolved_conflicts(self, entity_id: str) -> None:
        """Drop resolved conflicts, forgetting the entity once none remain."""
        remaining = [c for c in self._active_conflicts.get(entity_id, []) if not c.resolved]

        if remaining:
            self._active_conflicts[entity_id] = remaining
        else:
            self._active_conflicts.pop(entity_id, None)

    def set_resolution_strategy(
        self,
        entity_id: str,
        strategy: Union[ResolutionStrategy, str],
    ) -> None:
        """Override the strategy used for one entity.

        Unknown names are stored as given; resolving such an entity falls
        back to last-write-wins.
        """
        self._strategy_overrides[entity_id] = strategy

    def generate_conflict_summary(self, conflict: ConflictEvent) -> ConflictSummary:
        """Build the title, description and next step shown for a conflict."""
        entity = conflict.entity_type.value
        affected_users = [u for u in [conflict.user_id, *conflict.conflicts_with] if u]

        return ConflictSummary(
            title=f"{entity.capitalize()} Edit Conflict",
            description=(
                f"Multiple users edited the same {entity} simultaneously. "
                "Changes may conflict."
            ),
            affected_users=affected_users,
            recommended_action=_RECOMMENDED_ACTIONS.get(
                conflict.entity_type, "Review conflicting changes"
            ),
        )

    # Private helper methods

    def _select_strategy(
        self,
        conflict: ConflictEvent,
        strategy: Optional[Union[ResolutionStrategy, str]],
    ) -> ResolutionStrategy:
        candidate = (
            strategy
            or self._strategy_overrides.get(conflict.entity_id)
            or self._default_strategies.get(conflict.entity_type)
        )
        try:
            return ResolutionStrategy(candidate)
        except ValueError:
            self.logger.warning(
                "Unknown resolution strategy, using last-write-wins",
                strategy=candidate,
                conflict_id=conflict.id,
            )
            return ResolutionStrategy.LAST_WRITE_WINS

    def _parse_input(
        self,
        user_input: Optional[Union[ResolutionInput, Mapping[str, Any]]],
    ) -> Optional[ResolutionInput]:
        if user_input is None or isinstance(user_input, ResolutionInput):
            return user_input
        try:
            return ResolutionInput.model_validate(user_input)
        except PydanticValidationError as e:
            self.logger.warning("Ignoring invalid resolution input", error=str(e))
            return None

    def _resolve_last_write_wins(self, conflict: ConflictEvent) -> ConflictResolution:
        # The recorded actor is the earliest event's user for both write-wins
        # strategies; see DESIGN.md before changing who wins here.
        return ConflictResolution(
            strategy=ResolutionStrategy.LAST_WRITE_WINS,
            winner=conflict.user_id,
            requires_user_input=False,
        )

    def _resolve_first_write_wins(self, conflict: ConflictEvent) -> ConflictResolution:
        return ConflictResolution(
            strategy=ResolutionStrategy.FIRST_WRITE_WINS,
            winner=conflict.user_id,
            requires_user_input=False,
        )

    def _resolve_manual_merge(
        self,
        conflict: ConflictEvent,
        user_input: Optional[ResolutionInput],
    ) -> ConflictResolution:
        if user_input is None or user_input.conflicting_changes is None:
            return ConflictResolution(
                strategy=ResolutionStrategy.MANUAL_MERGE,
                requires_user_input=True,
            )

        return ConflictResolution(
            strategy=ResolutionStrategy.MANUAL_MERGE,
            merged_changes=merge_changes(conflict.changes, user_input.conflicting_changes),
            requires_user_input=False,
        )

    def _resolve_user_choice(
        self,
        conflict: ConflictEvent,
        user_input: Optional[ResolutionInput],
    ) -> ConflictResolution:
        if user_input is None or not user_input.winner:
            return ConflictResolution(
                strategy=ResolutionStrategy.USER_CHOICE,
                requires_user_input=True,
            )

        return ConflictResolution(
            strategy=ResolutionStrategy.USER_CHOICE,
            winner=user_input.winner,
            requires_user_input=False,
        )
