"""Rolling buffer of edit events feeding conflict detection."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

import structlog

from terravoyage.collaboration.conflicts import ConflictEvent, ConflictResolver
from terravoyage.collaboration.events import CollaborationEvent
from terravoyage.config import settings

logger = structlog.get_logger()

ConflictKey = Tuple[str, str, str, datetime, Tuple[str, ...]]


class ConflictMonitor:
    """Buffers recent edits and reports each conflict among them once.

    Only edit events are kept, and only for ``buffer_seconds`` after the
    newest one seen. Edits to one entity are split into bursts wherever two
    consecutive edits are further apart than the resolver's conflict window,
    so separate rounds of concurrent editing are reported separately. Newly
    found conflicts are registered with the resolver under their entity id.
    """

    def __init__(self, resolver: ConflictResolver, buffer_seconds: Optional[float] = None):
        self.logger = logger.bind(component="conflict_monitor")
        self.resolver = resolver
        self.buffer_seconds = (
            buffer_seconds if buffer_seconds is not None else settings.conflict_buffer_seconds
        )
        self._events: List[CollaborationEvent] = []
        self._reported: Set[ConflictKey] = set()

    @property
    def events(self) -> List[CollaborationEvent]:
        return list(self._events)

    @property
    def reported_count(self) -> int:
        """Number of conflicts still remembered as reported."""
        return len(self._reported)

    def record(self, event: CollaborationEvent) -> List[ConflictEvent]:
        """Buffer an event and return conflicts it newly exposes."""
        if not event.is_edit:
            return []

        self._events.append(event)
        self._prune(max(e.timestamp for e in self._events))
        return self.scan()

    def scan(self) -> List[ConflictEvent]:
        """Detect conflicts in the buffer that have not been reported yet."""
        new_conflicts = []

        for burst in self._bursts():
            for conflict in self.resolver.detect_conflict(burst):
                key = self._conflict_key(conflict)
                if key in self._reported:
                    continue
                self._reported.add(key)
                self.resolver.add_conflict(conflict.entity_id, conflict)
                new_conflicts.append(conflict)

        if new_conflicts:
            self.logger.info("New conflicts detected", count=len(new_conflicts))
        return new_conflicts

    def clear(self) -> None:
        self._events.clear()
        self._reported.clear()

    def _prune(self, newest: datetime) -> None:
        cutoff = newest - timedelta(seconds=self.buffer_seconds)
        self._events = [e for e in self._events if e.timestamp >= cutoff]
        self._reported = {key for key in self._reported if key[3] >= cutoff}

    def _bursts(self) -> List[List[CollaborationEvent]]:
        window = self.resolver.conflict_window
        by_entity: Dict[Tuple[str, Optional[str]], List[CollaborationEvent]] = {}
        for event in sorted(self._events, key=lambda e: e.timestamp):
            by_entity.setdefault((event.trip_id, event.target_entity_id), []).append(event)

        bursts: List[List[CollaborationEvent]] = []
        for events in by_entity.values():
            burst = [events[0]]
            for previous, current in zip(events, events[1:]):
                if current.timestamp - previous.timestamp > window:
                    bursts.append(burst)
                    burst = []
                burst.append(current)
            bursts.append(burst)
        return bursts

    def _conflict_key(self, conflict: ConflictEvent) -> ConflictKey:
        # A cluster that gains a new participant is reported again
        return (
            conflict.trip_id or "",
            conflict.entity_id,
            conflict.user_id,
            conflict.timestamp,
            tuple(conflict.conflicts_with),
        )
