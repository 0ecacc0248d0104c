"""Test conflict detection, merging and resolution."""

import pytest
from datetime import timedelta
from unittest.mock import patch
from pydantic import ValidationError

from terravoyage.collaboration.conflicts import (
    ConflictEvent,
    ConflictResolver,
    ConflictSeverity,
    EntityType,
    ResolutionInput,
    ResolutionOutcome,
    ResolutionStrategy,
    detect_conflicts,
    format_conflict_message,
    get_conflict_severity,
    merge_changes,
)
from terravoyage.collaboration.events import EventType
from terravoyage.config import settings


@pytest.fixture
def activity_conflict(make_event, resolver):
    """Conflict between alice and bob over act-1."""
    events = [
        make_event("alice", 0, changes={"name": "Museum"}),
        make_event("bob", 1000, changes={"name": "Gallery"}),
    ]
    return resolver.detect_conflict(events)[0]


@pytest.fixture
def trip_conflict(make_event, resolver):
    """Conflict between alice and bob over the trip itself."""
    events = [
        make_event("alice", 0, activity_id=None, event_type=EventType.TRIP_UPDATED),
        make_event("bob", 500, activity_id=None, event_type=EventType.TRIP_UPDATED),
    ]
    return resolver.detect_conflict(events)[0]


@pytest.mark.unit
class TestDetectConflicts:
    """Test time-windowed conflict clustering."""

    def test_two_users_within_window(self, make_event):
        """Test one conflict is raised with the earliest actor as base."""
        a = make_event("user1", 0)
        b = make_event("user2", 2000)

        conflicts = detect_conflicts([a, b])

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.user_id == "user1"
        assert conflict.conflicts_with == ["user2"]
        assert conflict.timestamp == a.timestamp
        assert conflict.entity_type == EntityType.ACTIVITY
        assert conflict.entity_id == "act-1"
        assert conflict.trip_id == "trip-1"
        assert conflict.resolved is False

    def test_window_boundary_is_inclusive(self, make_event):
        """Test events exactly one window apart still conflict."""
        conflicts = detect_conflicts([make_event("user1", 0), make_event("user2", 5000)])
        assert len(conflicts) == 1

    def test_outside_window(self, make_event):
        """Test events one millisecond past the window do not conflict."""
        conflicts = detect_conflicts([make_event("user1", 0), make_event("user2", 5001)])
        assert conflicts == []

    def test_custom_window(self, make_event):
        """Test the window is configurable."""
        events = [make_event("user1", 0), make_event("user2", 2000)]
        assert detect_conflicts(events, timedelta(milliseconds=1000)) == []

    def test_same_user_never_conflicts(self, make_event):
        """Test edits by one user never conflict with each other."""
        events = [make_event("user1", 0), make_event("user1", 1), make_event("user1", 2)]
        assert detect_conflicts(events) == []

    def test_empty_and_single_input(self, make_event):
        """Test trivial inputs yield nothing."""
        assert detect_conflicts([]) == []
        assert detect_conflicts([make_event("user1", 0)]) == []

    def test_different_activities_do_not_conflict(self, make_event):
        """Test events are bucketed by target activity."""
        events = [
            make_event("user1", 0, activity_id="act-1"),
            make_event("user2", 100, activity_id="act-2"),
        ]
        assert detect_conflicts(events) == []

    def test_different_trips_do_not_conflict(self, make_event):
        """Test events are bucketed by trip."""
        events = [
            make_event("user1", 0, trip_id="trip-1"),
            make_event("user2", 100, trip_id="trip-2"),
        ]
        assert detect_conflicts(events) == []

    def test_trip_level_conflict(self, trip_conflict):
        """Test events without an activity conflict on the trip."""
        assert trip_conflict.entity_type == EntityType.TRIP
        assert trip_conflict.entity_id == "trip-1"

    def test_unsorted_input_uses_earliest_as_base(self, make_event):
        """Test the base is the earliest event regardless of input order."""
        late = make_event("user2", 3000, changes={"name": "late"})
        early = make_event("user1", 0, changes={"name": "early"})

        conflict = detect_conflicts([late, early])[0]

        assert conflict.user_id == "user1"
        assert conflict.changes == {"name": "early"}
        assert conflict.conflicts_with == ["user2"]

    def test_three_users_single_conflict(self, make_event):
        """Test a cluster of three users yields one conflict listing the others."""
        events = [
            make_event("user1", 0),
            make_event("user2", 1000),
            make_event("user3", 2000),
            make_event("user2", 2500),
        ]

        conflicts = detect_conflicts(events)

        assert len(conflicts) == 1
        assert conflicts[0].conflicts_with == ["user2", "user3"]

    def test_one_conflict_per_entity(self, make_event):
        """Test independent entities each produce their own conflict."""
        events = [
            make_event("user1", 0, activity_id="act-1"),
            make_event("user2", 100, activity_id="act-1"),
            make_event("user1", 0, activity_id="act-2"),
            make_event("user3", 100, activity_id="act-2"),
        ]

        conflicts = detect_conflicts(events)

        assert sorted(c.entity_id for c in conflicts) == ["act-1", "act-2"]

    def test_conflict_ids_are_unique(self, make_event):
        """Test each detection generates a fresh id."""
        events = [make_event("user1", 0), make_event("user2", 100)]
        first = detect_conflicts(events)[0]
        second = detect_conflicts(events)[0]
        assert first.id != second.id
        assert first.id.startswith("conflict_")


@pytest.mark.unit
class TestConflictEvent:
    """Test ConflictEvent invariants."""

    def test_conflicts_with_excludes_base_user(self, t0):
        """Test the base user is stripped from conflicts_with."""
        conflict = ConflictEvent(
            entity_type=EntityType.TRIP,
            entity_id="trip-1",
            user_id="alice",
            timestamp=t0,
            conflicts_with=["alice", "bob"],
        )
        assert conflict.conflicts_with == ["bob"]

    def test_unresolved_cannot_carry_resolution(self, t0):
        """Test an unresolved conflict rejects resolution fields."""
        with pytest.raises(ValidationError):
            ConflictEvent(
                entity_type=EntityType.TRIP,
                entity_id="trip-1",
                user_id="alice",
                timestamp=t0,
                resolution=ResolutionOutcome.MERGE,
            )

    def test_mark_resolved_once(self, activity_conflict):
        """Test resolution is recorded once and then frozen."""
        assert activity_conflict.mark_resolved(ResolutionOutcome.OVERRIDE, "carol") is True
        resolved_at = activity_conflict.resolved_at

        assert activity_conflict.mark_resolved(ResolutionOutcome.MERGE, "dave") is False
        assert activity_conflict.resolution == ResolutionOutcome.OVERRIDE
        assert activity_conflict.resolved_by == "carol"
        assert activity_conflict.resolved_at == resolved_at

    def test_wire_format_uses_camel_case(self, activity_conflict):
        """Test conflicts serialise with camelCase keys."""
        wire = activity_conflict.to_wire()
        assert wire["entityType"] == "activity"
        assert wire["conflictsWith"] == ["bob"]
        assert "resolvedAt" not in wire


@pytest.mark.unit
class TestMergeChanges:
    """Test the structural merge used by manual merge."""

    def test_list_union(self):
        """Test lists are unioned without duplicates."""
        merged = merge_changes({"tags": ["a", "b"]}, {"tags": ["b", "c"]})
        assert merged == {"tags": ["a", "b", "c"]}

    def test_base_wins_primitive_collision(self):
        """Test the base value is kept on primitive collisions."""
        assert merge_changes({"title": "A"}, {"title": "B"}) == {"title": "A"}

    def test_new_keys_are_added(self):
        """Test keys only present in incoming are added."""
        merged = merge_changes({"title": "A"}, {"subtitle": "B"})
        assert merged == {"title": "A", "subtitle": "B"}

    def test_nested_mappings_merge_recursively(self):
        """Test nested objects follow the same rules."""
        base = {"location": {"city": "Paris", "tags": ["art"]}}
        incoming = {"location": {"city": "Lyon", "country": "FR", "tags": ["food"]}}

        merged = merge_changes(base, incoming)

        assert merged == {
            "location": {"city": "Paris", "country": "FR", "tags": ["art", "food"]}
        }

    def test_union_of_unhashable_items(self):
        """Test lists of objects are de-duplicated by equality."""
        merged = merge_changes(
            {"stops": [{"id": 1}, {"id": 2}]},
            {"stops": [{"id": 2}, {"id": 3}]},
        )
        assert merged == {"stops": [{"id": 1}, {"id": 2}, {"id": 3}]}

    def test_inputs_are_not_mutated(self):
        """Test merge returns a new mapping."""
        base = {"tags": ["a"]}
        merge_changes(base, {"tags": ["b"], "extra": 1})
        assert base == {"tags": ["a"]}


@pytest.mark.unit
class TestConflictResolver:
    """Test ConflictResolver strategies and bookkeeping."""

    @pytest.mark.asyncio
    async def test_default_strategy_for_activity_is_manual_merge(self, resolver, activity_conflict):
        """Test activity conflicts default to manual merge."""
        resolution = await resolver.resolve_conflict(activity_conflict)

        assert resolution.strategy == ResolutionStrategy.MANUAL_MERGE
        assert resolution.requires_user_input is True
        assert resolution.merged_changes is None
        assert activity_conflict.resolved is False

    @pytest.mark.asyncio
    async def test_default_strategy_for_trip_is_last_write_wins(self, resolver, trip_conflict):
        """Test trip conflicts default to last-write-wins."""
        resolution = await resolver.resolve_conflict(trip_conflict)

        assert resolution.strategy == ResolutionStrategy.LAST_WRITE_WINS
        assert resolution.winner == "alice"
        assert resolution.requires_user_input is False
        assert trip_conflict.resolved is True
        assert trip_conflict.resolution == ResolutionOutcome.OVERRIDE

    @pytest.mark.asyncio
    async def test_default_strategy_for_comment_is_first_write_wins(self, resolver, t0):
        """Test comment conflicts default to first-write-wins."""
        conflict = ConflictEvent(
            entity_type=EntityType.COMMENT,
            entity_id="comment-1",
            user_id="alice",
            timestamp=t0,
            conflicts_with=["bob"],
        )

        resolution = await resolver.resolve_conflict(conflict)

        assert resolution.strategy == ResolutionStrategy.FIRST_WRITE_WINS
        assert resolution.winner == "alice"
        assert conflict.resolution == ResolutionOutcome.OVERRIDE

    @pytest.mark.asyncio
    async def test_entity_override_beats_default(self, resolver, activity_conflict):
        """Test a per-entity override replaces the type default."""
        resolver.set_resolution_strategy("act-1", "first_write_wins")

        resolution = await resolver.resolve_conflict(activity_conflict)

        assert resolution.strategy == ResolutionStrategy.FIRST_WRITE_WINS
        assert activity_conflict.resolved is True

    @pytest.mark.asyncio
    async def test_explicit_strategy_beats_override(self, resolver, activity_conflict):
        """Test the explicit argument wins over everything."""
        resolver.set_resolution_strategy("act-1", ResolutionStrategy.FIRST_WRITE_WINS)

        resolution = await resolver.resolve_conflict(
            activity_conflict, strategy=ResolutionStrategy.USER_CHOICE
        )

        assert resolution.strategy == ResolutionStrategy.USER_CHOICE
        assert resolution.requires_user_input is True

    @pytest.mark.asyncio
    async def test_unknown_strategy_falls_back_to_last_write_wins(self, resolver, activity_conflict):
        """Test unknown strategies do not raise."""
        resolution = await resolver.resolve_conflict(activity_conflict, strategy="coin_flip")

        assert resolution.strategy == ResolutionStrategy.LAST_WRITE_WINS
        assert resolution.winner == "alice"
        assert activity_conflict.resolved is True

    @pytest.mark.asyncio
    async def test_last_write_wins_declares_base_actor(self, resolver, activity_conflict):
        """Test last-write-wins names the recorded base actor as winner."""
        resolution = await resolver.resolve_conflict(
            activity_conflict, strategy=ResolutionStrategy.LAST_WRITE_WINS
        )
        assert resolution.winner == activity_conflict.user_id

    @pytest.mark.asyncio
    async def test_manual_merge_with_input(self, resolver, activity_conflict):
        """Test manual merge combines base and incoming changes."""
        resolution = await resolver.resolve_conflict(
            activity_conflict,
            user_input={"conflictingChanges": {"name": "Gallery", "notes": "Closed Mondays"}},
            resolved_by="carol",
        )

        assert resolution.requires_user_input is False
        assert resolution.merged_changes == {"name": "Museum", "notes": "Closed Mondays"}
        assert activity_conflict.resolution == ResolutionOutcome.MERGE
        assert activity_conflict.resolved_by == "carol"
        assert activity_conflict.resolved_at is not None

    @pytest.mark.asyncio
    async def test_user_choice(self, resolver, activity_conflict):
        """Test user choice echoes the supplied winner."""
        pending = await resolver.resolve_conflict(
            activity_conflict, strategy=ResolutionStrategy.USER_CHOICE, user_input={}
        )
        assert pending.requires_user_input is True

        resolution = await resolver.resolve_conflict(
            activity_conflict,
            strategy=ResolutionStrategy.USER_CHOICE,
            user_input=ResolutionInput(winner="bob"),
        )

        assert resolution.winner == "bob"
        assert resolution.requires_user_input is False
        assert activity_conflict.resolution == ResolutionOutcome.OVERRIDE

    @pytest.mark.asyncio
    async def test_invalid_user_input_is_ignored(self, resolver, activity_conflict):
        """Test malformed input is treated as no input."""
        resolution = await resolver.resolve_conflict(
            activity_conflict, user_input={"conflictingChanges": "not a dict"}
        )
        assert resolution.requires_user_input is True

    @pytest.mark.asyncio
    async def test_resolution_is_final(self, resolver, trip_conflict):
        """Test resolving twice leaves the first resolution untouched."""
        await resolver.resolve_conflict(trip_conflict)
        resolved_at = trip_conflict.resolved_at

        again = await resolver.resolve_conflict(
            trip_conflict,
            strategy=ResolutionStrategy.MANUAL_MERGE,
            user_input={"conflictingChanges": {"x": 1}},
        )

        assert again.requires_user_input is False
        assert again.merged_changes is None
        assert trip_conflict.resolution == ResolutionOutcome.OVERRIDE
        assert trip_conflict.resolved_at == resolved_at

    def test_active_conflict_bookkeeping(self, resolver, activity_conflict, trip_conflict):
        """Test add, get and prune of active conflicts."""
        resolver.add_conflict("act-1", activity_conflict)
        resolver.add_conflict("act-1", trip_conflict)

        active = resolver.get_active_conflicts("act-1")
        assert active == [activity_conflict, trip_conflict]
        active.clear()
        assert len(resolver.get_active_conflicts("act-1")) == 2

        trip_conflict.mark_resolved(ResolutionOutcome.OVERRIDE)
        resolver.remove_resolved_conflicts("act-1")
        assert resolver.get_active_conflicts("act-1") == [activity_conflict]

        activity_conflict.mark_resolved(ResolutionOutcome.MERGE)
        resolver.remove_resolved_conflicts("act-1")
        assert resolver.get_active_conflicts("act-1") == []
        assert "act-1" not in resolver._active_conflicts

    def test_unknown_entity_has_no_conflicts(self, resolver):
        """Test querying an unknown entity is safe."""
        assert resolver.get_active_conflicts("nope") == []
        resolver.remove_resolved_conflicts("nope")

    @pytest.mark.asyncio
    async def test_unknown_override_falls_back_to_last_write_wins(self, resolver, activity_conflict):
        """Test an unknown per-entity strategy is kept and resolves as last-write-wins."""
        resolver.set_resolution_strategy("act-1", "coin_flip")

        resolution = await resolver.resolve_conflict(activity_conflict)

        assert resolution.strategy == ResolutionStrategy.LAST_WRITE_WINS
        assert resolution.winner == "alice"
        assert activity_conflict.resolution == ResolutionOutcome.OVERRIDE

    def test_window_defaults_from_settings(self):
        """Test the resolver picks up the configured conflict window."""
        with patch.object(settings, "conflict_window_ms", 1000):
            resolver = ConflictResolver()
        assert resolver.conflict_window == timedelta(milliseconds=1000)

    def test_instances_do_not_share_state(self, activity_conflict):
        """Test resolvers are independent."""
        first = ConflictResolver()
        second = ConflictResolver()
        first.add_conflict("act-1", activity_conflict)
        assert second.get_active_conflicts("act-1") == []

    def test_generate_conflict_summary(self, resolver, activity_conflict):
        """Test the summary is keyed by entity type."""
        summary = resolver.generate_conflict_summary(activity_conflict)

        assert summary.title == "Activity Edit Conflict"
        assert "same activity" in summary.description
        assert summary.affected_users == ["alice", "bob"]
        assert summary.recommended_action == "Merge changes manually or choose a winner"


@pytest.mark.unit
class TestConflictHelpers:
    """Test severity and message helpers."""

    def test_severity_activity_two_users(self, activity_conflict):
        assert get_conflict_severity(activity_conflict) == ConflictSeverity.MEDIUM

    def test_severity_trip_two_users(self, trip_conflict):
        assert get_conflict_severity(trip_conflict) == ConflictSeverity.HIGH

    def test_severity_single_user(self, t0):
        conflict = ConflictEvent(
            entity_type=EntityType.COMMENT,
            entity_id="comment-1",
            user_id="alice",
            timestamp=t0,
        )
        assert get_conflict_severity(conflict) == ConflictSeverity.LOW

    def test_severity_activity_four_users(self, t0):
        conflict = ConflictEvent(
            entity_type=EntityType.ACTIVITY,
            entity_id="act-1",
            user_id="alice",
            timestamp=t0,
            conflicts_with=["bob", "carol", "dave"],
        )
        assert get_conflict_severity(conflict) == ConflictSeverity.HIGH

    def test_format_conflict_message(self, trip_conflict):
        assert format_conflict_message(trip_conflict) == (
            "2 users made conflicting changes to this trip"
        )


@pytest.mark.unit
class TestConflictScenario:
    """Two travellers editing the same activity."""

    @pytest.mark.asyncio
    async def test_museum_gallery_scenario(self, make_event, resolver):
        """Test detection, pending manual merge and final merge."""
        events = [
            make_event("userA", 0, changes={"name": "Museum"}),
            make_event("userB", 1000, changes={"name": "Gallery"}),
        ]

        conflicts = resolver.detect_conflict(events)
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.user_id == "userA"
        assert conflict.changes == {"name": "Museum"}
        assert conflict.conflicts_with == ["userB"]

        pending = await resolver.resolve_conflict(
            conflict, strategy=ResolutionStrategy.MANUAL_MERGE
        )
        assert pending.requires_user_input is True
        assert conflict.resolved is False

        resolution = await resolver.resolve_conflict(
            conflict,
            strategy=ResolutionStrategy.MANUAL_MERGE,
            user_input={"conflictingChanges": {"name": "Gallery"}},
        )
        assert resolution.merged_changes == {"name": "Museum"}
        assert resolution.requires_user_input is False
        assert conflict.resolved is True
        assert conflict.resolution == ResolutionOutcome.MERGE
