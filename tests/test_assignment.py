"""Tests for versioned assignment and conflict preview."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from koordi.assignment import AssignmentController
from koordi.errors import (
    ConcurrentModificationError,
    NotFoundError,
    RoutingError,
    SyncInProgressError,
    ValidationError,
)
from koordi.models import SupplementalEventDraft, SupplementalKind

pytestmark = pytest.mark.unit

START = datetime(2026, 5, 2, 17, 0, tzinfo=UTC)


@pytest.fixture
def controller(store, mirror, supplemental) -> AssignmentController:
    return AssignmentController(store, mirror, supplemental)


@pytest.fixture
def game(store, household):
    return store.add_event(
        household.calendar,
        title="U10 Game",
        location="Civic Center Field",
        start_time=START,
        end_time=START + timedelta(hours=1),
    )


class TestAssign:
    async def test_success_bumps_version_by_one_in_one_write(
        self, store, controller, household, game
    ):
        result = await controller.assign(
            game.id, household.blair.id, household.alex.id, expected_version=1
        )

        assert result.event.version == 2
        assert result.event.assigned_to_user_id == household.alex.id
        assert result.event.sync_in_progress is False
        assert store.cas_writes == 1
        assert result.errors == []
        assert len(result.supplemental_events) == 3

    async def test_without_expected_version_uses_current(self, store, controller, household, game):
        store.events[game.id] = game.model_copy(update={"version": 7})

        result = await controller.assign(game.id, household.alex.id, household.alex.id)

        assert result.event.version == 8

    async def test_pushes_owner_title_to_every_member(
        self, controller, providers, household, game
    ):
        await controller.assign(game.id, household.alex.id, household.blair.id, expected_version=1)

        for user in (household.alex, household.blair):
            summaries = {p.summary for p in providers.providers[user.id].entries.values()}
            assert "Blair: U10 Game" in summaries

    async def test_stale_version_reports_winner_state(self, controller, household, game):
        # Both callers read version 1; the first write wins.
        await controller.assign(game.id, household.alex.id, household.alex.id, expected_version=1)

        with pytest.raises(ConcurrentModificationError) as excinfo:
            await controller.assign(
                game.id, household.blair.id, household.blair.id, expected_version=1
            )

        err = excinfo.value
        assert err.expected_version == 1
        assert err.actual_version == 2
        assert err.current_state["assigned_to_user_id"] == str(household.alex.id)
        assert err.current_state["version"] == 2

    async def test_concurrent_assigns_exactly_one_wins(self, store, controller, household, game):
        results = await asyncio.gather(
            controller.assign(game.id, household.alex.id, household.alex.id, expected_version=1),
            controller.assign(game.id, household.blair.id, household.blair.id, expected_version=1),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], ConcurrentModificationError | SyncInProgressError)
        assert store.cas_writes == 1
        assert store.events[game.id].version == 2

    async def test_unknown_event_or_non_member_caller(self, store, controller, household, game):
        outsider = store.add_user(name="Casey")
        with pytest.raises(NotFoundError):
            await controller.assign(uuid4(), household.alex.id, household.alex.id)
        with pytest.raises(NotFoundError):
            await controller.assign(game.id, outsider.id, household.alex.id)

    async def test_target_must_be_a_member(self, store, controller, household, game):
        outsider = store.add_user(name="Casey")
        with pytest.raises(ValidationError):
            await controller.assign(game.id, household.alex.id, outsider.id)
        assert store.cas_writes == 0

    async def test_rejected_while_event_is_syncing(self, store, controller, household, game):
        store.events[game.id] = game.model_copy(
            update={"sync_in_progress": True, "sync_started_at": datetime.now(UTC)}
        )

        with pytest.raises(SyncInProgressError) as excinfo:
            await controller.assign(game.id, household.alex.id, household.alex.id)

        assert excinfo.value.resource_type == "Event"
        assert store.cas_writes == 0

    @pytest.mark.parametrize("started_at", [None, datetime.now(UTC) - timedelta(hours=1)])
    async def test_abandoned_event_flag_is_taken_over(
        self, store, controller, household, game, started_at
    ):
        # A crash between the write and clearing the flag leaves it behind.
        store.events[game.id] = game.model_copy(
            update={"sync_in_progress": True, "sync_started_at": started_at}
        )

        result = await controller.assign(game.id, household.alex.id, household.alex.id)

        assert result.event.assigned_to_user_id == household.alex.id
        assert result.event.version == game.version + 1
        assert result.event.sync_in_progress is False

    async def test_rejected_while_calendar_is_reconciling(
        self, store, controller, household, game
    ):
        assert await store.try_begin_calendar_sync(household.calendar.id)

        with pytest.raises(SyncInProgressError) as excinfo:
            await controller.assign(game.id, household.alex.id, household.alex.id)

        assert excinfo.value.resource_type == "EventCalendar"
        assert store.cas_writes == 0

    async def test_cancelled_event_can_only_be_unassigned(
        self, store, controller, household, game
    ):
        store.events[game.id] = game.model_copy(update={"is_cancelled": True})

        with pytest.raises(ValidationError):
            await controller.assign(game.id, household.alex.id, household.alex.id)
        with pytest.raises(ValidationError):
            await controller.assign(game.id, household.alex.id, None, skip=True)

        result = await controller.assign(game.id, household.alex.id, None)
        assert result.event.assigned_to_user_id is None
        assert result.event.version == 2

    async def test_skip_clears_owner_and_travel(self, controller, providers, household, game):
        await controller.assign(game.id, household.alex.id, household.alex.id, expected_version=1)

        result = await controller.assign(
            game.id, household.alex.id, household.alex.id, expected_version=2, skip=True
        )

        assert result.event.assigned_to_user_id is None
        assert result.event.is_skipped is True
        assert result.supplemental_events == []
        summaries = {p.summary for p in providers.providers[household.alex.id].entries.values()}
        assert summaries == {"Not attending: U10 Game"}

    async def test_unassign_leaves_zero_supplemental(self, controller, household, game):
        await controller.assign(game.id, household.alex.id, household.alex.id, expected_version=1)

        result = await controller.assign(game.id, household.alex.id, None, expected_version=2)

        assert result.event.assigned_to_user_id is None
        assert result.supplemental_events == []

    async def test_side_effect_failure_keeps_assignment_and_clears_flag(
        self, store, maps, controller, household, game
    ):
        maps.travel_time.side_effect = RoutingError("Route calculation failed: NOT_FOUND")

        result = await controller.assign(
            game.id, household.alex.id, household.alex.id, expected_version=1
        )

        assert result.event.assigned_to_user_id == household.alex.id
        assert result.event.version == 2
        assert result.event.sync_in_progress is False
        assert result.supplemental_events == []
        assert any("Supplemental events not generated" in e for e in result.errors)

    async def test_all_day_assignment_has_no_travel(self, store, controller, household):
        all_day = store.add_event(
            household.calendar,
            title="Tournament",
            location="Field",
            is_all_day=True,
            start_time=datetime(2026, 6, 6, tzinfo=UTC),
            end_time=datetime(2026, 6, 7, tzinfo=UTC),
        )

        result = await controller.assign(all_day.id, household.alex.id, household.alex.id)

        assert result.errors == []
        assert result.supplemental_events == []


class TestCheckConflicts:
    async def test_estimated_travel_window_catches_earlier_event(
        self, store, controller, household, game
    ):
        earlier = store.add_event(
            household.calendar,
            title="Swim",
            start_time=START - timedelta(minutes=90),
            end_time=START - timedelta(minutes=30),
            assigned_to_user_id=household.alex.id,
        )

        conflicts = await controller.check_conflicts(game.id, household.alex.id, household.blair.id)

        # Window opens at 16:55 - (30 + 5) min = 16:20; Swim ends at 16:30.
        assert [e.id for e in conflicts] == [earlier.id]

    async def test_plain_window_without_location(self, store, controller, household):
        no_location = store.add_event(
            household.calendar,
            title="Meeting",
            start_time=START,
            end_time=START + timedelta(hours=1),
        )
        store.add_event(
            household.calendar,
            title="Swim",
            start_time=START - timedelta(minutes=90),
            end_time=START - timedelta(minutes=30),
            assigned_to_user_id=household.alex.id,
        )

        conflicts = await controller.check_conflicts(
            no_location.id, household.alex.id, household.alex.id
        )

        assert conflicts == []

    async def test_supplemental_windows_count_and_results_are_sorted(
        self, store, controller, household, game
    ):
        later = store.add_event(
            household.calendar,
            title="Dinner",
            start_time=START + timedelta(hours=2),
            end_time=START + timedelta(hours=3),
            assigned_to_user_id=household.alex.id,
        )
        await store.replace_supplemental(
            later.id,
            [
                SupplementalEventDraft(
                    kind=SupplementalKind.outbound_travel,
                    title="Alex to drive to event",
                    start_time=START + timedelta(minutes=80),
                    end_time=START + timedelta(minutes=115),
                )
            ],
        )
        earlier = store.add_event(
            household.calendar,
            title="Swim",
            start_time=START - timedelta(minutes=60),
            end_time=START - timedelta(minutes=20),
            assigned_to_user_id=household.alex.id,
        )
        store.add_event(
            household.calendar,
            title="Skipped",
            start_time=START,
            end_time=START + timedelta(hours=1),
            assigned_to_user_id=household.alex.id,
            is_skipped=True,
        )
        store.add_event(
            household.calendar,
            title="Cancelled",
            start_time=START,
            end_time=START + timedelta(hours=1),
            assigned_to_user_id=household.alex.id,
            is_cancelled=True,
        )

        conflicts = await controller.check_conflicts(game.id, household.alex.id, household.alex.id)

        assert [e.id for e in conflicts] == [earlier.id, later.id]

    async def test_unknown_target(self, controller, household, game):
        with pytest.raises(NotFoundError):
            await controller.check_conflicts(game.id, uuid4(), household.alex.id)
