"""Event assignment under optimistic concurrency, plus conflict preview."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from koordi.arrival import parse_arrival_time
from koordi.config import SupplementalConfig
from koordi.core.logging import sync_scope
from koordi.errors import NotFoundError, SyncInProgressError, ValidationError
from koordi.mirror import MirrorSynchronizer
from koordi.models import AssignmentResult, Event
from koordi.store import EventStore
from koordi.supplemental import SupplementalGenerator

logger = logging.getLogger(__name__)


class AssignmentController:
    """Owns the assign/skip/unassign path and the conflict preview."""

    def __init__(
        self,
        store: EventStore,
        mirror: MirrorSynchronizer,
        supplemental: SupplementalGenerator,
        config: SupplementalConfig | None = None,
    ) -> None:
        self._store = store
        self._mirror = mirror
        self._supplemental = supplemental
        self._config = config or SupplementalConfig()

    async def _load_for_member(self, event_id: UUID, caller_id: UUID) -> Event:
        event = await self._store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", str(event_id))
        members = await self._store.list_calendar_member_ids(event.event_calendar_id)
        if caller_id not in members:
            raise NotFoundError("Event", str(event_id))
        return event

    async def assign(
        self,
        event_id: UUID,
        caller_id: UUID,
        target_owner_id: UUID | None,
        expected_version: int | None = None,
        skip: bool = False,
    ) -> AssignmentResult:
        """Set the event's owner (or mark it skipped, or clear it).

        The write is a single versioned compare-and-set. Without
        *expected_version* the version read here is used, which only protects
        against writes that land between this read and the update.

        Raises:
            NotFoundError: the event is missing or the caller is not a member.
            SyncInProgressError: the event or its calendar is syncing.
            ValidationError: assigning a cancelled event, or to a non-member.
            ConcurrentModificationError: the stored version moved on.
        """
        event = await self._load_for_member(event_id, caller_id)
        if await self._store.is_event_syncing(event_id):
            raise SyncInProgressError("Event", str(event_id))
        if await self._store.is_calendar_syncing(event.event_calendar_id):
            raise SyncInProgressError("EventCalendar", str(event.event_calendar_id))

        new_owner_id = None if skip else target_owner_id
        if event.is_cancelled and (skip or new_owner_id is not None):
            raise ValidationError("Cancelled events can only be unassigned")
        if new_owner_id is not None:
            members = await self._store.list_calendar_member_ids(event.event_calendar_id)
            if new_owner_id not in members:
                raise ValidationError(f"User {new_owner_id} is not a member of this calendar")

        version = expected_version if expected_version is not None else event.version
        updated = await self._store.compare_and_set_assignment(
            event_id, version, new_owner_id, skip
        )
        logger.info(
            "Event %s %s (version %d -> %d)",
            event_id,
            "skipped" if skip else f"assigned to {new_owner_id}" if new_owner_id else "unassigned",
            version,
            updated.version,
        )

        errors: list[str] = []
        with sync_scope(event_id=event_id):
            try:
                try:
                    report = await self._mirror.push_event_to_all_members(event_id)
                    errors.extend(
                        f"External sync failed for user {o.user_id}: {o.error['error']}"
                        for o in report.failed
                        if o.error
                    )
                except Exception as exc:
                    logger.exception("Pushing event %s to members failed", event_id)
                    errors.append(f"External sync failed: {exc}")

                owner_for_travel = new_owner_id if updated.needs_supplemental else None
                try:
                    await self._supplemental.handle_reassignment(event_id, owner_for_travel)
                except Exception as exc:
                    logger.warning("Supplemental events for %s not generated: %s", event_id, exc)
                    errors.append(f"Supplemental events not generated: {exc}")
            finally:
                await self._store.clear_event_sync_flag(event_id)

        final = await self._store.get_event(event_id) or updated.model_copy(
            update={"sync_in_progress": False, "sync_started_at": None}
        )
        return AssignmentResult(
            event=final,
            supplemental_events=await self._store.list_supplemental(event_id),
            errors=errors,
        )

    async def check_conflicts(
        self, event_id: UUID, target_owner_id: UUID, caller_id: UUID
    ) -> list[Event]:
        """Events the target already holds that would overlap this one's travel window.

        Travel is estimated rather than routed: a fixed drive estimate plus
        the target's comfort buffer on each side.
        """
        event = await self._load_for_member(event_id, caller_id)
        owner = await self._store.get_user(target_owner_id)
        if owner is None:
            raise NotFoundError("User", str(target_owner_id))

        window_start, window_end = event.start_time, event.end_time
        if owner.has_home_coordinates and event.location and not event.is_all_day:
            arrival = parse_arrival_time(
                event.description,
                event.start_time,
                owner.comfort_buffer_minutes,
                max_lead_minutes=self._config.max_arrival_lead_minutes,
            )
            estimate = timedelta(
                minutes=self._config.conflict_estimate_minutes + owner.comfort_buffer_minutes
            )
            window_start = arrival.arrival_time - estimate
            window_end = event.end_time + estimate

        return await self._store.find_owner_conflicts(
            owner.id, window_start, window_end, exclude_event_id=event.id
        )
