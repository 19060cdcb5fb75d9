"""PostgreSQL-backed store for calendars, events, supplemental events and sync links.

Every SQL statement koordi issues lives here. Services depend on
:class:`EventStore` only, so they can be exercised against an in-memory
double in tests.

The only storage-level atomic primitive is the versioned conditional
UPDATE in :meth:`EventStore.compare_and_set_assignment`; the per-calendar
and per-event ``sync_in_progress`` flags are advisory and durable.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from koordi.errors import ConcurrentModificationError, NotFoundError, SyncInProgressError
from koordi.models import (
    CalendarSyncStatus,
    Event,
    EventCalendar,
    FeedEvent,
    SupplementalEvent,
    SupplementalEventDraft,
    SyncLink,
    SyncType,
    User,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

# Shared predicates: the event, or its owning calendar, holds a fresh
# (non-abandoned) sync flag.
_EVENT_SYNCING_SQL = """
(
    events.sync_in_progress
    AND events.sync_started_at IS NOT NULL
    AND events.sync_started_at >= now() - make_interval(secs => {param})
)
"""

_CALENDAR_SYNCING_SQL = """
EXISTS (
    SELECT 1 FROM event_calendars c
    WHERE c.id = events.event_calendar_id
      AND c.sync_in_progress
      AND c.sync_started_at IS NOT NULL
      AND c.sync_started_at >= now() - make_interval(secs => {param})
)
"""


class EventStore:
    """All persistence operations, expressed as single statements or short transactions."""

    def __init__(self, pool: asyncpg.Pool, *, stale_lock_seconds: int = 600) -> None:
        self.pool = pool
        self.stale_lock_seconds = stale_lock_seconds

    # ------------------------------------------------------------------
    # Users and membership
    # ------------------------------------------------------------------

    async def get_user(self, user_id: UUID) -> User | None:
        row = await self.pool.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return User.model_validate(dict(row)) if row is not None else None

    async def set_keep_supplemental(self, user_id: UUID, enabled: bool) -> None:
        await self.pool.execute(
            "UPDATE users SET keep_supplemental_events = $2, updated_at = now() WHERE id = $1",
            user_id,
            enabled,
        )

    async def set_google_sync_enabled(self, user_id: UUID, enabled: bool) -> None:
        await self.pool.execute(
            "UPDATE users SET google_calendar_sync_enabled = $2, updated_at = now() WHERE id = $1",
            user_id,
            enabled,
        )

    async def list_calendar_member_ids(self, calendar_id: UUID) -> list[UUID]:
        """Accepted members in join order, with the calendar owner appended if absent."""
        owner_id = await self.pool.fetchval(
            "SELECT owner_id FROM event_calendars WHERE id = $1", calendar_id
        )
        if owner_id is None:
            return []
        rows = await self.pool.fetch(
            """
            SELECT user_id
            FROM event_calendar_memberships
            WHERE event_calendar_id = $1
              AND status = 'accepted'
              AND user_id IS NOT NULL
            ORDER BY created_at, user_id
            """,
            calendar_id,
        )
        member_ids: list[UUID] = []
        for row in rows:
            if row["user_id"] not in member_ids:
                member_ids.append(row["user_id"])
        if owner_id not in member_ids:
            member_ids.append(owner_id)
        return member_ids

    async def list_supplemental_viewer_ids(
        self, calendar_id: UUID, exclude_user_id: UUID | None
    ) -> list[UUID]:
        """Members who opted into seeing other people's travel entries."""
        member_ids = await self.list_calendar_member_ids(calendar_id)
        if not member_ids:
            return []
        rows = await self.pool.fetch(
            "SELECT id FROM users WHERE id = ANY($1::uuid[]) AND keep_supplemental_events",
            member_ids,
        )
        opted_in = {row["id"] for row in rows}
        return [uid for uid in member_ids if uid in opted_in and uid != exclude_user_id]

    # ------------------------------------------------------------------
    # Calendars and the calendar-level sync flag
    # ------------------------------------------------------------------

    async def get_calendar(self, calendar_id: UUID) -> EventCalendar | None:
        row = await self.pool.fetchrow("SELECT * FROM event_calendars WHERE id = $1", calendar_id)
        return EventCalendar.model_validate(dict(row)) if row is not None else None

    async def list_sync_enabled_calendars(self) -> list[EventCalendar]:
        rows = await self.pool.fetch(
            "SELECT * FROM event_calendars WHERE sync_enabled ORDER BY created_at, id"
        )
        return [EventCalendar.model_validate(dict(row)) for row in rows]

    async def try_begin_calendar_sync(self, calendar_id: UUID) -> bool:
        """Set the calendar's sync flag unless a fresh one is already held.

        A flag older than ``stale_lock_seconds`` is treated as abandoned and
        taken over. Returns False when another reconciliation owns the flag.
        """
        row = await self.pool.fetchrow(
            """
            UPDATE event_calendars
            SET sync_in_progress = true,
                sync_started_at = now(),
                updated_at = now()
            WHERE id = $1
              AND (
                  NOT sync_in_progress
                  OR sync_started_at IS NULL
                  OR sync_started_at < now() - make_interval(secs => $2)
              )
            RETURNING id
            """,
            calendar_id,
            float(self.stale_lock_seconds),
        )
        return row is not None

    async def finish_calendar_sync(
        self,
        calendar_id: UUID,
        status: CalendarSyncStatus,
        error: str | None = None,
    ) -> None:
        """Record the outcome and release the flag in one write."""
        await self.pool.execute(
            """
            UPDATE event_calendars
            SET sync_in_progress = false,
                sync_started_at = NULL,
                last_sync_at = now(),
                last_sync_status = $2,
                last_sync_error = $3,
                updated_at = now()
            WHERE id = $1
            """,
            calendar_id,
            str(status),
            error,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def get_event(self, event_id: UUID) -> Event | None:
        row = await self.pool.fetchrow("SELECT * FROM events WHERE id = $1", event_id)
        return Event.model_validate(dict(row)) if row is not None else None

    async def list_events(self, calendar_id: UUID) -> list[Event]:
        rows = await self.pool.fetch(
            "SELECT * FROM events WHERE event_calendar_id = $1 ORDER BY start_time, id",
            calendar_id,
        )
        return [Event.model_validate(dict(row)) for row in rows]

    async def create_event(self, calendar_id: UUID, feed_event: FeedEvent) -> Event:
        row = await self.pool.fetchrow(
            """
            INSERT INTO events (
                event_calendar_id, ics_uid, title, description, location,
                start_time, end_time, is_all_day, is_cancelled, last_modified
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
            """,
            calendar_id,
            feed_event.uid,
            feed_event.title,
            feed_event.description,
            feed_event.location,
            feed_event.start_time,
            feed_event.end_time,
            feed_event.is_all_day,
            feed_event.is_cancelled,
            feed_event.last_modified,
        )
        return Event.model_validate(dict(row))

    async def update_event_from_feed(self, event_id: UUID, feed_event: FeedEvent) -> Event:
        """Overwrite feed-owned fields in place; cached coordinates reset on a location change."""
        row = await self.pool.fetchrow(
            """
            UPDATE events
            SET title = $2,
                description = $3,
                location_lat = CASE WHEN location IS DISTINCT FROM $4 THEN NULL
                                    ELSE location_lat END,
                location_lng = CASE WHEN location IS DISTINCT FROM $4 THEN NULL
                                    ELSE location_lng END,
                location = $4,
                start_time = $5,
                end_time = $6,
                is_all_day = $7,
                is_cancelled = $8,
                last_modified = $9,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            event_id,
            feed_event.title,
            feed_event.description,
            feed_event.location,
            feed_event.start_time,
            feed_event.end_time,
            feed_event.is_all_day,
            feed_event.is_cancelled,
            feed_event.last_modified,
        )
        if row is None:
            raise NotFoundError("Event", str(event_id))
        return Event.model_validate(dict(row))

    async def clear_assignment_for_cancellation(self, event_id: UUID) -> Event:
        """Drop owner and skip state ahead of a cancellation (an owner mutation)."""
        row = await self.pool.fetchrow(
            """
            UPDATE events
            SET assigned_to_user_id = NULL,
                is_skipped = false,
                version = version + 1,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            event_id,
        )
        if row is None:
            raise NotFoundError("Event", str(event_id))
        return Event.model_validate(dict(row))

    async def delete_event(self, event_id: UUID) -> None:
        await self.pool.execute("DELETE FROM events WHERE id = $1", event_id)

    async def compare_and_set_assignment(
        self,
        event_id: UUID,
        expected_version: int,
        owner_id: UUID | None,
        skipped: bool,
    ) -> Event:
        """Conditionally write owner/skip state only if nothing else got there first.

        The write succeeds only when the stored version equals
        *expected_version*, the event is not flagged as syncing, and its
        calendar holds no fresh reconciliation flag. Either flag older than
        ``stale_lock_seconds`` counts as abandoned. On success the version
        moves up by one and the event's sync flag is set.

        Raises:
            ConcurrentModificationError: the stored version differs.
            SyncInProgressError: the event or its calendar is syncing.
            NotFoundError: the event no longer exists.
        """
        row = await self.pool.fetchrow(
            f"""
            UPDATE events
            SET assigned_to_user_id = $3,
                is_skipped = $4,
                version = version + 1,
                sync_in_progress = true,
                sync_started_at = now(),
                updated_at = now()
            WHERE id = $1
              AND version = $2
              AND NOT {_EVENT_SYNCING_SQL.format(param="$5")}
              AND NOT {_CALENDAR_SYNCING_SQL.format(param="$5")}
            RETURNING *
            """,
            event_id,
            expected_version,
            owner_id,
            skipped,
            float(self.stale_lock_seconds),
        )
        if row is not None:
            return Event.model_validate(dict(row))

        # Nothing matched; find out which guard rejected the write.
        current = await self.pool.fetchrow(
            f"""
            SELECT events.*,
                   {_EVENT_SYNCING_SQL.format(param="$2")} AS event_syncing,
                   {_CALENDAR_SYNCING_SQL.format(param="$2")} AS calendar_syncing
            FROM events
            WHERE id = $1
            """,
            event_id,
            float(self.stale_lock_seconds),
        )
        if current is None:
            raise NotFoundError("Event", str(event_id))
        event = Event.model_validate(dict(current))
        if event.version != expected_version:
            raise ConcurrentModificationError(
                resource_type="Event",
                resource_id=str(event_id),
                expected_version=expected_version,
                actual_version=event.version,
                current_state=event.snapshot(),
            )
        if current["event_syncing"]:
            raise SyncInProgressError("Event", str(event_id))
        raise SyncInProgressError("EventCalendar", str(event.event_calendar_id))

    async def clear_event_sync_flag(self, event_id: UUID) -> None:
        await self.pool.execute(
            "UPDATE events SET sync_in_progress = false, sync_started_at = NULL WHERE id = $1",
            event_id,
        )

    async def is_event_syncing(self, event_id: UUID) -> bool:
        return bool(
            await self.pool.fetchval(
                f"SELECT {_EVENT_SYNCING_SQL.format(param='$2')} FROM events WHERE id = $1",
                event_id,
                float(self.stale_lock_seconds),
            )
        )

    async def is_calendar_syncing(self, calendar_id: UUID) -> bool:
        return bool(
            await self.pool.fetchval(
                """
                SELECT sync_in_progress
                       AND sync_started_at IS NOT NULL
                       AND sync_started_at >= now() - make_interval(secs => $2)
                FROM event_calendars
                WHERE id = $1
                """,
                calendar_id,
                float(self.stale_lock_seconds),
            )
        )

    async def set_event_coordinates(self, event_id: UUID, lat: float, lng: float) -> None:
        await self.pool.execute(
            "UPDATE events SET location_lat = $2, location_lng = $3 WHERE id = $1",
            event_id,
            lat,
            lng,
        )

    async def find_owner_conflicts(
        self,
        owner_id: UUID,
        window_start: datetime,
        window_end: datetime,
        *,
        exclude_event_id: UUID | None = None,
    ) -> list[Event]:
        """Events held by *owner_id* whose own or supplemental windows overlap the window."""
        rows = await self.pool.fetch(
            """
            SELECT DISTINCT e.*
            FROM events e
            LEFT JOIN supplemental_events s ON s.parent_event_id = e.id
            WHERE e.assigned_to_user_id = $1
              AND NOT e.is_skipped
              AND NOT e.is_cancelled
              AND e.id IS DISTINCT FROM $4
              AND (
                  (e.start_time < $3 AND e.end_time > $2)
                  OR (s.start_time < $3 AND s.end_time > $2)
              )
            ORDER BY e.start_time, e.id
            """,
            owner_id,
            window_start,
            window_end,
            exclude_event_id,
        )
        return [Event.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Supplemental events
    # ------------------------------------------------------------------

    async def get_supplemental(self, supplemental_id: UUID) -> SupplementalEvent | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM supplemental_events WHERE id = $1", supplemental_id
        )
        return SupplementalEvent.model_validate(dict(row)) if row is not None else None

    async def list_supplemental(self, event_id: UUID) -> list[SupplementalEvent]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM supplemental_events
            WHERE parent_event_id = $1
            ORDER BY start_time, kind
            """,
            event_id,
        )
        return [SupplementalEvent.model_validate(dict(row)) for row in rows]

    async def replace_supplemental(
        self,
        event_id: UUID,
        drafts: Sequence[SupplementalEventDraft],
    ) -> list[SupplementalEvent]:
        """Delete the event's supplemental set and insert *drafts* in one transaction."""
        created: list[SupplementalEvent] = []
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM supplemental_events WHERE parent_event_id = $1", event_id
                )
                for draft in drafts:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO supplemental_events (
                            parent_event_id, kind, title, start_time, end_time,
                            origin_address, origin_lat, origin_lng,
                            destination_address, destination_lat, destination_lng,
                            drive_time_minutes
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                        RETURNING *
                        """,
                        event_id,
                        str(draft.kind),
                        draft.title,
                        draft.start_time,
                        draft.end_time,
                        draft.origin_address,
                        draft.origin_lat,
                        draft.origin_lng,
                        draft.destination_address,
                        draft.destination_lat,
                        draft.destination_lng,
                        draft.drive_time_minutes,
                    )
                    created.append(SupplementalEvent.model_validate(dict(row)))
        return created

    async def delete_supplemental_for_event(self, event_id: UUID) -> int:
        status = await self.pool.execute(
            "DELETE FROM supplemental_events WHERE parent_event_id = $1", event_id
        )
        return _affected_rows(status)

    async def list_supplemental_visible_to(self, user_id: UUID) -> list[SupplementalEvent]:
        """Supplemental events of events not held by *user_id* in calendars they belong to."""
        rows = await self.pool.fetch(
            """
            SELECT s.*
            FROM supplemental_events s
            JOIN events e ON e.id = s.parent_event_id
            JOIN event_calendars c ON c.id = e.event_calendar_id
            WHERE e.assigned_to_user_id IS DISTINCT FROM $1
              AND (
                  c.owner_id = $1
                  OR EXISTS (
                      SELECT 1 FROM event_calendar_memberships m
                      WHERE m.event_calendar_id = c.id
                        AND m.user_id = $1
                        AND m.status = 'accepted'
                  )
              )
            ORDER BY s.start_time, s.id
            """,
            user_id,
        )
        return [SupplementalEvent.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Per-user sync links
    # ------------------------------------------------------------------

    async def get_link(
        self,
        user_id: UUID,
        *,
        event_id: UUID | None = None,
        supplemental_event_id: UUID | None = None,
    ) -> SyncLink | None:
        column, item_id = _link_target(event_id, supplemental_event_id)
        row = await self.pool.fetchrow(
            f"SELECT * FROM user_google_event_syncs WHERE user_id = $1 AND {column} = $2",
            user_id,
            item_id,
        )
        return SyncLink.model_validate(dict(row)) if row is not None else None

    async def upsert_link(
        self,
        user_id: UUID,
        google_event_id: str,
        *,
        event_id: UUID | None = None,
        supplemental_event_id: UUID | None = None,
    ) -> SyncLink:
        column, item_id = _link_target(event_id, supplemental_event_id)
        sync_type = SyncType.main if column == "event_id" else SyncType.supplemental
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO user_google_event_syncs (user_id, {column}, google_event_id, sync_type)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, {column}) WHERE {column} IS NOT NULL
            DO UPDATE SET google_event_id = EXCLUDED.google_event_id,
                          last_synced_at = now()
            RETURNING *
            """,
            user_id,
            item_id,
            google_event_id,
            str(sync_type),
        )
        return SyncLink.model_validate(dict(row))

    async def delete_link(self, link_id: UUID) -> None:
        await self.pool.execute("DELETE FROM user_google_event_syncs WHERE id = $1", link_id)

    async def list_links(
        self,
        *,
        event_id: UUID | None = None,
        supplemental_event_id: UUID | None = None,
    ) -> list[SyncLink]:
        column, item_id = _link_target(event_id, supplemental_event_id)
        rows = await self.pool.fetch(
            f"SELECT * FROM user_google_event_syncs WHERE {column} = $1 ORDER BY user_id",
            item_id,
        )
        return [SyncLink.model_validate(dict(row)) for row in rows]

    async def list_links_for_user(
        self, user_id: UUID, sync_type: SyncType | None = None
    ) -> list[SyncLink]:
        if sync_type is None:
            rows = await self.pool.fetch(
                "SELECT * FROM user_google_event_syncs WHERE user_id = $1", user_id
            )
        else:
            rows = await self.pool.fetch(
                "SELECT * FROM user_google_event_syncs WHERE user_id = $1 AND sync_type = $2",
                user_id,
                str(sync_type),
            )
        return [SyncLink.model_validate(dict(row)) for row in rows]


def _link_target(
    event_id: UUID | None, supplemental_event_id: UUID | None
) -> tuple[str, UUID]:
    if (event_id is None) == (supplemental_event_id is None):
        raise ValueError("Exactly one of event_id or supplemental_event_id is required")
    if event_id is not None:
        return "event_id", event_id
    assert supplemental_event_id is not None
    return "supplemental_event_id", supplemental_event_id


def _affected_rows(status: Any) -> int:
    """Parse the row count out of an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
