"""Feed reconciliation: bring a calendar's stored events in line with its ICS feed.

A run holds the calendar's durable ``sync_in_progress`` flag from the
moment it starts until the outcome is recorded. The feed is fetched and
parsed before any row is touched, so a calendar-level failure changes
nothing but the calendar's sync status.
"""

from __future__ import annotations

import logging
from uuid import UUID

from koordi.config import SyncConfig
from koordi.core.logging import sync_scope
from koordi.errors import FeedError, KoordiError, NotFoundError, SyncInProgressError
from koordi.feed import FeedClient, parse_feed, validate_feed
from koordi.mirror import MirrorSynchronizer
from koordi.models import (
    CalendarSyncStatus,
    Event,
    EventCalendar,
    FeedEvent,
    FeedValidation,
    ReconcileAllResult,
    ReconcileResult,
)
from koordi.store import EventStore
from koordi.supplemental import SupplementalGenerator

logger = logging.getLogger(__name__)

SYNC_DISABLED_MESSAGE = "Sync disabled for this calendar"


def needs_update(stored: Event, incoming: FeedEvent) -> bool:
    """Decide whether a feed entry should overwrite the stored event.

    A newer LAST-MODIFIED or a changed cancellation flag always wins. Feeds
    that omit modification stamps are compared field by field instead.
    """
    if stored.is_cancelled != incoming.is_cancelled:
        return True
    if incoming.last_modified is not None:
        return stored.last_modified is None or incoming.last_modified > stored.last_modified
    return _content_differs(stored, incoming)


def _content_differs(stored: Event, incoming: FeedEvent) -> bool:
    return (
        stored.title != incoming.title
        or stored.description != incoming.description
        or stored.location != incoming.location
        or stored.start_time != incoming.start_time
        or stored.end_time != incoming.end_time
        or stored.is_all_day != incoming.is_all_day
    )


def _schedule_changed(stored: Event, incoming: FeedEvent) -> bool:
    return (
        stored.start_time != incoming.start_time
        or stored.end_time != incoming.end_time
        or stored.location != incoming.location
        or stored.description != incoming.description
        or stored.is_all_day != incoming.is_all_day
    )


class FeedReconciler:
    """Runs feed reconciliation for one calendar or all sync-enabled ones."""

    def __init__(
        self,
        store: EventStore,
        feeds: FeedClient,
        mirror: MirrorSynchronizer,
        supplemental: SupplementalGenerator,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._feeds = feeds
        self._mirror = mirror
        self._supplemental = supplemental
        self._config = config or SyncConfig()

    async def validate_feed(self, url: str) -> FeedValidation:
        return await validate_feed(
            self._feeds, url, default_timezone=self._config.default_timezone
        )

    async def reconcile(self, calendar_id: UUID) -> ReconcileResult:
        """Fetch the calendar's feed and apply creates, updates and deletes.

        Raises:
            NotFoundError: the calendar does not exist.
            SyncInProgressError: another reconciliation holds a fresh flag.
            FeedError: the feed could not be fetched or parsed. The failure is
                recorded on the calendar before raising.
        """
        calendar = await self._store.get_calendar(calendar_id)
        if calendar is None:
            raise NotFoundError("EventCalendar", str(calendar_id))
        if not calendar.sync_enabled:
            return ReconcileResult(calendar_id=calendar_id, errors=[SYNC_DISABLED_MESSAGE])

        with sync_scope(calendar_id=calendar_id):
            if not await self._store.try_begin_calendar_sync(calendar_id):
                raise SyncInProgressError("EventCalendar", str(calendar_id))
            logger.info("Reconciling calendar %s (%s)", calendar.name, calendar_id)

            try:
                body = await self._feeds.fetch(calendar.ics_url)
                parsed = parse_feed(body, default_timezone=self._config.default_timezone)
            except FeedError as exc:
                logger.error("Feed for calendar %s failed: %s", calendar_id, exc.message)
                await self._store.finish_calendar_sync(
                    calendar_id, CalendarSyncStatus.error, exc.message
                )
                raise

            result = ReconcileResult(calendar_id=calendar_id)
            try:
                await self._apply(calendar, parsed.events, result)
            except Exception as exc:
                await self._store.finish_calendar_sync(
                    calendar_id, CalendarSyncStatus.error, f"Reconciliation aborted: {exc}"
                )
                raise

            if result.errors:
                await self._store.finish_calendar_sync(
                    calendar_id, CalendarSyncStatus.error, "; ".join(result.errors)
                )
            else:
                await self._store.finish_calendar_sync(calendar_id, CalendarSyncStatus.success)
            logger.info(
                "Calendar %s reconciled: %d created, %d updated, %d deleted, %d errors",
                calendar_id,
                result.created,
                result.updated,
                result.deleted,
                len(result.errors),
            )

            try:
                await self._mirror.sync_events_to_members(calendar_id)
            except KoordiError as exc:
                logger.warning("Pushing calendar %s to members failed: %s", calendar_id, exc)
        return result

    async def reconcile_all(self) -> ReconcileAllResult:
        """Reconcile every sync-enabled calendar, one after another."""
        summary = ReconcileAllResult()
        for calendar in await self._store.list_sync_enabled_calendars():
            summary.total += 1
            try:
                result = await self.reconcile(calendar.id)
            except Exception as exc:
                logger.exception("Calendar %s failed to reconcile", calendar.id)
                message = exc.message if isinstance(exc, KoordiError) else str(exc)
                summary.failed += 1
                summary.results.append(
                    ReconcileResult(calendar_id=calendar.id, calendar_error=message)
                )
                continue
            summary.succeeded += 1
            summary.results.append(result)
        logger.info(
            "Reconciled %d calendars: %d succeeded, %d failed",
            summary.total,
            summary.succeeded,
            summary.failed,
        )
        return summary

    async def _apply(
        self, calendar: EventCalendar, incoming: list[FeedEvent], result: ReconcileResult
    ) -> None:
        stored = {event.ics_uid: event for event in await self._store.list_events(calendar.id)}
        seen: set[str] = set()

        for feed_event in incoming:
            seen.add(feed_event.uid)
            existing = stored.get(feed_event.uid)
            try:
                if existing is None:
                    await self._store.create_event(calendar.id, feed_event)
                    result.created += 1
                elif needs_update(existing, feed_event):
                    await self._update(existing, feed_event)
                    result.updated += 1
            except Exception as exc:
                logger.exception("Failed to sync event %s", feed_event.uid)
                result.errors.append(f"Failed to sync event {feed_event.uid}: {exc}")

        for uid, event in stored.items():
            if uid in seen:
                continue
            try:
                await self._remove(event)
                result.deleted += 1
            except Exception as exc:
                logger.exception("Failed to delete event %s", uid)
                result.errors.append(f"Failed to delete event {uid}: {exc}")

    async def _update(self, existing: Event, feed_event: FeedEvent) -> None:
        with sync_scope(event_id=existing.id):
            if feed_event.is_cancelled and not existing.is_cancelled:
                await self._cancel(existing)
            updated = await self._store.update_event_from_feed(existing.id, feed_event)
            if updated.assigned_to_user_id is not None and _schedule_changed(existing, feed_event):
                try:
                    await self._supplemental.regenerate(updated.id)
                except KoordiError as exc:
                    logger.warning(
                        "Could not refresh travel windows for event %s: %s", updated.id, exc
                    )

    async def _cancel(self, event: Event) -> None:
        """Tear down mirrors and derived data for an event that became cancelled."""
        logger.info("Event %s was cancelled upstream", event.id)
        await self._mirror.delete_event_from_all_members(event.id)
        await self._supplemental.remove(event.id)
        await self._store.clear_assignment_for_cancellation(event.id)

    async def _remove(self, event: Event) -> None:
        with sync_scope(event_id=event.id):
            try:
                await self._mirror.delete_event_from_all_members(event.id)
                await self._supplemental.remove(event.id)
            except Exception as exc:
                logger.warning("Mirror cleanup for removed event %s failed: %s", event.id, exc)
            await self._store.delete_event(event.id)
