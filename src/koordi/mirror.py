"""Mirror internal events and supplemental events into members' external calendars.

Every push is a fan-out: one branch per user, run concurrently, each with
its own timeout. A branch failure is recorded in the returned
:class:`~koordi.models.SyncReport` and never aborts the other branches or
the caller.

Per-user push flow:

1. Skip the user when external sync is disabled or no credentials are stored.
2. With a stored link, fetch the linked entry. If it is gone, drop the link
   and fall through to creation; otherwise overwrite it with the full content.
3. Without a link, look for an orphaned entry carrying our private source-id
   property and adopt it, or create a new entry. Then record the link.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from uuid import UUID

from koordi.config import SyncConfig
from koordi.core.logging import sync_scope
from koordi.errors import NotFoundError, to_error_payload
from koordi.models import (
    Event,
    EventCalendar,
    SupplementalEvent,
    SupplementalKind,
    SyncLink,
    SyncReport,
    SyncType,
    User,
    UserSyncOutcome,
    UserSyncStatus,
)
from koordi.providers import CalendarProviderFactory, ExternalEventPayload
from koordi.store import EventStore

logger = logging.getLogger(__name__)

MAIN_EVENT_COLOR = "9"
TRAVEL_COLOR = "8"
EARLY_ARRIVAL_COLOR = "5"
MAIN_EVENT_REMINDER_MINUTES = 30
TRAVEL_REMINDER_MINUTES = 15
NOT_ATTENDING_LABEL = "Not attending"


def event_source_id(event_id: UUID) -> str:
    return f"event:{event_id}"


def supplemental_source_id(supplemental_id: UUID) -> str:
    return f"supplemental:{supplemental_id}"


def _utc_date(value: datetime) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).date()


def build_main_payload(
    event: Event,
    calendar: EventCalendar,
    owner: User | None,
    *,
    timezone: str,
) -> ExternalEventPayload:
    """Entry content for an internal event, identical for every member."""
    if event.is_skipped:
        summary = f"{NOT_ATTENDING_LABEL}: {event.title}"
    elif owner is not None:
        summary = f"{owner.first_name}: {event.title}"
    else:
        summary = event.title

    description_parts = [event.description] if event.description else []
    description_parts.append(f"Calendar: {calendar.name}")

    if event.is_all_day:
        start_day = _utc_date(event.start_time)
        end_day = max(_utc_date(event.end_time), start_day + timedelta(days=1))
        return ExternalEventPayload(
            source_id=event_source_id(event.id),
            summary=summary,
            start=start_day,
            end=end_day,
            all_day=True,
            description="\n\n".join(description_parts),
            location=event.location,
            color_id=MAIN_EVENT_COLOR,
            reminder_minutes=[MAIN_EVENT_REMINDER_MINUTES],
        )
    return ExternalEventPayload(
        source_id=event_source_id(event.id),
        summary=summary,
        start=event.start_time,
        end=event.end_time,
        timezone=timezone,
        description="\n\n".join(description_parts),
        location=event.location,
        color_id=MAIN_EVENT_COLOR,
        reminder_minutes=[MAIN_EVENT_REMINDER_MINUTES],
    )


def build_supplemental_payload(
    supplemental: SupplementalEvent,
    parent: Event,
    *,
    timezone: str,
) -> ExternalEventPayload:
    """Entry content for a travel or early-arrival window."""
    if supplemental.kind == SupplementalKind.early_arrival:
        lines = [f"Early arrival for: {parent.title}"]
        if supplemental.destination_address:
            lines.append(f"Location: {supplemental.destination_address}")
        return ExternalEventPayload(
            source_id=supplemental_source_id(supplemental.id),
            summary=supplemental.title,
            start=supplemental.start_time,
            end=supplemental.end_time,
            timezone=timezone,
            description="\n".join(lines),
            location=supplemental.destination_address,
            color_id=EARLY_ARRIVAL_COLOR,
        )

    lines = [f"Drive time for: {parent.title}"]
    if supplemental.origin_address:
        lines.append(f"From: {supplemental.origin_address}")
    if supplemental.destination_address:
        lines.append(f"To: {supplemental.destination_address}")
    if supplemental.drive_time_minutes is not None:
        lines.append(f"Estimated drive time: {supplemental.drive_time_minutes} minutes")
    return ExternalEventPayload(
        source_id=supplemental_source_id(supplemental.id),
        summary=supplemental.title,
        start=supplemental.start_time,
        end=supplemental.end_time,
        timezone=timezone,
        description="\n".join(lines),
        location=supplemental.destination_address,
        color_id=TRAVEL_COLOR,
        reminder_minutes=[TRAVEL_REMINDER_MINUTES],
    )


@dataclass(frozen=True)
class _MirrorItem:
    """One internal item being pushed, with a per-user content builder."""

    sync_type: SyncType
    item_id: UUID
    source_id: str
    build: Callable[[User], ExternalEventPayload]

    @property
    def link_key(self) -> dict[str, UUID]:
        if self.sync_type == SyncType.main:
            return {"event_id": self.item_id}
        return {"supplemental_event_id": self.item_id}


class MirrorSynchronizer:
    """Pushes items to, and removes them from, users' external calendars."""

    def __init__(
        self,
        store: EventStore,
        providers: CalendarProviderFactory,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._providers = providers
        self._config = config or SyncConfig()

    def _timezone_for(self, user: User) -> str:
        return user.timezone or self._config.default_timezone

    # ------------------------------------------------------------------
    # Fan-out plumbing
    # ------------------------------------------------------------------

    async def _isolated(
        self, user_id: UUID, branch: Callable[[], Awaitable[UserSyncOutcome]]
    ) -> UserSyncOutcome:
        with sync_scope(user_id=user_id):
            try:
                return await asyncio.wait_for(
                    branch(), timeout=self._config.user_timeout_seconds
                )
            except TimeoutError as exc:
                logger.warning(
                    "External calendar sync for user %s timed out after %.1fs",
                    user_id,
                    self._config.user_timeout_seconds,
                )
                error = to_error_payload(exc)
                error["error"] = (
                    f"Timed out after {self._config.user_timeout_seconds:g} seconds"
                )
                return UserSyncOutcome(
                    user_id=user_id, status=UserSyncStatus.failed, error=error
                )
            except Exception as exc:
                logger.warning("External calendar sync for user %s failed: %s", user_id, exc)
                return UserSyncOutcome(
                    user_id=user_id,
                    status=UserSyncStatus.failed,
                    error=to_error_payload(exc),
                )

    async def _fan_out(
        self,
        item_id: UUID,
        sync_type: SyncType,
        branches: Iterable[tuple[UUID, Callable[[], Awaitable[UserSyncOutcome]]]],
    ) -> SyncReport:
        outcomes = await asyncio.gather(
            *(self._isolated(user_id, branch) for user_id, branch in branches)
        )
        report = SyncReport(item_id=item_id, sync_type=sync_type, outcomes=list(outcomes))
        if report.failed:
            logger.warning(
                "%s item %s: %d of %d user syncs failed",
                sync_type,
                item_id,
                len(report.failed),
                len(report.outcomes),
            )
        return report

    # ------------------------------------------------------------------
    # Single-user primitives
    # ------------------------------------------------------------------

    async def _push_item_to_user(self, user_id: UUID, item: _MirrorItem) -> UserSyncOutcome:
        user = await self._store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", str(user_id))
        if not user.google_calendar_sync_enabled or not user.google_refresh_token_enc:
            return UserSyncOutcome(user_id=user_id, status=UserSyncStatus.skipped)

        provider = await self._providers.for_user(user)
        payload = item.build(user)
        calendar_id = user.google_calendar_id

        link = await self._store.get_link(user_id, **item.link_key)
        if link is not None:
            existing = await provider.get_event(
                calendar_id=calendar_id, event_id=link.google_event_id
            )
            if existing is not None:
                entry = await provider.update_event(
                    calendar_id=calendar_id, event_id=link.google_event_id, payload=payload
                )
                await self._store.upsert_link(user_id, entry.event_id, **item.link_key)
                return UserSyncOutcome(
                    user_id=user_id, status=UserSyncStatus.synced, google_event_id=entry.event_id
                )
            logger.info("Linked external entry %s is gone, recreating", link.google_event_id)
            await self._store.delete_link(link.id)

        orphan = await provider.find_by_source_id(
            calendar_id=calendar_id, source_id=item.source_id
        )
        if orphan is not None:
            logger.info(
                "Adopting existing external entry %s for %s", orphan.event_id, item.source_id
            )
            entry = await provider.update_event(
                calendar_id=calendar_id, event_id=orphan.event_id, payload=payload
            )
        else:
            entry = await provider.create_event(calendar_id=calendar_id, payload=payload)

        await self._store.upsert_link(user_id, entry.event_id, **item.link_key)
        return UserSyncOutcome(
            user_id=user_id, status=UserSyncStatus.synced, google_event_id=entry.event_id
        )

    async def _remove_link(self, link: SyncLink) -> UserSyncOutcome:
        """Delete the linked external entry (if reachable) and then the link."""
        user = await self._store.get_user(link.user_id)
        if user is not None and user.google_refresh_token_enc:
            provider = await self._providers.for_user(user)
            await provider.delete_event(
                calendar_id=user.google_calendar_id, event_id=link.google_event_id
            )
        else:
            logger.info("No credentials for user %s, dropping link only", link.user_id)
        await self._store.delete_link(link.id)
        return UserSyncOutcome(
            user_id=link.user_id,
            status=UserSyncStatus.deleted,
            google_event_id=link.google_event_id,
        )

    # ------------------------------------------------------------------
    # Item builders
    # ------------------------------------------------------------------

    async def _main_item(self, event: Event) -> _MirrorItem:
        calendar = await self._store.get_calendar(event.event_calendar_id)
        if calendar is None:
            raise NotFoundError("EventCalendar", str(event.event_calendar_id))
        owner = None
        if event.assigned_to_user_id is not None:
            owner = await self._store.get_user(event.assigned_to_user_id)
        return _MirrorItem(
            sync_type=SyncType.main,
            item_id=event.id,
            source_id=event_source_id(event.id),
            build=lambda user: build_main_payload(
                event, calendar, owner, timezone=self._timezone_for(user)
            ),
        )

    async def _supplemental_item(self, supplemental_id: UUID) -> tuple[_MirrorItem, Event]:
        supplemental = await self._store.get_supplemental(supplemental_id)
        if supplemental is None:
            raise NotFoundError("SupplementalEvent", str(supplemental_id))
        parent = await self._store.get_event(supplemental.parent_event_id)
        if parent is None:
            raise NotFoundError("Event", str(supplemental.parent_event_id))
        item = _MirrorItem(
            sync_type=SyncType.supplemental,
            item_id=supplemental.id,
            source_id=supplemental_source_id(supplemental.id),
            build=lambda user: build_supplemental_payload(
                supplemental, parent, timezone=self._timezone_for(user)
            ),
        )
        return item, parent

    # ------------------------------------------------------------------
    # Main events
    # ------------------------------------------------------------------

    async def push_event_to_all_members(self, event_id: UUID) -> SyncReport:
        """Create or update the event's entry for every calendar member.

        A cancelled event is removed from members' calendars instead.
        """
        event = await self._store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", str(event_id))
        if event.is_cancelled:
            return await self.delete_event_from_all_members(event_id)

        with sync_scope(event_id=event_id):
            item = await self._main_item(event)
            member_ids = await self._store.list_calendar_member_ids(event.event_calendar_id)
            return await self._fan_out(
                event_id,
                SyncType.main,
                (
                    (uid, lambda uid=uid: self._push_item_to_user(uid, item))
                    for uid in member_ids
                ),
            )

    async def delete_event_from_all_members(self, event_id: UUID) -> SyncReport:
        """Remove every external copy of the event and its links."""
        with sync_scope(event_id=event_id):
            links = await self._store.list_links(event_id=event_id)
            return await self._fan_out(
                event_id,
                SyncType.main,
                ((link.user_id, lambda link=link: self._remove_link(link)) for link in links),
            )

    async def sync_events_to_members(self, calendar_id: UUID) -> list[SyncReport]:
        """Push every non-cancelled event of a calendar to its members, one event at a time."""
        reports: list[SyncReport] = []
        with sync_scope(calendar_id=calendar_id):
            for event in await self._store.list_events(calendar_id):
                if event.is_cancelled:
                    continue
                try:
                    reports.append(await self.push_event_to_all_members(event.id))
                except NotFoundError:
                    logger.info("Event %s disappeared before it could be pushed", event.id)
        return reports

    # ------------------------------------------------------------------
    # Supplemental events
    # ------------------------------------------------------------------

    async def push_supplemental_to_user(
        self, supplemental_id: UUID, user_id: UUID
    ) -> UserSyncOutcome:
        item, _parent = await self._supplemental_item(supplemental_id)
        return await self._isolated(user_id, lambda: self._push_item_to_user(user_id, item))

    async def push_supplemental_to_viewers(
        self, supplemental_id: UUID, owner_id: UUID | None
    ) -> SyncReport:
        """Push to members (other than the owner) who keep others' travel entries."""
        item, parent = await self._supplemental_item(supplemental_id)
        viewer_ids = await self._store.list_supplemental_viewer_ids(
            parent.event_calendar_id, owner_id
        )
        return await self._fan_out(
            supplemental_id,
            SyncType.supplemental,
            ((uid, lambda uid=uid: self._push_item_to_user(uid, item)) for uid in viewer_ids),
        )

    async def push_supplemental_to_owner_and_viewers(
        self, supplemental_id: UUID, owner_id: UUID
    ) -> SyncReport:
        """Push to the owning user and every opted-in viewer in one fan-out."""
        item, parent = await self._supplemental_item(supplemental_id)
        viewer_ids = await self._store.list_supplemental_viewer_ids(
            parent.event_calendar_id, owner_id
        )
        user_ids = [owner_id, *viewer_ids]
        return await self._fan_out(
            supplemental_id,
            SyncType.supplemental,
            ((uid, lambda uid=uid: self._push_item_to_user(uid, item)) for uid in user_ids),
        )

    async def delete_supplemental_from_all(self, supplemental_id: UUID) -> SyncReport:
        links = await self._store.list_links(supplemental_event_id=supplemental_id)
        return await self._fan_out(
            supplemental_id,
            SyncType.supplemental,
            ((link.user_id, lambda link=link: self._remove_link(link)) for link in links),
        )

    # ------------------------------------------------------------------
    # User-level settings
    # ------------------------------------------------------------------

    async def set_retention(self, user_id: UUID, enabled: bool) -> list[UserSyncOutcome]:
        """Toggle whether *user_id* keeps other members' supplemental events.

        Enabling pushes every supplemental event of events the user does not
        hold (in calendars they belong to); disabling removes those copies.
        """
        await self._store.set_keep_supplemental(user_id, enabled)
        supplementals = await self._store.list_supplemental_visible_to(user_id)
        logger.info(
            "Retention %s for user %s: %d supplemental events affected",
            "enabled" if enabled else "disabled",
            user_id,
            len(supplementals),
        )

        if enabled:
            return list(
                await asyncio.gather(
                    *(self.push_supplemental_to_user(s.id, user_id) for s in supplementals)
                )
            )

        async def _remove_one(supplemental_id: UUID) -> UserSyncOutcome:
            link = await self._store.get_link(user_id, supplemental_event_id=supplemental_id)
            if link is None:
                return UserSyncOutcome(user_id=user_id, status=UserSyncStatus.skipped)
            return await self._remove_link(link)

        return list(
            await asyncio.gather(
                *(
                    self._isolated(user_id, lambda sid=s.id: _remove_one(sid))
                    for s in supplementals
                )
            )
        )

    async def disable_user_sync(self, user_id: UUID) -> int:
        """Remove every external copy held for *user_id*, then turn their sync off.

        Returns the number of links removed. Links whose external delete fails
        are kept so a later attempt can retry them.
        """
        links = await self._store.list_links_for_user(user_id)
        outcomes = await asyncio.gather(
            *(self._isolated(user_id, lambda link=link: self._remove_link(link)) for link in links)
        )
        await self._store.set_google_sync_enabled(user_id, False)
        removed = sum(1 for o in outcomes if o.status == UserSyncStatus.deleted)
        logger.info(
            "Disabled external sync for user %s: removed %d of %d entries",
            user_id,
            removed,
            len(links),
        )
        return removed
