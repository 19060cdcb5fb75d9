"""Derived travel and early-arrival windows around an assigned event.

An assigned, timed event gets exactly three supplemental events:

- outbound travel: leave home early enough to reach the venue at the
  effective arrival time (which already includes the owner's comfort buffer);
- early arrival: from the effective arrival time to the event start;
- return travel: from the event end until the owner is home again.

The whole set is computed before anything is written and replaced in one
transaction, so a geocoding or routing failure during `generate` leaves the
previous set in place. `regenerate` deletes the old set first, so a failed
rebuild leaves no windows instead of ones for an outdated schedule.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from uuid import UUID

from koordi.arrival import parse_arrival_time
from koordi.config import SupplementalConfig
from koordi.errors import NotFoundError, ValidationError
from koordi.maps import Coordinates, GoogleMapsClient
from koordi.mirror import MirrorSynchronizer
from koordi.models import (
    Event,
    SupplementalEvent,
    SupplementalEventDraft,
    SupplementalKind,
    SupplementalSet,
    User,
)
from koordi.store import EventStore

logger = logging.getLogger(__name__)


def _check_eligible(event: Event, owner: User) -> None:
    if event.is_cancelled:
        raise ValidationError("Cannot plan travel for a cancelled event")
    if event.is_all_day:
        raise ValidationError("All-day events have no travel windows")
    if not event.location:
        raise ValidationError("Event has no location")
    if not owner.has_home_coordinates:
        raise ValidationError(f"User {owner.id} has no home coordinates")


class SupplementalGenerator:
    """Builds, stores and mirrors the supplemental set of an event."""

    def __init__(
        self,
        store: EventStore,
        maps: GoogleMapsClient,
        mirror: MirrorSynchronizer,
        config: SupplementalConfig | None = None,
    ) -> None:
        self._store = store
        self._maps = maps
        self._mirror = mirror
        self._config = config or SupplementalConfig()

    async def plan(
        self, event: Event, owner: User
    ) -> tuple[list[SupplementalEventDraft], Coordinates]:
        """Compute the three drafts without writing anything.

        Returns the drafts and the venue coordinates used to route them.
        """
        _check_eligible(event, owner)
        assert event.location is not None
        assert owner.home_latitude is not None and owner.home_longitude is not None

        arrival = parse_arrival_time(
            event.description,
            event.start_time,
            owner.comfort_buffer_minutes,
            max_lead_minutes=self._config.max_arrival_lead_minutes,
        )

        if event.has_coordinates:
            assert event.location_lat is not None and event.location_lng is not None
            venue = Coordinates(event.location_lat, event.location_lng)
        else:
            venue = (await self._maps.geocode(event.location)).coordinates
        home = Coordinates(owner.home_latitude, owner.home_longitude)

        outbound, inbound = await asyncio.gather(
            self._maps.travel_time(home, venue, arrive_by=arrival.arrival_time),
            self._maps.travel_time(venue, home, depart_at=event.end_time),
        )

        home_address = owner.home_address
        lead_minutes = math.ceil((event.start_time - arrival.arrival_time).total_seconds() / 60)
        name = owner.first_name
        drafts = [
            SupplementalEventDraft(
                kind=SupplementalKind.outbound_travel,
                title=f"{name} to drive to event",
                start_time=arrival.arrival_time
                - timedelta(minutes=outbound.duration_in_traffic_minutes),
                end_time=arrival.arrival_time,
                origin_address=home_address,
                origin_lat=home.lat,
                origin_lng=home.lng,
                destination_address=event.location,
                destination_lat=venue.lat,
                destination_lng=venue.lng,
                drive_time_minutes=outbound.duration_in_traffic_minutes,
            ),
            SupplementalEventDraft(
                kind=SupplementalKind.early_arrival,
                title=f"{lead_minutes} min early arrival",
                start_time=arrival.arrival_time,
                end_time=event.start_time,
                origin_address=event.location,
                origin_lat=venue.lat,
                origin_lng=venue.lng,
                destination_address=event.location,
                destination_lat=venue.lat,
                destination_lng=venue.lng,
                drive_time_minutes=0,
            ),
            SupplementalEventDraft(
                kind=SupplementalKind.return_travel,
                title=f"{name} to drive home",
                start_time=event.end_time,
                end_time=event.end_time + timedelta(minutes=inbound.duration_in_traffic_minutes),
                origin_address=event.location,
                origin_lat=venue.lat,
                origin_lng=venue.lng,
                destination_address=home_address,
                destination_lat=home.lat,
                destination_lng=home.lng,
                drive_time_minutes=inbound.duration_in_traffic_minutes,
            ),
        ]
        return drafts, venue

    async def generate(self, event_id: UUID, owner_id: UUID) -> SupplementalSet:
        """Replace the event's supplemental set with a freshly routed one.

        Raises:
            NotFoundError: the event or owner does not exist.
            ValidationError: the event is not held by *owner_id* (unassigned,
                skipped or someone else's), is all-day, cancelled or has no
                location, or the owner has no home coordinates.
            GeocodingError / RoutingError: the maps service failed. The
                stored set is left as it was.
        """
        event = await self._store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", str(event_id))
        owner = await self._store.get_user(owner_id)
        if owner is None:
            raise NotFoundError("User", str(owner_id))
        if event.assigned_to_user_id != owner_id or event.is_skipped:
            raise ValidationError(
                f"Event {event_id} is not assigned to user {owner_id}",
                context={"assigned_to_user_id": str(event.assigned_to_user_id)},
            )

        drafts, venue = await self.plan(event, owner)

        if not event.has_coordinates:
            await self._store.set_event_coordinates(event.id, venue.lat, venue.lng)
        await self._unmirror(event.id)
        created = await self._store.replace_supplemental(event.id, drafts)
        by_kind = {s.kind: s for s in created}
        logger.info("Generated %d supplemental events for event %s", len(created), event.id)

        await asyncio.gather(
            *(self._mirror.push_supplemental_to_owner_and_viewers(s.id, owner.id) for s in created)
        )
        return SupplementalSet(
            outbound=by_kind[SupplementalKind.outbound_travel],
            early_arrival=by_kind[SupplementalKind.early_arrival],
            return_travel=by_kind[SupplementalKind.return_travel],
        )

    async def regenerate(self, event_id: UUID) -> list[SupplementalEvent]:
        """Delete the set, then rebuild it for the current owner if one needs travel.

        A failure while rebuilding leaves the event with no supplemental
        events rather than the previous, possibly outdated, set.
        """
        event = await self._store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", str(event_id))
        await self.remove(event_id)
        if not event.needs_supplemental:
            return []
        assert event.assigned_to_user_id is not None
        return (await self.generate(event_id, event.assigned_to_user_id)).as_list()

    async def handle_reassignment(
        self, event_id: UUID, new_owner_id: UUID | None
    ) -> SupplementalSet | None:
        """Drop the previous owner's set and build one for *new_owner_id*, if any."""
        await self.remove(event_id)
        if new_owner_id is None:
            return None
        return await self.generate(event_id, new_owner_id)

    async def remove(self, event_id: UUID) -> int:
        """Delete the event's supplemental events and their external copies."""
        await self._unmirror(event_id)
        removed = await self._store.delete_supplemental_for_event(event_id)
        if removed:
            logger.info("Removed %d supplemental events for event %s", removed, event_id)
        return removed

    async def _unmirror(self, event_id: UUID) -> None:
        for supplemental in await self._store.list_supplemental(event_id):
            await self._mirror.delete_supplemental_from_all(supplemental.id)
