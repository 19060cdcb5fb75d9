"""Domain records and result shapes shared across koordi components."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SupplementalKind(StrEnum):
    """The three derived entries that surround an assigned event."""

    outbound_travel = "outbound_travel"
    early_arrival = "early_arrival"
    return_travel = "return_travel"


class SyncType(StrEnum):
    main = "main"
    supplemental = "supplemental"


class CalendarSyncStatus(StrEnum):
    pending = "pending"
    success = "success"
    error = "error"


class UserSyncStatus(StrEnum):
    """Per-user outcome of a mirror push or delete."""

    synced = "synced"
    deleted = "deleted"
    skipped = "skipped"
    failed = "failed"


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")


class User(_Record):
    id: UUID
    email: str
    name: str | None = None
    home_address: str | None = None
    home_latitude: float | None = None
    home_longitude: float | None = None
    comfort_buffer_minutes: int = 5
    keep_supplemental_events: bool = False
    google_refresh_token_enc: str | None = None
    google_calendar_id: str = "primary"
    google_calendar_sync_enabled: bool = False
    timezone: str | None = None

    @property
    def first_name(self) -> str:
        if self.name and self.name.strip():
            return self.name.strip().split()[0]
        return self.email.split("@", 1)[0]

    @property
    def has_home_coordinates(self) -> bool:
        return self.home_latitude is not None and self.home_longitude is not None

    def __repr__(self) -> str:
        return f"User(id={self.id!s}, email={self.email!r})"


class EventCalendar(_Record):
    id: UUID
    name: str
    ics_url: str
    owner_id: UUID
    sync_enabled: bool = True
    sync_in_progress: bool = False
    sync_started_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_sync_status: CalendarSyncStatus = CalendarSyncStatus.pending
    last_sync_error: str | None = None


class Event(_Record):
    """An internal event mirrored from one feed entry.

    ``version`` only moves on owner-mutating writes (assignment, skip,
    cancellation) and always by exactly one.
    """

    id: UUID
    event_calendar_id: UUID
    ics_uid: str
    title: str
    description: str | None = None
    location: str | None = None
    location_lat: float | None = None
    location_lng: float | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    is_cancelled: bool = False
    assigned_to_user_id: UUID | None = None
    is_skipped: bool = False
    version: int = 1
    sync_in_progress: bool = False
    sync_started_at: datetime | None = None
    last_modified: datetime | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.location_lat is not None and self.location_lng is not None

    @property
    def needs_supplemental(self) -> bool:
        return (
            self.assigned_to_user_id is not None
            and not self.is_skipped
            and not self.is_cancelled
            and not self.is_all_day
        )

    def snapshot(self) -> dict[str, Any]:
        """Compact view handed back to a caller that lost a version race."""
        return {
            "id": str(self.id),
            "title": self.title,
            "assigned_to_user_id": (
                str(self.assigned_to_user_id) if self.assigned_to_user_id else None
            ),
            "is_skipped": self.is_skipped,
            "version": self.version,
        }


class SupplementalEventDraft(BaseModel):
    """A computed supplemental entry that has not been written yet."""

    kind: SupplementalKind
    title: str
    start_time: datetime
    end_time: datetime
    origin_address: str | None = None
    origin_lat: float | None = None
    origin_lng: float | None = None
    destination_address: str | None = None
    destination_lat: float | None = None
    destination_lng: float | None = None
    drive_time_minutes: int | None = None


class SupplementalEvent(_Record):
    id: UUID
    parent_event_id: UUID
    kind: SupplementalKind
    title: str
    start_time: datetime
    end_time: datetime
    origin_address: str | None = None
    origin_lat: float | None = None
    origin_lng: float | None = None
    destination_address: str | None = None
    destination_lat: float | None = None
    destination_lng: float | None = None
    drive_time_minutes: int | None = None


class SupplementalSet(BaseModel):
    outbound: SupplementalEvent
    early_arrival: SupplementalEvent
    return_travel: SupplementalEvent

    def as_list(self) -> list[SupplementalEvent]:
        return [self.outbound, self.early_arrival, self.return_travel]


class SyncLink(_Record):
    """Maps one (user, item) pair to the id of its copy in that user's calendar."""

    id: UUID
    user_id: UUID
    event_id: UUID | None = None
    supplemental_event_id: UUID | None = None
    google_event_id: str
    sync_type: SyncType
    last_synced_at: datetime | None = None


class FeedEvent(BaseModel):
    """One VEVENT as read from the upstream feed."""

    uid: str
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    is_cancelled: bool = False
    last_modified: datetime | None = None


class ReconcileResult(BaseModel):
    calendar_id: UUID
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)
    calendar_error: str | None = None


class ReconcileAllResult(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[ReconcileResult] = Field(default_factory=list)


class FeedValidation(BaseModel):
    valid: bool
    calendar_name: str | None = None
    event_count: int = 0
    earliest: datetime | None = None
    latest: datetime | None = None
    error: str | None = None


class UserSyncOutcome(BaseModel):
    user_id: UUID
    status: UserSyncStatus
    google_event_id: str | None = None
    error: dict[str, Any] | None = None


class SyncReport(BaseModel):
    """Joined per-user outcomes of one mirror fan-out."""

    item_id: UUID
    sync_type: SyncType
    outcomes: list[UserSyncOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> list[UserSyncOutcome]:
        return [o for o in self.outcomes if o.status == UserSyncStatus.failed]

    @property
    def ok(self) -> bool:
        return not self.failed


class AssignmentResult(BaseModel):
    event: Event
    supplemental_events: list[SupplementalEvent] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
