"""Provider-agnostic contract for a user's external calendar mirror."""

from __future__ import annotations

import abc
from datetime import date, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    from koordi.models import User

SOURCE_ID_PROPERTY = "koordi_source_id"


class ExternalEventPayload(BaseModel):
    """Full content of one mirrored entry; always written whole (no patches)."""

    source_id: str
    summary: str
    start: date | datetime
    end: date | datetime
    all_day: bool = False
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    color_id: str | None = None
    reminder_minutes: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_boundaries(self) -> ExternalEventPayload:
        if self.all_day:
            if isinstance(self.start, datetime) or isinstance(self.end, datetime):
                raise ValueError("all-day entries need date boundaries")
        elif not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise ValueError("timed entries need datetime boundaries")
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class ExternalEvent(BaseModel):
    """What the provider reports back about a stored entry."""

    event_id: str
    summary: str | None = None
    status: str | None = None
    source_id: str | None = None
    etag: str | None = None


class CalendarProvider(abc.ABC):
    """One user's external calendar."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> ExternalEvent | None:
        """Fetch an entry by id; ``None`` when it is gone (404/410 or cancelled)."""
        ...

    @abc.abstractmethod
    async def find_by_source_id(self, *, calendar_id: str, source_id: str) -> ExternalEvent | None:
        """Find a live entry carrying the given private source-id property."""
        ...

    @abc.abstractmethod
    async def create_event(
        self, *, calendar_id: str, payload: ExternalEventPayload
    ) -> ExternalEvent:
        ...

    @abc.abstractmethod
    async def update_event(
        self, *, calendar_id: str, event_id: str, payload: ExternalEventPayload
    ) -> ExternalEvent:
        ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an entry. An entry that is already gone counts as deleted."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class CalendarProviderFactory(abc.ABC):
    """Builds the provider bound to one user's stored credentials."""

    @abc.abstractmethod
    async def for_user(self, user: User) -> CalendarProvider:
        ...

    async def shutdown(self) -> None:
        return None
