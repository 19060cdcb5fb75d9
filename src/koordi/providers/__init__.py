"""External calendar providers."""

from koordi.providers.base import (
    SOURCE_ID_PROPERTY,
    CalendarProvider,
    CalendarProviderFactory,
    ExternalEvent,
    ExternalEventPayload,
)

__all__ = [
    "SOURCE_ID_PROPERTY",
    "CalendarProvider",
    "CalendarProviderFactory",
    "ExternalEvent",
    "ExternalEventPayload",
]
