"""Error taxonomy for the coordination core.

Every error raised across a component boundary derives from
:class:`KoordiError` and carries a stable ``code`` plus a ``context`` dict,
so callers (HTTP routing, CLI, background jobs) can map failures without
string matching.

Recoverability at a glance:

- ``ConcurrentModificationError`` / ``SyncInProgressError``: refetch and retry.
- ``NotFoundError`` / ``ValidationError``: terminal for the request.
- ``ExternalProviderError`` and subclasses: transient, isolated per user.
- ``ConfigurationError``: terminal, surfaced at startup or first use.
"""

from __future__ import annotations

import re
from typing import Any


class KoordiError(Exception):
    """Base error with a machine-readable code and structured context."""

    code = "KOORDI_ERROR"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        super().__init__(message)


class ConcurrentModificationError(KoordiError):
    """Raised when a versioned write observes a version other than the expected one.

    Carries a snapshot of the current state so the caller can re-render and
    retry without a second round trip.
    """

    code = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        expected_version: int,
        actual_version: int,
        current_state: dict[str, Any] | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.current_state = dict(current_state or {})
        super().__init__(
            f"{resource_type} {resource_id} was modified by another user. "
            f"Expected version {expected_version}, but found {actual_version}",
            context={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class SyncInProgressError(KoordiError):
    """Raised when a durable sync flag blocks the requested operation (retryable)."""

    code = "SYNC_IN_PROGRESS"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} {resource_id} is currently syncing. Please wait and try again.",
            context={"resource_type": resource_type, "resource_id": resource_id},
        )


class NotFoundError(KoordiError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str | None = None) -> None:
        self.resource = resource
        self.identifier = identifier
        message = (
            f"{resource} with identifier '{identifier}' not found"
            if identifier
            else f"{resource} not found"
        )
        super().__init__(message, context={"resource": resource, "identifier": identifier})


class ValidationError(KoordiError):
    """Missing or unusable inputs (e.g. no home coordinates for travel planning)."""

    code = "VALIDATION_ERROR"


class ConfigurationError(KoordiError):
    """Missing credentials, keys, or malformed configuration."""

    code = "CONFIGURATION_ERROR"


class EncryptionError(KoordiError):
    code = "ENCRYPTION_ERROR"


class ExternalProviderError(KoordiError):
    """A call to an external system failed; isolated to the operation that made it."""

    code = "EXTERNAL_PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.service = service
        self.status_code = status_code
        merged = {"service": service, "status_code": status_code, **(context or {})}
        super().__init__(message, context=merged)


class CalendarProviderError(ExternalProviderError):
    """Google Calendar API request or credential exchange failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, service="google_calendar", status_code=status_code)


class GeocodingError(ExternalProviderError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, service="geocoding", status_code=status_code)


class RoutingError(ExternalProviderError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, service="routing", status_code=status_code)


class FeedError(ExternalProviderError):
    """Calendar-level feed failure: unreachable, rejected, or unparseable."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, service="ics_feed", status_code=status_code)


class UnsafeUrlError(FeedError):
    """The feed URL (or a redirect target) does not resolve to a public address."""


_SECRET_PATTERNS = (
    re.compile(
        r"(?i)\b(client_secret|refresh_token|access_token|token|key)\s*=\s*([^\s,;&]+)"
    ),
    re.compile(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2"""
    ),
)


def redact_secrets(message: str) -> str:
    """Redact credential-looking values (query params, JSON fields) from *message*."""
    redacted = _SECRET_PATTERNS[0].sub(r"\1=[REDACTED]", message)
    return _SECRET_PATTERNS[1].sub(r'\1"[REDACTED]"', redacted)


def to_error_payload(exc: BaseException) -> dict[str, Any]:
    """Build a sanitized, structured error dict safe to log or return to callers."""
    sanitized = " ".join(redact_secrets(str(exc)).split())[:200]
    payload: dict[str, Any] = {
        "status": "error",
        "error": sanitized,
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, KoordiError):
        payload["code"] = exc.code
    if isinstance(exc, ExternalProviderError):
        payload["service"] = exc.service
        if exc.status_code is not None:
            payload["status_code"] = exc.status_code
    if isinstance(exc, ConcurrentModificationError):
        payload["expected_version"] = exc.expected_version
        payload["actual_version"] = exc.actual_version
        payload["current_state"] = exc.current_state
    return payload
