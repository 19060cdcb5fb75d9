"""Google Calendar v3 provider with refresh-token OAuth.

Each user's stored refresh token is exchanged for a short-lived access token
that is cached until shortly before expiry. A 401 triggers exactly one forced
token refresh and one re-send; that is credential renewal, and no other
status is ever retried here.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from koordi.config import GOOGLE_OAUTH_CLIENT_ID_ENV, GOOGLE_OAUTH_CLIENT_SECRET_ENV
from koordi.crypto import TokenCipher
from koordi.errors import CalendarProviderError, ConfigurationError, redact_secrets
from koordi.providers.base import (
    SOURCE_ID_PROPERTY,
    CalendarProvider,
    CalendarProviderFactory,
    ExternalEvent,
    ExternalEventPayload,
)

if TYPE_CHECKING:
    from uuid import UUID

    from koordi.models import User

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
_GONE_STATUS_CODES = {404, 410}


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return f"GoogleOAuthCredentials(client_id={self.client_id!r}, secrets=[REDACTED])"


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarProviderError(
                redact_secrets(f"Google OAuth token refresh request failed: {exc}")
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarProviderError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarProviderError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        # Refresh a minute early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_secrets(" ".join(message.split()))[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return redact_secrets(" ".join(error_payload.split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_secrets(" ".join(raw_text.split()))[:200]
    return "Request failed without an error payload"


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _event_boundary(value: date | datetime, *, all_day: bool, timezone: str | None) -> dict:
    if all_day:
        day = value.date() if isinstance(value, datetime) else value
        return {"date": day.isoformat()}
    assert isinstance(value, datetime)
    boundary: dict[str, str] = {"dateTime": _google_rfc3339(value)}
    if timezone:
        boundary["timeZone"] = timezone
    return boundary


def build_google_event_body(payload: ExternalEventPayload) -> dict[str, Any]:
    """Render a payload as a complete Google Calendar event resource."""
    body: dict[str, Any] = {
        "summary": payload.summary,
        "start": _event_boundary(payload.start, all_day=payload.all_day, timezone=payload.timezone),
        "end": _event_boundary(payload.end, all_day=payload.all_day, timezone=payload.timezone),
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "popup", "minutes": minutes} for minutes in payload.reminder_minutes
            ],
        },
        "extendedProperties": {"private": {SOURCE_ID_PROPERTY: payload.source_id}},
        "transparency": "opaque",
    }
    if payload.description is not None:
        body["description"] = payload.description
    if payload.location is not None:
        body["location"] = payload.location
    if payload.color_id is not None:
        body["colorId"] = payload.color_id
    return body


def _google_event_to_external(payload: dict[str, Any]) -> ExternalEvent | None:
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        return None
    private = (payload.get("extendedProperties") or {}).get("private") or {}
    source_id = private.get(SOURCE_ID_PROPERTY) if isinstance(private, dict) else None
    return ExternalEvent(
        event_id=event_id,
        summary=payload.get("summary"),
        status=payload.get("status"),
        source_id=source_id if isinstance(source_id, str) else None,
        etag=payload.get("etag"),
    )


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    @property
    def name(self) -> str:
        return "google"

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarProviderError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}",
                status_code=response.status_code,
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarProviderError(
                "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )
        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarProviderError(
                redact_secrets(f"Google Calendar request failed: {exc}")
            ) from exc

    @staticmethod
    def _event_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            normalized = event_id.strip()
            if not normalized:
                raise ValueError("event_id must be a non-empty string")
            path = f"{path}/{quote(normalized, safe='')}"
        return path

    async def get_event(self, *, calendar_id: str, event_id: str) -> ExternalEvent | None:
        response = await self._request_with_bearer(
            method="GET", path=self._event_path(calendar_id, event_id)
        )
        if response.status_code in _GONE_STATUS_CODES:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarProviderError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                "Google Calendar API returned invalid JSON for get_event"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarProviderError(
                "Google Calendar API returned an unexpected get_event payload"
            )
        event = _google_event_to_external(payload)
        # Deleted entries stay readable by id with status "cancelled".
        if event is None or event.status == "cancelled":
            return None
        return event

    async def find_by_source_id(self, *, calendar_id: str, source_id: str) -> ExternalEvent | None:
        payload = await self._request_google_json(
            "GET",
            self._event_path(calendar_id),
            params={
                "privateExtendedProperty": f"{SOURCE_ID_PROPERTY}={source_id}",
                "showDeleted": "false",
                "maxResults": 10,
            },
        )
        items = payload.get("items")
        if not isinstance(items, list):
            raise CalendarProviderError("Google Calendar events list response missing items array")
        for item in items:
            if not isinstance(item, dict):
                continue
            event = _google_event_to_external(item)
            if event is not None and event.status != "cancelled" and event.source_id == source_id:
                return event
        return None

    async def create_event(
        self, *, calendar_id: str, payload: ExternalEventPayload
    ) -> ExternalEvent:
        response_payload = await self._request_google_json(
            "POST", self._event_path(calendar_id), json_body=build_google_event_body(payload)
        )
        event = _google_event_to_external(response_payload)
        if event is None:
            raise CalendarProviderError("Google Calendar create response is missing an event id")
        return event

    async def update_event(
        self, *, calendar_id: str, event_id: str, payload: ExternalEventPayload
    ) -> ExternalEvent:
        response_payload = await self._request_google_json(
            "PUT",
            self._event_path(calendar_id, event_id),
            json_body=build_google_event_body(payload),
        )
        event = _google_event_to_external(response_payload)
        if event is None:
            raise CalendarProviderError("Google Calendar update response is missing an event id")
        return event

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete a Google Calendar event; 404 and 410 count as already deleted."""
        response = await self._request_with_bearer(
            method="DELETE",
            path=self._event_path(calendar_id, event_id),
            params={"sendUpdates": "none"},
        )
        if response.status_code in _GONE_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' already gone (%d); treating as success",
                event_id,
                response.status_code,
            )
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarProviderError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}",
                status_code=response.status_code,
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class GoogleProviderFactory(CalendarProviderFactory):
    """Builds per-user Google providers from encrypted refresh tokens.

    One provider is cached per user so access tokens survive across fan-out
    branches. A rotated refresh token replaces that user's entry.
    """

    def __init__(
        self,
        cipher: TokenCipher | None = None,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._cipher = cipher
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        # user id -> (encrypted refresh token, provider)
        self._providers: dict[UUID, tuple[str, GoogleCalendarProvider]] = {}

    def _require_cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = TokenCipher.from_env()
        return self._cipher

    def _client_credentials(self) -> tuple[str, str]:
        client_id = self._client_id or os.environ.get(GOOGLE_OAUTH_CLIENT_ID_ENV, "").strip()
        client_secret = (
            self._client_secret or os.environ.get(GOOGLE_OAUTH_CLIENT_SECRET_ENV, "").strip()
        )
        if not client_id or not client_secret:
            raise ConfigurationError("Google OAuth client id/secret are not configured")
        return client_id, client_secret

    async def for_user(self, user: User) -> CalendarProvider:
        if not user.google_refresh_token_enc:
            raise ConfigurationError(
                f"User {user.id} has no Google refresh token",
                context={"user_id": str(user.id)},
            )
        cached = self._providers.get(user.id)
        if cached is not None and cached[0] == user.google_refresh_token_enc:
            return cached[1]

        client_id, client_secret = self._client_credentials()
        credentials = GoogleOAuthCredentials(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=self._require_cipher().decrypt(user.google_refresh_token_enc),
        )
        provider = GoogleCalendarProvider(credentials, http_client=self._http_client)
        self._providers[user.id] = (user.google_refresh_token_enc, provider)
        return provider

    async def shutdown(self) -> None:
        self._providers.clear()
        if self._owns_http_client:
            await self._http_client.aclose()
