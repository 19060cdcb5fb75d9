"""Upstream ICS feed access: public-address URL checks, bounded fetch, and parsing.

Every URL, including each redirect hop, must resolve only to globally
routable addresses before it is requested. Redirects are therefore followed
by hand rather than by httpx.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any
from urllib.parse import urljoin, urlsplit
from zoneinfo import ZoneInfo

import httpx
from icalendar import Calendar

from koordi.config import FeedConfig
from koordi.errors import FeedError, UnsafeUrlError
from koordi.models import FeedEvent, FeedValidation

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"
UNNAMED_CALENDAR = "Unnamed Calendar"

_ALLOWED_SCHEMES = {"http", "https"}
_BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal"}
_BLOCKED_SUFFIXES = (".local", ".internal", ".localhost", ".localdomain")
_CANCELLED_PREFIX = re.compile(r"^\[CANCELL?ED\]\s*", re.IGNORECASE)

Resolver = Callable[[str, int], Awaitable[list[str]]]


async def _resolve_host(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


def is_public_address(address: str) -> bool:
    """True only for globally routable unicast addresses.

    Rejects loopback, private, link-local, multicast, reserved, unspecified,
    shared (CGNAT) and documentation ranges, including IPv4-mapped IPv6.
    """
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    ):
        return False
    return ip.is_global


@dataclass
class ParsedFeed:
    calendar_name: str | None
    events: list[FeedEvent] = field(default_factory=list)
    skipped: int = 0


class FeedClient:
    """Fetches feed bodies under the public-address rule."""

    def __init__(
        self,
        config: FeedConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        *,
        resolver: Resolver | None = None,
    ) -> None:
        self._config = config or FeedConfig()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_seconds, follow_redirects=False
        )
        self._resolve = resolver or _resolve_host

    async def ensure_safe_url(self, url: str) -> None:
        """Raise :class:`UnsafeUrlError` unless *url* may be fetched."""
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise UnsafeUrlError("Invalid URL format") from exc
        if parts.scheme.lower() not in _ALLOWED_SCHEMES:
            raise UnsafeUrlError("Only HTTP and HTTPS protocols are allowed")
        host = (parts.hostname or "").lower().rstrip(".")
        if not host:
            raise UnsafeUrlError("URL has no hostname")
        if host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_SUFFIXES):
            raise UnsafeUrlError("Internal hostnames are not allowed")

        try:
            addresses = await self._resolve(host, port or (443 if parts.scheme == "https" else 80))
        except (socket.gaierror, UnicodeError) as exc:
            raise UnsafeUrlError("Hostname could not be resolved") from exc
        if not addresses:
            raise UnsafeUrlError("Hostname could not be resolved")
        for address in addresses:
            if not is_public_address(address):
                raise UnsafeUrlError("URL resolves to a non-public IP address")

    async def fetch(self, url: str) -> str:
        """GET the feed, validating the URL and every redirect target first."""
        current = url
        for _hop in range(self._config.max_redirects + 1):
            await self.ensure_safe_url(current)
            try:
                response = await self._http_client.get(
                    current,
                    headers={
                        "User-Agent": self._config.user_agent,
                        "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.1",
                    },
                    timeout=self._config.timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                raise FeedError("Request timeout - ICS feed took too long to respond") from exc
            except httpx.HTTPError as exc:
                raise FeedError(f"Failed to fetch ICS feed: {exc}") from exc

            if response.is_redirect:
                location = response.headers.get("location")
                if not location:
                    raise FeedError(
                        f"HTTP {response.status_code} redirect without a Location header",
                        status_code=response.status_code,
                    )
                current = urljoin(current, location)
                logger.debug("Following feed redirect to %s", current)
                continue

            if response.status_code < 200 or response.status_code >= 300:
                raise FeedError(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    status_code=response.status_code,
                )
            content_type = response.headers.get("content-type", "")
            if content_type and not any(
                kind in content_type for kind in ("text/calendar", "text/plain")
            ):
                logger.warning("Unexpected feed content-type: %s", content_type)
            return response.text

        raise FeedError(f"Too many redirects (more than {self._config.max_redirects})")

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _as_utc(value: date | datetime, default_tz: tzinfo) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=UTC)
    if value.tzinfo is None:
        value = value.replace(tzinfo=default_tz)
    return value.astimezone(UTC)


def _text(component: Any, name: str) -> str | None:
    raw = component.get(name)
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _parse_vevent(component: Any, default_tz: tzinfo) -> FeedEvent | None:
    uid = _text(component, "UID")
    dtstart = component.get("DTSTART")
    if uid is None or dtstart is None:
        logger.warning("Skipping VEVENT without UID or DTSTART (uid=%r)", uid)
        return None

    raw_start = dtstart.dt
    is_all_day = not isinstance(raw_start, datetime)

    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        raw_end = dtend.dt
    elif duration is not None:
        raw_end = raw_start + duration.dt
    else:
        raw_end = raw_start + (timedelta(days=1) if is_all_day else timedelta(hours=1))

    start_time = _as_utc(raw_start, default_tz)
    end_time = _as_utc(raw_end, default_tz)
    if end_time < start_time:
        end_time = start_time

    title = _text(component, "SUMMARY") or ""
    description = _text(component, "DESCRIPTION")
    status = (_text(component, "STATUS") or "").upper()
    is_cancelled = status == "CANCELLED"
    if _CANCELLED_PREFIX.match(title):
        is_cancelled = True
        title = _CANCELLED_PREFIX.sub("", title).strip()
        if description:
            description = _CANCELLED_PREFIX.sub("", description).strip() or None

    modified = component.get("LAST-MODIFIED") or component.get("DTSTAMP")
    last_modified = _as_utc(modified.dt, UTC) if modified is not None else None

    return FeedEvent(
        uid=uid,
        title=title or UNTITLED_EVENT,
        description=description,
        location=_text(component, "LOCATION"),
        start_time=start_time,
        end_time=end_time,
        is_all_day=is_all_day,
        is_cancelled=is_cancelled,
        last_modified=last_modified,
    )


def parse_feed(ics_text: str, *, default_timezone: str = "UTC") -> ParsedFeed:
    """Parse an ICS document into feed events keyed by UID (first occurrence wins).

    Floating (zone-less) times are read in *default_timezone*.

    Raises
    ------
    FeedError
        If the body is not a parseable VCALENDAR.
    """
    try:
        calendar = Calendar.from_ical(ics_text)
    except (ValueError, IndexError, KeyError) as exc:
        raise FeedError(f"Failed to parse ICS feed: {exc}") from exc
    if getattr(calendar, "name", None) != "VCALENDAR":
        raise FeedError("Failed to parse ICS feed: document is not a VCALENDAR")

    default_tz = ZoneInfo(default_timezone)
    parsed = ParsedFeed(calendar_name=_text(calendar, "X-WR-CALNAME") or _text(calendar, "NAME"))
    seen: set[str] = set()
    for component in calendar.walk("VEVENT"):
        try:
            event = _parse_vevent(component, default_tz)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping unparseable VEVENT: %s", exc)
            event = None
        if event is None:
            parsed.skipped += 1
            continue
        if event.uid in seen:
            logger.debug("Ignoring repeated VEVENT for uid %s", event.uid)
            continue
        seen.add(event.uid)
        parsed.events.append(event)
    return parsed


async def validate_feed(
    client: FeedClient, url: str, *, default_timezone: str = "UTC"
) -> FeedValidation:
    """Fetch and parse *url* to report what a calendar created from it would hold."""
    try:
        parsed = parse_feed(await client.fetch(url), default_timezone=default_timezone)
    except FeedError as exc:
        return FeedValidation(valid=False, error=exc.message)

    name = parsed.calendar_name or UNNAMED_CALENDAR
    if not parsed.events:
        return FeedValidation(
            valid=True, calendar_name=name, event_count=0, error="Calendar contains no events"
        )
    return FeedValidation(
        valid=True,
        calendar_name=name,
        event_count=len(parsed.events),
        earliest=min(e.start_time for e in parsed.events),
        latest=max(e.end_time for e in parsed.events),
    )
