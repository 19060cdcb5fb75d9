"""Shared fixtures for the koordi test suite.

Service tests run against the in-memory doubles in ``tests/_fakes.py``.
DB-backed tests share one PostgreSQL testcontainer per session; each use of
``provisioned_postgres_pool`` provisions a fresh, randomly named database,
migrated to the latest revision, so rows never leak between tests.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from koordi.config import SupplementalConfig, SyncConfig
from koordi.maps import Coordinates, GeocodeResult, GoogleMapsClient, TravelTime
from koordi.mirror import MirrorSynchronizer
from koordi.models import EventCalendar, User
from koordi.supplemental import SupplementalGenerator
from tests._fakes import (
    HOME,
    OUTBOUND_MINUTES,
    RETURN_MINUTES,
    VENUE,
    FakeProviderFactory,
    FakeStore,
)

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

# ---------------------------------------------------------------------------
# Service-level doubles
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def providers() -> FakeProviderFactory:
    return FakeProviderFactory()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(user_timeout_seconds=2.0, default_timezone="America/Los_Angeles")


@pytest.fixture
def mirror(store: FakeStore, providers: FakeProviderFactory, sync_config) -> MirrorSynchronizer:
    return MirrorSynchronizer(store, providers, sync_config)


async def _travel_time(
    origin: Coordinates,
    destination: Coordinates,
    *,
    depart_at: datetime | None = None,
    arrive_by: datetime | None = None,
) -> TravelTime:
    minutes = OUTBOUND_MINUTES if arrive_by is not None else RETURN_MINUTES
    return TravelTime(
        duration_minutes=minutes - 5,
        duration_in_traffic_minutes=minutes,
        distance_meters=8_000,
    )


@pytest.fixture
def maps() -> AsyncMock:
    """GoogleMapsClient double: fixed venue coordinates, 25 min out, 20 min back."""
    client = AsyncMock(spec=GoogleMapsClient)
    client.geocode.return_value = GeocodeResult(
        address="Civic Center Field",
        coordinates=VENUE,
        formatted_address="Civic Center Field, San Francisco, CA",
    )
    client.travel_time.side_effect = _travel_time
    return client


@pytest.fixture
def supplemental(store: FakeStore, maps: AsyncMock, mirror: MirrorSynchronizer):
    return SupplementalGenerator(store, maps, mirror, SupplementalConfig())


@dataclass
class Household:
    """A calendar owned by Alex, shared with Blair; both mirror to Google."""

    alex: User
    blair: User
    calendar: EventCalendar


@pytest.fixture
def household(store: FakeStore) -> Household:
    alex = store.add_user(
        name="Alex Rivera",
        email="alex@example.com",
        home_address="1 Home St",
        home_latitude=HOME.lat,
        home_longitude=HOME.lng,
        comfort_buffer_minutes=5,
        google_refresh_token_enc="aa:bb",
        google_calendar_sync_enabled=True,
    )
    blair = store.add_user(
        name="Blair Chen",
        email="blair@example.com",
        home_address="9 Other Ave",
        home_latitude=37.8,
        home_longitude=-122.4,
        comfort_buffer_minutes=10,
        google_refresh_token_enc="cc:dd",
        google_calendar_sync_enabled=True,
    )
    calendar = store.add_calendar(alex)
    store.add_member(calendar, blair)
    return Household(alex=alex, blair=blair, calendar=calendar)


# ---------------------------------------------------------------------------
# PostgreSQL (testcontainers)
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from koordi.db import Database
    from koordi.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await run_migrations(db.url)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
