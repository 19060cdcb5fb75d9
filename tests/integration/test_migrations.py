"""Alembic baseline against a real PostgreSQL (testcontainers)."""

from __future__ import annotations

import uuid

import asyncpg
import pytest

from koordi.db import Database
from koordi.migrations import run_migrations

pytestmark = pytest.mark.integration

KOORDI_TABLES = {
    "users",
    "event_calendars",
    "event_calendar_memberships",
    "events",
    "supplemental_events",
    "user_google_event_syncs",
}


def _database(postgres_container, schema: str | None = None) -> Database:
    return Database(
        db_name=f"test_{uuid.uuid4().hex[:12]}",
        schema=schema,
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
    )


async def _inspect(db: Database, schema: str) -> tuple[set[str], str]:
    """Return the tables in *schema* and the revision recorded there."""
    conn = await asyncpg.connect(**db._connect_kwargs(db.db_name))
    try:
        rows = await conn.fetch(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = $1",
            schema,
        )
        version = await conn.fetchval(f'SELECT version_num FROM "{schema}".alembic_version')
    finally:
        await conn.close()
    return {row["table_name"] for row in rows}, version


async def test_upgrade_creates_tables_and_is_repeatable(postgres_container):
    db = _database(postgres_container)
    await db.provision()

    await run_migrations(db.url)
    await run_migrations(db.url)

    tables, version = await _inspect(db, "public")
    assert KOORDI_TABLES <= tables
    assert version == "koordi_001"


async def test_schema_scoped_upgrade(postgres_container):
    db = _database(postgres_container, schema="family")
    await db.provision()

    await run_migrations(db.url, schema=db.schema)

    tables, version = await _inspect(db, "family")
    assert KOORDI_TABLES <= tables
    assert version == "koordi_001"
