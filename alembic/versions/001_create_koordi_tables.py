"""create_koordi_tables

Revision ID: koordi_001
Revises:
Create Date: 2026-05-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "koordi_001"
down_revision = None
branch_labels = ("koordi",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            home_address TEXT,
            home_latitude DOUBLE PRECISION,
            home_longitude DOUBLE PRECISION,
            comfort_buffer_minutes INTEGER NOT NULL DEFAULT 5,
            keep_supplemental_events BOOLEAN NOT NULL DEFAULT false,
            google_refresh_token_enc TEXT,
            google_calendar_id TEXT NOT NULL DEFAULT 'primary',
            google_calendar_sync_enabled BOOLEAN NOT NULL DEFAULT false,
            timezone TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS event_calendars (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            ics_url TEXT NOT NULL,
            owner_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            sync_enabled BOOLEAN NOT NULL DEFAULT true,
            sync_in_progress BOOLEAN NOT NULL DEFAULT false,
            sync_started_at TIMESTAMPTZ,
            last_sync_at TIMESTAMPTZ,
            last_sync_status TEXT NOT NULL DEFAULT 'pending',
            last_sync_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS event_calendar_memberships (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            event_calendar_id UUID NOT NULL REFERENCES event_calendars (id) ON DELETE CASCADE,
            user_id UUID REFERENCES users (id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (event_calendar_id, user_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            event_calendar_id UUID NOT NULL REFERENCES event_calendars (id) ON DELETE CASCADE,
            ics_uid TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            location_lat DOUBLE PRECISION,
            location_lng DOUBLE PRECISION,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            is_all_day BOOLEAN NOT NULL DEFAULT false,
            is_cancelled BOOLEAN NOT NULL DEFAULT false,
            assigned_to_user_id UUID REFERENCES users (id) ON DELETE SET NULL,
            is_skipped BOOLEAN NOT NULL DEFAULT false,
            version INTEGER NOT NULL DEFAULT 1,
            sync_in_progress BOOLEAN NOT NULL DEFAULT false,
            sync_started_at TIMESTAMPTZ,
            last_modified TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (event_calendar_id, ics_uid)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_events_assignee_start
        ON events (assigned_to_user_id, start_time)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS supplemental_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            parent_event_id UUID NOT NULL REFERENCES events (id) ON DELETE CASCADE,
            kind TEXT NOT NULL,
            title TEXT NOT NULL,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            origin_address TEXT,
            origin_lat DOUBLE PRECISION,
            origin_lng DOUBLE PRECISION,
            destination_address TEXT,
            destination_lat DOUBLE PRECISION,
            destination_lng DOUBLE PRECISION,
            drive_time_minutes INTEGER,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (kind IN ('outbound_travel', 'early_arrival', 'return_travel')),
            UNIQUE (parent_event_id, kind)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS user_google_event_syncs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            event_id UUID REFERENCES events (id) ON DELETE CASCADE,
            supplemental_event_id UUID REFERENCES supplemental_events (id) ON DELETE CASCADE,
            google_event_id TEXT NOT NULL,
            sync_type TEXT NOT NULL,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (sync_type IN ('main', 'supplemental')),
            CHECK ((event_id IS NULL) <> (supplemental_event_id IS NULL))
        )
    """)

    # One link per (user, event) and per (user, supplemental event).
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_user_google_event_syncs_main
        ON user_google_event_syncs (user_id, event_id)
        WHERE event_id IS NOT NULL
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_user_google_event_syncs_supplemental
        ON user_google_event_syncs (user_id, supplemental_event_id)
        WHERE supplemental_event_id IS NOT NULL
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_google_event_syncs")
    op.execute("DROP TABLE IF EXISTS supplemental_events")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS event_calendar_memberships")
    op.execute("DROP TABLE IF EXISTS event_calendars")
    op.execute("DROP TABLE IF EXISTS users")
