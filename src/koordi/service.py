"""CoordinationService: the single entry point consumers call.

Wires the store, feed client, maps client and external calendar providers
into the reconciler, assignment controller, supplemental generator and
mirror synchronizer. Every operation returns structured data; per-user
external sync failures are reported, never raised.
"""

from __future__ import annotations

import logging
from uuid import UUID

import asyncpg

from koordi.assignment import AssignmentController
from koordi.config import KoordiConfig
from koordi.feed import FeedClient
from koordi.maps import GoogleMapsClient
from koordi.mirror import MirrorSynchronizer
from koordi.models import (
    AssignmentResult,
    Event,
    FeedValidation,
    ReconcileAllResult,
    ReconcileResult,
    SupplementalEvent,
    SupplementalSet,
    UserSyncOutcome,
)
from koordi.providers import CalendarProviderFactory
from koordi.providers.google import GoogleProviderFactory
from koordi.reconcile import FeedReconciler
from koordi.store import EventStore
from koordi.supplemental import SupplementalGenerator

logger = logging.getLogger(__name__)


class CoordinationService:
    def __init__(
        self,
        store: EventStore,
        *,
        feeds: FeedClient,
        maps: GoogleMapsClient,
        providers: CalendarProviderFactory,
        config: KoordiConfig | None = None,
    ) -> None:
        self.config = config or KoordiConfig()
        self.store = store
        self._feeds = feeds
        self._maps = maps
        self._providers = providers

        self.mirror = MirrorSynchronizer(store, providers, self.config.sync)
        self.supplemental = SupplementalGenerator(
            store, maps, self.mirror, self.config.supplemental
        )
        self.reconciler = FeedReconciler(
            store, feeds, self.mirror, self.supplemental, self.config.sync
        )
        self.assignments = AssignmentController(
            store, self.mirror, self.supplemental, self.config.supplemental
        )

    @classmethod
    def create(cls, pool: asyncpg.Pool, config: KoordiConfig) -> CoordinationService:
        """Build a service with the production Google clients.

        Secrets (maps key, OAuth client, token encryption key) are read from
        the environment on first use.
        """
        return cls(
            EventStore(pool, stale_lock_seconds=config.sync.stale_lock_seconds),
            feeds=FeedClient(config.feed),
            maps=GoogleMapsClient(),
            providers=GoogleProviderFactory(),
            config=config,
        )

    async def aclose(self) -> None:
        await self._feeds.aclose()
        await self._maps.aclose()
        await self._providers.shutdown()

    # Feeds

    async def reconcile_calendar(self, calendar_id: UUID) -> ReconcileResult:
        return await self.reconciler.reconcile(calendar_id)

    async def reconcile_all(self) -> ReconcileAllResult:
        return await self.reconciler.reconcile_all()

    async def validate_feed(self, url: str) -> FeedValidation:
        return await self.reconciler.validate_feed(url)

    # Assignment

    async def assign_event(
        self,
        event_id: UUID,
        caller_id: UUID,
        target_owner_id: UUID | None,
        expected_version: int | None = None,
        skip: bool = False,
    ) -> AssignmentResult:
        return await self.assignments.assign(
            event_id, caller_id, target_owner_id, expected_version=expected_version, skip=skip
        )

    async def check_conflicts(
        self, event_id: UUID, target_owner_id: UUID, caller_id: UUID
    ) -> list[Event]:
        return await self.assignments.check_conflicts(event_id, target_owner_id, caller_id)

    # Supplemental events

    async def generate_supplemental(self, event_id: UUID, owner_id: UUID) -> SupplementalSet:
        return await self.supplemental.generate(event_id, owner_id)

    async def regenerate_supplemental(self, event_id: UUID) -> list[SupplementalEvent]:
        return await self.supplemental.regenerate(event_id)

    # User settings

    async def set_retention(self, user_id: UUID, enabled: bool) -> list[UserSyncOutcome]:
        return await self.mirror.set_retention(user_id, enabled)

    async def disable_user_sync(self, user_id: UUID) -> int:
        return await self.mirror.disable_user_sync(user_id)
