"""
Client Entitlement Cache - session-scoped snapshot with refresh triggers.

Refreshes may overlap (sign-in, the periodic timer and navigation into a
gated screen all share one fetch path). Each refresh takes a sequence
number when it starts; a completion is applied only if it is newer than the
last applied one, so a slow early fetch never overwrites a faster later one.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from config.settings import settings
from models.entitlement import EntitlementSnapshot, TrialState
from services.errors import EntitlementError
from services.trial_service import (
    WarningTracker,
    can_access_feature,
    compute_trial_state,
    trial_status_message,
)
from client.flag_store import InMemoryFlagStore

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    return datetime.now().astimezone()


class EntitlementCache:
    def __init__(self, fetch: Callable[[], Awaitable[EntitlementSnapshot]]):
        self._fetch = fetch
        self._issued = 0
        self._applied = 0
        self.snapshot: Optional[EntitlementSnapshot] = None

    @property
    def in_flight(self) -> int:
        return self._issued - self._applied

    async def refresh(self) -> Optional[EntitlementSnapshot]:
        """
        Fetch a new snapshot and apply it unless a newer request already landed.

        A failed fetch is applied as a denial.

        Returns:
            The snapshot the cache holds after this completion
        """
        self._issued += 1
        sequence = self._issued

        try:
            snapshot = await self._fetch()
        except EntitlementError as e:
            logger.warning(f"Entitlement refresh #{sequence} failed, denying: {e.message}")
            snapshot = EntitlementSnapshot.denied()

        if sequence <= self._applied:
            logger.debug(f"Discarding stale entitlement response #{sequence} (applied #{self._applied})")
            return self.snapshot

        self._applied = sequence
        self.snapshot = snapshot
        return snapshot

    def invalidate(self) -> None:
        """Drop the snapshot and make every in-flight refresh stale."""
        self._applied = self._issued
        self.snapshot = None


class EntitlementSession:
    """
    Owns the entitlement cache and its periodic refresh for one signed-in session.

    Usage:
        async with EntitlementSession(client, token) as session:
            if session.can_access_feature("create_job"):
                ...
    """

    def __init__(
        self,
        client,
        token: str,
        flag_store=None,
        refresh_interval: Optional[float] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.client = client
        self.token = token
        self.refresh_interval = refresh_interval or settings.entitlement_refresh_interval_seconds
        self.cache = EntitlementCache(lambda: self.client.fetch(self.token))
        self.warnings = WarningTracker(flag_store if flag_store is not None else InMemoryFlagStore())
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def snapshot(self) -> EntitlementSnapshot:
        return self.cache.snapshot or EntitlementSnapshot.denied()

    async def start(self) -> EntitlementSnapshot:
        """Sign-in refresh, then start the periodic timer."""
        snapshot = await self.cache.refresh()
        if self._task is None:
            self._task = asyncio.create_task(self._refresh_periodically())
        return snapshot

    async def _refresh_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.cache.refresh()
            except Exception as e:
                logger.error(f"Periodic entitlement refresh failed: {e}", exc_info=True)

    async def enter_gated_screen(self) -> TrialState:
        await self.cache.refresh()
        return self.trial_state()

    async def close(self) -> None:
        """Sign-out: stop the timer and discard anything still in flight."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.cache.invalidate()

    async def __aenter__(self) -> "EntitlementSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def trial_state(self, now: Optional[datetime] = None) -> TrialState:
        now = now or self._clock()
        return compute_trial_state(self.snapshot, now, self.warnings.has_shown_today(now.date()))

    def can_access_feature(self, feature: str, now: Optional[datetime] = None) -> bool:
        return can_access_feature(self.snapshot, self.trial_state(now), feature)

    def status_message(self, now: Optional[datetime] = None) -> str:
        return trial_status_message(self.trial_state(now))

    def mark_warning_shown(self, now: Optional[datetime] = None) -> None:
        now = now or self._clock()
        self.warnings.mark_shown(now.date())
