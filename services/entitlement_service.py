"""
Entitlement Query Service - live entitlement snapshots for authenticated users.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import STATUS_INACTIVE, STATUS_TRIALING, STATUS_ACTIVE
from crud.entitlement import EntitlementRepository, trial_end_of
from database_models import EntitlementRecord
from models.entitlement import EntitlementSnapshot, ProviderCustomer
from services.errors import ProviderUnavailable, StoreWriteError
from utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class EntitlementQueryService:
    """
    Computes an EntitlementSnapshot from a live provider lookup and writes the
    resolved status back into the entitlement store.

    The caller always gets a snapshot: when the provider cannot be reached the
    answer is a denial, never a guess from the cached record.
    """

    def __init__(self, db: AsyncSession, provider):
        self.db = db
        self.provider = provider
        self.repo = EntitlementRepository(db)

    async def get_entitlement(self, user_id: int, email: str, now: Optional[datetime] = None) -> EntitlementSnapshot:
        now = now or utcnow()

        try:
            record = await self.repo.get_or_create(user_id, email, now=now)
            snapshot = await self._live_snapshot(record, email, now)
        except ProviderUnavailable as e:
            logger.warning(f"Entitlement check for user {user_id} denied, provider unavailable: {e}")
            return EntitlementSnapshot.denied()
        except StoreWriteError as e:
            logger.error(f"Entitlement check for user {user_id} denied, store unavailable: {e}")
            return EntitlementSnapshot.denied()

        try:
            await self._write_back(record, snapshot)
        except StoreWriteError as e:
            # The snapshot came from the provider; a stale cache row is tolerable
            logger.error(f"Entitlement write-back failed for user {user_id}: {e}")

        logger.info(
            f"Entitlement for user {user_id}: subscribed={snapshot.subscribed} "
            f"in_trial={snapshot.in_trial} status={snapshot.status}"
        )
        return snapshot

    async def _resolve_customer(self, record: EntitlementRecord, email: str) -> Optional[ProviderCustomer]:
        if record.provider_customer_id:
            customer = await self.provider.retrieve_customer(record.provider_customer_id)
            if customer is not None and not customer.deleted:
                return customer
        return await self.provider.find_customer_by_email(email)

    async def _live_snapshot(self, record: EntitlementRecord, email: str, now: datetime) -> EntitlementSnapshot:
        customer = await self._resolve_customer(record, email)
        if customer is not None and await self.repo.link_customer(record, customer.id):
            # Kept even if the subscription lookups below fail
            await self.repo.commit()

        if customer is None:
            # Brand-new user without a provider customer: the local trial clock decides
            trial_end = trial_end_of(record)
            in_trial = trial_end is not None and now < trial_end
            logger.info(f"No provider customer for user {record.user_id}; local trial in_trial={in_trial}")
            return EntitlementSnapshot(
                subscribed=False,
                in_trial=in_trial,
                trial_end=trial_end,
                status=STATUS_INACTIVE,
            )

        active = await self.provider.find_subscription(customer.id, STATUS_ACTIVE)
        if active is not None:
            return EntitlementSnapshot(
                subscribed=True,
                in_trial=False,
                trial_end=active.current_period_end,
                status=STATUS_ACTIVE,
                customer_id=customer.id,
                product_id=active.product_id,
                subscription_id=active.id,
            )

        trialing = await self.provider.find_subscription(customer.id, STATUS_TRIALING)
        if trialing is not None:
            return EntitlementSnapshot(
                subscribed=True,
                in_trial=True,
                trial_end=trialing.trial_end,
                status=STATUS_TRIALING,
                customer_id=customer.id,
                product_id=trialing.product_id,
                subscription_id=trialing.id,
            )

        return EntitlementSnapshot(
            subscribed=False,
            in_trial=False,
            status=STATUS_INACTIVE,
            customer_id=customer.id,
        )

    async def _write_back(self, record: EntitlementRecord, snapshot: EntitlementSnapshot) -> None:
        if snapshot.customer_id is None:
            return
        previous_status = await self.repo.apply_status(
            record,
            status=snapshot.status,
            customer_id=snapshot.customer_id,
            subscription_id=snapshot.subscription_id,
        )
        if previous_status is not None:
            await self.repo.record_event(
                user_id=record.user_id,
                event_type="entitlement.refresh",
                previous_status=previous_status,
                new_status=snapshot.status,
                subscription_id=snapshot.subscription_id,
            )
        await self.repo.commit()
