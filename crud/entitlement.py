"""
EntitlementRepository - access to the per-user entitlement record and the
subscription event audit trail.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings, STATUS_INACTIVE
from database_models import EntitlementRecord, SubscriptionEvent
from services.errors import StoreWriteError
from utils.time_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)

# Fields a reconciliation is allowed to overwrite
STATUS_FIELDS = ("status", "provider_customer_id", "provider_subscription_id")


class EntitlementRepository:
    """
    Repository class for EntitlementRecord operations.

    Writes are complete overwrites of the status-bearing fields, so two
    writers racing on the same row simply resolve to whichever commits last.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_user_id(self, user_id: int) -> Optional[EntitlementRecord]:
        result = await self.db.execute(
            select(EntitlementRecord).where(EntitlementRecord.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[EntitlementRecord]:
        """
        Retrieve the record joined to a billing-provider customer by e-mail.

        Args:
            email: Customer e-mail as reported by the provider

        Returns:
            EntitlementRecord if a local user matches, None otherwise
        """
        result = await self.db.execute(
            select(EntitlementRecord).where(EntitlementRecord.email == email.lower())
        )
        return result.scalars().first()

    async def get_by_customer_id(self, customer_id: str) -> Optional[EntitlementRecord]:
        result = await self.db.execute(
            select(EntitlementRecord).where(EntitlementRecord.provider_customer_id == customer_id)
        )
        return result.scalars().first()

    async def create(self, user_id: int, email: str, now: Optional[datetime] = None) -> EntitlementRecord:
        """
        Create the record for a user, starting the trial clock.

        trial_ends_at is written here and nowhere else.
        """
        now = now or utcnow()
        record = EntitlementRecord(
            user_id=user_id,
            email=email.lower(),
            trial_ends_at=now + timedelta(days=settings.trial_days),
            status=STATUS_INACTIVE,
            created_at=now,
            updated_at=now,
        )
        self.db.add(record)
        await self._flush()
        logger.info(f"Entitlement record created for user {user_id}, trial ends {record.trial_ends_at.isoformat()}")
        return record

    async def get_or_create(self, user_id: int, email: str, now: Optional[datetime] = None) -> EntitlementRecord:
        record = await self.get_by_user_id(user_id)
        if record is None:
            record = await self.create(user_id, email, now=now)
        return record

    async def apply_status(
        self,
        record: EntitlementRecord,
        status: str,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> Optional[str]:
        """
        Overwrite the status-bearing fields of a record.

        A null customer_id never clears a stored customer link. updated_at
        only moves when something actually changed, so replaying the same
        values leaves the row untouched.

        Returns:
            The previous status if it changed, None otherwise
        """
        updates = {
            "status": status,
            "provider_customer_id": customer_id or record.provider_customer_id,
            "provider_subscription_id": subscription_id,
        }
        changed = {key: value for key, value in updates.items() if getattr(record, key) != value}
        if not changed:
            return None

        previous_status = record.status
        for key, value in changed.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        await self._flush()
        return previous_status if "status" in changed else None

    async def link_customer(self, record: EntitlementRecord, customer_id: str) -> bool:
        """Store the provider customer id on the record. Returns True if it changed."""
        if record.provider_customer_id == customer_id:
            return False
        record.provider_customer_id = customer_id
        record.updated_at = utcnow()
        await self._flush()
        return True

    async def record_event(
        self,
        user_id: int,
        event_type: str,
        previous_status: Optional[str],
        new_status: str,
        subscription_id: Optional[str] = None,
        provider_event_id: Optional[str] = None,
    ) -> SubscriptionEvent:
        event = SubscriptionEvent(
            user_id=user_id,
            provider_event_id=provider_event_id,
            event_type=event_type,
            subscription_id=subscription_id,
            previous_status=previous_status,
            new_status=new_status,
        )
        self.db.add(event)
        await self._flush()
        return event

    async def list_events(self, user_id: int) -> list[SubscriptionEvent]:
        result = await self.db.execute(
            select(SubscriptionEvent)
            .where(SubscriptionEvent.user_id == user_id)
            .order_by(SubscriptionEvent.id)
        )
        return list(result.scalars().all())

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Entitlement store commit failed: {e}", exc_info=True)
            raise StoreWriteError(f"Entitlement store commit failed: {e}") from e

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Entitlement store write failed: {e}", exc_info=True)
            raise StoreWriteError(f"Entitlement store write failed: {e}") from e


def trial_end_of(record: Optional[EntitlementRecord]) -> Optional[datetime]:
    if record is None:
        return None
    return ensure_utc(record.trial_ends_at)
