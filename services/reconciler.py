"""
Reconciler - merges billing-provider observations into the entitlement store.

Delivery is at-least-once and unordered across event types. Every handler
writes only values taken from the observation it is processing (plus the
provider's current view where it has to ask), so replays are no-ops and
last-write-wins is safe. The entitlement query service re-derives from the
provider on every read, which is what makes transient divergence here
acceptable.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import STATUS_INACTIVE, STATUS_TRIALING, STATUS_ACTIVE
from crud.entitlement import EntitlementRepository
from database_models import EntitlementRecord
from models.entitlement import (
    CheckoutCompleted,
    Observation,
    SubscriptionCanceled,
    SubscriptionChanged,
)
from services.errors import NotFoundError

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "trialing": STATUS_TRIALING,
}

SUBSCRIPTION_UPSERT_EVENTS = ("customer.subscription.created", "customer.subscription.updated")


def map_provider_status(provider_status: Optional[str]) -> str:
    """Map a provider subscription status onto the local status enum."""
    return _STATUS_MAP.get((provider_status or "").lower(), STATUS_INACTIVE)


def _id_of(value) -> Optional[str]:
    # Expanded objects carry the id inside; collapsed references are plain strings
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def observation_from_event(event: dict) -> Optional[Observation]:
    """
    Translate a verified Stripe webhook event into an observation.

    Returns:
        The observation, or None for events that carry no subscription state
    """
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        customer_id = _id_of(obj.get("customer"))
        subscription_id = _id_of(obj.get("subscription"))
        if customer_id and subscription_id:
            return CheckoutCompleted(customer_id=customer_id, subscription_id=subscription_id)
        return None

    if event_type in SUBSCRIPTION_UPSERT_EVENTS:
        return SubscriptionChanged(
            customer_id=_id_of(obj.get("customer")),
            subscription_id=obj["id"],
            provider_status=obj.get("status"),
        )

    if event_type == "customer.subscription.deleted":
        return SubscriptionCanceled(
            customer_id=_id_of(obj.get("customer")),
            subscription_id=obj.get("id"),
        )

    # Catch-all for other subscription-bearing events (paused, resumed, customer.updated...)
    if "subscription" in event_type or "customer" in event_type:
        if obj.get("object") == "subscription" and obj.get("customer"):
            return SubscriptionChanged(
                customer_id=_id_of(obj["customer"]),
                subscription_id=obj["id"],
                provider_status=obj.get("status"),
            )
        if obj.get("object") == "customer":
            subscriptions = (obj.get("subscriptions") or {}).get("data") or []
            if subscriptions:
                latest = subscriptions[0]
                return SubscriptionChanged(
                    customer_id=obj["id"],
                    subscription_id=latest["id"],
                    provider_status=latest.get("status"),
                )
    return None


class Reconciler:
    """
    Idempotent handlers for checkout completions and subscription changes.

    Failure semantics:
        ProviderUnavailable - provider lookup failed; the delivery mechanism retries
        StoreWriteError     - local write failed; the delivery mechanism retries
        NotFoundError       - no matching local user; permanent skip
    """

    def __init__(self, db: AsyncSession, provider):
        self.db = db
        self.provider = provider
        self.repo = EntitlementRepository(db)

    async def reconcile(
        self,
        observation: Observation,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> EntitlementRecord:
        """
        Apply one observation to the matching user's entitlement record.

        Args:
            observation: The observation to apply
            event_id: Provider event id, kept on the audit trail
            event_type: Provider event type, kept on the audit trail

        Returns:
            The record after the write has been committed

        Raises:
            NotFoundError: No local user matches the provider customer
        """
        record = await self._resolve_record(observation.customer_id)
        if record is None:
            logger.info(
                f"No local user for customer {observation.customer_id}; "
                f"dropping {observation.kind} (event {event_id})"
            )
            raise NotFoundError(f"No local user for customer {observation.customer_id}")

        status, subscription_id = await self._target_state(observation)
        previous_status = await self.repo.apply_status(
            record,
            status=status,
            customer_id=observation.customer_id,
            subscription_id=subscription_id,
        )

        if previous_status is not None:
            await self.repo.record_event(
                user_id=record.user_id,
                event_type=event_type or observation.kind,
                previous_status=previous_status,
                new_status=status,
                subscription_id=observation.subscription_id,
                provider_event_id=event_id,
            )
            logger.info(
                f"User {record.user_id} entitlement {previous_status} -> {status} "
                f"({observation.kind}, event {event_id})"
            )
        else:
            logger.info(f"User {record.user_id} entitlement unchanged at {status} ({observation.kind})")

        await self.repo.commit()
        return record

    async def _resolve_record(self, customer_id: str) -> Optional[EntitlementRecord]:
        # A stored customer link survives e-mail changes on either side
        record = await self.repo.get_by_customer_id(customer_id)
        if record is not None:
            return record

        customer = await self.provider.retrieve_customer(customer_id)
        if customer is None or customer.deleted or not customer.email:
            return None
        return await self.repo.get_by_email(customer.email)

    async def _target_state(self, observation: Observation) -> tuple[str, Optional[str]]:
        if isinstance(observation, SubscriptionCanceled):
            return STATUS_INACTIVE, None

        if isinstance(observation, CheckoutCompleted):
            subscription = await self.provider.retrieve_subscription(observation.subscription_id)
            status = map_provider_status(subscription.status)
        else:
            status = map_provider_status(observation.provider_status)

        if status == STATUS_INACTIVE:
            return STATUS_INACTIVE, None
        return status, observation.subscription_id
