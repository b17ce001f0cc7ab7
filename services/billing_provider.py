"""
Billing Provider - thin async adapter over the Stripe SDK.

Every call is a blocking Stripe request run in a worker thread with a hard
timeout. Any network error, API error or timeout surfaces as
ProviderUnavailable; callers decide whether that means "deny" or "retry".
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import stripe

from config.settings import settings
from models.entitlement import ProviderCustomer, ProviderSubscription
from services.errors import ProviderUnavailable
from utils.time_utils import from_timestamp

logger = logging.getLogger(__name__)

# Initialize Stripe client
if settings.stripe_secret_key:
    stripe.api_key = settings.stripe_secret_key
else:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")


def _customer_from_stripe(obj) -> ProviderCustomer:
    return ProviderCustomer(
        id=obj["id"],
        email=obj.get("email"),
        deleted=bool(obj.get("deleted", False)),
    )


def _subscription_from_stripe(obj) -> ProviderSubscription:
    items = obj.get("items")
    first_item = items["data"][0] if items and items["data"] else None

    # Newer API versions moved the billing period onto the subscription items
    period_end = obj.get("current_period_end")
    if period_end is None and first_item is not None:
        period_end = first_item.get("current_period_end")

    product_id = None
    if first_item is not None and first_item.get("price"):
        product = first_item["price"].get("product")
        product_id = product if isinstance(product, str) or product is None else product.get("id")

    customer = obj.get("customer")
    return ProviderSubscription(
        id=obj["id"],
        customer_id=customer if isinstance(customer, str) else customer["id"],
        status=obj.get("status") or "",
        current_period_end=from_timestamp(period_end),
        trial_end=from_timestamp(obj.get("trial_end")),
        product_id=product_id,
    )


class StripeBillingProvider:
    """
    Read and session-creation operations against Stripe, as used by the
    reconciler, the entitlement query service and checkout.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds

    async def _call(self, operation: str, func: Callable[..., Any], **params) -> Any:
        if not stripe.api_key:
            raise ProviderUnavailable("STRIPE_SECRET_KEY is not set")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, **params),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Stripe {operation} timed out after {self.timeout_seconds}s")
            raise ProviderUnavailable(f"Stripe {operation} timed out") from e
        except stripe.StripeError as e:
            logger.warning(f"Stripe {operation} failed: {e}")
            raise ProviderUnavailable(f"Stripe {operation} failed: {e}") from e

    async def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        customers = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        if not customers.data:
            return None
        return _customer_from_stripe(customers.data[0])

    async def retrieve_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        """
        Fetch a customer by id.

        Returns:
            The customer (possibly flagged deleted), or None if Stripe has no
            such customer at all
        """
        try:
            customer = await self._call("customer retrieve", stripe.Customer.retrieve, id=customer_id)
        except ProviderUnavailable as e:
            cause = e.__cause__
            if isinstance(cause, stripe.InvalidRequestError) and cause.http_status == 404:
                return None
            raise
        return _customer_from_stripe(customer)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = await self._call(
            "subscription retrieve", stripe.Subscription.retrieve, id=subscription_id
        )
        return _subscription_from_stripe(subscription)

    async def find_subscription(self, customer_id: str, status: str) -> Optional[ProviderSubscription]:
        subscriptions = await self._call(
            "subscription lookup",
            stripe.Subscription.list,
            customer=customer_id,
            status=status,
            limit=1,
        )
        if not subscriptions.data:
            return None
        return _subscription_from_stripe(subscriptions.data[0])

    async def has_any_subscription(self, customer_id: str) -> bool:
        subscriptions = await self._call(
            "subscription history", stripe.Subscription.list, customer=customer_id, status="all", limit=1
        )
        return bool(subscriptions.data)

    async def create_checkout_session(
        self,
        customer_id: Optional[str],
        email: Optional[str],
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "allow_promotion_codes": True,
            "metadata": metadata or {},
        }
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email
        if trial_days:
            params["subscription_data"] = {"trial_period_days": trial_days}

        session = await self._call("checkout session", stripe.checkout.Session.create, **params)
        return session.url

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = await self._call(
            "billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url


_provider: Optional[StripeBillingProvider] = None


def get_billing_provider() -> StripeBillingProvider:
    """FastAPI dependency returning the shared Stripe adapter."""
    global _provider
    if _provider is None:
        _provider = StripeBillingProvider()
    return _provider
