"""
Billing Service - Stripe Checkout and Billing Portal sessions.

Checkout completion is not observed here: it arrives asynchronously as a
checkout.session.completed webhook and goes through the reconciler.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings, STATUS_ACTIVE
from crud.entitlement import EntitlementRepository
from services.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


class BillingService:
    """
    Service class for starting checkout and billing-portal flows.
    """

    def __init__(self, db: AsyncSession, provider):
        """
        Initialize the billing service.

        Args:
            db: AsyncSession instance for database operations
            provider: Billing provider adapter
        """
        self.db = db
        self.provider = provider
        self.repo = EntitlementRepository(db)

    async def create_checkout_session(
        self,
        user_id: int,
        email: str,
        origin: Optional[str] = None,
        billing_setup: bool = False,
    ):
        """
        Create a Stripe Checkout session for a subscription.

        Customers that already have an active subscription get a billing
        portal URL instead. The trial period is only offered to customers
        without any subscription history, or for an explicit billing setup.

        Args:
            user_id: Local user id
            email: Account e-mail, used to find or create the Stripe customer
            origin: Frontend origin for the redirect URLs
            billing_setup: Whether this checkout is the post-signup billing setup

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        if not settings.stripe_price_id:
            logger.error("STRIPE_PRICE_ID is not set. Cannot create checkout session.")
            return {"error": "STRIPE_PRICE_ID is not set. Cannot create checkout session.", "is_error": True}

        frontend_url = origin or settings.frontend_url or "http://localhost:3000"

        try:
            record = await self.repo.get_by_user_id(user_id)
            customer_id = record.provider_customer_id if record else None
            if customer_id is None:
                customer = await self.provider.find_customer_by_email(email)
                customer_id = customer.id if customer else None

            has_history = False
            if customer_id:
                active = await self.provider.find_subscription(customer_id, STATUS_ACTIVE)
                if active is not None:
                    logger.info(f"User {user_id} already subscribed, redirecting to billing portal")
                    url = await self.provider.create_portal_session(
                        customer_id, return_url=f"{frontend_url}/settings?tab=billing"
                    )
                    return {"data": url, "is_error": False}
                has_history = await self.provider.has_any_subscription(customer_id)

            offer_trial = billing_setup or not has_history
            if billing_setup:
                success_url = f"{frontend_url}/dashboard?billing_setup=success"
                cancel_url = f"{frontend_url}/dashboard?billing_setup=cancelled"
            else:
                success_url = f"{frontend_url}/settings?success=true&tab=billing"
                cancel_url = f"{frontend_url}/settings?canceled=true"

            url = await self.provider.create_checkout_session(
                customer_id=customer_id,
                email=email,
                price_id=settings.stripe_price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                trial_days=settings.trial_days if offer_trial else None,
                metadata={"user_id": str(user_id), "billing_setup": "true"} if billing_setup else {"user_id": str(user_id)},
            )
            logger.info(f"Checkout session created for user {user_id} (trial offered: {offer_trial})")
            return {"data": url, "is_error": False}
        except ProviderUnavailable as e:
            logger.error(f"Failed to create checkout session: {e}")
            return {"error": str(e), "is_error": True}

    async def create_billing_portal_session(self, user_id: int, origin: Optional[str] = None):
        """
        Create a Stripe Billing Portal session for the user's linked customer.

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        record = await self.repo.get_by_user_id(user_id)
        if record is None or not record.provider_customer_id:
            logger.error(f"User {user_id} has no linked Stripe customer.")
            return {"error": "No billing account linked to this user.", "is_error": True}

        frontend_url = origin or settings.frontend_url or "http://localhost:3000"
        try:
            url = await self.provider.create_portal_session(
                record.provider_customer_id, return_url=f"{frontend_url}/settings"
            )
            return {"data": url, "is_error": False}
        except ProviderUnavailable as e:
            logger.error(f"Failed to create billing portal session: {e}")
            return {"error": str(e), "is_error": True}
