"""
Billing Router - Stripe webhook, checkout and billing portal endpoints
Webhook is defined FIRST to avoid middleware conflicts
"""

import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Request, Depends, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from config import settings
from database import get_db
from services.billing_provider import get_billing_provider
from services.billing_service import BillingService
from services.errors import NotFoundError, ProviderUnavailable, StoreWriteError
from services.reconciler import Reconciler, observation_from_event
from utils.responses import success_response, error_response, webhook_response

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    billing_setup: bool = False


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_billing_provider),
):
    """
    Handle Stripe webhook events with signature verification.

    Stripe redelivers anything that is not answered with a 2xx, so the
    status code is the retry contract:
        400 - bad signature or payload, redelivery cannot help
        200 - written, ignored, or no matching local user
        503 - provider lookup failed, please redeliver
        500 - local store write failed or webhook not configured, please redeliver
    """
    webhook_secret = settings.stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
        return webhook_response(status=500, received=False, error="Webhook secret not configured")

    # Raw body is required for signature verification
    payload = await request.body()

    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature:
        logger.error("Missing Stripe-Signature header")
        return webhook_response(status=400, received=False, error="Missing signature header")

    try:
        stripe.Webhook.construct_event(payload, stripe_signature, webhook_secret)
        event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return webhook_response(status=400, received=False, error="Invalid signature")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return webhook_response(status=400, received=False, error="Invalid payload format")

    event_id = event.get("id")
    event_type = event.get("type")
    logger.info(f"Processing Stripe webhook event {event_id} ({event_type})")

    observation = observation_from_event(event)
    if observation is None:
        logger.info(f"Unhandled event type {event_type}, acknowledged")
        return webhook_response(received=True, event_type=event_type, handled=False)

    try:
        await Reconciler(db, provider).reconcile(observation, event_id=event_id, event_type=event_type)
    except NotFoundError as e:
        # Permanent: redelivery cannot create the missing user
        logger.warning(f"Webhook {event_id} skipped: {e.message}")
        return webhook_response(received=True, event_type=event_type, handled=False)
    except ProviderUnavailable as e:
        logger.error(f"Webhook {event_id} deferred, provider unavailable: {e.message}")
        return webhook_response(status=e.status_code, received=False, error="Billing provider unavailable")
    except StoreWriteError as e:
        logger.error(f"Webhook {event_id} failed to persist: {e.message}")
        return webhook_response(status=e.status_code, received=False, error="Store write failed")

    return webhook_response(received=True, event_type=event_type, handled=True)


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    body: Optional[CheckoutRequest] = None,
    origin: Optional[str] = Header(None),
    x_billing_setup: Optional[str] = Header(None, alias="x-billing-setup"),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_billing_provider),
):
    """
    Start a Stripe Checkout flow for the current user, or return the billing
    portal when the user already has an active subscription.
    """
    billing_setup = (body.billing_setup if body else False) or x_billing_setup == "true"
    result = await BillingService(db, provider).create_checkout_session(
        user["user_id"], user["email"], origin=origin, billing_setup=billing_setup
    )
    if result.get("is_error"):
        return error_response("checkout_failed", status=502, message=result.get("error", "Unknown error"))
    return success_response({"url": result["data"]})


@billing_router.post("/portal")
async def create_billing_portal_session(
    origin: Optional[str] = Header(None),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_billing_provider),
):
    """Create a Stripe Billing Portal session for the current user."""
    result = await BillingService(db, provider).create_billing_portal_session(user["user_id"], origin=origin)
    if result.get("is_error"):
        return error_response("portal_failed", status=400, message=result.get("error", "Unknown error"))
    return success_response({"url": result["data"]})
