"""
Entitlement Router - on-demand entitlement snapshots and the server-side feature gate
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from services.billing_provider import get_billing_provider
from services.entitlement_service import EntitlementQueryService
from services.trial_service import can_access_feature, compute_trial_state
from utils.time_utils import utcnow

logger = logging.getLogger(__name__)

entitlement_router = APIRouter(prefix="/api", tags=["entitlement"])


@entitlement_router.api_route("/entitlement", methods=["GET", "POST"])
async def get_entitlement(
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_billing_provider),
):
    """
    Return a live entitlement snapshot for the authenticated caller.

    Provider failures never fail the request; they yield a denial.
    """
    snapshot = await EntitlementQueryService(db, provider).get_entitlement(user["user_id"], user["email"])
    return snapshot.to_response()


def require_feature(feature: str):
    """
    Dependency factory enforcing the feature gate on mutating endpoints.

    The client-side gate is a convenience; this is the enforcement point.

    Example:
        @router.post("/jobs", dependencies=[Depends(require_feature("create_job"))])
    """
    async def _enforce(
        user: dict = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        provider=Depends(get_billing_provider),
    ) -> dict:
        now = utcnow()
        snapshot = await EntitlementQueryService(db, provider).get_entitlement(user["user_id"], user["email"], now=now)
        state = compute_trial_state(snapshot, now, shown_today=True)
        if not can_access_feature(snapshot, state, feature):
            logger.info(f"User {user['user_id']} denied feature {feature}")
            raise HTTPException(status_code=403, detail=f"Feature '{feature}' requires an active subscription")
        return user

    return _enforce
