"""
Entitlement models: provider observations, provider views, the snapshot
returned to clients and the derived client-side trial state.
"""
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel

from config.settings import STATUS_INACTIVE
from utils.time_utils import ensure_utc

WARNING_INFO = "info"
WARNING_WARNING = "warning"
WARNING_CRITICAL = "critical"
WARNING_EXPIRED = "expired"


# Observations fed to the reconciler

class CheckoutCompleted(BaseModel):
    kind: Literal["checkout_completed"] = "checkout_completed"
    customer_id: str
    subscription_id: str


class SubscriptionChanged(BaseModel):
    kind: Literal["subscription_changed"] = "subscription_changed"
    customer_id: str
    subscription_id: str
    provider_status: Optional[str] = None


class SubscriptionCanceled(BaseModel):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    customer_id: str
    subscription_id: Optional[str] = None


Observation = Union[CheckoutCompleted, SubscriptionChanged, SubscriptionCanceled]


# Billing provider views

class ProviderCustomer(BaseModel):
    id: str
    email: Optional[str] = None
    deleted: bool = False


class ProviderSubscription(BaseModel):
    id: str
    customer_id: str
    status: str
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    product_id: Optional[str] = None


class EntitlementSnapshot(BaseModel):
    """Point-in-time entitlement, computed fresh on every query and never stored."""

    subscribed: bool = False
    in_trial: bool = False
    trial_end: Optional[datetime] = None
    status: str = STATUS_INACTIVE
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @classmethod
    def denied(cls) -> "EntitlementSnapshot":
        """Conservative snapshot used whenever entitlement cannot be established."""
        return cls(subscribed=False, in_trial=False)

    def to_response(self) -> dict:
        return {
            "subscribed": self.subscribed,
            "product_id": self.product_id,
            "subscription_end": self.trial_end.isoformat() if self.trial_end else None,
            "in_trial": self.in_trial,
            "customer_id": self.customer_id,
            "subscription_status": self.status,
        }

    @classmethod
    def from_response(cls, payload: dict) -> "EntitlementSnapshot":
        subscription_end = payload.get("subscription_end")
        return cls(
            subscribed=bool(payload.get("subscribed", False)),
            in_trial=bool(payload.get("in_trial", False)),
            trial_end=ensure_utc(datetime.fromisoformat(subscription_end)) if subscription_end else None,
            status=payload.get("subscription_status") or STATUS_INACTIVE,
            customer_id=payload.get("customer_id"),
            product_id=payload.get("product_id"),
        )


class TrialState(BaseModel):
    is_expired: bool = False
    days_left: int = 0
    hours_left: int = 0
    warning_level: Optional[str] = None
    should_show_warning: bool = False
    has_active_access: bool = False
    trial_end: Optional[datetime] = None
