from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Enum
from datetime import datetime, timezone
from database import Base

from config.settings import STATUS_INACTIVE, STATUS_TRIALING, STATUS_ACTIVE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SUBSCRIPTION_STATUSES = (STATUS_INACTIVE, STATUS_TRIALING, STATUS_ACTIVE)


class User(Base):
    """
    Account owned by the identity layer. Only what the entitlement engine
    needs: a stable id and the e-mail used to join with the billing provider.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class EntitlementRecord(Base):
    """
    One row per user holding trial timing and the cached billing state.
    Written only by the server (reconciler and entitlement query service).
    """
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    provider_customer_id = Column(String, nullable=True, index=True)
    provider_subscription_id = Column(String, nullable=True)
    status = Column(
        Enum(*SUBSCRIPTION_STATUSES, name="subscription_status", native_enum=False),
        default=STATUS_INACTIVE,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SubscriptionEvent(Base):
    """Audit trail of status transitions applied by reconciliation."""
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_event_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    subscription_id = Column(String, nullable=True)
    previous_status = Column(String, nullable=True)
    new_status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
