"""
Subscription plan catalog.

WHY: Plans describe price, billing cycle and quotas. They are mirrored to the
payment provider as preapproval plans; ``provider_plan_id`` is empty until the
plan has been synchronized.
"""

import enum

from sqlalchemy import Column, String, Integer, Numeric, Boolean, Enum, JSON

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin


class BillingCycle(str, enum.Enum):
    """Billing cycles supported by the catalog."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionPlan(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Catalog entry for a publisher subscription plan.

    Quotas:
    - max_posts: listings the subscriber may keep in draft or published state
    - max_bookings: bookings on their listings that may be open at once
    """

    __tablename__ = "subscription_plans"

    name = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ARS")
    billing_cycle = Column(Enum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)
    max_posts = Column(Integer, nullable=False, default=0)
    max_bookings = Column(Integer, nullable=False, default=0)
    features = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    is_visible = Column(Boolean, nullable=False, default=True)

    provider_plan_id = Column(String(255), nullable=True, index=True)

    @property
    def is_synchronized(self) -> bool:
        return bool(self.provider_plan_id)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name}, cycle={self.billing_cycle.value})>"
