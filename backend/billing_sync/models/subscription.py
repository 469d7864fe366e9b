"""
User subscription model.

WHY: A user subscription is the internal half of a recurring-charge agreement.
The provider-side half (the preapproval) is referenced by
``provider_subscription_id``. Status drives entitlement.

SNAPSHOTS:
``plan_name``, ``amount``, ``currency`` and ``billing_cycle`` are copied from
the catalog when the record is created so historical records keep their
meaning after the catalog changes.

ORDERING:
``provider_last_modified`` is the provider's own last-modified timestamp of the
last update that was applied. Webhook-derived updates carrying an older or
equal timestamp are discarded, which makes replays and out-of-order deliveries
harmless. Payments carry their own clock and are ordered against
``payment_last_updated`` instead, so a payment never hides a later
preapproval change.

LIFECYCLE:
pending_payment -> on_hold -> active -> {paused, cancelled, expired}
Terminal records are never revived; a new subscription is a new row.
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Enum,
    ForeignKey,
    JSON,
)

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin
from billing_sync.models.plan import BillingCycle


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription status values.

    Statuses:
    - PENDING_PAYMENT: created, waiting for the first authorization
    - ON_HOLD: payment submitted, waiting for accreditation
    - ACTIVE: authorized by the provider, grants publisher access
    - PAUSED: paused at the provider
    - CANCELLED: cancelled by the user, a plan change or the provider
    - EXPIRED: ran out its term at the provider
    """

    PENDING_PAYMENT = "pending_payment"
    ON_HOLD = "on_hold"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})

# WHY: A payment that is waiting for accreditation still grants access, so a
# publisher is not locked out while the provider processes the charge.
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.ON_HOLD})


class UserSubscription(Base, PrimaryKeyMixin, TimestampMixin):
    """A user's subscription to a catalog plan."""

    __tablename__ = "user_subscriptions"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Snapshots taken at creation
    plan_name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ARS")
    billing_cycle = Column(Enum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)

    status = Column(
        Enum(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.PENDING_PAYMENT,
        index=True,
    )

    # Provider linkage
    provider_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    provider_status = Column(String(50), nullable=True, doc="Raw status last seen at the provider")
    provider_last_modified = Column(DateTime, nullable=True)
    payment_last_updated = Column(DateTime, nullable=True, doc="Provider time of the last applied payment")
    status_checked_at = Column(DateTime, nullable=True)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    # WHY: "metadata" is reserved on declarative classes, so the attribute
    # is extra_data while the column keeps the domain name.
    extra_data = Column("metadata", JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"status={self.status.value})>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def external_reference(self) -> str:
        """Reference the provider echoes back on recurring payments."""
        return f"subscription_{self.plan_id}_{self.user_id}"
