"""Subscription SQLAlchemy model."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tigube_api.db.database import Base

if TYPE_CHECKING:
    from tigube_api.models.user import User

SUBSCRIPTION_STATUSES = ("active", "cancelled", "past_due", "unpaid")


class Subscription(Base):
    """
    One billing relationship with Stripe.

    Rows are never deleted; only their status changes. A user may
    have any number of historical rows but at most one active row,
    enforced by a partial unique index.

    Attributes:
        id: UUID primary key
        user_id: Foreign key to users table
        user_type: Role the plan was bought for - owner or caretaker
        plan_type: Paid tier - premium or professional
        status: active, cancelled, past_due or unpaid
        stripe_customer_id: Stripe customer ID
        stripe_subscription_id: Stripe subscription ID
        stripe_checkout_session_id: Checkout session that created the row (unique)
        amount_paid_cents: Amount paid in minor currency units
        currency: ISO currency code, lower case
        billing_interval: Stripe recurring interval, e.g. month
        started_at: Start of the billing relationship
        ends_at: End of the current billing period
        extra_metadata: Free-form metadata copied from the checkout session
        created_at: When the subscription was created
        updated_at: When the subscription was last updated
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_type: Mapped[str] = mapped_column(String, nullable=False)
    plan_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="active",
        index=True,
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        index=True,
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        index=True,
    )
    stripe_checkout_session_id: Mapped[str] = mapped_column(
        String,
        unique=True,
        nullable=False,
    )
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String, nullable=False, default="eur")
    billing_interval: Mapped[str] = mapped_column(String, nullable=False, default="month")
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    extra_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscriptions",
    )

    def __repr__(self) -> str:
        return f"<Subscription {self.plan_type} ({self.status})>"

    @property
    def is_active(self) -> bool:
        """Check if the subscription currently grants its plan."""
        return self.status == "active"
