"""User SQLAlchemy model."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tigube_api.db.database import Base

if TYPE_CHECKING:
    from tigube_api.models.subscription import Subscription


class User(Base):
    """
    User profile row, created by the sign-up flow.

    The entitlement columns are a cache derived from the user's
    effective plan tier. Only the sync engine writes them.

    Attributes:
        id: UUID primary key, equal to the auth provider's subject claim
        email: User email address
        first_name: Given name
        last_name: Family name
        user_type: Marketplace role - owner or caretaker
        role: Access level - user or admin
        plan_tier: Tier the entitlement columns were derived from
        max_contact_requests: Contact request limit, -1 for unlimited
        max_bookings: Booking limit, -1 for unlimited
        max_environment_images: Environment image upload limit
        advanced_filters: Whether advanced search filters are enabled
        priority_ranking: Whether the profile is ranked first in search
        premium_badge: Whether the premium badge is shown
        show_ads: Whether ads are shown to the user
        search_priority: Search rank, higher is more prominent
        entitlements_synced_at: Last time the cache was converged
        created_at: When the user was created
        updated_at: When the user was last updated
    """

    __tablename__ = "users"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[str] = mapped_column(
        String,
        unique=True,
        nullable=False,
        index=True,
    )
    first_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_type: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="owner",
    )
    role: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="user",
    )

    # Entitlement cache
    plan_tier: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    max_contact_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    max_bookings: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    max_environment_images: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    advanced_filters: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority_ranking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    premium_badge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    show_ads: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    search_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entitlements_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
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
    subscriptions: Mapped[List["Subscription"]] = relationship(
        "Subscription",
        back_populates="user",
        order_by="Subscription.created_at.desc()",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.user_type}, {self.plan_tier or 'unsynced'})>"

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
