"""
Image2Sheet Backend — Subscription SQLAlchemy Model
====================================================

What:  ORM model for the `subscriptions` table (premium purchases).

Lifecycle:
    1. Created as 'active' when a purchase token is verified
    2. active → cancelled on user cancellation (auto_renewing cleared;
       access continues until end_date)
    3. active → expired lazily, the first time the row is read after its
       end_date has passed
    end_date NULL means a non-expiring (lifetime) purchase.

Uniqueness:
    purchase_token is globally unique. The constraint is the last line of
    defence against a replayed token racing past the duplicate check.
"""

import enum
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from image2sheet.database import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from image2sheet.models.user import User


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(Base):
    """A premium purchase recorded for a user."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    purchase_token: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Values: 'active' | 'cancelled' | 'expired' (see SubscriptionStatus)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        server_default=text("'active'"),
        index=True,
    )
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    auto_renewing: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped["User"] = relationship(back_populates="subscriptions")

    def is_live(self, now: datetime) -> bool:
        """Active and not past its end date (the premium-granting condition)."""
        return self.status == SubscriptionStatus.ACTIVE.value and (
            self.end_date is None or self.end_date > now
        )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"status='{self.status}', end_date='{self.end_date}')>"
        )
