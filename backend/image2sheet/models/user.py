"""
Image2Sheet Backend — User SQLAlchemy Model
============================================

What:  ORM model for the `users` table.
Who:   Written by the auth flow (find-or-create on sign-in), the entitlement
       resolver (cached premium flag) and the user quota tracker (daily
       counter); read by the profile and usage endpoints.

Quota columns:
    daily_extractions_count is only meaningful relative to
    last_extraction_reset. Once the window (24h) has elapsed the count is
    logically zero even if the row still holds the old value; the quota
    tracker physically resets it on the next admission check.

Entitlement columns:
    is_premium is a denormalized cache. The truth lives in `subscriptions`;
    see services/entitlement_service.py for how the two are reconciled.
"""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from image2sheet.database import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from image2sheet.models.extraction import Extraction
    from image2sheet.models.subscription import Subscription


class User(Base):
    """An authenticated Image2Sheet account (Google / Firebase identity)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ── Identity ──────────────────────────────────────────────────────────
    # Stable external id: Firebase uid or Google `sub`
    google_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    picture_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Entitlement Cache ─────────────────────────────────────────────────
    is_premium: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        index=True,
    )
    premium_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # ── Daily Quota Window ────────────────────────────────────────────────
    daily_extractions_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    last_extraction_reset: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # ── Timestamps ────────────────────────────────────────────────────────
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

    # ── Relationships ─────────────────────────────────────────────────────
    # passive_deletes: the database cascades on user deletion
    subscriptions: Mapped[List["Subscription"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    extractions: Mapped[List["Extraction"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', is_premium={self.is_premium})>"
