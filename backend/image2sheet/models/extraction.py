"""
Image2Sheet Backend — Extraction SQLAlchemy Model
==================================================

What:  ORM model for the `extractions` table (per-user extraction history).
Who:   Written by ExtractionService after every authenticated extraction
       attempt (successful or failed); read by the history, detail and
       stats endpoints and by the usage summary (total extraction count).

Guest extractions are never persisted.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from image2sheet.database import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from image2sheet.models.user import User


class Extraction(Base):
    """One table-extraction attempt by an authenticated user."""

    __tablename__ = "extractions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    module_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="table_extraction",
        index=True,
    )

    # Preview only: the first 1000 characters of the base64 payload
    image_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # {"headers": [...], "rows": [[...], ...]}; {} for failed attempts
    extracted_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    success: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped["User"] = relationship(back_populates="extractions")

    __table_args__ = (
        Index("idx_extractions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Extraction(id={self.id}, user_id={self.user_id}, "
            f"success={self.success}, created_at='{self.created_at}')>"
        )
