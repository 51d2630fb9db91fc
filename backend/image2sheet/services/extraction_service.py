"""
Image2Sheet Backend — Extraction Service (Business Logic)
==========================================================

What:  Orchestrates table extraction for guests and users, plus the
       extraction history queries.
How:   Admission check → image validation → AI extraction → quality
       analysis → (users: history row) → usage increment.
Who:   Called by the extraction route handlers.

Workflows:
    Guest:
        1. Guest quota admission by client IP (429 when exhausted)
        2. Validate + decode the base64 image (400)
        3. Extract the table (502 / 503 on upstream failure)
        4. Count the extraction against the IP (never fails the response)

    Authenticated:
        1. Reconcile entitlement (expiry sweep + premium cache)
        2. User quota admission (429 when exhausted, 503 on datastore error)
        3. Validate + decode the image
        4. Extract the table; on failure record a success=False history row
           and re-raise. Failed attempts do not consume quota.
        5. Persist the history row, then count the extraction (fail open)

History retention:
    Non-premium users only see the last `free_history_days` (7) of history.
    Premium status comes from the entitlement resolver, not the cached column.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.config import settings
from image2sheet.database import utcnow
from image2sheet.exceptions import Image2SheetError, NotFoundError, QuotaExceededError
from image2sheet.models.extraction import Extraction
from image2sheet.services.entitlement_service import EntitlementService, entitlement_service
from image2sheet.services.gemini_service import gemini_service
from image2sheet.services.guest_quota import GuestQuotaTracker, guest_quota_tracker
from image2sheet.services.llm_base import TableData, TableExtractor
from image2sheet.services.quota_window import UNLIMITED, QuotaDecision
from image2sheet.services.table_format import (
    analyze_quality,
    decode_image,
    image_preview,
    to_csv,
    to_markdown,
)
from image2sheet.services.user_quota import UserQuotaTracker, user_quota_tracker

logger = logging.getLogger(__name__)

MODULE_TABLE_EXTRACTION = "table_extraction"


@dataclass
class ExtractionResult:
    """A successful extraction, ready to be rendered by the route."""

    id: Union[int, str]
    table: TableData
    quality: Dict[str, Any]
    processing_time_ms: int
    created_at: datetime
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def markdown(self) -> str:
        return to_markdown(self.table)

    @property
    def csv(self) -> str:
        return to_csv(self.table)


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


def _usage_after_success(decision: QuotaDecision) -> Dict[str, Any]:
    """Usage block reflecting the extraction that was just counted."""
    if decision.limit == UNLIMITED:
        return {"current": decision.current, "limit": UNLIMITED, "remaining": UNLIMITED}
    return {
        "current": decision.current + 1,
        "limit": decision.limit,
        "remaining": max(0, decision.remaining - 1),
    }


def guest_upgrade_message(remaining: int) -> str:
    if remaining <= 0:
        return "You have used all of your guest extractions. Sign in to get more."
    return f"You have {remaining} guest extraction(s) left."


class ExtractionService:
    """
    Extraction orchestration and history.

    Collaborators are injected so tests can swap the extractor and the
    trackers without patching module globals.
    """

    def __init__(
        self,
        extractor: TableExtractor = gemini_service,
        guest_quota: GuestQuotaTracker = guest_quota_tracker,
        user_quota: UserQuotaTracker = user_quota_tracker,
        entitlements: EntitlementService = entitlement_service,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.extractor = extractor
        self.guest_quota = guest_quota
        self.user_quota = user_quota
        self.entitlements = entitlements
        self.clock = clock

    # ── Guest ─────────────────────────────────────────────────────────────

    async def extract_for_guest(
        self, ip: str, image: str, mime_type: str = "image/png"
    ) -> ExtractionResult:
        """
        Raises:
            QuotaExceededError: Guest limit reached for this IP
            ValidationError: Bad image payload
            ExtractionFailedError / CircuitBreakerOpenError: Upstream failure
        """
        decision = await self.guest_quota.check_and_admit(ip)
        if not decision.allowed:
            raise QuotaExceededError(
                message=(
                    f"Guest limit reached. Try again in {decision.hours_until_reset} hours "
                    f"or sign in for more extractions."
                ),
                current=decision.current,
                limit=decision.limit,
                hours_until_reset=decision.hours_until_reset,
                reason=decision.reason,
            )

        image_bytes = decode_image(image)

        start = time.time()
        table = await self.extractor.extract_table(image_bytes, mime_type)
        quality = analyze_quality(table)
        processing_time_ms = _elapsed_ms(start)

        await self.guest_quota.increment(ip)

        now = self.clock()
        usage = _usage_after_success(decision)
        usage["hours_until_reset"] = decision.hours_until_reset
        logger.info(
            "Guest extraction for %s completed in %dms (%s/%s used)",
            ip,
            processing_time_ms,
            usage["current"],
            usage["limit"],
        )
        return ExtractionResult(
            id=f"guest-{int(now.timestamp() * 1000)}",
            table=table,
            quality=quality,
            processing_time_ms=processing_time_ms,
            created_at=now,
            usage=usage,
        )

    # ── Authenticated ─────────────────────────────────────────────────────

    async def extract_for_user(
        self,
        db: AsyncSession,
        user_id: int,
        image: str,
        mime_type: str = "image/png",
    ) -> ExtractionResult:
        """
        Raises:
            QuotaExceededError: Daily limit reached (free tier)
            UpstreamUnavailableError: Quota check could not reach the datastore
            DatabaseError: Entitlement reconciliation failed
            ValidationError: Bad image payload
            ExtractionFailedError / CircuitBreakerOpenError: Upstream failure
        """
        is_premium = await self.entitlements.reconcile(db, user_id)

        decision = await self.user_quota.check_and_admit(db, user_id, is_premium)
        if not decision.allowed:
            raise QuotaExceededError(
                message=(
                    f"Daily extraction limit reached. Try again in {decision.hours_until_reset} "
                    f"hours or upgrade to Premium for unlimited extractions."
                ),
                current=decision.current,
                limit=decision.limit,
                hours_until_reset=decision.hours_until_reset,
                reason=decision.reason,
            )

        image_bytes = decode_image(image)

        start = time.time()
        try:
            table = await self.extractor.extract_table(image_bytes, mime_type)
        except Image2SheetError as e:
            await self._record_failure(db, user_id, _elapsed_ms(start), e.message)
            raise

        quality = analyze_quality(table)
        processing_time_ms = _elapsed_ms(start)

        extraction = Extraction(
            user_id=user_id,
            module_type=MODULE_TABLE_EXTRACTION,
            image_data=image_preview(image),
            extracted_data=table,
            processing_time_ms=processing_time_ms,
            success=True,
            created_at=self.clock(),
        )
        db.add(extraction)
        await db.flush()

        await self.user_quota.increment(db, user_id, is_premium)

        logger.info(
            "Extraction %s for user %s completed in %dms",
            extraction.id,
            user_id,
            processing_time_ms,
        )
        return ExtractionResult(
            id=extraction.id,
            table=table,
            quality=quality,
            processing_time_ms=processing_time_ms,
            created_at=extraction.created_at,
            usage=_usage_after_success(decision),
        )

    async def _record_failure(
        self, db: AsyncSession, user_id: int, processing_time_ms: int, error_message: str
    ) -> None:
        """Persist a success=False history row; best effort, committed immediately."""
        try:
            db.add(
                Extraction(
                    user_id=user_id,
                    module_type=MODULE_TABLE_EXTRACTION,
                    extracted_data={},
                    processing_time_ms=processing_time_ms,
                    success=False,
                    error_message=error_message,
                    created_at=self.clock(),
                )
            )
            await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to record extraction failure for user %s: %s", user_id, str(e))
            await db.rollback()

    # ── History ───────────────────────────────────────────────────────────

    async def _history_filters(
        self, db: AsyncSession, user_id: int, module_type: Optional[str]
    ) -> list:
        filters = [Extraction.user_id == user_id]
        if module_type:
            filters.append(Extraction.module_type == module_type)
        await self.entitlements.expire_stale_subscriptions(db, user_id)
        if not await self.entitlements.resolve_current_premium(db, user_id):
            cutoff = self.clock() - timedelta(days=settings.free_history_days)
            filters.append(Extraction.created_at >= cutoff)
        return filters

    async def list_history(
        self,
        db: AsyncSession,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        module_type: Optional[str] = None,
    ) -> Tuple[List[Extraction], int]:
        """
        Newest-first page of the user's history and the total matching count.
        """
        filters = await self._history_filters(db, user_id, module_type)

        result = await db.scalars(
            select(Extraction)
            .where(*filters)
            .order_by(Extraction.created_at.desc(), Extraction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        items = list(result.all())

        total = await db.scalar(select(func.count()).select_from(Extraction).where(*filters))
        return items, total or 0

    async def get_extraction(self, db: AsyncSession, user_id: int, extraction_id: int) -> Extraction:
        extraction = await db.scalar(
            select(Extraction).where(
                Extraction.id == extraction_id,
                Extraction.user_id == user_id,
            )
        )
        if extraction is None:
            raise NotFoundError("extraction", str(extraction_id))
        return extraction

    async def delete_extraction(self, db: AsyncSession, user_id: int, extraction_id: int) -> None:
        extraction = await self.get_extraction(db, user_id, extraction_id)
        await db.delete(extraction)
        await db.flush()
        logger.info("Extraction %s deleted by user %s", extraction_id, user_id)

    async def delete_all(self, db: AsyncSession, user_id: int) -> int:
        """Delete the user's entire history. Returns the number of rows removed."""
        result = await db.execute(delete(Extraction).where(Extraction.user_id == user_id))
        deleted = result.rowcount or 0
        logger.info("Deleted %d extraction(s) for user %s", deleted, user_id)
        return deleted

    async def get_stats(self, db: AsyncSession, user_id: int) -> Dict[str, Any]:
        succeeded = Extraction.success.is_(True)
        row = (
            await db.execute(
                select(
                    func.count(Extraction.id).label("total"),
                    func.sum(case((succeeded, 1), else_=0)).label("successful"),
                    func.sum(case((succeeded, 0), else_=1)).label("failed"),
                    func.avg(case((succeeded, Extraction.processing_time_ms))).label("avg_ms"),
                    func.min(Extraction.created_at).label("first"),
                    func.max(Extraction.created_at).label("last"),
                ).where(Extraction.user_id == user_id)
            )
        ).one()

        return {
            "total_extractions": row.total or 0,
            "successful_extractions": int(row.successful or 0),
            "failed_extractions": int(row.failed or 0),
            "avg_processing_time_ms": round(float(row.avg_ms or 0)),
            "first_extraction": row.first,
            "last_extraction": row.last,
        }


# ── Singleton Instance ────────────────────────────────────────────────────
extraction_service = ExtractionService()
