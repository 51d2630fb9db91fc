"""
Image2Sheet Backend — Google Gemini Table Extractor
====================================================

What:  Concrete TableExtractor backed by the Google Gemini vision model.
How:   Sends the image inline with a JSON-only prompt, strips any markdown
       code fences from the reply and validates the {headers, rows} shape.
       Every call goes through a circuit breaker and a tenacity retry.
Who:   Instantiated once at import; called by ExtractionService.
When:  After the admission check and image validation.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker to fail fast while Gemini is down
    3. Per-call timeout on the generation request
    4. A reply that is not a valid table is NOT retried and does not trip
       the breaker: the upstream answered, the answer was unusable
"""

import json
import logging
import re
import time
import uuid
from typing import Any, Optional

import google.generativeai as genai
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential_jitter,
    retry_if_exception_type,
    before_sleep_log,
)

from image2sheet.config import settings
from image2sheet.exceptions import CircuitBreakerOpenError, ExtractionFailedError
from image2sheet.services.llm_base import TableData, TableExtractor

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*")


def parse_table_json(text: str) -> TableData:
    """
    Turn a model reply into {"headers": [...], "rows": [[...], ...]}.

    Raises:
        ExtractionFailedError: Not JSON, not an object, or headers/rows missing
    """
    cleaned = _CODE_FENCE.sub("", text or "").strip()
    try:
        data: Any = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ExtractionFailedError(f"Could not parse table from AI response: {e.msg}")

    if not isinstance(data, dict):
        raise ExtractionFailedError("Invalid table format: expected a JSON object")
    if not isinstance(data.get("headers"), list):
        raise ExtractionFailedError('Invalid table format: missing "headers"')
    if not isinstance(data.get("rows"), list):
        raise ExtractionFailedError('Invalid table format: missing "rows"')
    if not all(isinstance(row, list) for row in data["rows"]):
        raise ExtractionFailedError('Invalid table format: every row must be a list')

    return {"headers": data["headers"], "rows": data["rows"]}


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding the Gemini API.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Thread Safety:
        NOT thread-safe (plain counters). uvicorn async workers share a
        single process, so one event loop owns this state.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(TableExtractor):
    """
    Google Gemini implementation of TableExtractor.

    Error Handling Chain:
        API call fails → tenacity retries (N attempts with backoff)
        → All retries fail → record circuit breaker failure → ExtractionFailedError
        → Threshold reached → future calls rejected instantly (503)
        → Recovery timeout → one test call (HALF_OPEN)
    """

    EXTRACT_PROMPT = """Analyze this image and extract the table it contains.

IMPORTANT: Return ONLY a valid JSON object, with no text before or after it.

The JSON must have this structure:
{
  "headers": ["Column1", "Column2", "Column3"],
  "rows": [
    ["value1", "value2", "value3"],
    ["value4", "value5", "value6"]
  ]
}

Rules:
1. If the table has visible headers, use them. Otherwise generate descriptive names (Column 1, Column 2, ...)
2. Preserve all data exactly as it appears
3. Use an empty string "" for empty cells
4. Keep numbers, dates and text formatted as they appear
5. If there are several tables, extract the largest or most prominent one
6. Return ONLY the JSON, without code fences or explanations

Response:"""

    def __init__(self):
        if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
            genai.configure(api_key=settings.gemini_api_key)

        self.model = genai.GenerativeModel(settings.gemini_model)

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiService initialized with model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    async def extract_table(self, image_bytes: bytes, mime_type: str) -> TableData:
        """
        Extract a table from an image with Gemini.

        Flow:
            1. Check circuit breaker → may raise CircuitBreakerOpenError
            2. Send image + prompt with retry logic
            3. Record success/failure in circuit breaker
            4. Parse and validate the JSON reply

        Raises:
            CircuitBreakerOpenError: Circuit is open
            ExtractionFailedError: Gemini failed after all retries, or replied
                with something that is not a table
        """
        request_id = str(uuid.uuid4())[:8]

        self.circuit_breaker.can_execute()

        logger.info(
            "[%s] Starting Gemini table extraction (%s, %d bytes)",
            request_id,
            mime_type,
            len(image_bytes),
        )

        try:
            text = await self._call_gemini_with_retry(image_bytes, mime_type, request_id)
            self.circuit_breaker.record_success()
        except CircuitBreakerOpenError:
            raise
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Gemini extraction failed after retries: %s",
                request_id,
                str(e),
                exc_info=True,
            )
            raise ExtractionFailedError(
                reason="AI table extraction failed after multiple attempts. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"request_id": request_id, "error_type": type(e).__name__},
            )

        table = parse_table_json(text)
        logger.info(
            "[%s] Extracted table with %d columns and %d rows",
            request_id,
            len(table["headers"]),
            len(table["rows"]),
        )
        return table

    @retry(
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=settings.retry_min_wait,
            max=settings.retry_max_wait,
            jitter=1,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_gemini_with_retry(
        self, image_bytes: bytes, mime_type: str, request_id: str
    ) -> str:
        """
        The bare API call; retried as a unit, outside the circuit breaker check.

        Returns:
            The raw reply text
        """
        start_time = time.time()

        try:
            response = await self.model.generate_content_async(
                [self.EXTRACT_PROMPT, {"mime_type": mime_type, "data": image_bytes}],
                request_options={"timeout": 60},
            )
            duration_ms = (time.time() - start_time) * 1000
            text = response.text.strip() if response.text else ""

            logger.info(
                "[%s] Gemini replied in %.0fms (%d chars)",
                request_id,
                duration_ms,
                len(text),
            )
            return text

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(
                "[%s] Gemini API call failed after %.0fms: %s",
                request_id,
                duration_ms,
                str(e),
            )
            raise

    async def health_check(self) -> bool:
        """
        Check that the Gemini API is reachable by listing models (no token cost).
        """
        try:
            models = genai.list_models()
            model_names = [m.name for m in models]
            target = f"models/{settings.gemini_model}"
            if target not in model_names:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False


# ── Singleton Instance ────────────────────────────────────────────────────
# The circuit breaker state must be shared by every request
gemini_service = GeminiService()
