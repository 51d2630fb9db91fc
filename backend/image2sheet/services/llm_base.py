"""
Image2Sheet Backend — Abstract Table Extractor Interface
=========================================================

What:  Abstract base class for AI services that read a table out of an image.
How:   Concrete implementations inherit from TableExtractor and implement
       extract_table(); ExtractionService only ever talks to this interface.
Who:   Called by ExtractionService for guest and authenticated extractions.
When:  After the admission check and image validation, before usage is counted.

Implementations:
    - GeminiService: Google Gemini vision model (default)
    - Tests substitute an AsyncMock with the same surface
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List


# A table as returned by every extractor: {"headers": [str], "rows": [[str]]}
TableData = Dict[str, List[Any]]


class TableExtractor(ABC):
    """
    Contract:
        - extract_table() returns a dict with list-valued "headers" and "rows"
        - Implementations own their retry and circuit breaking
        - Provider-specific errors are translated to ExtractionFailedError
    """

    @abstractmethod
    async def extract_table(self, image_bytes: bytes, mime_type: str) -> TableData:
        """
        Extract the most prominent table in an image.

        Args:
            image_bytes: Raw (already base64-decoded) image content
            mime_type:   e.g. "image/png", "image/jpeg"

        Returns:
            {"headers": [...], "rows": [[...], ...]}. Empty cells are "".

        Raises:
            ExtractionFailedError: No usable table after all retries
            CircuitBreakerOpenError: Too many recent upstream failures
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability probe (must not consume generation quota)."""
        ...
