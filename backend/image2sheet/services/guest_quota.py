"""
Image2Sheet Backend — Guest Quota Tracker
==========================================

What:  Per-IP daily extraction quota for unauthenticated (guest) callers.
How:   Each IP owns a WindowState (count, window_start) held in a
       GuestQuotaStore. Admission advances the window (resetting it once
       24h have passed) and compares the count to the guest limit; a
       successful extraction increments the count.
Who:   Called by ExtractionService.extract_for_guest.

Lifecycle of an entry:
    1. Created lazily on the first request from a new IP (count 0)
    2. Reset in place when a lookup finds its window elapsed
    3. Evicted by the background sweep once its window is long over
       (memory hygiene only; lookups already self-heal stale entries)

Limitations (reported to operators at startup):
    - Entries live in process memory: a restart resets every guest quota
    - Each server instance keeps its own map; a horizontally scaled
      deployment gives every guest one quota per instance
    - Callers sharing an IP (NAT) or the "unknown" sentinel share a bucket
    A networked store (e.g. Redis) can replace InMemoryGuestQuotaStore
    behind the GuestQuotaStore interface without touching callers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from starlette.requests import Request

from image2sheet.config import settings
from image2sheet.database import utcnow
from image2sheet.services.quota_window import (
    QuotaDecision,
    WindowState,
    advance_window,
    decide,
    window_elapsed,
)

logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"

GUEST_LIMIT_REASON = "GUEST_LIMIT_REACHED"


def resolve_client_ip(request: Request) -> str:
    """
    Best-effort client IP for guest quota bucketing.

    Order: first hop of X-Forwarded-For, X-Real-IP, the connection peer,
    then the shared "unknown" sentinel.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_IP


# ══════════════════════════════════════════════════════════════════════════
# Storage
# ══════════════════════════════════════════════════════════════════════════

class GuestQuotaStore(ABC):
    """
    Storage contract for guest quota windows.

    Each method is atomic with respect to the others for a given IP.
    """

    @abstractmethod
    async def advance(self, ip: str, now: datetime, window: timedelta) -> WindowState:
        """Get-or-create the entry for `ip`, reset it if its window elapsed, return it."""
        ...

    @abstractmethod
    async def increment(self, ip: str) -> bool:
        """Add one to the entry's count. Returns False when `ip` is not tracked."""
        ...

    @abstractmethod
    async def evict_expired(self, now: datetime, window: timedelta) -> int:
        """Drop every entry whose window has elapsed. Returns how many were removed."""
        ...

    @abstractmethod
    async def size(self) -> int:
        """Number of tracked IPs."""
        ...


class InMemoryGuestQuotaStore(GuestQuotaStore):
    """
    Process-local GuestQuotaStore.

    Thread Safety:
        A single asyncio.Lock serialises every read-modify-write, so
        concurrent requests on the event loop never interleave inside an
        update. NOT shared across worker processes.
    """

    def __init__(self):
        self._entries: Dict[str, WindowState] = {}
        self._lock = asyncio.Lock()

    async def advance(self, ip: str, now: datetime, window: timedelta) -> WindowState:
        async with self._lock:
            state = self._entries.get(ip)
            if state is None:
                state = WindowState(count=0, window_start=now)
            else:
                state, _ = advance_window(state, now, window)
            self._entries[ip] = state
            return state

    async def increment(self, ip: str) -> bool:
        async with self._lock:
            state = self._entries.get(ip)
            if state is None:
                return False
            self._entries[ip] = WindowState(count=state.count + 1, window_start=state.window_start)
            return True

    async def evict_expired(self, now: datetime, window: timedelta) -> int:
        async with self._lock:
            expired = [
                ip for ip, state in self._entries.items()
                if window_elapsed(state, now, window)
            ]
            for ip in expired:
                del self._entries[ip]
            return len(expired)

    async def size(self) -> int:
        async with self._lock:
            return len(self._entries)


# ══════════════════════════════════════════════════════════════════════════
# Tracker
# ══════════════════════════════════════════════════════════════════════════

class GuestQuotaTracker:
    """
    Admission and accounting for guest extractions.

    Args:
        store: Where windows live (in-memory by default)
        limit: Extractions per window (default: settings.guest_daily_extractions)
        window: Window length (default: settings.quota_window_hours)
        clock: Returns the current aware UTC datetime (overridden in tests)
    """

    def __init__(
        self,
        store: Optional[GuestQuotaStore] = None,
        limit: Optional[int] = None,
        window: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or InMemoryGuestQuotaStore()
        self.limit = limit if limit is not None else settings.guest_daily_extractions
        self.window = window or timedelta(hours=settings.quota_window_hours)
        self.clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    async def check_and_admit(self, ip: str) -> QuotaDecision:
        """
        Decide whether `ip` may run one more extraction.

        Returns:
            QuotaDecision. On admit, `current`/`remaining` are the values
            BEFORE this extraction is counted. On denial, `remaining` is 0
            and `hours_until_reset` is the rounded-up time left in the window.
        """
        now = self.clock()
        state = await self.store.advance(ip, now, self.window)
        decision = decide(state, now, self.window, self.limit, GUEST_LIMIT_REASON)

        if not decision.allowed:
            logger.info(
                "Guest quota exhausted for %s: %d/%d, resets in %dh",
                ip,
                decision.current,
                self.limit,
                decision.hours_until_reset,
            )
        return decision

    async def increment(self, ip: str) -> None:
        """
        Count one successful extraction for `ip`.

        A no-op for an untracked IP. Never raises: a failure here must not
        turn a successful extraction into an error response.
        """
        try:
            tracked = await self.store.increment(ip)
            if not tracked:
                logger.debug("Guest increment skipped: %s is not tracked", ip)
        except Exception as e:
            logger.error("Failed to increment guest quota for %s: %s", ip, str(e), exc_info=True)

    async def sweep(self) -> int:
        """Evict entries whose window has elapsed. Returns the number removed."""
        removed = await self.store.evict_expired(self.clock(), self.window)
        if removed:
            logger.debug("Guest quota sweep removed %d expired entries", removed)
        return removed

    async def tracked_ips(self) -> int:
        return await self.store.size()

    # ── Background Sweep ──────────────────────────────────────────────────

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Guest quota sweep failed: %s", str(e), exc_info=True)

    def start_sweeper(self, interval_seconds: Optional[float] = None) -> None:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        interval = interval_seconds or settings.guest_sweep_interval_seconds
        self._sweeper = asyncio.create_task(self._sweep_forever(interval))
        logger.info("Guest quota sweeper started (every %ss)", interval)

    async def stop_sweeper(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None


# ── Singleton Instance ────────────────────────────────────────────────────
# One map per process: every request must see the same counters
guest_quota_tracker = GuestQuotaTracker()
