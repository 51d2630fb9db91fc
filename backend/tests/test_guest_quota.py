"""
Image2Sheet Backend — Guest Quota Tracker Tests
================================================

What we test:
    ✅ New IP is admitted with the full allowance
    ✅ The (limit + 1)th extraction in a window is denied with a countdown
    ✅ Entries reset once their window has passed
    ✅ Increment is a no-op for unknown IPs and never raises
    ✅ The sweep evicts only expired entries (also from the background task)
    ✅ Client IP resolution order
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.requests import Request

from image2sheet.services.guest_quota import (
    GUEST_LIMIT_REASON,
    GuestQuotaTracker,
    InMemoryGuestQuotaStore,
    resolve_client_ip,
)


@pytest.fixture
def tracker(clock):
    return GuestQuotaTracker(limit=3, clock=clock)


class TestGuestAdmission:
    @pytest.mark.asyncio
    async def test_new_ip_is_admitted_with_full_allowance(self, tracker):
        decision = await tracker.check_and_admit("203.0.113.7")
        assert decision.allowed is True
        assert decision.current == 0
        assert decision.limit == 3
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_admits_while_under_limit(self, tracker):
        for _ in range(2):
            await tracker.check_and_admit("203.0.113.7")
            await tracker.increment("203.0.113.7")

        decision = await tracker.check_and_admit("203.0.113.7")
        assert decision.allowed is True
        assert decision.current == 2
        assert decision.remaining == 1

    @pytest.mark.asyncio
    async def test_fourth_extraction_is_denied(self, tracker, clock):
        for _ in range(3):
            assert (await tracker.check_and_admit("203.0.113.7")).allowed
            await tracker.increment("203.0.113.7")

        clock.advance(hours=5, minutes=30)
        decision = await tracker.check_and_admit("203.0.113.7")
        assert decision.allowed is False
        assert decision.current == 3
        assert decision.remaining == 0
        assert decision.hours_until_reset == 19
        assert decision.reason == GUEST_LIMIT_REASON

    @pytest.mark.asyncio
    async def test_ips_are_counted_separately(self, tracker):
        for _ in range(3):
            await tracker.check_and_admit("203.0.113.7")
            await tracker.increment("203.0.113.7")

        decision = await tracker.check_and_admit("198.51.100.2")
        assert decision.allowed is True
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_window_resets_after_24_hours(self, tracker, clock):
        for _ in range(3):
            await tracker.check_and_admit("203.0.113.7")
            await tracker.increment("203.0.113.7")

        clock.advance(hours=24)
        decision = await tracker.check_and_admit("203.0.113.7")
        assert decision.allowed is True
        assert decision.current == 0
        assert decision.hours_until_reset == 24


class TestGuestIncrement:
    @pytest.mark.asyncio
    async def test_increment_untracked_ip_is_noop(self, tracker):
        await tracker.increment("192.0.2.1")
        assert await tracker.tracked_ips() == 0

    @pytest.mark.asyncio
    async def test_increment_never_raises(self, clock):
        store = MagicMock()
        store.increment = AsyncMock(side_effect=RuntimeError("store offline"))
        tracker = GuestQuotaTracker(store=store, limit=3, clock=clock)

        # Must not raise
        await tracker.increment("203.0.113.7")
        store.increment.assert_awaited_once_with("203.0.113.7")


class TestGuestSweep:
    @pytest.mark.asyncio
    async def test_sweep_evicts_only_expired_entries(self, tracker, clock):
        await tracker.check_and_admit("203.0.113.7")
        clock.advance(hours=20)
        await tracker.check_and_admit("198.51.100.2")
        clock.advance(hours=5)

        removed = await tracker.sweep()
        assert removed == 1
        assert await tracker.tracked_ips() == 1

    @pytest.mark.asyncio
    async def test_background_sweeper_runs_and_stops(self, tracker, clock):
        await tracker.check_and_admit("203.0.113.7")
        clock.advance(hours=25)

        tracker.start_sweeper(0.01)
        await asyncio.sleep(0.1)
        await tracker.stop_sweeper()

        assert await tracker.tracked_ips() == 0
        assert tracker._sweeper is None


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_size_waits_for_pending_update(self, clock):
        store = InMemoryGuestQuotaStore()
        await store.advance("203.0.113.7", clock(), timedelta(hours=24))

        async with store._lock:
            pending = asyncio.create_task(store.size())
            await asyncio.sleep(0)
            assert not pending.done()

        assert await pending == 1


def _request(headers=None, client=("10.0.0.9", 51234)) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw_headers, "client": client})


class TestResolveClientIp:
    def test_first_forwarded_hop_wins(self):
        request = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "X-Real-IP": "198.51.100.1"})
        assert resolve_client_ip(request) == "203.0.113.5"

    def test_real_ip_when_not_forwarded(self):
        assert resolve_client_ip(_request({"X-Real-IP": "198.51.100.1"})) == "198.51.100.1"

    def test_peer_address_fallback(self):
        assert resolve_client_ip(_request()) == "10.0.0.9"

    def test_unknown_sentinel(self):
        assert resolve_client_ip(_request(client=None)) == "unknown"
