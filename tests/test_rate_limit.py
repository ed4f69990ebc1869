"""Tests for the per-IP admission guard.

Login allows 10 attempts and registration 5 per fixed one-hour window by
default. Every attempt counts, denied ones included. When the counter store is
unreachable the guard admits or refuses depending on ``fail_open``.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from berthcare.service.errors import RateLimitExceededError
from berthcare.service.rate_limit import (
    AdmissionGuard,
    AdmissionPolicy,
    normalize_client_ip,
)
from berthcare.storage.errors import StoreUnavailable
from berthcare.storage.memory import MemoryCache


class FakeClock:
    def __init__(self, start: float = 5000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


POLICIES = {
    "login": AdmissionPolicy(limit=10, window_seconds=3600),
    "register": AdmissionPolicy(limit=5, window_seconds=3600),
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return AdmissionGuard(MemoryCache(clock=clock), POLICIES)


class TestFixedWindow:
    async def test_eleventh_login_denied(self, guard):
        for attempt in range(1, 11):
            decision = await guard.check_and_consume("10.0.0.1", "login")
            assert decision.allowed, f"attempt {attempt} should be admitted"
            assert decision.remaining == 10 - attempt
        denied = await guard.check_and_consume("10.0.0.1", "login")
        assert denied.allowed is False
        assert denied.remaining == 0
        assert 0 < denied.retry_after <= 3600

    async def test_sixth_registration_denied(self, guard):
        for _ in range(5):
            assert (await guard.check_and_consume("10.0.0.1", "register")).allowed
        assert (await guard.check_and_consume("10.0.0.1", "register")).allowed is False

    async def test_denied_attempts_still_count(self, guard, clock):
        for _ in range(12):
            await guard.check_and_consume("10.0.0.1", "login")
        clock.now += 1800
        # Half the window later the client is still locked out
        assert (await guard.check_and_consume("10.0.0.1", "login")).allowed is False

    async def test_window_resets(self, guard, clock):
        for _ in range(11):
            await guard.check_and_consume("10.0.0.1", "login")
        clock.now += 3600
        decision = await guard.check_and_consume("10.0.0.1", "login")
        assert decision.allowed is True
        assert decision.remaining == 9

    async def test_retry_after_counts_down(self, guard, clock):
        await guard.check_and_consume("10.0.0.1", "register")
        clock.now += 1000
        for _ in range(5):
            decision = await guard.check_and_consume("10.0.0.1", "register")
        assert decision.allowed is False
        assert decision.retry_after == 2600

    async def test_reset_tracks_window_while_admitted(self, guard, clock):
        first = await guard.check_and_consume("10.0.0.1", "login")
        assert first.reset_after == 3600
        clock.now += 1200
        later = await guard.check_and_consume("10.0.0.1", "login")
        assert later.allowed is True
        assert later.retry_after == 0
        assert later.reset_after == 2400

    async def test_clients_and_actions_are_isolated(self, guard):
        for _ in range(11):
            await guard.check_and_consume("10.0.0.1", "login")
        assert (await guard.check_and_consume("10.0.0.2", "login")).allowed
        assert (await guard.check_and_consume("10.0.0.1", "register")).allowed

    async def test_equivalent_addresses_share_a_counter(self, guard):
        for _ in range(10):
            await guard.check_and_consume("::ffff:10.0.0.1", "login")
        assert (await guard.check_and_consume("10.0.0.1", "login")).allowed is False


class TestPolicies:
    async def test_unknown_action(self, guard):
        with pytest.raises(ValueError):
            await guard.check_and_consume("10.0.0.1", "password-reset")

    async def test_non_positive_limit_disables_throttle(self):
        cache = AsyncMock()
        guard = AdmissionGuard(cache, {"login": AdmissionPolicy(limit=0, window_seconds=60)})
        for _ in range(50):
            assert (await guard.check_and_consume("10.0.0.1", "login")).allowed
        cache.increment_counter.assert_not_called()

    def test_from_settings(self, settings):
        guard = AdmissionGuard.from_settings(MemoryCache(), settings)
        assert guard.policies["login"] == AdmissionPolicy(limit=10, window_seconds=3600)
        assert guard.policies["register"] == AdmissionPolicy(limit=5, window_seconds=3600)
        assert guard.fail_open is True

    async def test_enforce_raises_with_retry_after(self, guard):
        for _ in range(5):
            await guard.enforce("10.0.0.1", "register")
        with pytest.raises(RateLimitExceededError) as info:
            await guard.enforce("10.0.0.1", "register")
        assert info.value.status_code == 429
        assert info.value.limit == 5
        assert info.value.retry_after >= 1


class TestStoreOutage:
    @pytest.fixture
    def broken_cache(self):
        cache = AsyncMock()
        cache.increment_counter.side_effect = StoreUnavailable("redis down", store="cache")
        return cache

    async def test_fail_open_admits_and_logs(self, broken_cache):
        guard = AdmissionGuard(broken_cache, POLICIES, fail_open=True)
        with patch("berthcare.service.rate_limit.logger") as mock_logger:
            decision = await guard.check_and_consume("10.0.0.1", "login")
        assert decision.allowed is True
        assert decision.degraded is True
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "admission_store_unavailable_fail_open"

    async def test_fail_closed_raises(self, broken_cache):
        guard = AdmissionGuard(broken_cache, POLICIES, fail_open=False)
        with pytest.raises(StoreUnavailable):
            await guard.check_and_consume("10.0.0.1", "login")

    async def test_slow_store_counts_as_unavailable(self):
        class SlowCache:
            async def increment_counter(self, counter_key, window_seconds):
                await asyncio.sleep(1)
                return 1, window_seconds

        strict = AdmissionGuard(SlowCache(), POLICIES, fail_open=False, timeout_seconds=0.01)
        with pytest.raises(StoreUnavailable) as info:
            await strict.check_and_consume("10.0.0.1", "login")
        assert info.value.store == "cache"

        lenient = AdmissionGuard(SlowCache(), POLICIES, fail_open=True, timeout_seconds=0.01)
        assert (await lenient.check_and_consume("10.0.0.1", "login")).degraded is True


class TestNormalizeClientIp:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("10.0.0.1", "10.0.0.1"),
            (" 10.0.0.1 ", "10.0.0.1"),
            ("::ffff:10.0.0.1", "10.0.0.1"),
            ("::1", "127.0.0.1"),
            ("2001:DB8::1", "2001:db8::1"),
            ("", "unknown"),
            (None, "unknown"),
            ("TestClient", "testclient"),
        ],
    )
    def test_normalization(self, raw, expected):
        assert normalize_client_ip(raw) == expected

    def test_counter_key(self):
        assert AdmissionGuard.counter_key("login", "::ffff:10.0.0.1") == "login:10.0.0.1"
