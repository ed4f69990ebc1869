"""Tests for the in-memory revocation store and guard cache.

Both stand in for Postgres and Redis in tests and local runs, so they must
honour the same contracts: unique fingerprints, revocation that only touches
active rows, fixed rate windows and NX blacklist writes.
"""

from datetime import timedelta

import pytest

from berthcare.storage.errors import ConstraintViolation, DuplicateToken
from berthcare.storage.memory import MemoryCache, MemoryStore
from berthcare.storage.models import Role, utcnow
from berthcare.storage.redis_cache import BLACKLIST_PREFIX, RATE_LIMIT_PREFIX


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store_with_user():
    store = MemoryStore()
    user = store.create_user("Nurse@Example.com", "digest", role=Role.CAREGIVER, zone_id="z1")
    return store, user


class TestUsers:
    def test_email_normalized(self, store_with_user):
        store, user = store_with_user
        assert user.email == "nurse@example.com"
        assert store.get_user_by_email("  NURSE@example.com ") is user

    def test_duplicate_email(self, store_with_user):
        store, _ = store_with_user
        with pytest.raises(ConstraintViolation):
            store.create_user("nurse@example.com", "other")

    def test_password_record(self, store_with_user):
        store, user = store_with_user
        assert store.get_password_record(user.id) == "digest"
        store.set_password_hash(user.id, "new-digest")
        assert store.get_password_record(user.id) == "new-digest"
        assert store.get_password_record("missing") is None

    def test_record_login(self, store_with_user):
        store, user = store_with_user
        assert user.last_login_at is None
        store.record_login(user.id)
        assert store.get_user(user.id).last_login_at is not None

    def test_role_and_active_updates(self, store_with_user):
        store, user = store_with_user
        assert store.update_user_role(user.id, Role.COORDINATOR).role == Role.COORDINATOR
        assert store.set_user_active(user.id, False).is_active is False
        assert store.update_user_role("missing", Role.ADMIN) is None


class TestRefreshRecords:
    def test_create_and_find_active(self, store_with_user):
        store, user = store_with_user
        expires = utcnow() + timedelta(days=30)
        record = store.create_refresh_record(user.id, "h1", "device-1", expires)
        assert store.find_active_refresh_record("h1") == record
        assert store.get_refresh_record("h1") == record
        assert store.find_active_refresh_record("unknown") is None

    def test_duplicate_fingerprint(self, store_with_user):
        store, user = store_with_user
        expires = utcnow() + timedelta(days=30)
        store.create_refresh_record(user.id, "h1", "device-1", expires)
        with pytest.raises(DuplicateToken):
            store.create_refresh_record(user.id, "h1", "device-2", expires)

    def test_owner_must_exist(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_refresh_record("ghost", "h1", "d", utcnow() + timedelta(days=1))

    def test_expired_record_not_active(self, store_with_user):
        store, user = store_with_user
        store.create_refresh_record(user.id, "h1", "d", utcnow() - timedelta(seconds=1))
        assert store.find_active_refresh_record("h1") is None
        assert store.get_refresh_record("h1") is not None

    def test_revoke_all_is_idempotent(self, store_with_user):
        store, user = store_with_user
        expires = utcnow() + timedelta(days=30)
        store.create_refresh_record(user.id, "h1", "d1", expires)
        store.create_refresh_record(user.id, "h2", "d2", expires)
        assert store.revoke_all_refresh_records(user.id) == 2
        assert store.revoke_all_refresh_records(user.id) == 0
        assert store.find_active_refresh_record("h1") is None
        assert store.get_refresh_record("h2").revoked_at is not None

    def test_revoke_all_scoped_to_user(self, store_with_user):
        store, user = store_with_user
        other = store.create_user("other@example.com", "digest")
        expires = utcnow() + timedelta(days=30)
        store.create_refresh_record(user.id, "h1", "d1", expires)
        store.create_refresh_record(other.id, "h2", "d2", expires)
        store.revoke_all_refresh_records(user.id)
        assert store.find_active_refresh_record("h2") is not None

    def test_rotate(self, store_with_user):
        store, user = store_with_user
        expires = utcnow() + timedelta(days=30)
        old = store.create_refresh_record(user.id, "h1", "d1", expires)
        new = store.rotate_refresh_record(old.id, user.id, "h2", "d1", expires)
        assert new is not None and new.token_hash == "h2"
        assert store.find_active_refresh_record("h1") is None
        assert store.find_active_refresh_record("h2") == new
        # A second rotation of the same record loses
        assert store.rotate_refresh_record(old.id, user.id, "h3", "d1", expires) is None
        assert store.get_refresh_record("h3") is None

    def test_rotate_duplicate_leaves_old_record_active(self, store_with_user):
        store, user = store_with_user
        expires = utcnow() + timedelta(days=30)
        old = store.create_refresh_record(user.id, "h1", "d1", expires)
        store.create_refresh_record(user.id, "h2", "d2", expires)
        with pytest.raises(DuplicateToken):
            store.rotate_refresh_record(old.id, user.id, "h2", "d1", expires)
        assert store.find_active_refresh_record("h1") is not None

    def test_list_active_newest_first(self, store_with_user):
        store, user = store_with_user
        expires = utcnow() + timedelta(days=30)
        first = store.create_refresh_record(user.id, "h1", "d1", expires)
        second = store.create_refresh_record(user.id, "h2", "d2", expires)
        first.created_at = second.created_at - timedelta(seconds=5)
        store.create_refresh_record(user.id, "h3", "d3", utcnow() - timedelta(seconds=1))
        assert [r.token_hash for r in store.list_active_refresh_records(user.id)] == ["h2", "h1"]

    def test_prune(self, store_with_user):
        store, user = store_with_user
        now = utcnow()
        store.create_refresh_record(user.id, "old-expired", "d", now - timedelta(days=100))
        revoked = store.create_refresh_record(user.id, "old-revoked", "d", now + timedelta(days=30))
        revoked.revoked_at = now - timedelta(days=100)
        store.create_refresh_record(user.id, "live", "d", now + timedelta(days=30))
        assert store.prune_refresh_records(now - timedelta(days=90)) == 2
        assert store.get_refresh_record("live") is not None
        assert store.get_refresh_record("old-expired") is None


class TestMemoryCacheBlacklist:
    async def test_blacklist_until_ttl(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.blacklist_token("fp", 60)
        assert await cache.is_blacklisted("fp") is True
        clock.advance(61)
        assert await cache.is_blacklisted("fp") is False

    async def test_blacklist_nx_keeps_first_ttl(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.blacklist_token("fp", 10)
        await cache.blacklist_token("fp", 3600)
        clock.advance(11)
        assert await cache.is_blacklisted("fp") is False

    async def test_ttl_floor_of_one_second(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.blacklist_token("fp", 0)
        assert await cache.is_blacklisted("fp") is True


class TestMemoryCacheCounters:
    async def test_fixed_window(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        assert await cache.increment_counter("login:1.2.3.4", 3600) == (1, 3600)
        clock.advance(600)
        count, ttl = await cache.increment_counter("login:1.2.3.4", 3600)
        # TTL keeps counting down from the first attempt; it is never refreshed
        assert (count, ttl) == (2, 3000)

    async def test_window_resets_after_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        for _ in range(5):
            await cache.increment_counter("register:ip", 60)
        clock.advance(60)
        assert await cache.increment_counter("register:ip", 60) == (1, 60)

    async def test_keys_are_independent(self):
        cache = MemoryCache(clock=FakeClock())
        await cache.increment_counter("login:a", 60)
        assert (await cache.increment_counter("login:b", 60))[0] == 1
        assert (await cache.increment_counter("register:a", 60))[0] == 1


class TestMemoryCacheSweep:
    async def test_expired_entries_dropped_on_write(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        for i in range(20):
            await cache.blacklist_token(f"fp-{i}", 30)
            await cache.increment_counter(f"login:10.0.0.{i}", 60)
        assert len(cache._blacklist) == 20
        assert len(cache._counters) == 20

        clock.advance(61)
        await cache.blacklist_token("fresh", 30)
        await cache.increment_counter("login:10.0.1.1", 60)
        assert list(cache._blacklist) == [f"{BLACKLIST_PREFIX}fresh"]
        assert list(cache._counters) == [f"{RATE_LIMIT_PREFIX}login:10.0.1.1"]

    async def test_live_entries_survive_sweep(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.blacklist_token("short", 5)
        await cache.blacklist_token("long", 600)
        await cache.increment_counter("login:a", 3600)
        clock.advance(10)
        await cache.blacklist_token("other", 5)
        assert await cache.is_blacklisted("long") is True
        assert await cache.is_blacklisted("short") is False
        assert (await cache.increment_counter("login:a", 3600))[0] == 2
