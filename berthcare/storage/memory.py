from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from berthcare.logging import get_logger
from berthcare.storage.errors import ConstraintViolation, DuplicateToken
from berthcare.storage.models import RefreshRecord, Role, User, utcnow
from berthcare.storage.redis_cache import BLACKLIST_PREFIX, RATE_LIMIT_PREFIX


class MemoryStore:
    """In-process stand-in for :class:`PostgresStore` used by tests and local runs.

    Mirrors the relational semantics the auth flows rely on: unique emails,
    unique refresh fingerprints, and revocation that only touches active rows.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        # RLock so composite operations (rotate) can reuse single-row helpers
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.CAREGIVER,
        zone_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=Role(role),
                zone_id=zone_id,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_password_record(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = password_hash

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at or utcnow()

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user

    # refresh records
    def create_refresh_record(
        self, user_id: str, token_hash: str, device_id: str, expires_at: datetime
    ) -> RefreshRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("refresh record owner missing", {"user_id": user_id})
            if any(r.token_hash == token_hash for r in self.refresh_records.values()):
                raise DuplicateToken("refresh token already recorded", {"field": "token_hash"})
            record = RefreshRecord.new(user_id, token_hash, device_id, expires_at)
            self.refresh_records[record.id] = record
            return record

    def get_refresh_record(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            return next(
                (r for r in self.refresh_records.values() if r.token_hash == token_hash),
                None,
            )

    def find_active_refresh_record(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshRecord]:
        record = self.get_refresh_record(token_hash)
        if record and record.is_active(now):
            return record
        return None

    def revoke_all_refresh_records(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._data_lock:
            revoked = 0
            for record in self.refresh_records.values():
                if record.user_id == user_id and record.is_active(now):
                    record.revoked_at = now
                    record.updated_at = now
                    revoked += 1
            return revoked

    def rotate_refresh_record(
        self,
        old_record_id: str,
        user_id: str,
        token_hash: str,
        device_id: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshRecord]:
        now = now or utcnow()
        with self._data_lock:
            old = self.refresh_records.get(old_record_id)
            if not old or not old.is_active(now):
                return None
            # Insert first so a duplicate fingerprint leaves the old record untouched
            record = self.create_refresh_record(user_id, token_hash, device_id, expires_at)
            old.revoked_at = now
            old.updated_at = now
            return record

    def list_active_refresh_records(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        now = now or utcnow()
        with self._data_lock:
            active = [
                r for r in self.refresh_records.values()
                if r.user_id == user_id and r.is_active(now)
            ]
        return sorted(active, key=lambda r: r.created_at, reverse=True)

    def prune_refresh_records(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                rid
                for rid, r in self.refresh_records.items()
                if r.expires_at < older_than
                or (r.revoked_at is not None and r.revoked_at < older_than)
            ]
            for rid in stale:
                self.refresh_records.pop(rid, None)
        return len(stale)


class MemoryCache:
    """In-process fallback for :class:`RedisCache` (tests and explicit dev opt-in).

    State lives only in this process, so it must never back a multi-instance
    deployment. ``clock`` returns monotonic seconds and is injectable so tests
    can move a fixed window forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._blacklist: Dict[str, float] = {}
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _sweep(self, now: float) -> None:
        # Caller holds _lock; expired keys only disappear when a write comes by
        for key in [k for k, expires_at in self._blacklist.items() if expires_at <= now]:
            del self._blacklist[key]
        for key in [k for k, (_, expires_at) in self._counters.items() if expires_at <= now]:
            del self._counters[key]

    async def blacklist_token(self, fingerprint: str, ttl_seconds: int) -> None:
        key = f"{BLACKLIST_PREFIX}{fingerprint}"
        now = self._clock()
        with self._lock:
            self._sweep(now)
            expires_at = self._blacklist.get(key)
            if expires_at is not None and expires_at > now:
                return
            self._blacklist[key] = now + max(1, int(ttl_seconds))

    async def is_blacklisted(self, fingerprint: str) -> bool:
        key = f"{BLACKLIST_PREFIX}{fingerprint}"
        now = self._clock()
        with self._lock:
            expires_at = self._blacklist.get(key)
            if expires_at is None:
                return False
            if expires_at <= now:
                self._blacklist.pop(key, None)
                return False
            return True

    async def increment_counter(
        self, counter_key: str, window_seconds: int
    ) -> Tuple[int, int]:
        key = f"{RATE_LIMIT_PREFIX}{counter_key}"
        now = self._clock()
        window = max(1, int(window_seconds))
        with self._lock:
            self._sweep(now)
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window
            count += 1
            self._counters[key] = (count, expires_at)
        return count, max(1, int(round(expires_at - now)))
