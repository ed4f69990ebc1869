from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

from berthcare.config import Settings
from berthcare.logging import get_logger
from berthcare.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenFormatError,
    MissingTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from berthcare.service.passwords import CredentialHasher
from berthcare.service.tokens import (
    PrincipalClaims,
    TokenCodec,
    TokenKind,
    VerifiedToken,
    token_fingerprint,
)
from berthcare.storage.errors import ConstraintViolation, StoreUnavailable
from berthcare.storage.models import RefreshRecord, Role, User, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DEVICE_ID = "default"


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[str]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...

    def create_refresh_record(
        self, user_id: str, token_hash: str, device_id: str, expires_at: datetime
    ) -> RefreshRecord: ...

    def get_refresh_record(self, token_hash: str) -> Optional[RefreshRecord]: ...

    def find_active_refresh_record(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshRecord]: ...

    def revoke_all_refresh_records(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int: ...

    def rotate_refresh_record(
        self,
        old_record_id: str,
        user_id: str,
        token_hash: str,
        device_id: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshRecord]: ...

    def list_active_refresh_records(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshRecord]: ...

    def prune_refresh_records(self, older_than: datetime) -> int: ...


class GuardCache(Protocol):
    async def blacklist_token(self, fingerprint: str, ttl_seconds: int) -> None: ...

    async def is_blacklisted(self, fingerprint: str) -> bool: ...


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a request."""

    user_id: str
    email: str
    role: Role
    device_id: str
    zone_id: Optional[str]
    token_id: str
    expires_at: int

    @classmethod
    def from_verified(cls, verified: VerifiedToken) -> "Principal":
        claims = verified.claims
        return cls(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            device_id=claims.device_id,
            zone_id=claims.zone_id,
            token_id=verified.token_id,
            expires_at=verified.expires_at,
        )


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    user: User


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    user: User
    # Only set when refresh rotation is enabled
    refresh_token: Optional[str] = None


class AuthService:
    """Session coordinator and request authenticator.

    Access tokens are stateless and die on their own after their short
    lifetime; logout additionally blacklists the presented access token in the
    guard cache. Refresh tokens are only honoured while a matching active
    record exists in the relational store, so revoking a user's records ends
    every session that could otherwise mint new access tokens.

    Store calls run in worker threads bounded by ``store_timeout_seconds``;
    cache calls are bounded by ``cache_timeout_seconds``. Both surface as
    :class:`StoreUnavailable` when exceeded.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: GuardCache,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher or CredentialHasher.from_settings(settings)
        self.codec = codec or TokenCodec.from_settings(settings)
        self.logger = logger
        self._dummy_digest: Optional[str] = None

    # plumbing
    async def _call_store(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                self.settings.store_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "store_call_timed_out",
                operation=getattr(func, "__name__", "unknown"),
                timeout_seconds=self.settings.store_timeout_seconds,
            )
            raise StoreUnavailable(
                "relational store timed out",
                {"operation": getattr(func, "__name__", "unknown")},
                store="database",
            ) from exc

    async def _cache_call(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.settings.cache_timeout_seconds)
        except asyncio.TimeoutError as exc:
            self.logger.error("cache_call_timed_out", operation=operation)
            raise StoreUnavailable(
                "guard cache timed out", {"operation": operation}, store="cache"
            ) from exc

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> str:
        if header is None or not header.strip():
            raise MissingTokenError()
        scheme, _, credentials = header.strip().partition(" ")
        credentials = credentials.strip()
        if scheme.lower() != "bearer" or not credentials or " " in credentials:
            raise InvalidTokenFormatError()
        return credentials

    async def _timing_digest(self) -> str:
        # Unknown emails verify against this so the response time matches a real miss
        if self._dummy_digest is None:
            self._dummy_digest = await self.hasher.hash_async(secrets.token_urlsafe(24))
        return self._dummy_digest

    def _blacklist_ttl(self, expires_at: int) -> int:
        # verify() keeps accepting a token for leeway_seconds past exp
        return max(1, expires_at + self.codec.leeway_seconds - int(time.time()))

    def _refresh_expiry(self, issued_at: int) -> datetime:
        lifetime = self.codec.lifetime(TokenKind.REFRESH)
        return datetime.fromtimestamp(issued_at + lifetime, tz=timezone.utc)

    async def _start_session(self, user: User, device_id: str) -> AuthResult:
        claims = PrincipalClaims.from_user(user, device_id)
        issued_at = int(time.time())
        access_token = self.codec.issue(claims, TokenKind.ACCESS, now=issued_at)
        refresh_token = self.codec.issue(claims, TokenKind.REFRESH, now=issued_at)
        await self._call_store(
            self.store.create_refresh_record,
            user.id,
            token_fingerprint(refresh_token),
            device_id,
            self._refresh_expiry(issued_at),
        )
        return AuthResult(access_token=access_token, refresh_token=refresh_token, user=user)

    # session coordinator
    async def register(
        self,
        email: str,
        password: str,
        *,
        role: Role = Role.CAREGIVER,
        zone_id: Optional[str] = None,
        device_id: str = DEFAULT_DEVICE_ID,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        digest = await self.hasher.hash_async(password)
        try:
            user = await self._call_store(
                self.store.create_user,
                email,
                digest,
                role=Role(role),
                zone_id=zone_id,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            self.logger.info("auth_register_conflict", reason=exc.message)
            raise ConflictError(detail={"field": "email"}) from exc
        result = await self._start_session(user, device_id or DEFAULT_DEVICE_ID)
        self.logger.info(
            "auth_register_succeeded", user_id=user.id, role=user.role.value, device_id=device_id
        )
        return result

    async def login(
        self, email: str, password: str, device_id: str = DEFAULT_DEVICE_ID
    ) -> AuthResult:
        user = await self._call_store(self.store.get_user_by_email, email)
        digest = None
        if user is not None:
            digest = await self._call_store(self.store.get_password_record, user.id)
        valid = await self.hasher.verify_async(password, digest or await self._timing_digest())
        if user is None or digest is None or not valid:
            self.logger.info("auth_login_failed", reason="credentials")
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("auth_login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError()

        if self.hasher.needs_rehash(digest):
            upgraded = await self.hasher.hash_async(password)
            try:
                await self._call_store(self.store.set_password_hash, user.id, upgraded)
            except StoreUnavailable as exc:
                # The old digest still verifies; the upgrade is retried on the next login
                self.logger.warning(
                    "auth_password_rehash_failed", user_id=user.id, error=exc.message
                )
            else:
                self.logger.info("auth_password_rehashed", user_id=user.id)
        try:
            await self._call_store(self.store.record_login, user.id)
        except StoreUnavailable as exc:
            self.logger.warning("auth_record_login_failed", user_id=user.id, error=exc.message)

        result = await self._start_session(user, device_id or DEFAULT_DEVICE_ID)
        self.logger.info("auth_login_succeeded", user_id=user.id, device_id=device_id)
        return result

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise MissingTokenError()
        verified = self.codec.verify(refresh_token, TokenKind.REFRESH)
        fingerprint = token_fingerprint(refresh_token)
        record = await self._call_store(self.store.find_active_refresh_record, fingerprint)
        if record is None:
            stale = await self._call_store(self.store.get_refresh_record, fingerprint)
            if stale is not None and stale.revoked_at is not None:
                # A revoked refresh token coming back means it leaked or was replayed
                revoked = await self._call_store(
                    self.store.revoke_all_refresh_records, stale.user_id
                )
                self.logger.warning(
                    "auth_refresh_reuse_detected", user_id=stale.user_id, revoked=revoked
                )
                raise TokenRevokedError()
            if stale is not None:
                raise TokenExpiredError()
            self.logger.info("auth_refresh_unknown", user_id=verified.claims.user_id)
            raise TokenRevokedError()

        claims = verified.claims
        if record.user_id != claims.user_id or record.device_id != claims.device_id:
            self.logger.warning(
                "auth_refresh_claims_mismatch", user_id=record.user_id, device_id=claims.device_id
            )
            raise TokenRevokedError()
        user = await self._call_store(self.store.get_user, record.user_id)
        if user is None or not user.is_active:
            raise TokenRevokedError()

        # Role and zone changes take effect on the next refresh
        fresh_claims = PrincipalClaims.from_user(user, record.device_id)
        issued_at = int(time.time())
        access_token = self.codec.issue(fresh_claims, TokenKind.ACCESS, now=issued_at)
        if not self.settings.rotate_refresh_tokens:
            self.logger.info("auth_refresh_succeeded", user_id=user.id, rotated=False)
            return RefreshResult(access_token=access_token, user=user)

        new_refresh = self.codec.issue(fresh_claims, TokenKind.REFRESH, now=issued_at)
        rotated = await self._call_store(
            self.store.rotate_refresh_record,
            record.id,
            user.id,
            token_fingerprint(new_refresh),
            record.device_id,
            self._refresh_expiry(issued_at),
        )
        if rotated is None:
            # Lost a race with a concurrent refresh or logout of the same record
            raise TokenRevokedError()
        self.logger.info("auth_refresh_succeeded", user_id=user.id, rotated=True)
        return RefreshResult(access_token=access_token, user=user, refresh_token=new_refresh)

    async def logout(self, authorization: Optional[str]) -> int:
        """End every session of the token's owner and blacklist the token itself.

        Returns the number of refresh records revoked. Calling it again with
        the same token succeeds and revokes nothing.

        Raises:
            MissingTokenError, InvalidTokenFormatError: header absent or not Bearer
            StoreUnavailable: the blacklist write or the revocation failed
        """
        token = self._extract_bearer(authorization)
        user_id: Optional[str] = None
        try:
            verified = self.codec.verify(token)
            user_id = verified.claims.user_id
            ttl = self._blacklist_ttl(verified.expires_at)
        except TokenExpiredError:
            expired = self.codec.verify(token, allow_expired=True)
            user_id = expired.claims.user_id
            ttl = self._blacklist_ttl(expired.expires_at)
        except AuthenticationError as exc:
            # Nothing to attribute; still block the literal value for a full access lifetime
            self.logger.info("auth_logout_unverifiable_token", reason=exc.code)
            ttl = self.codec.lifetime(TokenKind.ACCESS) + self.codec.leeway_seconds

        try:
            await self._cache_call(
                self.cache.blacklist_token(token_fingerprint(token), ttl), "blacklist_token"
            )
        except StoreUnavailable as exc:
            self.logger.error("auth_logout_blacklist_failed", user_id=user_id, error=exc.message)
            raise

        revoked = 0
        if user_id is not None:
            try:
                revoked = await self._call_store(self.store.revoke_all_refresh_records, user_id)
            except StoreUnavailable as exc:
                self.logger.error("auth_logout_revoke_failed", user_id=user_id, error=exc.message)
                raise
        self.logger.info("auth_logout_completed", user_id=user_id, revoked=revoked)
        return revoked

    # request authenticator
    async def authenticate(self, authorization: Optional[str]) -> Principal:
        token = self._extract_bearer(authorization)
        try:
            revoked = await self._cache_call(
                self.cache.is_blacklisted(token_fingerprint(token)), "is_blacklisted"
            )
        except StoreUnavailable as exc:
            if not self.settings.blacklist_fail_open:
                self.logger.error("auth_blacklist_check_failed", fail_open=False, error=exc.message)
                raise
            self.logger.warning("auth_blacklist_check_failed", fail_open=True, error=exc.message)
            revoked = False
        if revoked:
            raise TokenRevokedError()
        return Principal.from_verified(self.codec.verify(token, TokenKind.ACCESS))

    # housekeeping
    async def list_sessions(self, user_id: str) -> List[RefreshRecord]:
        return await self._call_store(self.store.list_active_refresh_records, user_id)

    async def prune_refresh_records(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=self.settings.refresh_retention_days)
        pruned = await self._call_store(self.store.prune_refresh_records, cutoff)
        if pruned:
            self.logger.info("refresh_records_pruned", count=pruned, cutoff=cutoff.isoformat())
        return pruned
