from __future__ import annotations

import asyncio
from dataclasses import dataclass
from ipaddress import IPv6Address, ip_address
from typing import Dict, Optional, Protocol, Tuple

from berthcare.config import Settings
from berthcare.logging import get_logger
from berthcare.service.errors import RateLimitExceededError
from berthcare.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class CounterStore(Protocol):
    async def increment_counter(
        self, counter_key: str, window_seconds: int
    ) -> Tuple[int, int]: ...


@dataclass(frozen=True)
class AdmissionPolicy:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    degraded: bool = False
    # Seconds until the current window closes and the counter starts over
    reset_after: int = 0


def normalize_client_ip(ip: Optional[str]) -> str:
    """Collapse equivalent spellings of one client address onto one counter."""
    if not ip:
        return "unknown"
    candidate = ip.strip()
    try:
        parsed = ip_address(candidate)
    except ValueError:
        return candidate.lower()
    if isinstance(parsed, IPv6Address):
        if parsed.ipv4_mapped is not None:
            return str(parsed.ipv4_mapped)
        if parsed.is_loopback:
            return "127.0.0.1"
    return str(parsed)


class AdmissionGuard:
    """Per-IP fixed-window throttle for registration and login attempts.

    Every attempt is counted, including the ones that get denied, so a client
    hammering the endpoint never earns extra tries. When the counter store is
    unreachable the guard admits (``fail_open=True``, keeps login available
    during a cache outage) or raises :class:`StoreUnavailable` (strict
    throttling). The choice is logged on every degraded decision.
    """

    def __init__(
        self,
        cache: CounterStore,
        policies: Dict[str, AdmissionPolicy],
        *,
        fail_open: bool = True,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.cache = cache
        self.policies = dict(policies)
        self.fail_open = fail_open
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, cache: CounterStore, settings: Settings) -> "AdmissionGuard":
        policies = {
            action: AdmissionPolicy(limit=limit, window_seconds=window)
            for action, (limit, window) in settings.admission_policies.items()
        }
        return cls(
            cache,
            policies,
            fail_open=settings.rate_limit_fail_open,
            timeout_seconds=settings.cache_timeout_seconds,
        )

    @staticmethod
    def counter_key(action: str, ip: Optional[str]) -> str:
        return f"{action}:{normalize_client_ip(ip)}"

    async def check_and_consume(self, ip: Optional[str], action: str) -> AdmissionDecision:
        try:
            policy = self.policies[action]
        except KeyError:
            raise ValueError(f"no admission policy for action '{action}'") from None
        if policy.limit <= 0:
            return AdmissionDecision(True, policy.limit, 0, 0, reset_after=policy.window_seconds)

        key = self.counter_key(action, ip)
        try:
            count, ttl = await asyncio.wait_for(
                self.cache.increment_counter(key, policy.window_seconds),
                self.timeout_seconds,
            )
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            if not self.fail_open:
                logger.error(
                    "admission_store_unavailable_fail_closed",
                    action=action,
                    error_type=type(exc).__name__,
                )
                if isinstance(exc, StoreUnavailable):
                    raise
                raise StoreUnavailable(
                    "rate counter timed out", {"operation": "increment_counter"}, store="cache"
                ) from exc
            logger.warning(
                "admission_store_unavailable_fail_open",
                action=action,
                error_type=type(exc).__name__,
            )
            return AdmissionDecision(
                True, policy.limit, policy.limit, 0, degraded=True, reset_after=policy.window_seconds
            )

        allowed = count <= policy.limit
        reset_after = max(1, ttl if ttl > 0 else policy.window_seconds)
        retry_after = 0 if allowed else reset_after
        if not allowed:
            logger.warning(
                "admission_denied",
                action=action,
                client=normalize_client_ip(ip),
                count=count,
                limit=policy.limit,
                retry_after=retry_after,
            )
        return AdmissionDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            retry_after=retry_after,
            reset_after=reset_after,
        )

    async def enforce(self, ip: Optional[str], action: str) -> AdmissionDecision:
        decision = await self.check_and_consume(ip, action)
        if not decision.allowed:
            raise RateLimitExceededError(decision.retry_after, decision.limit)
        return decision
