from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of user roles carried in token claims."""

    CAREGIVER = "caregiver"
    COORDINATOR = "coordinator"
    ADMIN = "admin"
    FAMILY = "family"


@dataclass
class User:
    id: str
    email: str
    role: Role = Role.CAREGIVER
    zone_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class RefreshRecord:
    """Server-side trace of an issued refresh token.

    Only the SHA-256 fingerprint of the token is kept. ``revoked_at`` being
    ``None`` means the record can still mint access tokens until ``expires_at``.
    """

    id: str
    user_id: str
    token_hash: str
    device_id: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, device_id: str, expires_at: datetime
    ) -> "RefreshRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            device_id=device_id,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and self.expires_at > now
