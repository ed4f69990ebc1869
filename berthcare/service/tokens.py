"""RS256 token issuance and verification.

Tokens are signed with a single private key and verified against every
currently trusted public key, so a key can be rotated without invalidating
tokens that are still in flight. The ``kid`` header is a fingerprint of the
signing public key and lets the verifier try the matching key first.
"""

from __future__ import annotations

import base64
import hashlib
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from berthcare.config import Settings
from berthcare.logging import get_logger
from berthcare.service.errors import (
    IssuerAudienceMismatchError,
    SignatureInvalidError,
    TokenExpiredError,
    TokenMalformedError,
)
from berthcare.storage.models import Role, User

logger = get_logger(__name__)

ALGORITHM = "RS256"
_REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub", "jti"]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class PrincipalClaims:
    """Identity carried by both token kinds; immutable once issued."""

    user_id: str
    email: str
    role: Role
    device_id: str
    zone_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, device_id: str) -> "PrincipalClaims":
        return cls(
            user_id=user.id,
            email=user.email,
            role=Role(user.role),
            device_id=device_id,
            zone_id=user.zone_id,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userId": self.user_id,
            "email": self.email,
            "role": self.role.value,
            "deviceId": self.device_id,
        }
        # Cross-zone principals simply carry no zoneId claim
        if self.zone_id is not None:
            payload["zoneId"] = self.zone_id
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PrincipalClaims":
        try:
            user_id = payload["userId"]
            email = payload["email"]
            role = Role(payload["role"])
            device_id = payload["deviceId"]
        except (KeyError, ValueError, TypeError) as exc:
            raise TokenMalformedError(detail={"reason": "missing or invalid claims"}) from exc
        zone_id = payload.get("zoneId")
        if not isinstance(user_id, str) or not isinstance(email, str) or not isinstance(device_id, str):
            raise TokenMalformedError(detail={"reason": "missing or invalid claims"})
        if zone_id is not None and not isinstance(zone_id, str):
            raise TokenMalformedError(detail={"reason": "missing or invalid claims"})
        return cls(
            user_id=user_id, email=email, role=role, device_id=device_id, zone_id=zone_id
        )


@dataclass(frozen=True)
class VerifiedToken:
    claims: PrincipalClaims
    kind: TokenKind
    token_id: str
    issued_at: int
    expires_at: int


def token_fingerprint(token: str) -> str:
    """One-way fingerprint used wherever a token must be stored or keyed."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _key_text(value: str) -> bytes:
    value = value.strip()
    if value.startswith("base64:"):
        return base64.b64decode(value[len("base64:"):])
    # Env files often carry PEM bodies with literal "\n" sequences
    return value.replace("\\n", "\n").encode()


def load_private_key(value: str) -> RSAPrivateKey:
    key = serialization.load_pem_private_key(_key_text(value), password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("JWT signing key must be an RSA private key")
    return key


def load_public_key(value: str) -> RSAPublicKey:
    key = serialization.load_pem_public_key(_key_text(value))
    if not isinstance(key, RSAPublicKey):
        raise ValueError("JWT verification key must be an RSA public key")
    return key


def key_id(public_key: RSAPublicKey) -> str:
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:16]


def _to_epoch(now: Optional[datetime | float]) -> int:
    if now is None:
        return int(time.time())
    if isinstance(now, datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return int(now.timestamp())
    return int(now)


class TokenCodec:
    def __init__(
        self,
        private_key: RSAPrivateKey,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 30 * 24 * 3600,
        trusted_public_keys: Iterable[RSAPublicKey] = (),
        leeway_seconds: int = 0,
    ) -> None:
        self._private_key = private_key
        self.issuer = issuer
        self.audience = audience
        self.lifetimes = {
            TokenKind.ACCESS: access_ttl_seconds,
            TokenKind.REFRESH: refresh_ttl_seconds,
        }
        self.leeway_seconds = leeway_seconds
        signing_public = private_key.public_key()
        self.signing_kid = key_id(signing_public)
        self._trusted: Dict[str, RSAPublicKey] = {self.signing_kid: signing_public}
        for public_key in trusted_public_keys:
            self._trusted.setdefault(key_id(public_key), public_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        public_keys: List[RSAPublicKey] = []
        if settings.jwt_public_key:
            public_keys.append(load_public_key(settings.jwt_public_key))
        public_keys.extend(load_public_key(k) for k in settings.jwt_additional_public_keys)
        codec = cls(
            load_private_key(settings.jwt_private_key),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            trusted_public_keys=public_keys,
            leeway_seconds=settings.jwt_leeway_seconds,
        )
        logger.info(
            "token_codec_initialized",
            signing_kid=codec.signing_kid,
            trusted_kids=sorted(codec.trusted_kids),
        )
        return codec

    @property
    def trusted_kids(self) -> List[str]:
        return list(self._trusted)

    def lifetime(self, kind: TokenKind) -> int:
        return self.lifetimes[TokenKind(kind)]

    def issue(
        self,
        claims: PrincipalClaims,
        kind: TokenKind,
        now: Optional[datetime | float] = None,
    ) -> str:
        kind = TokenKind(kind)
        issued_at = _to_epoch(now)
        payload = {
            **claims.to_payload(),
            "sub": claims.user_id,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": issued_at + self.lifetimes[kind],
            # Unique per token so two tokens minted in the same second differ
            "jti": str(uuid.uuid4()),
            "token_type": kind.value,
        }
        return jwt.encode(
            payload, self._private_key, algorithm=ALGORITHM, headers={"kid": self.signing_kid}
        )

    def _candidate_keys(self, token: str) -> List[RSAPublicKey]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as exc:
            raise TokenMalformedError(detail={"reason": "unparseable token"}) from exc
        kid = header.get("kid")
        preferred = self._trusted.get(kid) if isinstance(kid, str) else None
        if preferred is not None:
            return [preferred] + [k for k in self._trusted.values() if k is not preferred]
        return list(self._trusted.values())

    def verify(
        self,
        token: str,
        expected_kind: Optional[TokenKind] = None,
        *,
        allow_expired: bool = False,
    ) -> VerifiedToken:
        """Verify signature, expiry, issuer and audience; return the claims as issued.

        ``allow_expired`` skips only the ``exp`` check; logout uses it to learn
        the owner of a token that is correctly signed but already expired.

        Raises:
            TokenMalformedError: structure or claims cannot be parsed, or the
                token is of a different kind than ``expected_kind``
            SignatureInvalidError: no trusted public key matches the signature
            TokenExpiredError: ``exp`` is in the past
            IssuerAudienceMismatchError: ``iss``/``aud`` differ from configuration
        """
        if not token or not isinstance(token, str):
            raise TokenMalformedError(detail={"reason": "empty token"})
        options: Dict[str, Any] = {"require": _REQUIRED_CLAIMS, "verify_exp": not allow_expired}
        payload: Optional[Dict[str, Any]] = None
        for public_key in self._candidate_keys(token):
            try:
                payload = jwt.decode(
                    token,
                    public_key,
                    algorithms=[ALGORITHM],
                    audience=self.audience,
                    issuer=self.issuer,
                    leeway=self.leeway_seconds,
                    options=options,
                )
                break
            except jwt.InvalidSignatureError:
                continue
            except jwt.ExpiredSignatureError as exc:
                raise TokenExpiredError() from exc
            except (jwt.InvalidIssuerError, jwt.InvalidAudienceError) as exc:
                raise IssuerAudienceMismatchError() from exc
            except jwt.InvalidAlgorithmError as exc:
                raise SignatureInvalidError(detail={"reason": "unsupported algorithm"}) from exc
            except jwt.InvalidTokenError as exc:
                raise TokenMalformedError(detail={"reason": type(exc).__name__}) from exc
        if payload is None:
            raise SignatureInvalidError()

        try:
            kind = TokenKind(payload.get("token_type"))
        except ValueError as exc:
            raise TokenMalformedError(detail={"reason": "unknown token type"}) from exc
        if expected_kind is not None and kind != TokenKind(expected_kind):
            raise TokenMalformedError(detail={"reason": "unexpected token type"})
        claims = PrincipalClaims.from_payload(payload)
        if payload.get("sub") != claims.user_id:
            raise TokenMalformedError(detail={"reason": "subject mismatch"})
        return VerifiedToken(
            claims=claims,
            kind=kind,
            token_id=str(payload["jti"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    def decode_unsafe(self, token: str) -> Optional[Dict[str, Any]]:
        """Parse claims without checking signature or expiry.

        For logging and inspection only; never base an authorization decision
        on the result.
        """
        if not token or not isinstance(token, str):
            return None
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None

    def is_expired(self, token: str, now: Optional[datetime | float] = None) -> bool:
        payload = self.decode_unsafe(token)
        exp = payload.get("exp") if payload else None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return True
        return exp <= _to_epoch(now)

    def remaining_lifetime(self, token: str, now: Optional[datetime | float] = None) -> int:
        payload = self.decode_unsafe(token)
        exp = payload.get("exp") if payload else None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return 0
        return max(0, int(exp) - _to_epoch(now))
