from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from berthcare.service.auth import DEFAULT_DEVICE_ID
from berthcare.service.errors import AuthErrorCode
from berthcare.storage.models import Role

_VALID_ERROR_CODES = frozenset(code.value for code in AuthErrorCode)

# Roles whose users always belong to a zone
ZONED_ROLES = frozenset({Role.CAREGIVER, Role.COORDINATOR})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="One of the AuthErrorCode values")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case is accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_UPPERCASE = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not _UPPERCASE.search(value):
        raise ValueError("password must contain at least 1 uppercase letter")
    if not _DIGIT.search(value):
        raise ValueError("password must contain at least 1 number")
    return value


def _normalize_device_id(value: Optional[str]) -> str:
    return (value or "").strip() or DEFAULT_DEVICE_ID


class RegisterRequest(CamelModel):
    email: str
    password: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: Role
    zone_id: Optional[str] = None
    device_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_names(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @field_validator("zone_id")
    @classmethod
    def _validate_zone_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        try:
            return str(UUID(value.strip()))
        except ValueError:
            raise ValueError("zoneId must be a UUID") from None

    @field_validator("device_id")
    @classmethod
    def _normalize_device(cls, value: Optional[str]) -> str:
        return _normalize_device_id(value)

    @model_validator(mode="after")
    def _require_zone_for_zoned_roles(self):
        if self.role in ZONED_ROLES and not self.zone_id:
            raise ValueError("zoneId is required for caregiver and coordinator roles")
        return self


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    device_id: str = Field(..., max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("device_id")
    @classmethod
    def _require_device(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("deviceId is required")
        return value.strip()


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UserResponse(CamelModel):
    user_id: str
    email: str
    role: Role
    zone_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AuthResponse(CamelModel):
    access_token: str
    refresh_token: str
    user: UserResponse


class RefreshResponse(CamelModel):
    access_token: str
    refresh_token: Optional[str] = None


class MessageResponse(CamelModel):
    message: str


class PrincipalResponse(CamelModel):
    user_id: str
    email: str
    role: Role
    zone_id: Optional[str] = None
    device_id: str
    permissions: List[str] = Field(default_factory=list)


class SessionResponse(CamelModel):
    id: str
    device_id: str
    created_at: datetime
    expires_at: datetime


class SessionListResponse(CamelModel):
    items: List[SessionResponse]
