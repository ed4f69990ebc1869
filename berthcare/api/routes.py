from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response, status

from berthcare.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PrincipalResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    UserResponse,
)
from berthcare.logging import get_logger
from berthcare.service.auth import AuthResult, Principal
from berthcare.service.authorization import has_role, role_permissions
from berthcare.service.errors import ForbiddenError
from berthcare.service.rate_limit import AdmissionDecision
from berthcare.service.runtime import get_runtime
from berthcare.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: AdmissionDecision, window_seconds: int) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_after or window_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    """Resolve the client address used for admission counters.

    ``X-Forwarded-For`` is client-controlled, so it is only honoured behind a
    proxy that is trusted to overwrite it.
    """
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def admission(action: str) -> Callable:
    """Dependency factory: count the attempt and reject it before the body is parsed."""

    async def _enforce(request: Request, response: Response) -> AdmissionDecision:
        runtime = get_runtime()
        decision = await runtime.admission.enforce(_client_ip(request), action)
        policy = runtime.admission.policies[action]
        if not decision.degraded:
            RateLimitInfo.from_decision(decision, policy.window_seconds).apply_headers(response)
        return decision

    return _enforce


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require_roles(*roles: Role) -> Callable:
    async def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        if not has_role(principal.role, roles):
            logger.warning(
                "role_check_failed",
                user_id=principal.user_id,
                role=principal.role.value,
                required=[r.value for r in roles],
            )
            raise ForbiddenError()
        return principal

    return _guard


def _user_payload(user: User) -> UserResponse:
    return UserResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        zone_id=user.zone_id,
        first_name=user.first_name,
        last_name=user.last_name,
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    data = AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        user=_user_payload(result.user),
    )
    return Envelope(status="ok", data=data.model_dump(mode="json", by_alias=True))


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def register(
    body: RegisterRequest,
    _decision: AdmissionDecision = Depends(admission("register")),
    authorization: Optional[str] = Header(None),
):
    """Create a user account and start its first session.

    Only admins may register users unless open registration is enabled.

    Raises:
        401: Missing or invalid bearer token when an admin is required
        403: Caller is not an admin
        409: Email already registered
        429: Too many registration attempts from this address
    """
    runtime = get_runtime()
    if not runtime.settings.open_registration:
        principal = await runtime.auth.authenticate(authorization)
        if not has_role(principal.role, Role.ADMIN):
            raise ForbiddenError("only administrators can register users")
    result = await runtime.auth.register(
        body.email,
        body.password,
        role=body.role,
        zone_id=body.zone_id,
        device_id=body.device_id,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    _decision: AdmissionDecision = Depends(admission("login")),
):
    """Authenticate with email and password.

    Raises:
        401: Credentials are invalid (never says which part)
        429: Too many login attempts from this address
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, body.device_id)
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    data = RefreshResponse(access_token=result.access_token, refresh_token=result.refresh_token)
    return Envelope(
        status="ok", data=data.model_dump(mode="json", by_alias=True, exclude_none=True)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Blacklist the presented access token and revoke every refresh token of its owner."""
    runtime = get_runtime()
    await runtime.auth.logout(authorization)
    data = MessageResponse(message="logged out")
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    data = PrincipalResponse(
        user_id=principal.user_id,
        email=principal.email,
        role=principal.role,
        zone_id=principal.zone_id,
        device_id=principal.device_id,
        permissions=sorted(role_permissions(principal.role)),
    )
    return Envelope(status="ok", data=data.model_dump(mode="json", by_alias=True))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    records = await runtime.auth.list_sessions(principal.user_id)
    data = SessionListResponse(
        items=[
            SessionResponse(
                id=record.id,
                device_id=record.device_id,
                created_at=record.created_at,
                expires_at=record.expires_at,
            )
            for record in records
        ]
    )
    return Envelope(status="ok", data=data.model_dump(mode="json", by_alias=True))
