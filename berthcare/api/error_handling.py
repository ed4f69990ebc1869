from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from berthcare.api.schemas import Envelope, ErrorBody
from berthcare.logging import get_correlation_id, get_logger
from berthcare.service.errors import AuthErrorCode, RateLimitExceededError, ServiceError
from berthcare.storage.errors import ConstraintViolation, DuplicateToken, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: AuthErrorCode.INVALID_INPUT,
    401: AuthErrorCode.MISSING_TOKEN,
    403: AuthErrorCode.FORBIDDEN,
    404: AuthErrorCode.NOT_FOUND,
    405: AuthErrorCode.NOT_FOUND,
    409: AuthErrorCode.EMAIL_EXISTS,
    429: AuthErrorCode.RATE_LIMIT_EXCEEDED,
    500: AuthErrorCode.INTERNAL_ERROR,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, AuthErrorCode.INTERNAL_ERROR).value


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _sanitize_validation_errors(errors: list) -> list:
    # Input values are dropped; a rejected password must never be echoed back
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in errors
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(exc.retry_after),
            }
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.code, headers=headers)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            store=exc.store,
            message=exc.message,
        )
        return _error_response(
            500,
            "service temporarily unavailable",
            {"store": exc.store},
            code=AuthErrorCode.STORE_UNAVAILABLE.value,
        )

    @app.exception_handler(DuplicateToken)
    async def handle_duplicate_token(request: Request, exc: DuplicateToken):
        logger.error(
            "duplicate_refresh_token",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(
            500, "internal server error", code=AuthErrorCode.DUPLICATE_TOKEN.value
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code=AuthErrorCode.EMAIL_EXISTS.value)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _sanitize_validation_errors(exc.errors())
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(d["loc"]) for d in details],
        )
        return _error_response(
            400, "invalid request body", details, code=AuthErrorCode.INVALID_INPUT.value
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                message = error_obj.get("message", "http error")
                code = error_obj.get("code")
                details = error_obj.get("details")
                if exc.status_code >= 500:
                    logger.error(
                        "http_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                elif exc.status_code >= 400:
                    logger.warning(
                        "http_client_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code=AuthErrorCode.INTERNAL_ERROR.value)
