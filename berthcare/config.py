from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from berthcare.logging import get_logger

logger = get_logger(__name__)

_SIGNING_KEY_FILENAME = "jwt_signing_key.pem"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, sourced from env vars and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/berthcare", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows in-memory fallbacks and runtime resets for the test suite.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Token signing. key_dir must stay above jwt_private_key so the validator can read it.
    key_dir: str = env_field("/srv/berthcare/keys", "KEY_DIR")
    jwt_private_key: str | None = env_field(
        None,
        "JWT_PRIVATE_KEY",
        description="PEM (or base64:-prefixed PEM) RSA private key used to sign tokens",
        validate_default=True,
    )
    jwt_public_key: str | None = env_field(
        None,
        "JWT_PUBLIC_KEY",
        description="Public half of the signing key; derived from the private key when unset",
    )
    jwt_additional_public_keys: list[str] = env_field(
        [],
        "JWT_ADDITIONAL_PUBLIC_KEYS",
        description="Previously used public keys still trusted during rotation (JSON list or comma separated)",
    )
    jwt_issuer: str = env_field("berthcare-api", "JWT_ISSUER")
    jwt_audience: str = env_field("berthcare-app", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Mint a new refresh token on every refresh and revoke the presented one",
    )

    # argon2id work factor; defaults land around 150-300ms per hash on current hardware
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost_kib: int = env_field(65536, "PASSWORD_MEMORY_COST_KIB", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)

    # Admission guard, fixed windows per client IP
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(3600, "LOGIN_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(3600, "REGISTER_RATE_WINDOW_SECONDS")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Admit requests when the rate-limit store is unreachable",
    )
    blacklist_fail_open: bool = env_field(
        False,
        "BLACKLIST_FAIL_OPEN",
        description="Treat tokens as not blacklisted when the cache is unreachable",
    )
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")

    open_registration: bool = env_field(
        False,
        "OPEN_REGISTRATION",
        description="Allow unauthenticated registration; otherwise only admins may register users",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS", gt=0)
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    refresh_prune_interval_seconds: int = env_field(
        3600, "REFRESH_PRUNE_INTERVAL_SECONDS"
    )
    refresh_retention_days: int = env_field(
        90,
        "REFRESH_RETENTION_DAYS",
        description="Revoked or expired refresh records older than this are pruned",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", "jwt_additional_public_keys", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                return json.loads(stripped)
            return [item.strip() for item in stripped.split(",") if item.strip()]
        return value

    @field_validator("jwt_private_key")
    @classmethod
    def _ensure_signing_key(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated key pair so issued tokens stay verifiable across restarts
        key_dir = Path(info.data.get("key_dir") or os.getenv("KEY_DIR", "/srv/berthcare/keys"))
        key_path = key_dir / _SIGNING_KEY_FILENAME

        try:
            key_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(key_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("signing_key_dir_setup", error=str(exc), path=str(key_dir))

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted.startswith("-----BEGIN"):
                    return persisted
            except OSError as exc:
                logger.error("signing_key_read_failed", error=str(exc), path=str(key_path))

        generated = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        pem = generated.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        tmp_path: str | None = None
        try:
            # Atomic write: temp file in the same directory, then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(key_dir), prefix=".jwt_signing_key_", suffix=".tmp"
            )
            try:
                os.write(fd, pem.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("signing_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist JWT signing key; set JWT_PRIVATE_KEY or make KEY_DIR writable"
            ) from exc
        logger.warning("signing_key_generated", path=str(key_path))
        return pem

    @property
    def admission_policies(self) -> dict[str, tuple[int, int]]:
        return {
            "login": (self.login_rate_limit, self.login_rate_window_seconds),
            "register": (self.register_rate_limit, self.register_rate_window_seconds),
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
