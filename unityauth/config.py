from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from unityauth.logging import get_logger

logger = get_logger(__name__)

_SEED_ENTRY = re.compile(r"^[A-Za-z][A-Za-z0-9_]{1,9}(:[^,]+)?$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration for the territory auth service."""

    service_name: str = env_field("unityauth", "SERVICE_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/unityauth", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(5, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(20, "DB_POOL_MAX_SIZE", ge=1)
    state_dir: str = env_field("/var/lib/unityauth", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and ephemeral secrets for test runs.",
    )
    seed_territories: str = env_field(
        "",
        "SEED_TERRITORIES",
        description="Comma-separated code[:name] entries loaded into the memory store",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("unityauth", "JWT_ISSUER")
    jwt_audience: str = env_field("unityplan-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_seconds: int = env_field(
        900, "ACCESS_TOKEN_TTL_SECONDS", description="Access token lifetime"
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token (session) lifetime",
    )
    invitation_ttl_days: int = env_field(30, "INVITATION_TTL_DAYS", ge=1, le=365)
    identity_salt: str = env_field("unityplan", "IDENTITY_SALT")

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

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @field_validator("seed_territories")
    @classmethod
    def _validate_seed_territories(cls, value: str) -> str:
        for entry in filter(None, (part.strip() for part in value.split(","))):
            if not _SEED_ENTRY.match(entry):
                raise ValueError(f"invalid territory seed entry: {entry!r}")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        if not info.data.get("test_mode"):
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Persist a generated secret so tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/unityauth"))
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RuntimeError(
                "Unable to create STATE_DIR for the JWT secret; set JWT_SECRET"
            ) from exc

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )
            else:
                if len(persisted) >= 32:
                    return persisted

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(secret_path))
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated

    def territory_seeds(self) -> list[tuple[str, str]]:
        """Parse ``SEED_TERRITORIES`` into ``(code, name)`` pairs."""
        seeds: list[tuple[str, str]] = []
        for entry in filter(None, (part.strip() for part in self.seed_territories.split(","))):
            code, _, name = entry.partition(":")
            seeds.append((code.lower(), name or code.upper()))
        return seeds


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
