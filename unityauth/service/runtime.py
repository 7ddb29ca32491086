from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from unityauth.config import get_settings, reset_settings_cache
from unityauth.logging import get_logger
from unityauth.service.auth import AuthService
from unityauth.service.crypto import CredentialHasher
from unityauth.service.identity import IdentityResolver
from unityauth.service.invitations import InvitationService
from unityauth.service.sessions import SessionStore
from unityauth.service.tokens import TokenCodec
from unityauth.storage.memory import MemoryStore
from unityauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(self.settings.territory_seeds())
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = CredentialHasher()
        self.codec = TokenCodec(self.settings)
        self.sessions = SessionStore(
            self.store, ttl_seconds=self.settings.refresh_token_ttl_seconds
        )
        self.identities = IdentityResolver(self.store)
        self.invitations = InvitationService(
            self.store, default_ttl_days=self.settings.invitation_ttl_days
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            codec=self.codec,
            sessions=self.sessions,
            identities=self.identities,
            invitations=self.invitations,
        )
        logger.info("runtime_init_complete", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
