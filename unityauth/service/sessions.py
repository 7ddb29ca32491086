from __future__ import annotations

import hmac
from typing import Optional, Protocol

from unityauth.logging import get_logger
from unityauth.service.tokens import hash_refresh_token
from unityauth.storage.models import Session

logger = get_logger(__name__)

DEFAULT_REFRESH_TTL_SECONDS = 7 * 24 * 60 * 60


class SessionBackend(Protocol):
    def create_session(self, identity_id: str, token_hash: str, ttl_seconds: int) -> Session: ...

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]: ...

    def delete_session_by_hash(self, token_hash: str) -> bool: ...

    def rotate_session(
        self, old_hash: str, identity_id: str, new_hash: str, ttl_seconds: int
    ) -> Optional[Session]: ...


class SessionStore:
    """Refresh-token sessions kept in the global session table.

    Raw refresh tokens never reach the backend; only their SHA-256 digest is
    stored and matched. Expired sessions are deleted when they are looked up.
    """

    def __init__(
        self, backend: SessionBackend, *, ttl_seconds: int = DEFAULT_REFRESH_TTL_SECONDS
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def create(
        self, identity_id: str, raw_refresh_token: str, ttl: Optional[int] = None
    ) -> Session:
        return self.backend.create_session(
            identity_id, hash_refresh_token(raw_refresh_token), ttl or self.ttl_seconds
        )

    def lookup(self, raw_refresh_token: str) -> Optional[Session]:
        token_hash = hash_refresh_token(raw_refresh_token)
        session = self.backend.get_session_by_hash(token_hash)
        if not session or not hmac.compare_digest(session.token_hash, token_hash):
            return None
        if session.is_expired():
            self.backend.delete_session_by_hash(token_hash)
            logger.info("session_expired_removed", identity_id=session.identity_id)
            return None
        return session

    def rotate(
        self,
        old_raw_token: str,
        identity_id: str,
        new_raw_token: str,
        ttl: Optional[int] = None,
    ) -> Optional[Session]:
        """Swap the old session for a new one; None if the old one is already gone."""
        return self.backend.rotate_session(
            hash_refresh_token(old_raw_token),
            identity_id,
            hash_refresh_token(new_raw_token),
            ttl or self.ttl_seconds,
        )

    def revoke(self, raw_refresh_token: str) -> bool:
        return self.backend.delete_session_by_hash(hash_refresh_token(raw_refresh_token))
