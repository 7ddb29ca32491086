from __future__ import annotations

import hashlib
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from unityauth.logging import get_logger
from unityauth.service.errors import ServerError

logger = get_logger(__name__)

DEFAULT_IDENTITY_SALT = "unityplan"


class CredentialHasher:
    """argon2id password hashing; the salt is embedded in each encoded digest."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_digest: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        try:
            return self._pwd_hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("Password hashing failed") from exc

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True when ``plaintext`` matches ``digest``; never raises on mismatch."""
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Spend one verification on a throwaway digest; always False."""
        if self._dummy_digest is None:
            self._dummy_digest = self.hash(secrets.token_urlsafe(16))
        self.verify(plaintext, self._dummy_digest)
        return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


def identity_fingerprint(
    email: Optional[str], username: str, *, salt: str = DEFAULT_IDENTITY_SALT
) -> str:
    """Stable public identity anchor for a registration.

    SHA-256 over ``email::username::salt``; a missing email hashes as the
    empty string. The result is 64 lowercase hex characters and is used as the
    ``sub`` claim of access tokens.
    """
    material = f"{email or ''}::{username}::{salt}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
