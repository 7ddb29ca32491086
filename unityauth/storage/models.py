from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Territory:
    code: str
    name: str
    kind: str = "country"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def schema_name(self) -> str:
        return f"territory_{self.code}"


@dataclass
class User:
    id: str
    username: str
    password_hash: str = field(repr=False)
    territory_code: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    email_visible: bool = False
    profile_public: bool = True
    is_verified: bool = False
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    invited_by_token_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> dict:
        """Fields safe to return to the account owner."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "is_verified": self.is_verified,
            "territory_code": self.territory_code,
            "created_at": self.created_at,
            "last_login_at": self.last_login_at,
        }


@dataclass
class NewUser:
    """Attributes of a user about to be admitted; ids are assigned by the store."""

    username: str
    password_hash: str = field(repr=False)
    email: Optional[str] = None
    full_name: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class GlobalIdentity:
    id: str
    territory_code: str
    local_user_id: str
    fingerprint: str
    username: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    identity_id: str
    token_hash: str = field(repr=False)
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, identity_id: str, token_hash: str, ttl_seconds: int) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class InvitationToken:
    id: str
    token: str
    token_type: str
    max_uses: int
    expires_at: datetime
    email: Optional[str] = None
    current_uses: int = 0
    is_active: bool = True
    created_by_user_id: Optional[str] = None
    purpose: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    revoked_by_user_id: Optional[str] = None

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.current_uses)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class InvitationUse:
    id: str
    token_id: str
    used_by_user_id: str
    used_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
