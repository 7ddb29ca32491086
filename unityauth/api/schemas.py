from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = '​‌‍﻿'
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        return None
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits and underscores")
    return value


class RegisterRequest(BaseModel):
    territory_code: str = Field(..., min_length=2, max_length=10)
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8, max_length=128)
    invitation_token: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = None
    full_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)


class LoginRequest(BaseModel):
    territory_code: str = Field(..., min_length=2, max_length=10)
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    territory_code: str = Field(..., min_length=2, max_length=10)
    refresh_token: str = Field(..., min_length=1, max_length=256)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=256)


class UserInfo(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool = False
    territory_code: str


class ProfileResponse(UserInfo):
    full_name: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserInfo
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class MessageResponse(BaseModel):
    message: str


class CreateInvitationRequest(BaseModel):
    token_type: Literal["single_use", "group"]
    email: Optional[str] = None
    max_uses: int = Field(default=1, ge=1, le=1000)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)
    purpose: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_invitation_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class InvitationResponse(BaseModel):
    id: str
    token: str
    token_type: str
    email: Optional[str] = None
    max_uses: int
    current_uses: int
    is_active: bool
    purpose: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    revoked_at: Optional[datetime] = None


class InvitationListResponse(BaseModel):
    items: List[InvitationResponse]


class InvitationUseResponse(BaseModel):
    id: str
    token_id: str
    used_by_user_id: str
    used_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class InvitationUseListResponse(BaseModel):
    items: List[InvitationUseResponse]


class InvitationValidationResponse(BaseModel):
    valid: bool
    token_type: Optional[str] = None
    email: Optional[str] = None
    expires_at: Optional[datetime] = None
    remaining_uses: Optional[int] = None
