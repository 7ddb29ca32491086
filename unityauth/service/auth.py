from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from unityauth.config import Settings
from unityauth.logging import get_logger
from unityauth.service.crypto import CredentialHasher, identity_fingerprint
from unityauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvitationRejected,
    NotFoundError,
    ServerError,
    ValidationError,
)
from unityauth.service.identity import IdentityResolver
from unityauth.service.invitations import InvitationBackend, InvitationService
from unityauth.service.sessions import SessionStore
from unityauth.service.territories import require_active_territory
from unityauth.service.tokens import TokenCodec
from unityauth.storage.common import normalize_email
from unityauth.storage.errors import ConstraintViolation, UnknownTerritory
from unityauth.storage.models import GlobalIdentity, NewUser, Session, Territory, User

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "Invalid credentials"
_INVALID_REFRESH = "Invalid refresh token"


class AuthStore(InvitationBackend, Protocol):
    def list_territories(self, *, active_only: bool = True) -> List[Territory]: ...

    def provision_territory(
        self, code: str, name: str, *, kind: str = "country", is_active: bool = True
    ) -> Territory: ...

    def get_user(self, territory_code: str, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, territory_code: str, username: str) -> Optional[User]: ...

    def get_user_by_email(self, territory_code: str, email: str) -> Optional[User]: ...

    def touch_last_login(self, territory_code: str, user_id: str) -> Optional[datetime]: ...

    def set_user_active(
        self, territory_code: str, user_id: str, is_active: bool
    ) -> Optional[User]: ...

    def admit_user(
        self,
        territory_code: str,
        new_user: NewUser,
        *,
        fingerprint: str,
        invitation_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, GlobalIdentity]: ...

    def get_identity(self, identity_id: str) -> Optional[GlobalIdentity]: ...

    def get_identity_by_local(
        self, territory_code: str, local_user_id: str
    ) -> Optional[GlobalIdentity]: ...

    def get_identity_by_username(self, username: str) -> Optional[GlobalIdentity]: ...

    def create_session(self, identity_id: str, token_hash: str, ttl_seconds: int) -> Session: ...

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]: ...

    def delete_session_by_hash(self, token_hash: str) -> bool: ...

    def rotate_session(
        self, old_hash: str, identity_id: str, new_hash: str, ttl_seconds: int
    ) -> Optional[Session]: ...


@dataclass
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    username: str
    territory_code: str
    fingerprint: str


@dataclass
class AuthResult:
    user: User
    identity: GlobalIdentity
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class AuthService:
    """Register, login, refresh, logout and request authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        codec: Optional[TokenCodec] = None,
        sessions: Optional[SessionStore] = None,
        identities: Optional[IdentityResolver] = None,
        invitations: Optional[InvitationService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher or CredentialHasher()
        self.codec = codec or TokenCodec(settings)
        self.sessions = sessions or SessionStore(
            store, ttl_seconds=settings.refresh_token_ttl_seconds
        )
        self.identities = identities or IdentityResolver(store)
        self.invitations = invitations or InvitationService(
            store, default_ttl_days=settings.invitation_ttl_days
        )
        self.logger = logger

    def _issue(self, user: User, identity: GlobalIdentity) -> AuthResult:
        access_token = self.codec.issue(
            identity.fingerprint, user.territory_code, user.id, user.username
        )
        return AuthResult(
            user=user,
            identity=identity,
            access_token=access_token,
            refresh_token=self.codec.issue_refresh(),
            expires_in=self.codec.expires_in,
        )

    def _start_session(self, user: User, identity: GlobalIdentity) -> AuthResult:
        result = self._issue(user, identity)
        try:
            self.sessions.create(identity.id, result.refresh_token)
        except ConstraintViolation as exc:
            self.logger.error(
                "session_create_failed", identity_id=identity.id, error=exc.message
            )
            raise ServerError("Failed to create session") from exc
        return result

    async def register(
        self,
        territory_code: str,
        username: str,
        password: str,
        invitation_token: str,
        *,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        territory = require_active_territory(self.store, territory_code)
        invitation = self.invitations.validate(territory.code, invitation_token, email)

        # Usernames are unique across every territory
        if self.store.get_identity_by_username(username):
            raise ConflictError("Username already taken", detail={"field": "username"})
        if email and self.store.get_user_by_email(territory.code, email):
            raise ConflictError("Email already registered", detail={"field": "email"})

        password_hash = self.hasher.hash(password)
        fingerprint = identity_fingerprint(email, username, salt=self.settings.identity_salt)
        try:
            user, identity = self.store.admit_user(
                territory.code,
                NewUser(
                    username=username,
                    password_hash=password_hash,
                    email=email,
                    full_name=full_name,
                ),
                fingerprint=fingerprint,
                invitation_id=invitation.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except ConstraintViolation as exc:
            if exc.field == "username":
                raise ConflictError("Username already taken", detail={"field": "username"})
            if exc.field == "email":
                raise ConflictError("Email already registered", detail={"field": "email"})
            if exc.field == "invitation":
                current = self.store.get_invitation(territory.code, invitation.id)
                raise InvitationRejected(
                    InvitationService.rejection_reason(current) or "exhausted"
                )
            self.logger.error(
                "registration_failed",
                territory=territory.code,
                error=exc.message,
                detail=exc.detail,
            )
            raise ServerError("Registration failed") from exc
        except UnknownTerritory as exc:
            raise ServerError("Registration failed") from exc

        self.logger.info(
            "user_registered",
            territory=territory.code,
            user_id=user.id,
            identity_id=identity.id,
            invitation_id=invitation.id,
        )
        return self._start_session(user, identity)

    async def login(self, territory_code: str, username: str, password: str) -> AuthResult:
        territory = require_active_territory(self.store, territory_code)
        user = self.store.get_user_by_username(territory.code, username)
        # Unknown user, inactive user and wrong password are indistinguishable
        if not user or not user.is_active:
            verified = self.hasher.verify_dummy(password)
        else:
            verified = self.hasher.verify(password, user.password_hash)
        if not verified:
            self.logger.warning(
                "login_failed",
                territory=territory.code,
                reason="unknown_user" if not user else "rejected",
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)

        touched = self.store.touch_last_login(territory.code, user.id)
        if touched:
            user.last_login_at = touched
        identity = self.identities.resolve_by_local(territory.code, user.id)
        if not identity:
            self.logger.error("identity_missing", territory=territory.code, user_id=user.id)
            raise ServerError("User identity is missing")
        self.logger.info("user_logged_in", territory=territory.code, user_id=user.id)
        return self._start_session(user, identity)

    async def refresh(self, territory_code: str, refresh_token: str) -> AuthResult:
        session = self.sessions.lookup(refresh_token) if refresh_token else None
        if not session:
            raise AuthenticationError(_INVALID_REFRESH)
        try:
            territory = require_active_territory(self.store, territory_code)
        except ValidationError:
            raise AuthenticationError(_INVALID_REFRESH)
        local_user_id = self.identities.resolve_tenant_user(session.identity_id, territory.code)
        if not local_user_id:
            self.logger.warning(
                "refresh_territory_mismatch",
                identity_id=session.identity_id,
                territory=territory.code,
            )
            raise AuthenticationError(_INVALID_REFRESH)
        user = self.store.get_user(territory.code, local_user_id)
        if not user or not user.is_active:
            raise AuthenticationError(_INVALID_REFRESH)
        identity = self.identities.get(session.identity_id)
        if not identity:
            raise AuthenticationError(_INVALID_REFRESH)

        result = self._issue(user, identity)
        rotated = self.sessions.rotate(refresh_token, identity.id, result.refresh_token)
        if not rotated:
            # Another request already rotated this token
            self.logger.warning("refresh_token_reuse", identity_id=identity.id)
            raise AuthenticationError(_INVALID_REFRESH)
        self.logger.info("session_rotated", identity_id=identity.id, territory=territory.code)
        return result

    async def logout(self, refresh_token: str) -> None:
        if not refresh_token or not self.sessions.revoke(refresh_token):
            raise NotFoundError("Session not found")
        self.logger.info("session_revoked")

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        claims = self.codec.verify(token)
        if not claims:
            return None
        territory = self.store.get_territory(claims.territory_code)
        if not territory or not territory.is_active:
            return None
        try:
            user = self.store.get_user(territory.code, claims.user_id)
        except UnknownTerritory:
            return None
        if not user or not user.is_active:
            return None
        identity = self.identities.resolve_by_local(territory.code, user.id)
        if not identity or identity.fingerprint != claims.sub:
            return None
        return AuthContext(
            user_id=user.id,
            username=user.username,
            territory_code=territory.code,
            fingerprint=identity.fingerprint,
        )

    async def me(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.territory_code, ctx.user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()
