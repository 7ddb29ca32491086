from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any, List, Optional, Protocol

from unityauth.logging import get_logger
from unityauth.service.errors import (
    InvitationRejected,
    NotFoundError,
    ServerError,
    ValidationError,
)
from unityauth.service.territories import TerritoryBackend, require_active_territory
from unityauth.storage.common import INVITATION_TYPES, normalize_email
from unityauth.storage.errors import ConstraintViolation
from unityauth.storage.models import InvitationToken, InvitationUse, utcnow

logger = get_logger(__name__)

TOKEN_PREFIX = "inv_"
MAX_USES_LIMIT = 1000
MAX_TTL_DAYS = 365


class InvitationBackend(TerritoryBackend, Protocol):
    def create_invitation(
        self,
        territory_code: str,
        *,
        token: str,
        token_type: str,
        max_uses: int,
        expires_at: datetime,
        email: Optional[str] = None,
        created_by_user_id: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> InvitationToken: ...

    def get_invitation(self, territory_code: str, token_id: str) -> Optional[InvitationToken]: ...

    def get_invitation_by_token(
        self, territory_code: str, token: str
    ) -> Optional[InvitationToken]: ...

    def consume_invitation(
        self,
        territory_code: str,
        token_id: str,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[InvitationToken]: ...

    def revoke_invitation(
        self, territory_code: str, token_id: str, requester_id: str
    ) -> Optional[InvitationToken]: ...

    def list_invitations(self, territory_code: str, creator_id: str) -> List[InvitationToken]: ...

    def list_invitation_uses(self, territory_code: str, token_id: str) -> List[InvitationUse]: ...


def generate_invitation_token() -> str:
    """``inv_`` followed by 128 bits of randomness in hex."""
    return TOKEN_PREFIX + secrets.token_hex(16)


class InvitationService:
    """Invitation tokens gating registration within one territory.

    State is ``active`` until the token is exhausted (use cap reached),
    revoked by its creator, or expired. Expiry is evaluated on access and is
    never stored.
    """

    def __init__(self, store: InvitationBackend, *, default_ttl_days: int = 30) -> None:
        self.store = store
        self.default_ttl_days = default_ttl_days

    @staticmethod
    def _check_rules(
        token_type: str, email: Optional[str], max_uses: int, expires_in_days: int
    ) -> None:
        if token_type not in INVITATION_TYPES:
            raise ValidationError(
                "token_type must be 'single_use' or 'group'", detail={"field": "token_type"}
            )
        if token_type == "single_use":
            if not email:
                raise ValidationError(
                    "Email is required for single_use tokens", detail={"field": "email"}
                )
            if max_uses != 1:
                raise ValidationError(
                    "single_use tokens must have max_uses = 1", detail={"field": "max_uses"}
                )
        else:
            if email:
                raise ValidationError(
                    "Group tokens cannot be bound to an email", detail={"field": "email"}
                )
            if max_uses <= 1:
                raise ValidationError(
                    "Group tokens must have max_uses > 1", detail={"field": "max_uses"}
                )
        if max_uses > MAX_USES_LIMIT:
            raise ValidationError(
                f"max_uses cannot exceed {MAX_USES_LIMIT}", detail={"field": "max_uses"}
            )
        if not 1 <= expires_in_days <= MAX_TTL_DAYS:
            raise ValidationError(
                f"expires_in_days must be between 1 and {MAX_TTL_DAYS}",
                detail={"field": "expires_in_days"},
            )

    def create(
        self,
        territory_code: str,
        token_type: str,
        *,
        email: Optional[str] = None,
        max_uses: int = 1,
        expires_in_days: Optional[int] = None,
        created_by: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> InvitationToken:
        territory = require_active_territory(self.store, territory_code)
        email = normalize_email(email)
        ttl_days = expires_in_days if expires_in_days is not None else self.default_ttl_days
        self._check_rules(token_type, email, max_uses, ttl_days)
        try:
            invitation = self.store.create_invitation(
                territory.code,
                token=generate_invitation_token(),
                token_type=token_type,
                max_uses=max_uses,
                expires_at=utcnow() + timedelta(days=ttl_days),
                email=email,
                created_by_user_id=created_by,
                purpose=purpose,
            )
        except ConstraintViolation as exc:
            logger.error(
                "invitation_create_failed",
                territory=territory.code,
                error=exc.message,
                detail=exc.detail,
            )
            raise ServerError("Failed to create invitation token") from exc
        logger.info(
            "invitation_created",
            territory=territory.code,
            invitation_id=invitation.id,
            token_type=token_type,
            max_uses=max_uses,
            created_by=created_by,
        )
        return invitation

    @staticmethod
    def rejection_reason(
        invitation: Optional[InvitationToken],
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Why ``invitation`` cannot admit ``email`` right now, or None if it can."""
        if invitation is None:
            return "invalid"
        if invitation.revoked_at is not None:
            return "revoked"
        if invitation.current_uses >= invitation.max_uses:
            return "exhausted"
        if not invitation.is_active:
            return "revoked"
        if invitation.is_expired(now):
            return "expired"
        candidate = normalize_email(email)
        if invitation.email and candidate and normalize_email(invitation.email) != candidate:
            return "email_mismatch"
        return None

    def validate(
        self, territory_code: str, token: str, email: Optional[str] = None
    ) -> InvitationToken:
        """Check a token without changing it.

        Raises:
            InvitationRejected: with the reason the token cannot be used
            ValidationError: when the territory is unknown or disabled
        """
        territory = require_active_territory(self.store, territory_code)
        invitation = self.store.get_invitation_by_token(territory.code, token) if token else None
        reason = self.rejection_reason(invitation, email)
        if reason:
            logger.info("invitation_rejected", territory=territory.code, reason=reason)
            raise InvitationRejected(reason)
        return invitation

    def consume(
        self,
        territory_code: str,
        token_id: str,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> InvitationToken:
        territory = require_active_territory(self.store, territory_code)
        invitation = self.store.consume_invitation(
            territory.code,
            token_id,
            user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if invitation is None:
            current = self.store.get_invitation(territory.code, token_id)
            raise InvitationRejected(self.rejection_reason(current) or "exhausted")
        logger.info(
            "invitation_consumed",
            territory=territory.code,
            invitation_id=token_id,
            user_id=user_id,
            current_uses=invitation.current_uses,
        )
        return invitation

    def revoke(self, territory_code: str, token_id: str, requester_id: str) -> InvitationToken:
        territory = require_active_territory(self.store, territory_code)
        invitation = self.store.revoke_invitation(territory.code, token_id, requester_id)
        if invitation is None:
            raise NotFoundError(
                "Invitation token not found or you don't have permission to revoke it"
            )
        logger.info(
            "invitation_revoked",
            territory=territory.code,
            invitation_id=token_id,
            revoked_by=requester_id,
        )
        return invitation

    def list(self, territory_code: str, creator_id: str) -> List[InvitationToken]:
        territory = require_active_territory(self.store, territory_code)
        return self.store.list_invitations(territory.code, creator_id)

    def usage(
        self, territory_code: str, token_id: str, requester_id: Optional[str] = None
    ) -> List[InvitationUse]:
        territory = require_active_territory(self.store, territory_code)
        if requester_id is not None:
            invitation = self.store.get_invitation(territory.code, token_id)
            if not invitation or invitation.created_by_user_id != requester_id:
                raise NotFoundError("Invitation token not found")
        return self.store.list_invitation_uses(territory.code, token_id)

    @staticmethod
    def describe(invitation: InvitationToken) -> dict[str, Any]:
        """Public view returned by the unauthenticated validation endpoint."""
        return {
            "valid": True,
            "token_type": invitation.token_type,
            "email": invitation.email if invitation.token_type == "single_use" else None,
            "expires_at": invitation.expires_at,
            "remaining_uses": invitation.remaining_uses,
        }
