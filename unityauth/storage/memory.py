from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from unityauth.logging import get_logger
from unityauth.storage.common import (
    apply_invitation_use,
    invitation_consumable,
    normalize_email,
    normalize_territory_code,
)
from unityauth.storage.errors import ConstraintViolation, UnknownTerritory
from unityauth.storage.models import (
    GlobalIdentity,
    InvitationToken,
    InvitationUse,
    NewUser,
    Session,
    Territory,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used by tests and local development.

    Every method runs under one re-entrant lock, which makes each call a
    single atomic unit in the same way a postgres transaction is.
    """

    def __init__(self, territories: Optional[List[Tuple[str, str]]] = None) -> None:
        self.logger = get_logger(__name__)
        self.territories: Dict[str, Territory] = {}
        # per-territory partitions
        self.users: Dict[str, Dict[str, User]] = {}
        self.invitations: Dict[str, Dict[str, InvitationToken]] = {}
        self.invitation_uses: Dict[str, List[InvitationUse]] = {}
        # global tables
        self.identities: Dict[str, GlobalIdentity] = {}
        self.sessions: Dict[str, Session] = {}
        self._data_lock = threading.RLock()
        for code, name in territories or []:
            self.provision_territory(code, name)

    def _partition(self, territory_code: str) -> str:
        code = normalize_territory_code(territory_code)
        if code not in self.territories:
            raise UnknownTerritory(territory_code)
        return code

    # territories
    def provision_territory(
        self, code: str, name: str, *, kind: str = "country", is_active: bool = True
    ) -> Territory:
        normalized = normalize_territory_code(code)
        with self._data_lock:
            existing = self.territories.get(normalized)
            if existing:
                return existing
            territory = Territory(
                code=normalized, name=name, kind=kind, is_active=is_active
            )
            self.territories[normalized] = territory
            self.users[normalized] = {}
            self.invitations[normalized] = {}
            self.invitation_uses[normalized] = []
            self.logger.info("territory_provisioned", territory=normalized)
            return territory

    def set_territory_active(self, code: str, is_active: bool) -> Optional[Territory]:
        with self._data_lock:
            territory = self.territories.get(self._partition(code))
            territory.is_active = is_active
            return territory

    def get_territory(self, code: str) -> Optional[Territory]:
        try:
            normalized = normalize_territory_code(code)
        except UnknownTerritory:
            return None
        with self._data_lock:
            return self.territories.get(normalized)

    def list_territories(self, *, active_only: bool = True) -> List[Territory]:
        with self._data_lock:
            return sorted(
                (t for t in self.territories.values() if t.is_active or not active_only),
                key=lambda t: t.code,
            )

    # users
    def get_user(self, territory_code: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users[self._partition(territory_code)].get(user_id)

    def get_user_by_username(self, territory_code: str, username: str) -> Optional[User]:
        with self._data_lock:
            partition = self.users[self._partition(territory_code)]
            return next((u for u in partition.values() if u.username == username), None)

    def get_user_by_email(self, territory_code: str, email: str) -> Optional[User]:
        target = normalize_email(email)
        if not target:
            return None
        with self._data_lock:
            partition = self.users[self._partition(territory_code)]
            return next(
                (u for u in partition.values() if normalize_email(u.email) == target),
                None,
            )

    def touch_last_login(self, territory_code: str, user_id: str) -> Optional[datetime]:
        with self._data_lock:
            user = self.users[self._partition(territory_code)].get(user_id)
            if not user:
                return None
            user.last_login_at = utcnow()
            user.updated_at = user.last_login_at
            return user.last_login_at

    def set_user_active(
        self, territory_code: str, user_id: str, is_active: bool
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users[self._partition(territory_code)].get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            return user

    def admit_user(
        self,
        territory_code: str,
        new_user: NewUser,
        *,
        fingerprint: str,
        invitation_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, GlobalIdentity]:
        """Insert a user, its global identity and the invitation use as one unit."""
        with self._data_lock:
            code = self._partition(territory_code)
            if any(i.username == new_user.username for i in self.identities.values()):
                raise ConstraintViolation("username already taken", {"field": "username"})
            email = new_user.email.strip() if new_user.email else None
            if email and self.get_user_by_email(code, email):
                raise ConstraintViolation("email already registered", {"field": "email"})
            invitation = None
            if invitation_id is not None:
                invitation = self.invitations[code].get(invitation_id)
                if not invitation or not invitation_consumable(invitation):
                    raise ConstraintViolation(
                        "invitation no longer available", {"field": "invitation"}
                    )

            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=new_user.username,
                password_hash=new_user.password_hash,
                territory_code=code,
                email=email,
                full_name=new_user.full_name,
                display_name=new_user.display_name or new_user.full_name,
                invited_by_token_id=invitation_id,
                created_at=now,
                updated_at=now,
            )
            identity = GlobalIdentity(
                id=str(uuid.uuid4()),
                territory_code=code,
                local_user_id=user.id,
                fingerprint=fingerprint,
                username=user.username,
                created_at=now,
            )
            self.users[code][user.id] = user
            self.identities[identity.id] = identity
            if invitation is not None:
                apply_invitation_use(invitation)
                self.invitation_uses[code].append(
                    InvitationUse(
                        id=str(uuid.uuid4()),
                        token_id=invitation.id,
                        used_by_user_id=user.id,
                        used_at=now,
                        ip_address=ip_address,
                        user_agent=user_agent,
                    )
                )
            return user, identity

    # global identities
    def get_identity(self, identity_id: str) -> Optional[GlobalIdentity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def get_identity_by_local(
        self, territory_code: str, local_user_id: str
    ) -> Optional[GlobalIdentity]:
        with self._data_lock:
            code = self._partition(territory_code)
            return next(
                (
                    i
                    for i in self.identities.values()
                    if i.territory_code == code and i.local_user_id == local_user_id
                ),
                None,
            )

    def get_identity_by_username(self, username: str) -> Optional[GlobalIdentity]:
        with self._data_lock:
            return next(
                (i for i in self.identities.values() if i.username == username), None
            )

    # sessions
    def create_session(
        self, identity_id: str, token_hash: str, ttl_seconds: int
    ) -> Session:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "session identity missing", {"identity_id": identity_id}
                )
            if token_hash in self.sessions:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            session = Session.new(identity_id, token_hash, ttl_seconds)
            self.sessions[token_hash] = session
            return session

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token_hash)

    def delete_session_by_hash(self, token_hash: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(token_hash, None) is not None

    def rotate_session(
        self, old_hash: str, identity_id: str, new_hash: str, ttl_seconds: int
    ) -> Optional[Session]:
        with self._data_lock:
            current = self.sessions.get(old_hash)
            if not current or current.identity_id != identity_id:
                return None
            if new_hash in self.sessions:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            del self.sessions[old_hash]
            session = Session.new(identity_id, new_hash, ttl_seconds)
            self.sessions[new_hash] = session
            return session

    # invitations
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
    ) -> InvitationToken:
        with self._data_lock:
            code = self._partition(territory_code)
            if any(inv.token == token for inv in self.invitations[code].values()):
                raise ConstraintViolation("invitation token collision", {"field": "token"})
            invitation = InvitationToken(
                id=str(uuid.uuid4()),
                token=token,
                token_type=token_type,
                max_uses=max_uses,
                expires_at=expires_at,
                email=email,
                created_by_user_id=created_by_user_id,
                purpose=purpose,
            )
            self.invitations[code][invitation.id] = invitation
            return invitation

    def get_invitation(self, territory_code: str, token_id: str) -> Optional[InvitationToken]:
        with self._data_lock:
            return self.invitations[self._partition(territory_code)].get(token_id)

    def get_invitation_by_token(
        self, territory_code: str, token: str
    ) -> Optional[InvitationToken]:
        with self._data_lock:
            partition = self.invitations[self._partition(territory_code)]
            return next((inv for inv in partition.values() if inv.token == token), None)

    def consume_invitation(
        self,
        territory_code: str,
        token_id: str,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[InvitationToken]:
        with self._data_lock:
            code = self._partition(territory_code)
            invitation = self.invitations[code].get(token_id)
            if not invitation or not invitation_consumable(invitation):
                return None
            apply_invitation_use(invitation)
            self.invitation_uses[code].append(
                InvitationUse(
                    id=str(uuid.uuid4()),
                    token_id=token_id,
                    used_by_user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            return invitation

    def revoke_invitation(
        self, territory_code: str, token_id: str, requester_id: str
    ) -> Optional[InvitationToken]:
        with self._data_lock:
            invitation = self.invitations[self._partition(territory_code)].get(token_id)
            if not invitation or invitation.created_by_user_id != requester_id:
                return None
            invitation.is_active = False
            if invitation.revoked_at is None:
                invitation.revoked_at = utcnow()
                invitation.revoked_by_user_id = requester_id
            return invitation

    def list_invitations(self, territory_code: str, creator_id: str) -> List[InvitationToken]:
        with self._data_lock:
            partition = self.invitations[self._partition(territory_code)]
            return sorted(
                (inv for inv in partition.values() if inv.created_by_user_id == creator_id),
                key=lambda inv: inv.created_at,
                reverse=True,
            )

    def list_invitation_uses(self, territory_code: str, token_id: str) -> List[InvitationUse]:
        with self._data_lock:
            uses = self.invitation_uses[self._partition(territory_code)]
            return sorted(
                (u for u in uses if u.token_id == token_id),
                key=lambda u: u.used_at,
                reverse=True,
            )

    def verify_connection(self) -> None:
        return None
