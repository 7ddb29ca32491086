from __future__ import annotations

from typing import Optional, Protocol

from unityauth.storage.common import normalize_territory_code
from unityauth.storage.errors import UnknownTerritory
from unityauth.storage.models import GlobalIdentity


class IdentityBackend(Protocol):
    def get_identity(self, identity_id: str) -> Optional[GlobalIdentity]: ...

    def get_identity_by_local(
        self, territory_code: str, local_user_id: str
    ) -> Optional[GlobalIdentity]: ...


class IdentityResolver:
    """Read-only projections between territory users and global identities."""

    def __init__(self, backend: IdentityBackend) -> None:
        self.backend = backend

    def get(self, identity_id: str) -> Optional[GlobalIdentity]:
        return self.backend.get_identity(identity_id)

    def resolve_by_local(
        self, territory_code: str, local_user_id: str
    ) -> Optional[GlobalIdentity]:
        return self.backend.get_identity_by_local(territory_code, local_user_id)

    def resolve_tenant_user(self, identity_id: str, territory_code: str) -> Optional[str]:
        """Territory-local user id for ``identity_id``, if it lives in ``territory_code``."""
        try:
            code = normalize_territory_code(territory_code)
        except UnknownTerritory:
            return None
        identity = self.backend.get_identity(identity_id)
        if not identity or identity.territory_code != code:
            return None
        return identity.local_user_id
