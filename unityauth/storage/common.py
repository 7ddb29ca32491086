"""Common storage utilities shared between memory and postgres implementations.

Keeps the territory allow-list rules and the invitation consumption guard in
one place so both backends agree on them.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from unityauth.storage.errors import UnknownTerritory
from unityauth.storage.models import InvitationToken, utcnow

TERRITORY_CODE_RE = re.compile(r"^[a-z][a-z0-9_]{1,9}$")

INVITATION_TYPES = ("single_use", "group")


def normalize_territory_code(code: Optional[str]) -> str:
    """Lower-case and validate a territory code.

    Raises:
        UnknownTerritory: when the code cannot name a territory partition
    """
    if not isinstance(code, str):
        raise UnknownTerritory(str(code))
    normalized = code.strip().lower()
    if not TERRITORY_CODE_RE.match(normalized):
        raise UnknownTerritory(code)
    return normalized


def territory_schema(code: str) -> str:
    """Partition (schema) name for a territory code that passed normalization."""
    return f"territory_{normalize_territory_code(code)}"


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    stripped = email.strip()
    return stripped.lower() or None


def invitation_consumable(
    invitation: InvitationToken, now: Optional[datetime] = None
) -> bool:
    """Whether one more use may be recorded against ``invitation``.

    Mirrors the guard of the conditional UPDATE in the postgres store.
    """
    return (
        invitation.is_active
        and invitation.revoked_at is None
        and invitation.current_uses < invitation.max_uses
        and not invitation.is_expired(now or utcnow())
    )


def apply_invitation_use(invitation: InvitationToken) -> InvitationToken:
    """Increment the use count, deactivating the token when the cap is hit."""
    invitation.current_uses += 1
    if invitation.current_uses >= invitation.max_uses:
        invitation.is_active = False
    return invitation
