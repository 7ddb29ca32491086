from __future__ import annotations

from typing import Optional, Protocol

from unityauth.service.errors import ValidationError
from unityauth.storage.models import Territory


class TerritoryBackend(Protocol):
    def get_territory(self, code: str) -> Optional[Territory]: ...


def require_active_territory(store: TerritoryBackend, code: Optional[str]) -> Territory:
    """Resolve ``code`` against the territory allow-list or raise ValidationError."""
    territory = store.get_territory(code) if code else None
    if not territory or not territory.is_active:
        raise ValidationError("Invalid territory code", detail={"field": "territory_code"})
    return territory
