from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol


class ProviderDirectory(Protocol):
    async def get_working_hours(self, provider_id: str) -> Optional[str]: ...

    async def is_active(self, provider_id: str) -> bool: ...


class NullProviderDirectory:
    """Every provider is active and has no declared duty hours."""

    async def get_working_hours(self, provider_id: str) -> Optional[str]:
        return None

    async def is_active(self, provider_id: str) -> bool:
        return True


@dataclass
class ProviderProfile:
    working_hours: Optional[str] = None
    active: bool = True


class InMemoryProviderDirectory:
    def __init__(self, profiles: Dict[str, ProviderProfile] | None = None) -> None:
        self._profiles: Dict[str, ProviderProfile] = dict(profiles or {})

    def register(self, provider_id: str, *, working_hours: Optional[str] = None, active: bool = True) -> None:
        self._profiles[provider_id] = ProviderProfile(working_hours=working_hours, active=active)

    async def get_working_hours(self, provider_id: str) -> Optional[str]:
        profile = self._profiles.get(provider_id)
        return profile.working_hours if profile else None

    async def is_active(self, provider_id: str) -> bool:
        profile = self._profiles.get(provider_id)
        return profile.active if profile else False
