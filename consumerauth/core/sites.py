"""Site identity resolution."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

ALL_SITES = "*"


class SiteResolver(Protocol):
    def current_site(self) -> str: ...

    def is_management_site(self) -> bool: ...

    def resolve(self, value: str) -> str | None: ...


class StaticSiteResolver:
    """Resolves sites from a fixed key -> display name table."""

    def __init__(self, current: str, management: str, names: Mapping[str, str]):
        self._current = current
        self._management = management
        self._names = dict(names)

    @classmethod
    def from_settings(cls) -> "StaticSiteResolver":
        from consumerauth.config import settings

        return cls(settings.site_id, settings.management_site_id, settings.site_names)

    def current_site(self) -> str:
        return self._current

    def is_management_site(self) -> bool:
        return self._current == self._management

    def resolve(self, value: str) -> str | None:
        """Map a site key, display name or the wildcard to a site key."""
        if value == ALL_SITES or value in self._names:
            return value
        for key, name in self._names.items():
            if name == value:
                return key
        return None
