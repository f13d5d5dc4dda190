"""Grant catalog: validates and expands grant bundles into rights."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

AUTH_ONLY = "authonly"
AUTH_ONLY_PRIVATE = "authonlyprivate"
NORMAL = "normal"

# Identity-only grants; they confer no rights beyond identifying the user.
_IDENTITY_GRANTS = {
    AUTH_ONLY: "mwoauth-authonly",
    AUTH_ONLY_PRIVATE: "mwoauth-authonlyprivate",
}


class GrantCatalog:
    def __init__(self, bundles: Mapping[str, Iterable[str]], hidden: Iterable[str] = ()):
        self._bundles = {name: frozenset(rights) for name, rights in bundles.items()}
        self._hidden = frozenset(hidden)
        unknown = self._hidden - self._bundles.keys()
        if unknown:
            raise ValueError(f"Hidden grants not in catalog: {sorted(unknown)}")

    @classmethod
    def from_settings(cls) -> "GrantCatalog":
        from consumerauth.config import settings

        return cls(settings.grant_bundles, settings.hidden_grants)

    def hidden_grants(self) -> set[str]:
        return set(self._hidden)

    def validate(self, grants: Iterable[str]) -> bool:
        identity = set(_IDENTITY_GRANTS.values())
        return all(g in self._bundles or g in identity for g in grants)

    def expand(self, grant_type: str, grants: Iterable[str] = ()) -> list[str]:
        """Resolve the grant list stored on a consumer for a grant type.

        Identity-only types collapse to their single identity grant and
        ignore ``grants``; ``normal`` is the requested bundles plus the
        hidden grants every normal consumer implicitly holds.
        """
        if grant_type in _IDENTITY_GRANTS:
            return [_IDENTITY_GRANTS[grant_type]]
        if grant_type != NORMAL:
            raise ValueError(f"Unknown grant type: {grant_type}")
        requested = list(grants)
        if not self.validate(requested):
            raise ValueError(f"Unknown grants requested: {sorted(set(requested) - self._bundles.keys())}")
        return list(dict.fromkeys([*sorted(self._hidden), *requested]))

    def rights_for(self, grants: Iterable[str]) -> set[str]:
        rights: set[str] = set()
        for grant in grants:
            rights |= self._bundles.get(grant, frozenset())
        return rights
