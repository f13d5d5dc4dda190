"""Capability checks for consumer management."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from consumerauth.core.actor import Actor

PROPOSE_CONSUMER = "propose-consumer"
UPDATE_OWN_CONSUMER = "update-own-consumer"
MANAGE_CONSUMER = "manage-consumer"
SUPPRESS_CONSUMER = "suppress-consumer"


class CapabilityChecker(Protocol):
    def has_capability(self, actor: Actor, capability: str) -> bool: ...


class RoleCapabilityChecker:
    """Grants capabilities through the roles carried by the actor."""

    def __init__(self, role_capabilities: Mapping[str, Iterable[str]]):
        self._roles = {role: frozenset(caps) for role, caps in role_capabilities.items()}

    @classmethod
    def from_settings(cls) -> "RoleCapabilityChecker":
        from consumerauth.config import settings

        return cls(settings.role_capabilities)

    def capabilities_for(self, actor: Actor) -> frozenset[str]:
        if actor.is_anonymous:
            return frozenset()
        caps: set[str] = set()
        for role in actor.roles:
            caps |= self._roles.get(role, frozenset())
        return frozenset(caps)

    def has_capability(self, actor: Actor, capability: str) -> bool:
        return capability in self.capabilities_for(actor)
