"""The authenticated principal performing an action."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Actor:
    id: int  # central user id; 0 for anonymous
    name: str = ""
    email: str = ""
    email_confirmed: bool = False
    roles: frozenset[str] = field(default_factory=frozenset)
    blocked: bool = False
    locked: bool = False

    @property
    def is_anonymous(self) -> bool:
        return not self.id


ANONYMOUS = Actor(id=0, name="anonymous")
