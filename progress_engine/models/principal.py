from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Caller identity taken from a validated bearer token.

    Identity management lives elsewhere; the engine only needs to know
    who is calling.  For learner-facing routes ``user_id`` is the
    learner id the ledger is keyed by.

        user_id: subject from the JWT
        roles: platform roles (learner, instructor, content, admin)
    """

    user_id: str
    roles: frozenset[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: set[str]) -> bool:
        return bool(self.roles & roles)
