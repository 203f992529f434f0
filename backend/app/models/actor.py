"""Authenticated actor and the capabilities derived from its role rows."""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet


class Capability(str, Enum):
    ORG_ADMIN = "org_admin"
    COALITION_MANAGER = "coalition_manager"
    REVIEWER = "reviewer"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class Actor:
    """Who is calling, and over which scopes they hold a role.

    Built from ``superadmins`` and active ``admins`` rows by the store's
    ``load_capabilities`` and cached by :class:`CapabilityCache`.
    """

    user_id: str
    super_admin: bool = False
    org_ids: FrozenSet[str] = field(default_factory=frozenset)
    coalition_ids: FrozenSet[str] = field(default_factory=frozenset)
    reviewer_program_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        caps = set()
        if self.super_admin:
            caps.add(Capability.SUPER_ADMIN)
        if self.org_ids:
            caps.add(Capability.ORG_ADMIN)
        if self.coalition_ids:
            caps.add(Capability.COALITION_MANAGER)
        if self.reviewer_program_ids:
            caps.add(Capability.REVIEWER)
        return frozenset(caps)

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities
