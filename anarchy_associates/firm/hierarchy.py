"""
Staff Role Hierarchy — the firm's six ordered tiers and their population caps.

The table is a read-only mapping; every question about it is answered by a
pure function. Levels run from 1 (Paralegal) to 6 (Managing Partner).
Promotion requires a strictly higher level, demotion a strictly lower one.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from anarchy_associates.firm.schema import StaffRole


@dataclass(frozen=True)
class RoleTier:
    """One tier of the hierarchy."""

    role: StaffRole
    level: int
    max_count: int


ROLE_HIERARCHY: MappingProxyType[StaffRole, RoleTier] = MappingProxyType({
    StaffRole.MANAGING_PARTNER: RoleTier(StaffRole.MANAGING_PARTNER, level=6, max_count=1),
    StaffRole.SENIOR_PARTNER: RoleTier(StaffRole.SENIOR_PARTNER, level=5, max_count=3),
    StaffRole.JUNIOR_PARTNER: RoleTier(StaffRole.JUNIOR_PARTNER, level=4, max_count=5),
    StaffRole.SENIOR_ASSOCIATE: RoleTier(StaffRole.SENIOR_ASSOCIATE, level=3, max_count=10),
    StaffRole.JUNIOR_ASSOCIATE: RoleTier(StaffRole.JUNIOR_ASSOCIATE, level=2, max_count=10),
    StaffRole.PARALEGAL: RoleTier(StaffRole.PARALEGAL, level=1, max_count=10),
})


def level_of(role: StaffRole) -> int:
    return ROLE_HIERARCHY[role].level


def cap_of(role: StaffRole) -> int:
    """Maximum number of concurrently active holders of ``role``."""
    return ROLE_HIERARCHY[role].max_count


def is_promotion(current: StaffRole, target: StaffRole) -> bool:
    return level_of(target) > level_of(current)


def is_demotion(current: StaffRole, target: StaffRole) -> bool:
    return level_of(target) < level_of(current)


def roles_by_level(descending: bool = True) -> list[StaffRole]:
    return sorted(ROLE_HIERARCHY, key=level_of, reverse=descending)


def _role_at(level: int) -> StaffRole | None:
    for tier in ROLE_HIERARCHY.values():
        if tier.level == level:
            return tier.role
    return None


def next_promotion(role: StaffRole) -> StaffRole | None:
    """The tier directly above ``role``, or None at the top."""
    return _role_at(level_of(role) + 1)


def previous_demotion(role: StaffRole) -> StaffRole | None:
    """The tier directly below ``role``, or None at the bottom."""
    return _role_at(level_of(role) - 1)


def parse_role(name: str) -> StaffRole | None:
    """Resolve a display name case-insensitively; None if unknown."""
    wanted = name.strip().lower()
    for role in StaffRole:
        if role.value.lower() == wanted:
            return role
    return None
