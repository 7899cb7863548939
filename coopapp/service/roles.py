"""Closed role enumeration and the single ordering every guard uses.

``capabilities`` exposes the same predicates to clients, so UI gating is
computed from this module rather than re-implemented elsewhere.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Union


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    ROOT = "root"


_RANK: Dict[Role, int] = {
    Role.USER: 0,
    Role.ADMIN: 1,
    Role.SUPERADMIN: 2,
    Role.ROOT: 3,
}

ASSIGNABLE_ROLES = frozenset({Role.USER, Role.ADMIN, Role.SUPERADMIN})


def parse_role(value: Union[str, Role]) -> Role:
    """Coerce a stored or submitted role string; unknown strings raise ValueError."""
    return value if isinstance(value, Role) else Role(value)


def rank(role: Union[str, Role]) -> int:
    return _RANK[parse_role(role)]


def at_least(role: Union[str, Role], threshold: Union[str, Role]) -> bool:
    """Reflexive-transitive membership in the role order."""
    try:
        return rank(role) >= rank(threshold)
    except ValueError:
        return False


def is_user(role: Union[str, Role]) -> bool:
    return at_least(role, Role.USER)


def is_admin(role: Union[str, Role]) -> bool:
    return at_least(role, Role.ADMIN)


def is_super_admin(role: Union[str, Role]) -> bool:
    return at_least(role, Role.SUPERADMIN)


def is_root(role: Union[str, Role]) -> bool:
    return at_least(role, Role.ROOT)


def capabilities(role: Union[str, Role]) -> Dict[str, bool]:
    return {
        "isUser": is_user(role),
        "isAdmin": is_admin(role),
        "isSuperAdmin": is_super_admin(role),
        "isRoot": is_root(role),
    }


__all__ = [
    "ASSIGNABLE_ROLES",
    "Role",
    "at_least",
    "capabilities",
    "is_admin",
    "is_root",
    "is_super_admin",
    "is_user",
    "parse_role",
    "rank",
]
