from __future__ import annotations

from enum import StrEnum
from typing import Any


class UserRole(StrEnum):
    RESIDENT = "resident"
    COLLECTOR = "collector"
    ADMIN = "admin"


TASK_MUTATING_ROLES: frozenset[UserRole] = frozenset({UserRole.ADMIN, UserRole.COLLECTOR})


def claims_role(claims: dict[str, Any]) -> UserRole | None:
    raw = claims.get("role")
    if not isinstance(raw, str):
        return None
    try:
        return UserRole(raw)
    except ValueError:
        return None


def has_role(claims: dict[str, Any], *roles: UserRole) -> bool:
    role = claims_role(claims)
    return role is not None and role in roles


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def role_room(role: UserRole | str) -> str:
    return f"role:{role}"
