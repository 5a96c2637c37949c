# Overview: Ordered user roles and the authenticated actor passed to services.

from __future__ import annotations

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    """
    User roles, totally ordered: regular < cashier < manager < superuser.

    Stored in the database as the lowercase string value.
    """
    REGULAR = "regular"
    CASHIER = "cashier"
    MANAGER = "manager"
    SUPERUSER = "superuser"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


_RANKS = {
    Role.REGULAR: 0,
    Role.CASHIER: 1,
    Role.MANAGER: 2,
    Role.SUPERUSER: 3,
}


def at_least(role: Role | str, threshold: Role | str) -> bool:
    """True when role ranks at or above threshold."""
    return Role.parse(role).rank >= Role.parse(threshold).rank


class PromotionAudience(str, enum.Enum):
    """Which customers a promotion targets."""
    ALL = "all"
    CASHIER = "cashier"
    MANAGER = "manager"


def can_use(customer_role: Role | str, target: PromotionAudience | str) -> bool:
    """Role eligibility predicate for promotions."""
    try:
        audience = PromotionAudience(target)
    except ValueError:
        return False
    if audience is PromotionAudience.ALL:
        return True
    if audience is PromotionAudience.CASHIER:
        return at_least(customer_role, Role.CASHIER)
    return at_least(customer_role, Role.MANAGER)


@dataclass(frozen=True)
class Actor:
    """
    Authenticated identity supplied by the request layer.

    The core never authenticates; it trusts (id, role) as given.
    """
    id: int
    role: Role

    def __post_init__(self):
        object.__setattr__(self, "role", Role.parse(self.role))

    def is_at_least(self, threshold: Role | str) -> bool:
        return at_least(self.role, threshold)

    @property
    def is_manager(self) -> bool:
        return self.is_at_least(Role.MANAGER)
