from enum import Enum


class Role(str, Enum):
    """User role, ordered member < moderator < co-owner < owner."""

    MEMBER = "member"
    MODERATOR = "moderator"
    CO_OWNER = "co-owner"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def at_least(self, minimum: "Role") -> bool:
        return self.rank >= minimum.rank


_RANKS = {
    Role.MEMBER: 0,
    Role.MODERATOR: 1,
    Role.CO_OWNER: 2,
    Role.OWNER: 3,
}


def compare_roles(a: Role, b: Role) -> int:
    """total order over roles: negative, zero or positive like cmp()"""
    return a.rank - b.rank


class UserStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
