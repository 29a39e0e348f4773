"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    Portal roles, consulted once per authorization or routing decision.

    - SUPER_ADMIN: Admin who may also hard-delete cases
    - ADMIN: Case handler staff (receives user-originated case messages)
    - OWNER: Organisation owner (client side)
    - MEMBER: Organisation member (client side)
    """

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    OWNER = "owner"
    MEMBER = "member"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_

    @property
    def is_admin(self) -> bool:
        return self in ADMIN_ROLES


ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN})

# Roles a user can hold inside an organisation assignment
ORGANISATION_ROLES = frozenset({Role.OWNER, Role.MEMBER})
