"""Who performed a mutation.

Every audited or notified mutation carries an explicit actor: either a
portal user (``Human``) or the external system of record
(``ExternalSystem``). Services never look up a stand-in "system admin".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union
from uuid import UUID

from app.db.enums import Role

EXTERNAL_ACTOR_KEY = "external"
EXTERNAL_SYSTEM_NAME = "External System"


@dataclass(frozen=True)
class Human:
    user_id: UUID
    role: Role = Role.MEMBER
    display_name: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin


@dataclass(frozen=True)
class ExternalSystem:
    name: str = EXTERNAL_SYSTEM_NAME

    @property
    def is_admin(self) -> bool:
        # Pushes from the system of record are treated as staff-originated
        return True


Actor = Union[Human, ExternalSystem]

EXTERNAL_SYSTEM = ExternalSystem()


def actor_key(actor: Actor) -> str:
    """Stable string stored in the audit trail's ``actor`` column."""
    if isinstance(actor, Human):
        return str(actor.user_id)
    return EXTERNAL_ACTOR_KEY


def actor_user_id(actor: Actor) -> UUID | None:
    return actor.user_id if isinstance(actor, Human) else None


def actor_name(actor: Actor) -> str:
    if isinstance(actor, Human):
        return actor.display_name or actor.email or str(actor.user_id)
    return actor.name


def human_from_user(user) -> Human:
    """Build a Human actor from a User row."""
    return Human(
        user_id=user.id,
        role=user.portal_role,
        display_name=user.display_name,
        email=user.email,
    )
