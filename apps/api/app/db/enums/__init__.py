"""Enum definitions for application constants."""

from app.db.enums.audit import AuditOperation
from app.db.enums.auth import ADMIN_ROLES, ORGANISATION_ROLES, Role
from app.db.enums.cases import ActivityType, DebtorType, EntityType, ResolveOutcome
from app.db.enums.defaults import (
    CLOSED_CASE_STATUS,
    DEFAULT_CASE_STAGE,
    DEFAULT_CASE_STATUS,
    DEFAULT_DEBTOR_TYPE,
)
from app.db.enums.notifications import NotificationCategory, RecipientType

__all__ = [
    "ADMIN_ROLES",
    "ActivityType",
    "AuditOperation",
    "CLOSED_CASE_STATUS",
    "DEFAULT_CASE_STAGE",
    "DEFAULT_CASE_STATUS",
    "DEFAULT_DEBTOR_TYPE",
    "DebtorType",
    "EntityType",
    "NotificationCategory",
    "ORGANISATION_ROLES",
    "RecipientType",
    "ResolveOutcome",
    "Role",
]
