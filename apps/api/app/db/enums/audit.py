"""Audit enums."""

from enum import Enum


class AuditOperation(str, Enum):
    """Operations recorded in the append-only audit trail."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    VIEW = "VIEW"
    DOWNLOAD = "DOWNLOAD"
