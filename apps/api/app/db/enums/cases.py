"""Case, payment and timeline enums."""

from enum import Enum


class DebtorType(str, Enum):
    INDIVIDUAL = "individual"
    ORGANISATION = "organisation"


class ActivityType(str, Enum):
    """Timeline entry types written by the portal itself.

    Externally pushed activities may carry any type string.
    """

    CASE_CREATED = "case_created"
    CASE_ARCHIVED = "case_archived"
    CASE_UNARCHIVED = "case_unarchived"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_UPDATED = "payment_updated"
    PAYMENT_DELETED = "payment_deleted"
    PAYMENT_REVERSED = "payment_reversed"
    DOCUMENT_UPLOADED = "document_uploaded"


class EntityType(str, Enum):
    """Entity types addressable by external reference."""

    ORGANISATION = "organisation"
    USER = "user"
    CASE = "case"
    PAYMENT = "payment"


class ResolveOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
