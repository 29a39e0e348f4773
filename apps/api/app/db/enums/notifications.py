"""Notification-related enums."""

from enum import Enum


class NotificationCategory(str, Enum):
    """Categories a user can opt out of individually."""

    MESSAGE = "message"
    DOCUMENT_UPLOADED = "document_uploaded"
    CASE_UPDATED = "case_updated"


class RecipientType(str, Enum):
    """Who a message is addressed to."""

    USER = "user"
    ORGANISATION = "organisation"
    CASE = "case"
