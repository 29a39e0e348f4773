"""Service layer modules."""

# Import service modules (not individual functions) for cleaner access
from app.services import activity_service
from app.services import audit_service
from app.services import bulk_sync_service
from app.services import case_service
from app.services import document_service
from app.services import email_service
from app.services import ledger_service
from app.services import message_service
from app.services import notification_service
from app.services import organisation_service
from app.services import payment_service
from app.services import reference_service
from app.services import user_service

__all__ = [
    "activity_service",
    "audit_service",
    "bulk_sync_service",
    "case_service",
    "document_service",
    "email_service",
    "ledger_service",
    "message_service",
    "notification_service",
    "organisation_service",
    "payment_service",
    "reference_service",
    "user_service",
]
