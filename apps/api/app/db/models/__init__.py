"""SQLAlchemy ORM models."""

from app.db.models.audit import AuditEntry
from app.db.models.auth import Organisation, User, UserOrganisation
from app.db.models.cases import Case, CaseActivity, Payment
from app.db.models.communications import Document, Message
from app.db.models.notifications import CaseAccessRestriction, MutedCase

__all__ = [
    "AuditEntry",
    "Case",
    "CaseAccessRestriction",
    "CaseActivity",
    "Document",
    "Message",
    "MutedCase",
    "Organisation",
    "Payment",
    "User",
    "UserOrganisation",
]
