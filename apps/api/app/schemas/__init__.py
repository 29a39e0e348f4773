"""Pydantic schemas for API request/response models."""

from app.schemas.external import (
    BulkSyncRequest,
    BulkSyncResponse,
    CaseUpsert,
    OrganisationUpsert,
    PaymentUpsert,
    UserUpsert,
)
from app.schemas.portal import CaseRead, DocumentRead, MessageRead, PaymentRead

__all__ = [
    # External
    "OrganisationUpsert",
    "UserUpsert",
    "CaseUpsert",
    "PaymentUpsert",
    "BulkSyncRequest",
    "BulkSyncResponse",
    # Portal
    "CaseRead",
    "PaymentRead",
    "MessageRead",
    "DocumentRead",
]
