"""Pydantic schemas for the internal portal surface (admin and user actions)."""

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.external import RawAmount


# =============================================================================
# Cases
# =============================================================================

class CaseRead(BaseModel):
    id: UUID
    organisation_id: UUID
    account_number: str
    case_name: str
    external_ref: str | None
    original_amount: Decimal
    costs_added: Decimal
    interest_added: Decimal
    fees_added: Decimal
    outstanding_amount: Decimal
    status: str
    stage: str
    assigned_to: str | None
    is_archived: bool
    archived_at: datetime | None

    model_config = {"from_attributes": True}


class AdjustmentUpdate(BaseModel):
    """Costs / interest / fees; omitted fields are left alone."""
    costs_added: RawAmount | None = None
    interest_added: RawAmount | None = None
    fees_added: RawAmount | None = None


class LedgerRead(BaseModel):
    case_id: UUID
    cached_outstanding: Decimal
    recomputed_outstanding: Decimal
    payments_total: Decimal
    payment_count: int
    consistent: bool


class CaseStatsRead(BaseModel):
    """Portfolio totals over non-archived cases; money covers open cases only."""
    active_cases: int
    closed_cases: int
    total_outstanding: Decimal
    total_recovery: Decimal

    model_config = {"from_attributes": True}


class CaseDeleteResponse(BaseModel):
    deleted: bool = True
    case_id: UUID
    removed: dict[str, int]


class CaseViewResponse(BaseModel):
    case_id: UUID
    first_view: bool


class PaymentRead(BaseModel):
    id: UUID
    case_id: UUID
    amount: Decimal
    payment_date: datetime
    payment_method: str | None
    reference: str | None
    external_ref: str | None
    reversal_of_id: UUID | None

    model_config = {"from_attributes": True}


# =============================================================================
# Messages
# =============================================================================

class CaseMessageCreate(BaseModel):
    content: str = Field(..., min_length=1)
    subject: str | None = Field(None, max_length=255)


class AdminMessageCreate(BaseModel):
    recipient_type: Literal["user", "organisation"]
    recipient_id: UUID
    content: str = Field(..., min_length=1)
    subject: str | None = Field(None, max_length=255)


class MessageRead(BaseModel):
    id: UUID
    sender_id: UUID | None
    sender_name: str
    recipient_type: str
    recipient_id: UUID | None
    case_id: UUID | None
    subject: str | None
    content: str
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageSendResponse(BaseModel):
    message: MessageRead
    notifications_sent: int


# =============================================================================
# Documents
# =============================================================================

class DocumentCreate(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., ge=0)
    file_type: str | None = Field(None, max_length=100)
    file_path: str = Field(..., min_length=1, max_length=500)


class DocumentRead(BaseModel):
    id: UUID
    case_id: UUID | None
    organisation_id: UUID
    uploaded_by: UUID | None
    file_name: str
    file_size: int
    file_type: str | None
    file_path: str
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentUploadResponse(BaseModel):
    document: DocumentRead
    notifications_sent: int


# =============================================================================
# Mutes, blocks and preferences
# =============================================================================

class ToggleResponse(BaseModel):
    case_id: UUID
    user_id: UUID
    active: bool
    changed: bool


class NotificationSettingsRead(BaseModel):
    email_notifications: bool
    document_notifications: bool
    case_update_notifications: bool
    auto_mute_new_cases: bool


class NotificationSettingsUpdate(BaseModel):
    email_notifications: bool | None = None
    document_notifications: bool | None = None
    case_update_notifications: bool | None = None
    auto_mute_new_cases: bool | None = None
