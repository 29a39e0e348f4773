"""Pydantic schemas for the external system-of-record API.

Field names are camelCase on the wire. Amounts are carried as the raw
literal (string, integer or exact Decimal) and parsed by the normalizer in
the service layer, so a malformed amount is a 400 with the field named
rather than a schema error. Dates are likewise raw strings.
"""

from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

# float is listed only so a binary float reaches the normalizer and is
# rejected there with a field-level error
RawAmount = Decimal | int | str | float


class ExternalModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def supplied(self, *exclude: str) -> dict[str, Any]:
        """Fields the caller actually sent with a non-null value."""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None and key not in exclude
        }


# =============================================================================
# Upserts
# =============================================================================

class OrganisationUpsert(ExternalModel):
    external_ref: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(None, max_length=255)  # Required on create
    contact_email: EmailStr | None = None
    contact_phone: str | None = Field(None, max_length=50)
    address: str | None = None


class UserUpsert(ExternalModel):
    external_ref: str = Field(..., min_length=1, max_length=100)
    email: EmailStr | None = None  # Required on create
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=50)
    organisation_external_ref: str | None = Field(None, max_length=100)
    organisation_role: Literal["member", "owner"] | None = None
    is_admin: bool | None = None


class CaseUpsert(ExternalModel):
    external_ref: str = Field(..., min_length=1, max_length=100)
    organisation_external_ref: str | None = Field(None, max_length=100)  # Required on create
    account_number: str | None = Field(None, max_length=100)  # Required on create
    case_name: str | None = Field(None, max_length=255)  # Required on create
    debtor_type: Literal["individual", "organisation"] | None = None
    debtor_email: EmailStr | None = None
    debtor_phone: str | None = Field(None, max_length=50)
    debtor_address: str | None = None
    original_amount: RawAmount | None = None  # Required on create
    costs_added: RawAmount | None = None
    interest_added: RawAmount | None = None
    fees_added: RawAmount | None = None
    status: str | None = Field(None, max_length=50)
    stage: str | None = Field(None, max_length=50)
    assigned_to: str | None = Field(None, max_length=255)


class PaymentUpsert(ExternalModel):
    external_ref: str = Field(..., min_length=1, max_length=100)
    case_external_ref: str | None = Field(None, max_length=100)  # Required on create
    amount: RawAmount | None = None  # Required on create
    payment_date: str | None = None  # Defaults to now on create only
    payment_method: str | None = Field(None, max_length=50)
    reference: str | None = Field(None, max_length=255)
    notes: str | None = None


class PaymentUpdate(ExternalModel):
    """Update by external reference (taken from the path)."""
    amount: RawAmount | None = None
    payment_date: str | None = None
    payment_method: str | None = Field(None, max_length=50)
    reference: str | None = Field(None, max_length=255)
    notes: str | None = None


class PaymentReverse(ExternalModel):
    reason: str | None = Field(None, max_length=500)


class ActivityPush(ExternalModel):
    case_external_ref: str = Field(..., min_length=1, max_length=100)
    activity_type: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., min_length=1)
    performed_by: str | None = Field(None, max_length=255)
    activity_date: str | None = None  # Defaults to now


class MessagePush(ExternalModel):
    case_external_ref: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1)
    sender_name: str | None = Field(None, max_length=255)
    subject: str | None = Field(None, max_length=255)
    send_notifications: bool = True


class BulkSyncRequest(ExternalModel):
    """Items stay raw so each one is validated (and can fail) on its own."""
    organisations: list[dict[str, Any]] = Field(default_factory=list)
    users: list[dict[str, Any]] = Field(default_factory=list)
    cases: list[dict[str, Any]] = Field(default_factory=list)
    payments: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Responses
# =============================================================================

class UpsertResponse(ExternalModel):
    id: UUID
    external_ref: str
    created: bool


class UserUpsertResponse(UpsertResponse):
    email: str
    # Returned once, on create only
    temp_password: str | None = None
    must_change_password: bool


class CaseUpsertResponse(UpsertResponse):
    account_number: str
    outstanding_amount: Decimal


class PaymentResponse(ExternalModel):
    id: UUID
    external_ref: str | None
    case_id: UUID
    amount: Decimal
    reference: str | None
    created: bool = False
    outstanding_amount: Decimal


class PaymentReverseResponse(PaymentResponse):
    reversal_of: UUID
    already_reversed: bool


class PaymentDeleteResponse(ExternalModel):
    deleted: bool
    external_ref: str
    outstanding_amount: Decimal


class TimelineResponse(ExternalModel):
    id: UUID
    case_id: UUID


class MessagePushResponse(TimelineResponse):
    notifications_sent: int


class BulkItemError(ExternalModel):
    external_ref: str | None
    error: str
    code: str


class BulkCategoryResult(ExternalModel):
    created: int = 0
    updated: int = 0
    errors: list[BulkItemError] = Field(default_factory=list)


class BulkSyncResponse(ExternalModel):
    organisations: BulkCategoryResult
    users: BulkCategoryResult
    cases: BulkCategoryResult
    payments: BulkCategoryResult
