"""Cases, their payment ledger and timeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import DEFAULT_CASE_STAGE, DEFAULT_CASE_STATUS, DEFAULT_DEBTOR_TYPE
from app.utils.datetime_parsing import utc_now
from app.utils.normalization import ZERO

if TYPE_CHECKING:
    from app.db.models import Organisation


class Case(Base):
    """
    A debt recovery case.

    ``outstanding_amount`` is a cache. The source of truth is
    original + costs + interest + fees - sum(payments); ledger_service
    recomputes it whenever a payment or adjustment changes.
    """

    __tablename__ = "cases"
    __table_args__ = (
        Index("idx_cases_org_account", "organisation_id", "account_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organisation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    account_number: Mapped[str] = mapped_column(String(100), nullable=False)
    case_name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)

    # Debtor
    debtor_type: Mapped[str] = mapped_column(String(20), default=DEFAULT_DEBTOR_TYPE, nullable=False)
    debtor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    debtor_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    debtor_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Ledger
    original_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    costs_added: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    interest_added: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    fees_added: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    outstanding_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)

    status: Mapped[str] = mapped_column(String(50), default=DEFAULT_CASE_STATUS, nullable=False)
    stage: Mapped[str] = mapped_column(String(50), default=DEFAULT_CASE_STAGE, nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(255), nullable=True)  # Handler name

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)
    archived_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    organisation: Mapped["Organisation"] = relationship(back_populates="cases")
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="case", order_by="Payment.payment_date"
    )

    @property
    def total_debt(self) -> Decimal:
        return self.original_amount + self.costs_added + self.interest_added + self.fees_added


class Payment(Base):
    """
    A payment against a case. A negative amount is a reversal, which points
    back at the payment it negates through ``reversal_of_id``.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organisation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_date: Mapped[datetime] = mapped_column(nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    recorded_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reversal_of_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    case: Mapped["Case"] = relationship(back_populates="payments")

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of_id is not None


class CaseActivity(Base):
    """Append-only timeline entry on a case."""

    __tablename__ = "case_activities"
    __table_args__ = (
        Index("idx_case_activities_case_created", "case_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)  # Display name
    performed_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
