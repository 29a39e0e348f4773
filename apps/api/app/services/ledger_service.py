"""Ledger engine - derives a case's outstanding balance.

outstanding = original + costs + interest + fees - sum(payments)

The stored ``Case.outstanding_amount`` is only a cache. It is recomputed from
the payment rows, in Decimal, inside the same transaction as every payment
write and every adjustment change. Callers take the case row lock first
(``lock_case``) so concurrent payment writes for one case are sequenced.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.exceptions import EntityNotFound
from app.db.enums import CLOSED_CASE_STATUS
from app.db.models import Case, Payment
from app.utils.normalization import ZERO, to_money

logger = logging.getLogger(__name__)

ADJUSTMENT_FIELDS = ("costs_added", "interest_added", "fees_added")


@dataclass(frozen=True)
class LedgerCheck:
    case_id: UUID
    cached: Decimal
    recomputed: Decimal
    payments_total: Decimal
    payment_count: int

    @property
    def consistent(self) -> bool:
        return self.cached == self.recomputed


def lock_case(db: Session, case_id: UUID) -> Case:
    """
    Load a case with a row lock held until the transaction ends.

    On SQLite FOR UPDATE is ignored; writers are serialised by the database
    lock instead.

    Raises:
        EntityNotFound: case does not exist
    """
    case = db.execute(
        select(Case).where(Case.id == case_id).with_for_update()
    ).scalar_one_or_none()
    if not case:
        raise EntityNotFound("case", case_id)
    return case


def sum_payments(db: Session, case_id: UUID) -> tuple[Decimal, int]:
    """Exact total of a case's payments (reversals are negative and net out)."""
    amounts = db.execute(
        select(Payment.amount).where(Payment.case_id == case_id)
    ).scalars().all()
    total = sum(amounts, ZERO)
    return to_money(total), len(amounts)


def compute_outstanding(case: Case, payments_total: Decimal) -> Decimal:
    return to_money(case.total_debt - payments_total)


def recompute_outstanding(db: Session, case: Case) -> Decimal:
    """
    Recompute and cache the outstanding balance from source rows.

    Flushes first so payment rows written in this transaction are counted.
    Does not commit.
    """
    db.flush()
    payments_total, _ = sum_payments(db, case.id)
    outstanding = compute_outstanding(case, payments_total)
    if case.outstanding_amount != outstanding:
        logger.debug(
            "Outstanding for case %s: %s -> %s", case.id, case.outstanding_amount, outstanding
        )
    case.outstanding_amount = outstanding
    db.flush()
    return outstanding


def verify_outstanding(db: Session, case_id: UUID) -> LedgerCheck:
    """Compare the cached balance with a fresh derivation, without writing."""
    case = db.get(Case, case_id)
    if not case:
        raise EntityNotFound("case", case_id)
    payments_total, count = sum_payments(db, case_id)
    check = LedgerCheck(
        case_id=case.id,
        cached=case.outstanding_amount,
        recomputed=compute_outstanding(case, payments_total),
        payments_total=payments_total,
        payment_count=count,
    )
    if not check.consistent:
        logger.warning(
            "Ledger drift on case %s: cached=%s recomputed=%s",
            case_id,
            check.cached,
            check.recomputed,
        )
    return check


@dataclass(frozen=True)
class CaseStats:
    active_cases: int
    closed_cases: int
    total_outstanding: Decimal
    total_recovery: Decimal


def case_stats(db: Session, organisation_ids: Collection[UUID] | None = None) -> CaseStats:
    """
    Portfolio totals over non-archived cases.

    Closed cases only count towards ``closed_cases``; outstanding and
    recovered amounts cover open cases. ``organisation_ids=None`` means every
    organisation.
    """
    is_open = func.lower(Case.status) != CLOSED_CASE_STATUS
    cases = select(Case.status, Case.outstanding_amount).where(Case.is_archived.is_(False))
    recovered = (
        select(Payment.amount)
        .join(Case, Case.id == Payment.case_id)
        .where(Case.is_archived.is_(False))
        .where(is_open)
    )
    if organisation_ids is not None:
        cases = cases.where(Case.organisation_id.in_(list(organisation_ids)))
        recovered = recovered.where(Case.organisation_id.in_(list(organisation_ids)))

    active = closed = 0
    total_outstanding = ZERO
    for status, outstanding in db.execute(cases):
        if status.lower() == CLOSED_CASE_STATUS:
            closed += 1
        else:
            active += 1
            total_outstanding += outstanding
    # Summed here, not in SQL: SQLite stores Money as text
    total_recovery = sum(db.execute(recovered).scalars().all(), ZERO)

    return CaseStats(
        active_cases=active,
        closed_cases=closed,
        total_outstanding=to_money(total_outstanding),
        total_recovery=to_money(total_recovery),
    )
