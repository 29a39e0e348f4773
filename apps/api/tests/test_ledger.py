"""Tests for payments, reversals, adjustments and the derived outstanding balance."""

import random
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.actors import EXTERNAL_SYSTEM, human_from_user
from app.core.exceptions import (
    DependencyNotFound,
    DuplicateReference,
    EntityNotFound,
    InvalidAmount,
    MissingField,
    PermissionDenied,
    ValidationError,
)
from app.db.enums import ActivityType
from app.db.models import AuditEntry, Case, CaseActivity, Organisation, Payment
from app.schemas.external import PaymentUpdate, PaymentUpsert
from app.services import case_service, ledger_service, payment_service


def _pay(db, case, ref, amount, **extra):
    payload = {"externalRef": ref, "caseExternalRef": case.external_ref, "amount": amount}
    payload.update(extra)
    return payment_service.create_or_update_payment(db, PaymentUpsert.model_validate(payload), EXTERNAL_SYSTEM)


# =============================================================================
# Payments
# =============================================================================

def test_payment_reduces_outstanding(db, test_case):
    result = _pay(db, test_case, "PAY-1", "250.00", paymentDate="21/01/2025")

    assert result.created
    assert result.outstanding_amount == Decimal("750.00")
    assert result.payment.payment_date.day == 21
    assert result.payment.organisation_id == test_case.organisation_id
    db.refresh(test_case)
    assert test_case.outstanding_amount == Decimal("750.00")


def test_payment_upsert_is_idempotent(db, test_case):
    _pay(db, test_case, "PAY-1", "250.00")
    again = _pay(db, test_case, "PAY-1", "250.00")

    assert not again.created
    assert again.outstanding_amount == Decimal("750.00")
    assert db.execute(select(func.count(Payment.id))).scalar_one() == 1


def test_payment_amount_change_recomputes(db, test_case):
    _pay(db, test_case, "PAY-1", "250.00")
    result = payment_service.update_payment_by_ref(
        db, "PAY-1", PaymentUpdate(amount="100.00"), EXTERNAL_SYSTEM
    )
    assert result.outstanding_amount == Decimal("900.00")


def test_update_does_not_touch_date_when_absent(db, test_case):
    original = _pay(db, test_case, "PAY-1", "10.00", paymentDate="2025-01-21").payment.payment_date
    result = payment_service.update_payment_by_ref(db, "PAY-1", PaymentUpdate(notes="late"), EXTERNAL_SYSTEM)
    assert result.payment.payment_date == original
    assert result.payment.notes == "late"


def test_update_unknown_payment(db):
    with pytest.raises(EntityNotFound):
        payment_service.update_payment_by_ref(db, "NOPE", PaymentUpdate(amount="1"), EXTERNAL_SYSTEM)


def test_payment_requires_case_and_amount(db, test_case):
    with pytest.raises(MissingField) as exc_info:
        payment_service.create_or_update_payment(
            db, PaymentUpsert(external_ref="PAY-1", amount="1"), EXTERNAL_SYSTEM
        )
    assert exc_info.value.field == "caseExternalRef"

    with pytest.raises(MissingField) as exc_info:
        payment_service.create_or_update_payment(
            db, PaymentUpsert(external_ref="PAY-1", case_external_ref=test_case.external_ref), EXTERNAL_SYSTEM
        )
    assert exc_info.value.field == "amount"


def test_payment_for_unknown_case_leaves_no_row(db):
    with pytest.raises(DependencyNotFound):
        payment_service.create_or_update_payment(
            db, PaymentUpsert(external_ref="PAY-1", case_external_ref="CASE-NOPE", amount="5"), EXTERNAL_SYSTEM
        )
    assert db.execute(select(func.count(Payment.id))).scalar_one() == 0


def test_payment_cannot_move_between_cases(db, test_org, test_case):
    other = Case(
        organisation_id=test_org.id,
        account_number="ACC-2",
        case_name="Other",
        external_ref="CASE-OTHER",
        original_amount=Decimal("50.00"),
        outstanding_amount=Decimal("50.00"),
    )
    db.add(other)
    db.commit()
    _pay(db, test_case, "PAY-1", "10.00")

    with pytest.raises(DuplicateReference):
        _pay(db, other, "PAY-1", "10.00")


def test_invalid_payment_amount_rejected_before_write(db, test_case):
    with pytest.raises(InvalidAmount) as exc_info:
        _pay(db, test_case, "PAY-1", "12.345")
    assert exc_info.value.field == "amount"
    assert db.execute(select(func.count(Payment.id))).scalar_one() == 0


def test_delete_last_payment_restores_baseline(db, test_case):
    _pay(db, test_case, "PAY-1", "400.00")

    outstanding = payment_service.delete_payment_by_ref(db, "PAY-1", EXTERNAL_SYSTEM)

    assert outstanding == Decimal("1000.00")
    assert db.execute(select(func.count(Payment.id))).scalar_one() == 0
    deletion = db.execute(
        select(AuditEntry).where(AuditEntry.table_name == "payments", AuditEntry.operation == "DELETE")
    ).scalar_one()
    assert "400.00" in deletion.old_value


def test_delete_unknown_payment_changes_nothing(db, test_case):
    _pay(db, test_case, "PAY-1", "400.00")
    with pytest.raises(EntityNotFound):
        payment_service.delete_payment_by_ref(db, "PAY-404", EXTERNAL_SYSTEM)
    db.refresh(test_case)
    assert test_case.outstanding_amount == Decimal("600.00")


def test_overpayment_goes_negative(db, test_case):
    result = _pay(db, test_case, "PAY-1", "1200.00")
    assert result.outstanding_amount == Decimal("-200.00")


def test_many_cent_payments_sum_exactly(db, test_org):
    rng = random.Random(20250121)
    amounts = [Decimal(rng.randint(1, 9999)).scaleb(-2) for _ in range(10_000)]
    case = Case(
        organisation_id=test_org.id,
        account_number="ACC-BIG",
        case_name="Bulk Debtor",
        external_ref="CASE-BIG",
        original_amount=Decimal("9999999.99"),
    )
    db.add(case)
    db.flush()
    db.add_all(
        Payment(
            case_id=case.id,
            organisation_id=test_org.id,
            amount=amount,
            payment_date=case.created_at,
            external_ref=f"PAY-{index}",
        )
        for index, amount in enumerate(amounts)
    )
    db.commit()

    outstanding = ledger_service.recompute_outstanding(db, ledger_service.lock_case(db, case.id))

    assert outstanding == Decimal("9999999.99") - sum(amounts, Decimal("0"))
    assert outstanding.as_tuple().exponent == -2
    assert ledger_service.verify_outstanding(db, case.id).consistent


def test_verify_outstanding_reports_drift(db, test_case):
    _pay(db, test_case, "PAY-1", "10.00")
    test_case.outstanding_amount = Decimal("5.00")
    db.commit()

    check = ledger_service.verify_outstanding(db, test_case.id)
    assert not check.consistent
    assert check.recomputed == Decimal("990.00")
    assert check.payment_count == 1


def test_payment_logs_activity(db, test_case):
    _pay(db, test_case, "PAY-1", "10.00")
    kinds = db.execute(
        select(CaseActivity.activity_type).where(CaseActivity.case_id == test_case.id)
    ).scalars().all()
    assert ActivityType.PAYMENT_RECEIVED.value in kinds


# =============================================================================
# Reversals
# =============================================================================

def test_reversal_negates_and_is_idempotent(db, test_case):
    _pay(db, test_case, "PAY-1", "300.00", reference="BACS-77")

    first = payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM, reason="Bounced")
    second = payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    assert not first.already_reversed
    assert first.reversal.amount == Decimal("-300.00")
    assert first.reversal.external_ref == "REV-PAY-1"
    assert first.reversal.reference == "REV-BACS-77"
    assert first.reversal.reversal_of_id == first.original.id
    assert first.outstanding_amount == Decimal("1000.00")

    assert second.already_reversed
    assert second.reversal.id == first.reversal.id
    assert second.outstanding_amount == Decimal("1000.00")
    assert db.execute(select(func.count(Payment.id))).scalar_one() == 2


def test_reversal_cannot_be_reversed(db, test_case):
    _pay(db, test_case, "PAY-1", "300.00")
    payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    with pytest.raises(ValidationError):
        payment_service.reverse_payment(db, "REV-PAY-1", EXTERNAL_SYSTEM)


def test_reverse_unknown_payment(db):
    with pytest.raises(EntityNotFound):
        payment_service.reverse_payment(db, "PAY-404", EXTERNAL_SYSTEM)


def test_deleting_original_keeps_reversal(db, test_case):
    _pay(db, test_case, "PAY-1", "300.00")
    payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    outstanding = payment_service.delete_payment_by_ref(db, "PAY-1", EXTERNAL_SYSTEM)

    reversal = db.execute(select(Payment).where(Payment.external_ref == "REV-PAY-1")).scalar_one()
    assert reversal.reversal_of_id is None
    assert outstanding == Decimal("1300.00")


def test_reversal_reference_falls_back_to_external_ref(db, test_case):
    _pay(db, test_case, "PAY-1", "80.00")

    result = payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    assert result.reversal.reference == "REV-PAY-1"


def test_reversal_prefix_reserved_for_new_payments(db, test_case):
    with pytest.raises(ValidationError) as exc_info:
        _pay(db, test_case, "REV-PAY-1", "5.00")
    assert exc_info.value.field == "externalRef"
    assert db.execute(select(func.count(Payment.id))).scalar_one() == 0


def test_unlinked_reversal_reference_is_not_taken_as_reversal(db, test_case):
    _pay(db, test_case, "PAY-1", "100.00")
    db.add(
        Payment(
            case_id=test_case.id,
            organisation_id=test_case.organisation_id,
            amount=Decimal("5.00"),
            payment_date=test_case.created_at,
            external_ref="REV-PAY-1",
        )
    )
    db.commit()

    with pytest.raises(DuplicateReference):
        payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    assert db.execute(select(func.count(Payment.id))).scalar_one() == 2
    original = db.execute(select(Payment).where(Payment.external_ref == "PAY-1")).scalar_one()
    assert db.execute(select(Payment).where(Payment.reversal_of_id == original.id)).first() is None


def test_repushed_payment_does_not_inherit_old_reversal(db, test_case):
    _pay(db, test_case, "PAY-1", "100.00")
    payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)
    payment_service.delete_payment_by_ref(db, "PAY-1", EXTERNAL_SYSTEM)
    _pay(db, test_case, "PAY-1", "50.00")

    with pytest.raises(DuplicateReference):
        payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    db.refresh(test_case)
    assert test_case.outstanding_amount == Decimal("1050.00")


def test_reversal_amount_cannot_be_edited(db, test_case):
    _pay(db, test_case, "PAY-1", "300.00")
    payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)

    with pytest.raises(ValidationError):
        payment_service.update_payment_by_ref(db, "REV-PAY-1", PaymentUpdate(amount="5.00"), EXTERNAL_SYSTEM)
    with pytest.raises(ValidationError):
        _pay(db, test_case, "REV-PAY-1", "5.00")

    updated = payment_service.update_payment_by_ref(
        db, "REV-PAY-1", PaymentUpdate(notes="Chargeback confirmed"), EXTERNAL_SYSTEM
    )
    assert updated.payment.amount == Decimal("-300.00")
    assert updated.outstanding_amount == Decimal("1000.00")


# =============================================================================
# Adjustments / archive / delete
# =============================================================================

def test_adjustments_recompute_in_one_step(db, test_case, admin_user):
    _pay(db, test_case, "PAY-1", "100.00")

    case = case_service.update_adjustments(
        db,
        test_case.id,
        {"costs_added": "50.00", "interest_added": "12.34", "fees_added": None},
        human_from_user(admin_user),
    )

    assert case.costs_added == Decimal("50.00")
    assert case.interest_added == Decimal("12.34")
    assert case.fees_added == Decimal("0.00")
    assert case.outstanding_amount == Decimal("962.34")


def test_bad_adjustment_changes_nothing(db, test_case, admin_user):
    with pytest.raises(InvalidAmount) as exc_info:
        case_service.update_adjustments(
            db, test_case.id, {"costs_added": "1.001"}, human_from_user(admin_user)
        )
    assert exc_info.value.field == "costsAdded"
    db.refresh(test_case)
    assert test_case.costs_added == Decimal("0.00")


def test_archive_is_idempotent(db, test_case, admin_user):
    actor = human_from_user(admin_user)
    case_service.archive_case(db, test_case.id, actor)
    case = case_service.archive_case(db, test_case.id, actor)

    assert case.is_archived
    assert case.archived_by == admin_user.id
    archived = db.execute(
        select(func.count(CaseActivity.id)).where(
            CaseActivity.case_id == test_case.id,
            CaseActivity.activity_type == ActivityType.CASE_ARCHIVED.value,
        )
    ).scalar_one()
    assert archived == 1

    restored = case_service.unarchive_case(db, test_case.id, actor)
    assert not restored.is_archived
    assert restored.archived_at is None


def test_delete_case_requires_super_admin(db, test_case, admin_user):
    with pytest.raises(PermissionDenied):
        case_service.delete_case(db, test_case.id, human_from_user(admin_user))


def test_delete_case_removes_dependents(db, test_case, super_admin):
    _pay(db, test_case, "PAY-1", "100.00")
    payment_service.reverse_payment(db, "PAY-1", EXTERNAL_SYSTEM)
    case_id = test_case.id

    removed = case_service.delete_case(db, case_id, human_from_user(super_admin))

    assert removed["payments"] == 2
    assert removed["activities"] >= 1
    assert db.get(Case, case_id) is None
    deletion = db.execute(
        select(AuditEntry).where(
            AuditEntry.table_name == "cases",
            AuditEntry.record_id == str(case_id),
            AuditEntry.operation == "DELETE",
        )
    ).scalar_one()
    assert deletion.actor == str(super_admin.id)


# =============================================================================
# Portfolio stats
# =============================================================================

def _stats_case(db, organisation, ref, amount, **extra) -> Case:
    case = Case(
        organisation_id=organisation.id,
        account_number=f"ACC-{ref}",
        case_name="Debtor",
        external_ref=ref,
        original_amount=Decimal(amount),
        outstanding_amount=Decimal(amount),
        **extra,
    )
    db.add(case)
    db.commit()
    return case


def test_case_stats_cover_open_unarchived_cases(db, test_org, test_case):
    other_org = Organisation(name="Other Org", external_ref="ORG-OTHER")
    db.add(other_org)
    db.commit()
    closed = _stats_case(db, test_org, "CASE-CLOSED", "500.00", status="Closed")
    _stats_case(db, test_org, "CASE-ARCHIVED", "300.00", is_archived=True)
    elsewhere = _stats_case(db, other_org, "CASE-ELSEWHERE", "0.10")

    _pay(db, test_case, "PAY-1", "100.01")
    _pay(db, closed, "PAY-2", "50.00")
    _pay(db, elsewhere, "PAY-3", "0.05")

    scoped = ledger_service.case_stats(db, [test_org.id])
    assert (scoped.active_cases, scoped.closed_cases) == (1, 1)
    assert scoped.total_outstanding == Decimal("899.99")
    assert scoped.total_recovery == Decimal("100.01")

    overall = ledger_service.case_stats(db)
    assert overall.active_cases == 2
    assert overall.total_outstanding == Decimal("900.04")
    assert overall.total_recovery == Decimal("100.06")


def test_case_stats_empty_portfolio(db, test_org):
    stats = ledger_service.case_stats(db, [test_org.id])
    assert stats == ledger_service.CaseStats(0, 0, Decimal("0.00"), Decimal("0.00"))
