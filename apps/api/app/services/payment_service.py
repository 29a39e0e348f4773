"""Payment service - ledger writes by external reference.

Every write locks the case row, changes payment rows, recomputes the case's
outstanding balance, appends a timeline entry and an audit entry, then
commits once. A reader never sees a payment without its balance.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.actors import Actor, actor_user_id
from app.core.exceptions import (
    DuplicateReference,
    EntityNotFound,
    MissingField,
    ValidationError,
)
from app.core.locks import reference_lock
from app.core.structured_logging import build_log_context
from app.db.enums import AuditOperation, EntityType
from app.db.models import Case, Payment, UserOrganisation
from app.schemas.external import PaymentUpdate, PaymentUpsert
from app.services import activity_service, audit_service, ledger_service, reference_service
from app.services.reference_service import ResolveResult
from app.utils.datetime_parsing import parse_optional_date, utc_now
from app.utils.normalization import normalize_reference, parse_amount

logger = logging.getLogger(__name__)

REVERSAL_PREFIX = "REV-"


@dataclass
class PaymentWrite:
    payment: Payment
    created: bool
    outstanding_amount: Decimal


@dataclass
class ReversalResult:
    reversal: Payment
    original: Payment
    already_reversed: bool
    outstanding_amount: Decimal


def reversal_ref(external_ref: str) -> str:
    return f"{REVERSAL_PREFIX}{external_ref}"


def _fields(data: PaymentUpsert | PaymentUpdate) -> dict:
    fields = data.supplied("external_ref", "case_external_ref")
    if "amount" in fields:
        fields["amount"] = parse_amount(fields["amount"], field="amount")
    if "payment_date" in fields:
        fields["payment_date"] = parse_optional_date(fields["payment_date"], field="paymentDate")
    if "reference" in fields:
        fields["reference"] = normalize_reference(fields["reference"])
    return {key: value for key, value in fields.items() if value is not None}


def _guard_reversal_amount(payment: Payment, fields: dict) -> None:
    """A reversal always negates its original; its amount is fixed."""
    if payment.is_reversal and "amount" in fields and fields["amount"] != payment.amount:
        raise ValidationError("The amount of a reversal cannot be changed", field="amount")


def _require_payment(db: Session, external_ref: str) -> Payment:
    payment = reference_service.find_by_external_ref(db, Payment, external_ref)
    if payment is None:
        raise EntityNotFound(EntityType.PAYMENT.value, external_ref)
    return payment


def _audit_write(db: Session, payment: Payment, actor: Actor, before: dict, created: bool) -> None:
    after = audit_service.snapshot(payment)
    if created:
        audit_service.record(
            db,
            "payments",
            payment.id,
            AuditOperation.INSERT,
            actor,
            new=after,
            description=f"Payment {payment.external_ref or payment.id} recorded",
            organisation_id=payment.organisation_id,
        )
    else:
        audit_service.record_change(
            db,
            "payments",
            payment.id,
            actor,
            before,
            after,
            description=f"Payment {payment.external_ref or payment.id} updated",
            organisation_id=payment.organisation_id,
        )


def create_or_update_payment(db: Session, data: PaymentUpsert, actor: Actor) -> PaymentWrite:
    """
    Record a payment by external reference, or update the existing one.

    ``paymentDate`` defaults to now only when the payment is created.

    Raises:
        DependencyNotFound: case reference unknown
        DuplicateReference: external reference belongs to a payment on another case
        InvalidAmount / InvalidDate: malformed amount or date
        MissingField: creating without caseExternalRef or amount
    """
    fields = _fields(data)

    with reference_lock(db, EntityType.PAYMENT.value, data.external_ref):
        existing = reference_service.find_by_external_ref(db, Payment, data.external_ref)
        if existing is None:
            if data.external_ref.upper().startswith(REVERSAL_PREFIX):
                raise ValidationError(
                    f"References starting with '{REVERSAL_PREFIX}' are reserved for reversals",
                    field="externalRef",
                )
            if not data.case_external_ref:
                raise MissingField("caseExternalRef")
        else:
            _guard_reversal_amount(existing, fields)

        if data.case_external_ref:
            case = reference_service.require_case(db, data.case_external_ref)
            if existing is not None and existing.case_id != case.id:
                raise DuplicateReference(
                    EntityType.PAYMENT.value,
                    data.external_ref,
                    conflicting_id=existing.id,
                    message=f"Payment '{data.external_ref}' is recorded against a different case",
                )
        else:
            case = existing.case

        case = ledger_service.lock_case(db, case.id)
        previous_amount = existing.amount if existing is not None else None

        def validate_create(values: dict) -> None:
            if values.get("amount") is None:
                raise MissingField("amount")
            values.setdefault("payment_date", utc_now())

        result: ResolveResult[Payment] = reference_service.resolve(
            db,
            Payment,
            data.external_ref,
            fields,
            create_defaults={
                "case_id": case.id,
                "organisation_id": case.organisation_id,
                "recorded_by": actor_user_id(actor),
            },
            validate_create=validate_create,
        )
        payment = result.entity
        outstanding = ledger_service.recompute_outstanding(db, case)

        if result.created:
            activity_service.log_payment_received(db, payment, actor)
        else:
            activity_service.log_payment_updated(
                db, payment, actor, previous_amount if previous_amount is not None else payment.amount
            )
        _audit_write(db, payment, actor, result.before, result.created)
        db.commit()

    db.refresh(payment)
    logger.info(
        "Payment %s %s; case %s outstanding %s",
        data.external_ref,
        result.outcome.value,
        case.id,
        outstanding,
        extra=build_log_context(
            actor=actor, entity_type="payment", external_ref=data.external_ref, case_id=case.id
        ),
    )
    return PaymentWrite(payment=payment, created=result.created, outstanding_amount=outstanding)


def update_payment_by_ref(
    db: Session,
    external_ref: str,
    data: PaymentUpdate,
    actor: Actor,
) -> PaymentWrite:
    """
    Partially update an existing payment. Never creates, never defaults the date.

    Raises:
        EntityNotFound: no payment with that reference
    """
    fields = _fields(data)

    with reference_lock(db, EntityType.PAYMENT.value, external_ref):
        payment = _require_payment(db, external_ref)
        _guard_reversal_amount(payment, fields)
        case = ledger_service.lock_case(db, payment.case_id)

        before = audit_service.snapshot(payment)
        previous_amount = payment.amount
        reference_service.apply_fields(payment, fields)
        outstanding = ledger_service.recompute_outstanding(db, case)

        activity_service.log_payment_updated(db, payment, actor, previous_amount)
        _audit_write(db, payment, actor, before, created=False)
        db.commit()

    db.refresh(payment)
    logger.info(
        "Payment %s updated; case %s outstanding %s",
        external_ref,
        case.id,
        outstanding,
        extra=build_log_context(actor=actor, entity_type="payment", external_ref=external_ref),
    )
    return PaymentWrite(payment=payment, created=False, outstanding_amount=outstanding)


def delete_payment_by_ref(db: Session, external_ref: str, actor: Actor) -> Decimal:
    """
    Hard-delete a payment; the audit trail keeps its last state.

    Returns:
        The case's recomputed outstanding balance

    Raises:
        EntityNotFound: no payment with that reference (nothing changes)
    """
    with reference_lock(db, EntityType.PAYMENT.value, external_ref):
        payment = _require_payment(db, external_ref)
        case = ledger_service.lock_case(db, payment.case_id)
        before = audit_service.snapshot(payment)

        activity_service.log_payment_deleted(db, payment, actor)
        # Reversals pointing at this payment keep their amount, lose the link
        for reversal in db.execute(
            select(Payment).where(Payment.reversal_of_id == payment.id)
        ).scalars():
            reversal.reversal_of_id = None
        db.delete(payment)
        outstanding = ledger_service.recompute_outstanding(db, case)

        audit_service.record(
            db,
            "payments",
            before["id"],
            AuditOperation.DELETE,
            actor,
            old=before,
            description=f"Payment {external_ref} deleted",
            organisation_id=before["organisation_id"],
        )
        db.commit()

    logger.info(
        "Payment %s deleted; case %s outstanding %s",
        external_ref,
        case.id,
        outstanding,
        extra=build_log_context(actor=actor, entity_type="payment", external_ref=external_ref),
    )
    return outstanding


def reverse_payment(
    db: Session,
    external_ref: str,
    actor: Actor,
    reason: str | None = None,
) -> ReversalResult:
    """
    Negate a payment with a linked negative payment.

    The reversal's external reference is ``REV-<original externalRef>``.
    A retried reversal finds the payment already linked to the original and
    returns it instead of reversing twice.

    Raises:
        EntityNotFound: no payment with that reference
        ValidationError: the payment is itself a reversal
        DuplicateReference: ``REV-<ref>`` is held by a payment that does not
            reverse this one (e.g. a reversal orphaned by deleting an earlier
            payment with the same reference)
    """
    rev_ref = reversal_ref(external_ref)

    with reference_lock(db, EntityType.PAYMENT.value, rev_ref):
        original = _require_payment(db, external_ref)
        if original.is_reversal:
            raise ValidationError("A reversal cannot itself be reversed", field="externalRef")

        case = ledger_service.lock_case(db, original.case_id)
        existing = db.execute(
            select(Payment).where(Payment.reversal_of_id == original.id).limit(1)
        ).scalar_one_or_none()
        if existing is not None:
            outstanding = ledger_service.recompute_outstanding(db, case)
            db.commit()
            logger.info("Payment %s already reversed by %s", external_ref, existing.id)
            return ReversalResult(
                reversal=existing,
                original=original,
                already_reversed=True,
                outstanding_amount=outstanding,
            )

        holder = reference_service.find_by_external_ref(db, Payment, rev_ref)
        if holder is not None:
            raise DuplicateReference(
                EntityType.PAYMENT.value,
                rev_ref,
                conflicting_id=holder.id,
                message=f"Reversal reference '{rev_ref}' is held by a payment that does not reverse '{external_ref}'",
            )

        notes = f"Reversal of payment {original.reference or external_ref}"
        if reason:
            notes = f"{notes}: {reason}"
        result = reference_service.resolve(
            db,
            Payment,
            rev_ref,
            {
                "case_id": case.id,
                "organisation_id": original.organisation_id,
                "amount": -original.amount,
                "payment_date": utc_now(),
                "payment_method": original.payment_method,
                "reference": reversal_ref(original.reference or external_ref),
                "notes": notes,
                "recorded_by": actor_user_id(actor),
                "reversal_of_id": original.id,
            },
        )
        reversal = result.entity
        outstanding = ledger_service.recompute_outstanding(db, case)

        activity_service.log_payment_reversed(db, reversal, actor, reason)
        audit_service.record(
            db,
            "payments",
            reversal.id,
            AuditOperation.INSERT,
            actor,
            new=audit_service.snapshot(reversal),
            description=f"Payment {external_ref} reversed",
            organisation_id=reversal.organisation_id,
        )
        db.commit()

    db.refresh(reversal)
    logger.info(
        "Payment %s reversed by %s; case %s outstanding %s",
        external_ref,
        reversal.id,
        case.id,
        outstanding,
        extra=build_log_context(actor=actor, entity_type="payment", external_ref=external_ref),
    )
    return ReversalResult(
        reversal=reversal,
        original=original,
        already_reversed=False,
        outstanding_amount=outstanding,
    )


def list_payments_for_user(db: Session, user_id: UUID) -> list[Payment]:
    """Payments on the user's organisations' cases, newest first; archived cases excluded."""
    return list(
        db.execute(
            select(Payment)
            .join(Case, Case.id == Payment.case_id)
            .join(UserOrganisation, UserOrganisation.organisation_id == Case.organisation_id)
            .where(UserOrganisation.user_id == user_id)
            .where(Case.is_archived.is_(False))
            .order_by(Payment.payment_date.desc())
        ).scalars().all()
    )
