"""Activity logging service - case timeline entries.

Timeline rows are append-only and never touch the ledger.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.actors import Actor, actor_name, actor_user_id
from app.db.enums import ActivityType, AuditOperation
from app.db.models import CaseActivity, Payment
from app.schemas.external import ActivityPush
from app.services import audit_service, reference_service
from app.utils.datetime_parsing import parse_optional_date
from app.utils.normalization import format_money


def log_activity(
    db: Session,
    case_id: UUID,
    activity_type: ActivityType | str,
    description: str,
    actor: Actor,
    performed_by: str | None = None,
    occurred_at: datetime | None = None,
) -> CaseActivity:
    """
    Log a case timeline entry.

    Args:
        db: Database session
        case_id: The case this activity is for
        activity_type: Portal activity type, or any type string pushed externally
        description: Human-readable summary
        actor: Who performed it
        performed_by: Display name override (external pushes name their handler)
        occurred_at: When it happened (defaults to now)

    Returns:
        The created timeline entry
    """
    activity = CaseActivity(
        case_id=case_id,
        activity_type=activity_type.value if isinstance(activity_type, ActivityType) else activity_type,
        description=description,
        performed_by=performed_by or actor_name(actor),
        performed_by_user_id=actor_user_id(actor),
    )
    if occurred_at is not None:
        activity.created_at = occurred_at
    db.add(activity)
    db.flush()  # Don't commit - let caller control transaction
    return activity


def _payment_label(payment: Payment) -> str:
    label = f"£{format_money(abs(payment.amount))}"
    if payment.reference:
        label = f"{label} (ref {payment.reference})"
    return label


def log_payment_received(db: Session, payment: Payment, actor: Actor) -> CaseActivity:
    method = f" via {payment.payment_method}" if payment.payment_method else ""
    return log_activity(
        db,
        payment.case_id,
        ActivityType.PAYMENT_RECEIVED,
        f"Payment of {_payment_label(payment)} received{method}",
        actor,
    )


def log_payment_updated(
    db: Session,
    payment: Payment,
    actor: Actor,
    previous_amount: Decimal,
) -> CaseActivity:
    if previous_amount != payment.amount:
        description = (
            f"Payment {payment.reference or payment.external_ref} updated: "
            f"£{format_money(previous_amount)} -> £{format_money(payment.amount)}"
        )
    else:
        description = f"Payment {_payment_label(payment)} updated"
    return log_activity(db, payment.case_id, ActivityType.PAYMENT_UPDATED, description, actor)


def log_payment_deleted(db: Session, payment: Payment, actor: Actor) -> CaseActivity:
    return log_activity(
        db,
        payment.case_id,
        ActivityType.PAYMENT_DELETED,
        f"Payment of {_payment_label(payment)} removed",
        actor,
    )


def log_payment_reversed(
    db: Session,
    reversal: Payment,
    actor: Actor,
    reason: str | None = None,
) -> CaseActivity:
    description = f"Payment reversed: {_payment_label(reversal)}"
    if reason:
        description = f"{description} - {reason}"
    return log_activity(db, reversal.case_id, ActivityType.PAYMENT_REVERSED, description, actor)


def log_archived(db: Session, case_id: UUID, actor: Actor) -> CaseActivity:
    return log_activity(db, case_id, ActivityType.CASE_ARCHIVED, "Case archived", actor)


def log_unarchived(db: Session, case_id: UUID, actor: Actor) -> CaseActivity:
    return log_activity(db, case_id, ActivityType.CASE_UNARCHIVED, "Case restored from archive", actor)


def log_case_created(db: Session, case_id: UUID, actor: Actor) -> CaseActivity:
    return log_activity(db, case_id, ActivityType.CASE_CREATED, "Case created", actor)


def log_document_uploaded(db: Session, case_id: UUID, file_name: str, actor: Actor) -> CaseActivity:
    return log_activity(
        db, case_id, ActivityType.DOCUMENT_UPLOADED, f"Document uploaded: {file_name}", actor
    )


def list_activities(db: Session, case_id: UUID) -> list[CaseActivity]:
    """Timeline for a case, newest first."""
    return list(
        db.execute(
            select(CaseActivity)
            .where(CaseActivity.case_id == case_id)
            .order_by(CaseActivity.created_at.desc())
        ).scalars().all()
    )


def push_activity(db: Session, data: ActivityPush, actor: Actor) -> CaseActivity:
    """
    Append an externally pushed timeline entry and commit.

    ``activityDate`` defaults to now. The ledger is never touched.

    Raises:
        DependencyNotFound: case reference unknown
        InvalidDate: malformed activityDate
    """
    case = reference_service.require_case(db, data.case_external_ref)
    occurred_at = parse_optional_date(data.activity_date, field="activityDate", default_now=True)
    activity = log_activity(
        db,
        case.id,
        data.activity_type,
        data.description,
        actor,
        performed_by=data.performed_by,
        occurred_at=occurred_at,
    )
    audit_service.record(
        db,
        "case_activities",
        activity.id,
        AuditOperation.INSERT,
        actor,
        new=audit_service.snapshot(activity),
        description=f"Activity {activity.activity_type} pushed to case {case.id}",
        organisation_id=case.organisation_id,
    )
    db.commit()
    db.refresh(activity)
    return activity
