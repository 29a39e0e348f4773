"""Case service - external upsert, archive, adjustments and hard delete."""

import logging
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.core.actors import Actor, Human, actor_user_id
from app.core.config import settings
from app.core.exceptions import DuplicateReference, EntityNotFound, MissingField, PermissionDenied
from app.core.locks import reference_lock
from app.core.structured_logging import build_log_context
from app.db.enums import AuditOperation, EntityType, NotificationCategory, Role
from app.db.models import (
    Case,
    CaseAccessRestriction,
    CaseActivity,
    Document,
    Message,
    MutedCase,
    Organisation,
    Payment,
    UserOrganisation,
)
from app.schemas.external import CaseUpsert
from app.services import (
    activity_service,
    audit_service,
    ledger_service,
    notification_service,
    reference_service,
)
from app.services.reference_service import ResolveResult
from app.utils.datetime_parsing import utc_now
from app.utils.normalization import (
    ZERO,
    normalize_email,
    normalize_name,
    normalize_reference,
    parse_amount,
)

logger = logging.getLogger(__name__)

# Column -> payload field name reported in errors
AMOUNT_FIELDS = {
    "original_amount": "originalAmount",
    "costs_added": "costsAdded",
    "interest_added": "interestAdded",
    "fees_added": "feesAdded",
}

# Changes that members are told about
NOTIFIED_FIELDS = ("status", "stage", "outstanding_amount")


def get_case(db: Session, case_id: UUID) -> Case:
    case = db.get(Case, case_id)
    if not case:
        raise EntityNotFound("case", case_id)
    return case


def find_by_account_number(
    db: Session,
    organisation_id: UUID,
    account_number: str,
    exclude_id: UUID | None = None,
) -> Case | None:
    query = select(Case).where(
        Case.organisation_id == organisation_id,
        Case.account_number == account_number,
    )
    if exclude_id is not None:
        query = query.where(Case.id != exclude_id)
    return db.execute(query.limit(1)).scalar_one_or_none()


def _fields(data: CaseUpsert) -> dict:
    fields = data.supplied("external_ref", "organisation_external_ref")
    for column, field in AMOUNT_FIELDS.items():
        if column in fields:
            fields[column] = parse_amount(fields[column], field=field)
    if "account_number" in fields:
        fields["account_number"] = normalize_reference(fields["account_number"])
    if "case_name" in fields:
        fields["case_name"] = normalize_name(fields["case_name"])
    if "debtor_email" in fields:
        fields["debtor_email"] = normalize_email(fields["debtor_email"])
    return {key: value for key, value in fields.items() if value is not None}


def _validate_create(values: dict) -> None:
    if not values.get("organisation_id"):
        raise MissingField("organisationExternalRef")
    if not values.get("account_number"):
        raise MissingField("accountNumber")
    if not values.get("case_name"):
        raise MissingField("caseName")
    if values.get("original_amount") is None:
        raise MissingField("originalAmount")


def upsert_case(db: Session, data: CaseUpsert, actor: Actor) -> ResolveResult[Case]:
    """
    Create or update a case by external reference and commit.

    An unknown ``externalRef`` creates the case. With
    ALLOW_ACCOUNT_NUMBER_FALLBACK on, an unlinked case in the same
    organisation with the same account number is adopted instead (its
    external reference backfilled). Without it, an account number already
    used by another case in the organisation is a conflict.

    New cases are auto-muted for members who opted in. The outstanding
    balance is recomputed whenever an amount changes.

    Raises:
        DependencyNotFound: organisation reference unknown
        DuplicateReference: account number held by another case
        InvalidAmount: malformed amount field
        MissingField: creating without a required field
    """
    organisation: Organisation | None = None
    if data.organisation_external_ref:
        organisation = reference_service.require_organisation(db, data.organisation_external_ref)

    fields = _fields(data)
    if organisation is not None:
        fields["organisation_id"] = organisation.id

    with reference_lock(db, EntityType.CASE.value, data.external_ref):
        current = reference_service.find_by_external_ref(db, Case, data.external_ref)
        organisation_id = organisation.id if organisation else (current.organisation_id if current else None)

        secondary_lookup = None
        account_number = fields.get("account_number")
        if account_number and organisation_id:
            holder = find_by_account_number(
                db, organisation_id, account_number, exclude_id=current.id if current else None
            )
            if holder is not None:
                if current is None and settings.ALLOW_ACCOUNT_NUMBER_FALLBACK:
                    secondary_lookup = lambda _db: holder  # noqa: E731
                else:
                    raise DuplicateReference(
                        EntityType.CASE.value,
                        data.external_ref,
                        conflicting_id=holder.id,
                        field="accountNumber",
                        message=f"Account number {account_number} already belongs to another case",
                    )

        result = reference_service.resolve(
            db,
            Case,
            data.external_ref,
            fields,
            create_defaults={column: ZERO for column in AMOUNT_FIELDS if column != "original_amount"},
            secondary_lookup=secondary_lookup,
            validate_create=_validate_create,
        )
        case = result.entity

        if result.created or any(column in fields for column in AMOUNT_FIELDS):
            ledger_service.recompute_outstanding(db, ledger_service.lock_case(db, case.id))

        after = audit_service.snapshot(case)
        if result.created:
            notification_service.apply_auto_mute(db, case, actor)
            activity_service.log_case_created(db, case.id, actor)
            audit_service.record(
                db,
                "cases",
                case.id,
                AuditOperation.INSERT,
                actor,
                new=after,
                description=f"Case {case.account_number} created from external system",
                organisation_id=case.organisation_id,
            )
        else:
            audit_service.record_change(
                db,
                "cases",
                case.id,
                actor,
                result.before,
                after,
                description="Case updated from external system",
                organisation_id=case.organisation_id,
            )
        db.commit()

    db.refresh(case)
    logger.info(
        "Case %s %s",
        data.external_ref,
        result.outcome.value,
        extra=build_log_context(
            actor=actor, entity_type="case", external_ref=data.external_ref, case_id=case.id
        ),
    )

    if not result.created:
        changed = [
            column for column in NOTIFIED_FIELDS if result.before.get(column) != after.get(column)
        ]
        if changed:
            notification_service.notify(
                db,
                notification_service.NotificationEvent(
                    category=NotificationCategory.CASE_UPDATED,
                    subject=f"Case {case.account_number} updated",
                    lines=[f"{column.replace('_', ' ').capitalize()}: {after[column]}" for column in changed],
                    case=case,
                ),
                actor,
            )
    return result


# =============================================================================
# Archive
# =============================================================================

def _set_archived(db: Session, case_id: UUID, actor: Actor, archived: bool) -> Case:
    case = get_case(db, case_id)
    if case.is_archived == archived:
        return case

    before = audit_service.snapshot(case)
    case.is_archived = archived
    case.archived_at = utc_now() if archived else None
    case.archived_by = actor_user_id(actor) if archived else None

    if archived:
        activity_service.log_archived(db, case.id, actor)
    else:
        activity_service.log_unarchived(db, case.id, actor)
    audit_service.record_change(
        db,
        "cases",
        case.id,
        actor,
        before,
        audit_service.snapshot(case),
        description="Case archived" if archived else "Case restored from archive",
        organisation_id=case.organisation_id,
    )
    db.commit()
    db.refresh(case)
    return case


def archive_case(db: Session, case_id: UUID, actor: Actor) -> Case:
    """Archive a case. Idempotent."""
    return _set_archived(db, case_id, actor, True)


def unarchive_case(db: Session, case_id: UUID, actor: Actor) -> Case:
    """Restore an archived case. Idempotent."""
    return _set_archived(db, case_id, actor, False)


# =============================================================================
# Adjustments
# =============================================================================

def update_adjustments(db: Session, case_id: UUID, updates: dict, actor: Actor) -> Case:
    """
    Change costs / interest / fees and recompute the balance in one transaction.

    Args:
        updates: Raw amounts keyed by column name; absent or None keys are untouched

    Raises:
        EntityNotFound: unknown case
        InvalidAmount: malformed amount
    """
    parsed = {
        column: parse_amount(updates[column], field=AMOUNT_FIELDS[column])
        for column in ledger_service.ADJUSTMENT_FIELDS
        if updates.get(column) is not None
    }

    case = ledger_service.lock_case(db, case_id)
    before = audit_service.snapshot(case)
    for column, value in parsed.items():
        setattr(case, column, value)
    ledger_service.recompute_outstanding(db, case)

    audit_service.record_change(
        db,
        "cases",
        case.id,
        actor,
        before,
        audit_service.snapshot(case),
        description="Case adjustments updated",
        organisation_id=case.organisation_id,
    )
    db.commit()
    db.refresh(case)
    return case


# =============================================================================
# Hard delete
# =============================================================================

def delete_case(db: Session, case_id: UUID, actor: Actor) -> dict[str, int]:
    """
    Permanently delete a case and everything hanging off it. Super admin only.

    Returns:
        Number of rows removed per dependent table
    """
    if not (isinstance(actor, Human) and actor.role == Role.SUPER_ADMIN):
        raise PermissionDenied("Only a super admin can delete a case")

    case = ledger_service.lock_case(db, case_id)
    before = audit_service.snapshot(case)
    organisation_id = case.organisation_id

    removed: dict[str, int] = {}
    # Reversals reference originals; clear the self-reference before deleting
    db.execute(
        update(Payment)
        .where(Payment.case_id == case_id)
        .values(reversal_of_id=None)
    )
    for label, model, column in (
        ("payments", Payment, Payment.case_id),
        ("documents", Document, Document.case_id),
        ("messages", Message, Message.case_id),
        ("activities", CaseActivity, CaseActivity.case_id),
        ("mutes", MutedCase, MutedCase.case_id),
        ("blocks", CaseAccessRestriction, CaseAccessRestriction.case_id),
    ):
        removed[label] = db.execute(delete(model).where(column == case_id)).rowcount or 0

    db.expunge(case)
    db.execute(delete(Case).where(Case.id == case_id))

    audit_service.record(
        db,
        "cases",
        case_id,
        AuditOperation.DELETE,
        actor,
        old=before,
        description=f"Case {before.get('account_number')} permanently deleted",
        organisation_id=organisation_id,
    )
    db.commit()
    logger.info(
        "Case %s deleted with %s",
        case_id,
        removed,
        extra=build_log_context(actor=actor, entity_type="case", case_id=case_id),
    )
    return removed


def view_case(db: Session, case_id: UUID, actor: Actor) -> bool:
    """Record the actor's first view of a case. Returns True on the first view."""
    case = get_case(db, case_id)
    check_case_access(db, case, actor)
    _, created = audit_service.record_first_view(
        db,
        "cases",
        case.id,
        actor,
        description=f"Viewed case {case.account_number}",
        organisation_id=case.organisation_id,
    )
    db.commit()
    return created


def check_case_access(db: Session, case: Case, actor: Actor) -> None:
    """
    Staff and the external system see every case. A portal user needs a
    membership in the case's organisation and no access block on the case.

    Raises:
        PermissionDenied: the user may not see this case
    """
    if actor.is_admin:
        return
    membership = db.execute(
        select(UserOrganisation.id).where(
            UserOrganisation.user_id == actor.user_id,
            UserOrganisation.organisation_id == case.organisation_id,
        )
    ).first()
    if membership is None or notification_service.is_blocked(db, actor.user_id, case.id):
        raise PermissionDenied("You do not have access to this case")
