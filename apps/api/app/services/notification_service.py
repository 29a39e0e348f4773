"""
Notification Service - decides who is emailed about a mutation.

Routing:
- Ordinary user writes on a case -> the admin whose name matches the case's
  ``assigned_to`` handler, else DEFAULT_NOTIFICATION_EMAIL. Never the other
  users sharing the case.
- Admin / external system targets one user -> that user only.
- Admin / external system targets an organisation or a case -> every
  non-admin member of the organisation.

Suppression (checked per recipient):
- never completed first login (must_change_password)
- category disabled in the user's preferences
- case muted by the user
- user access-blocked from the case

Sending happens after the mutation committed; transport failures are logged
by email_service and only lower the sent count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.actors import Actor, Human, actor_user_id
from app.core.config import settings
from app.core.exceptions import EntityNotFound
from app.db.enums import ADMIN_ROLES, AuditOperation, NotificationCategory, RecipientType
from app.db.models import Case, CaseAccessRestriction, MutedCase, User, UserOrganisation
from app.services import audit_service, email_service
from app.utils.normalization import normalize_handler_name

logger = logging.getLogger(__name__)


# =============================================================================
# Notification Settings
# =============================================================================

# Preference column consulted for each category
CATEGORY_SETTINGS = {
    NotificationCategory.MESSAGE: "email_notifications",
    NotificationCategory.DOCUMENT_UPLOADED: "document_notifications",
    NotificationCategory.CASE_UPDATED: "case_update_notifications",
}

SETTING_KEYS = (
    "email_notifications",
    "document_notifications",
    "case_update_notifications",
    "auto_mute_new_cases",
)


def get_user_settings(db: Session, user_id: UUID) -> dict:
    """Get user notification preferences."""
    user = db.get(User, user_id)
    if not user:
        raise EntityNotFound("user", user_id)
    return {key: getattr(user, key) for key in SETTING_KEYS}


def update_user_settings(db: Session, user_id: UUID, updates: dict, actor: Actor) -> dict:
    """
    Update user notification preferences.

    Unknown keys are ignored.
    """
    user = db.get(User, user_id)
    if not user:
        raise EntityNotFound("user", user_id)

    before = {key: getattr(user, key) for key in SETTING_KEYS}
    for key, value in updates.items():
        if key in SETTING_KEYS and value is not None:
            setattr(user, key, bool(value))

    audit_service.record_change(
        db,
        "users",
        user.id,
        actor,
        before,
        {key: getattr(user, key) for key in SETTING_KEYS},
        description="Notification settings updated",
    )
    db.commit()
    db.refresh(user)
    return {key: getattr(user, key) for key in SETTING_KEYS}


def should_notify(user: User, category: NotificationCategory) -> bool:
    """Check if user wants this notification category."""
    return bool(getattr(user, CATEGORY_SETTINGS[category], True))


# =============================================================================
# Mute / Block
# =============================================================================

def is_muted(db: Session, user_id: UUID, case_id: UUID) -> bool:
    return db.execute(
        select(MutedCase.id).where(MutedCase.user_id == user_id, MutedCase.case_id == case_id)
    ).first() is not None


def is_blocked(db: Session, user_id: UUID, case_id: UUID) -> bool:
    return db.execute(
        select(CaseAccessRestriction.id).where(
            CaseAccessRestriction.blocked_user_id == user_id,
            CaseAccessRestriction.case_id == case_id,
        )
    ).first() is not None


def _insert_once(db: Session, row) -> bool:
    """Insert a unique-pair row; False if it already existed (race-safe)."""
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        return False
    return True


def _case_organisation_id(db: Session, case_id: UUID) -> UUID | None:
    return db.execute(select(Case.organisation_id).where(Case.id == case_id)).scalar()


def _audit_pair(db: Session, table_name: str, row, operation: AuditOperation, actor: Actor, description: str) -> None:
    values = audit_service.snapshot(row)
    audit_service.record(
        db,
        table_name,
        row.id,
        operation,
        actor,
        old=values if operation == AuditOperation.DELETE else None,
        new=values if operation == AuditOperation.INSERT else None,
        description=description,
        organisation_id=_case_organisation_id(db, row.case_id),
    )


def mute_case(db: Session, user_id: UUID, case_id: UUID, actor: Actor) -> bool:
    """Mute a case for a user. Idempotent; returns True if newly muted. Does not commit."""
    if is_muted(db, user_id, case_id):
        return False
    row = MutedCase(user_id=user_id, case_id=case_id)
    if not _insert_once(db, row):
        return False
    _audit_pair(db, "muted_cases", row, AuditOperation.INSERT, actor, f"Case muted for user {user_id}")
    return True


def unmute_case(db: Session, user_id: UUID, case_id: UUID, actor: Actor) -> bool:
    row = db.execute(
        select(MutedCase).where(MutedCase.user_id == user_id, MutedCase.case_id == case_id)
    ).scalar_one_or_none()
    if not row:
        return False
    _audit_pair(db, "muted_cases", row, AuditOperation.DELETE, actor, f"Case unmuted for user {user_id}")
    db.delete(row)
    db.flush()
    return True


def block_user(db: Session, case_id: UUID, user_id: UUID, actor: Actor) -> bool:
    """Deny a user visibility of a case. Idempotent. Does not commit."""
    if is_blocked(db, user_id, case_id):
        return False
    row = CaseAccessRestriction(case_id=case_id, blocked_user_id=user_id, created_by=actor_user_id(actor))
    if not _insert_once(db, row):
        return False
    _audit_pair(
        db, "case_access_restrictions", row, AuditOperation.INSERT, actor, f"User {user_id} blocked from case"
    )
    return True


def unblock_user(db: Session, case_id: UUID, user_id: UUID, actor: Actor) -> bool:
    row = db.execute(
        select(CaseAccessRestriction).where(
            CaseAccessRestriction.blocked_user_id == user_id,
            CaseAccessRestriction.case_id == case_id,
        )
    ).scalar_one_or_none()
    if not row:
        return False
    _audit_pair(
        db, "case_access_restrictions", row, AuditOperation.DELETE, actor, f"User {user_id} unblocked from case"
    )
    db.delete(row)
    db.flush()
    return True


def apply_auto_mute(db: Session, case: Case, actor: Actor) -> list[UUID]:
    """
    Mute a newly created case for organisation members who asked for it.

    Runs for single and bulk case creation alike. Does not commit.

    Returns:
        Ids of users muted
    """
    user_ids = db.execute(
        select(User.id)
        .join(UserOrganisation, UserOrganisation.user_id == User.id)
        .where(UserOrganisation.organisation_id == case.organisation_id)
        .where(User.auto_mute_new_cases.is_(True))
    ).scalars().all()

    muted = [user_id for user_id in user_ids if mute_case(db, user_id, case.id, actor)]
    if muted:
        logger.info("Auto-muted case %s for %d user(s)", case.id, len(muted))
    return muted


# =============================================================================
# Routing
# =============================================================================

class SuppressionReason(str, Enum):
    MUST_CHANGE_PASSWORD = "must_change_password"
    CATEGORY_DISABLED = "category_disabled"
    CASE_MUTED = "case_muted"
    CASE_BLOCKED = "case_blocked"


@dataclass(frozen=True)
class RecipientDecision:
    email: str
    user_id: UUID | None = None
    suppressed_by: SuppressionReason | None = None

    @property
    def send(self) -> bool:
        return self.suppressed_by is None


@dataclass
class NotificationEvent:
    category: NotificationCategory
    subject: str
    lines: list[str] = field(default_factory=list)
    case: Case | None = None
    target_type: RecipientType | None = None
    target_id: UUID | None = None
    # Stable key so a retried mutation does not email twice
    idempotency_key: str | None = None


@dataclass
class NotificationOutcome:
    decisions: list[RecipientDecision]
    sent: int = 0
    failed: int = 0

    @property
    def suppressed(self) -> list[RecipientDecision]:
        return [decision for decision in self.decisions if not decision.send]


def evaluate(
    db: Session,
    user: User,
    category: NotificationCategory,
    case_id: UUID | None = None,
) -> RecipientDecision:
    """Go/no-go for one recipient, first matching suppression wins."""
    reason: SuppressionReason | None = None
    if user.must_change_password:
        reason = SuppressionReason.MUST_CHANGE_PASSWORD
    elif not should_notify(user, category):
        reason = SuppressionReason.CATEGORY_DISABLED
    elif case_id is not None and is_muted(db, user.id, case_id):
        reason = SuppressionReason.CASE_MUTED
    elif case_id is not None and is_blocked(db, user.id, case_id):
        reason = SuppressionReason.CASE_BLOCKED
    return RecipientDecision(email=user.email, user_id=user.id, suppressed_by=reason)


def find_case_handler(db: Session, case: Case) -> User | None:
    """Admin user whose display name matches the case's assigned handler."""
    handler = normalize_handler_name(case.assigned_to)
    if not handler:
        return None
    admins = db.execute(
        select(User).where(User.role.in_([role.value for role in ADMIN_ROLES]))
    ).scalars().all()
    for admin in admins:
        if normalize_handler_name(admin.display_name) == handler:
            return admin
    return None


def _organisation_members(db: Session, organisation_id: UUID) -> list[User]:
    return list(
        db.execute(
            select(User)
            .join(UserOrganisation, UserOrganisation.user_id == User.id)
            .where(UserOrganisation.organisation_id == organisation_id)
            .where(User.role.not_in([role.value for role in ADMIN_ROLES]))
            .order_by(User.email)
        ).scalars().all()
    )


def _route_to_handler(db: Session, event: NotificationEvent) -> list[RecipientDecision]:
    handler = find_case_handler(db, event.case) if event.case else None
    if handler is not None:
        return [evaluate(db, handler, event.category, event.case.id)]
    if settings.DEFAULT_NOTIFICATION_EMAIL:
        return [RecipientDecision(email=settings.DEFAULT_NOTIFICATION_EMAIL)]
    logger.warning("No handler or default address for case notification; nothing sent")
    return []


def resolve_recipients(
    db: Session,
    event: NotificationEvent,
    originator: Actor,
) -> list[RecipientDecision]:
    """Recipient set with a per-recipient decision; the originator is never included."""
    case_id = event.case.id if event.case else None

    if isinstance(originator, Human) and not originator.is_admin:
        decisions = _route_to_handler(db, event)
    elif event.target_type == RecipientType.USER and event.target_id:
        user = db.get(User, event.target_id)
        decisions = [evaluate(db, user, event.category, case_id)] if user else []
    else:
        if event.target_type == RecipientType.ORGANISATION and event.target_id:
            organisation_id = event.target_id
        elif event.case is not None:
            organisation_id = event.case.organisation_id
        else:
            return []
        decisions = [
            evaluate(db, member, event.category, case_id)
            for member in _organisation_members(db, organisation_id)
        ]

    if isinstance(originator, Human):
        decisions = [d for d in decisions if d.user_id != originator.user_id]
    return decisions


def notify(db: Session, event: NotificationEvent, originator: Actor) -> NotificationOutcome:
    """
    Route and send a notification. Call after the triggering mutation committed.

    Never raises for transport problems.
    """
    decisions = resolve_recipients(db, event, originator)
    outcome = NotificationOutcome(decisions=decisions)
    html = email_service.render_notification_html(event.subject, event.lines)

    for decision in decisions:
        if not decision.send:
            logger.debug(
                "Notification suppressed for user %s: %s",
                decision.user_id,
                decision.suppressed_by.value,
            )
            continue
        key = f"{event.idempotency_key}:{decision.email}" if event.idempotency_key else None
        if email_service.send_email(decision.email, event.subject, html, idempotency_key=key):
            outcome.sent += 1
        else:
            outcome.failed += 1

    if outcome.failed:
        logger.warning(
            "%d of %d notification(s) failed for %s",
            outcome.failed,
            outcome.sent + outcome.failed,
            event.category.value,
        )
    return outcome