"""Message service - case messages, admin broadcasts and external pushes.

Messages are committed first; notification fan-out runs afterwards and
only reports how many emails went out.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.actors import EXTERNAL_SYSTEM, Actor, Human, actor_name, actor_user_id, human_from_user
from app.core.exceptions import EntityNotFound, MissingField, PermissionDenied
from app.core.structured_logging import build_log_context
from app.db.enums import AuditOperation, NotificationCategory, RecipientType
from app.db.models import Case, Message, Organisation, User
from app.schemas.external import MessagePush
from app.services import audit_service, case_service, notification_service, reference_service
from app.services.notification_service import NotificationEvent

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


@dataclass
class MessageResult:
    message: Message
    notifications_sent: int = 0


def _preview(content: str) -> str:
    if len(content) <= PREVIEW_LENGTH:
        return content
    return content[:PREVIEW_LENGTH].rstrip() + "..."


def _message_organisation_id(
    db: Session, recipient_type: RecipientType, recipient_id: UUID | None, case_id: UUID | None
) -> UUID | None:
    if case_id is not None:
        return db.execute(select(Case.organisation_id).where(Case.id == case_id)).scalar()
    if recipient_type == RecipientType.ORGANISATION:
        return recipient_id
    return None


def _create_message(
    db: Session,
    *,
    actor: Actor,
    sender_name: str | None,
    recipient_type: RecipientType,
    recipient_id: UUID | None,
    case_id: UUID | None,
    subject: str | None,
    content: str,
) -> Message:
    if not content or not content.strip():
        raise MissingField("content")
    message = Message(
        sender_id=actor_user_id(actor),
        sender_name=sender_name or actor_name(actor),
        recipient_type=recipient_type.value,
        recipient_id=recipient_id,
        case_id=case_id,
        subject=subject,
        content=content.strip(),
    )
    db.add(message)
    db.flush()
    audit_service.record(
        db,
        "messages",
        message.id,
        AuditOperation.INSERT,
        actor,
        new=audit_service.snapshot(message),
        description=f"Message posted to {recipient_type.value} {recipient_id}",
        organisation_id=_message_organisation_id(db, recipient_type, recipient_id, case_id),
    )
    db.commit()
    db.refresh(message)
    return message


def _notify_message(
    db: Session,
    message: Message,
    actor: Actor,
    case: Case | None = None,
    target_type: RecipientType | None = None,
    target_id: UUID | None = None,
) -> int:
    heading = message.subject or (f"New message on case {case.account_number}" if case else "New message")
    lines = [f"From: {message.sender_name}", _preview(message.content)]
    outcome = notification_service.notify(
        db,
        NotificationEvent(
            category=NotificationCategory.MESSAGE,
            subject=heading,
            lines=lines,
            case=case,
            target_type=target_type,
            target_id=target_id,
            idempotency_key=f"message:{message.id}",
        ),
        actor,
    )
    return outcome.sent


def push_external_message(db: Session, data: MessagePush) -> MessageResult:
    """
    Post a message from the system of record onto a case.

    Sent by the external system (no sender user); members of the case's
    organisation are notified unless ``sendNotifications`` is false.

    Raises:
        DependencyNotFound: case reference unknown
    """
    case = reference_service.require_case(db, data.case_external_ref)
    message = _create_message(
        db,
        actor=EXTERNAL_SYSTEM,
        sender_name=data.sender_name,
        recipient_type=RecipientType.CASE,
        recipient_id=case.id,
        case_id=case.id,
        subject=data.subject,
        content=data.message,
    )
    sent = _notify_message(db, message, EXTERNAL_SYSTEM, case=case) if data.send_notifications else 0
    logger.info(
        "External message %s posted to case %s (%d notified)",
        message.id,
        case.id,
        sent,
        extra=build_log_context(
            actor=EXTERNAL_SYSTEM, entity_type="case", external_ref=data.case_external_ref
        ),
    )
    return MessageResult(message=message, notifications_sent=sent)


def send_case_message(
    db: Session,
    case_id: UUID,
    actor: Human,
    content: str,
    subject: str | None = None,
) -> MessageResult:
    """
    Post a message on a case as a portal user or admin.

    A user's message goes to the case handler; an admin's goes to the
    organisation's members.

    Raises:
        EntityNotFound: unknown case
        PermissionDenied: user cannot see the case
    """
    case = case_service.get_case(db, case_id)
    case_service.check_case_access(db, case, actor)
    message = _create_message(
        db,
        actor=actor,
        sender_name=None,
        recipient_type=RecipientType.CASE,
        recipient_id=case.id,
        case_id=case.id,
        subject=subject,
        content=content,
    )
    sent = _notify_message(db, message, actor, case=case)
    return MessageResult(message=message, notifications_sent=sent)


def send_admin_message(
    db: Session,
    actor: Human,
    recipient_type: RecipientType,
    recipient_id: UUID,
    content: str,
    subject: str | None = None,
) -> MessageResult:
    """
    Message one user or a whole organisation. Admins only.

    Raises:
        PermissionDenied: actor is not an admin
        EntityNotFound: unknown recipient
    """
    if not actor.is_admin:
        raise PermissionDenied("Only admins can send direct messages")
    if recipient_type == RecipientType.USER:
        if db.get(User, recipient_id) is None:
            raise EntityNotFound("user", recipient_id)
    elif recipient_type == RecipientType.ORGANISATION:
        if db.get(Organisation, recipient_id) is None:
            raise EntityNotFound("organisation", recipient_id)
    else:
        raise PermissionDenied("Case messages are sent on the case")

    message = _create_message(
        db,
        actor=actor,
        sender_name=None,
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        case_id=None,
        subject=subject,
        content=content,
    )
    sent = _notify_message(
        db, message, actor, target_type=recipient_type, target_id=recipient_id
    )
    return MessageResult(message=message, notifications_sent=sent)


def list_messages_for_user(db: Session, user: User) -> list[Message]:
    """Messages addressed to the user, their organisations, or their visible cases."""
    organisation_ids = [membership.organisation_id for membership in user.memberships]
    query = select(Message).where(
        or_(
            (Message.recipient_type == RecipientType.USER.value) & (Message.recipient_id == user.id),
            (Message.recipient_type == RecipientType.ORGANISATION.value)
            & (Message.recipient_id.in_(organisation_ids)),
            Message.case_id.in_(
                select(Case.id).where(Case.organisation_id.in_(organisation_ids))
            ),
        )
    ).order_by(Message.created_at.desc())
    messages = db.execute(query).scalars().all()
    return [
        message
        for message in messages
        if message.case_id is None or not notification_service.is_blocked(db, user.id, message.case_id)
    ]


def mark_read(db: Session, message_id: UUID, user: User) -> Message:
    visible = {message.id: message for message in list_messages_for_user(db, user)}
    message = visible.get(message_id)
    if message is None:
        raise EntityNotFound("message", message_id)
    if not message.is_read:
        message.is_read = True
        audit_service.record(
            db,
            "messages",
            message.id,
            AuditOperation.UPDATE,
            human_from_user(user),
            old=False,
            new=True,
            field_name="is_read",
            description="Message marked read",
        )
    db.commit()
    db.refresh(message)
    return message
