"""
Portal user endpoints: case messages, documents, views, mutes and preferences.

Protected by X-Internal-Secret; the acting user is named by X-Actor-User-Id.
Non-admin users only reach cases of their own organisations that they are
not blocked from.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.actors import Human
from app.core.deps import get_current_actor, get_current_user, get_db
from app.schemas.portal import (
    CaseMessageCreate,
    CaseStatsRead,
    CaseViewResponse,
    DocumentCreate,
    DocumentRead,
    DocumentUploadResponse,
    MessageRead,
    MessageSendResponse,
    NotificationSettingsRead,
    NotificationSettingsUpdate,
    PaymentRead,
    ToggleResponse,
)
from app.services import (
    activity_service,
    case_service,
    document_service,
    ledger_service,
    message_service,
    notification_service,
    payment_service,
)

router = APIRouter(tags=["portal"])


# =============================================================================
# Cases
# =============================================================================

@router.post("/cases/{case_id}/view", response_model=CaseViewResponse)
def view_case(
    case_id: UUID,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Record that the acting user opened the case (first view only is audited)."""
    first_view = case_service.view_case(db, case_id, actor)
    return CaseViewResponse(case_id=case_id, first_view=first_view)


@router.get("/cases/{case_id}/timeline")
def get_timeline(
    case_id: UUID,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    case = case_service.get_case(db, case_id)
    case_service.check_case_access(db, case, actor)
    return [
        {
            "id": activity.id,
            "activity_type": activity.activity_type,
            "description": activity.description,
            "performed_by": activity.performed_by,
            "created_at": activity.created_at,
        }
        for activity in activity_service.list_activities(db, case.id)
    ]


@router.post("/cases/{case_id}/messages", response_model=MessageSendResponse)
def send_case_message(
    case_id: UUID,
    data: CaseMessageCreate,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Message on a case. Users reach the case handler, admins reach the organisation."""
    result = message_service.send_case_message(db, case_id, actor, data.content, subject=data.subject)
    return MessageSendResponse(
        message=MessageRead.model_validate(result.message),
        notifications_sent=result.notifications_sent,
    )


# =============================================================================
# Documents
# =============================================================================

@router.post("/cases/{case_id}/documents", response_model=DocumentUploadResponse)
def upload_document(
    case_id: UUID,
    data: DocumentCreate,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Register a file already stored in the blob store."""
    document, sent = document_service.upload_document(
        db,
        case_id,
        actor,
        file_name=data.file_name,
        file_size=data.file_size,
        file_type=data.file_type,
        file_path=data.file_path,
    )
    return DocumentUploadResponse(document=DocumentRead.model_validate(document), notifications_sent=sent)


@router.get("/cases/{case_id}/documents", response_model=list[DocumentRead])
def list_documents(
    case_id: UUID,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return document_service.list_case_documents(db, case_id, actor)


@router.get("/documents/{document_id}/download", response_model=DocumentRead)
def download_document(
    document_id: UUID,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Authorise a download; the client fetches ``file_path`` from the blob store."""
    return document_service.download_document(db, document_id, actor)


# =============================================================================
# Me
# =============================================================================

@router.put("/me/mutes/{case_id}", response_model=ToggleResponse)
def mute_case(
    case_id: UUID,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    case = case_service.get_case(db, case_id)
    case_service.check_case_access(db, case, actor)
    changed = notification_service.mute_case(db, actor.user_id, case.id, actor)
    db.commit()
    return ToggleResponse(case_id=case_id, user_id=actor.user_id, active=True, changed=changed)


@router.delete("/me/mutes/{case_id}", response_model=ToggleResponse)
def unmute_case(
    case_id: UUID,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    changed = notification_service.unmute_case(db, actor.user_id, case_id, actor)
    db.commit()
    return ToggleResponse(case_id=case_id, user_id=actor.user_id, active=False, changed=changed)


@router.get("/me/notification-settings", response_model=NotificationSettingsRead)
def get_notification_settings(
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return notification_service.get_user_settings(db, actor.user_id)


@router.patch("/me/notification-settings", response_model=NotificationSettingsRead)
def update_notification_settings(
    data: NotificationSettingsUpdate,
    actor: Human = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return notification_service.update_user_settings(
        db, actor.user_id, data.model_dump(exclude_none=True), actor
    )


@router.get("/me/stats", response_model=CaseStatsRead)
def get_my_case_stats(
    user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Case totals across the user's organisations."""
    return ledger_service.case_stats(db, [membership.organisation_id for membership in user.memberships])


@router.get("/me/payments", response_model=list[PaymentRead])
def list_my_payments(
    user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Payments on the user's organisations' cases; archived cases are left out."""
    return payment_service.list_payments_for_user(db, user.id)


@router.get("/me/messages", response_model=list[MessageRead])
def list_my_messages(
    user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return message_service.list_messages_for_user(db, user)


@router.post("/me/messages/{message_id}/read", response_model=MessageRead)
def mark_message_read(
    message_id: UUID,
    user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return message_service.mark_read(db, message_id, user)
