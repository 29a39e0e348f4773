"""Document service - metadata for files held in the blob store.

The portal never stores file bytes; ``file_path`` is an opaque key in the
blob store. Uploads notify, downloads are audited.
"""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.actors import Actor, actor_user_id
from app.core.exceptions import EntityNotFound, MissingField, ValidationError
from app.db.enums import AuditOperation, NotificationCategory
from app.db.models import Document
from app.services import activity_service, audit_service, case_service, notification_service
from app.services.notification_service import NotificationEvent

logger = logging.getLogger(__name__)


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def upload_document(
    db: Session,
    case_id: UUID,
    actor: Actor,
    *,
    file_name: str,
    file_size: int,
    file_path: str,
    file_type: str | None = None,
) -> tuple[Document, int]:
    """
    Record an uploaded document against a case and notify.

    Returns:
        (document, notifications sent)

    Raises:
        EntityNotFound: unknown case
        PermissionDenied: user cannot see the case
        ValidationError: empty name/path or negative size
    """
    if not file_name or not file_name.strip():
        raise MissingField("fileName")
    if not file_path or not file_path.strip():
        raise MissingField("filePath")
    if file_size < 0:
        raise ValidationError("File size cannot be negative", field="fileSize")

    case = case_service.get_case(db, case_id)
    case_service.check_case_access(db, case, actor)

    document = Document(
        case_id=case.id,
        organisation_id=case.organisation_id,
        uploaded_by=actor_user_id(actor),
        file_name=file_name.strip(),
        file_size=file_size,
        file_type=file_type,
        file_path=file_path.strip(),
    )
    db.add(document)
    db.flush()

    activity_service.log_document_uploaded(db, case.id, document.file_name, actor)
    audit_service.record(
        db,
        "documents",
        document.id,
        AuditOperation.INSERT,
        actor,
        new=audit_service.snapshot(document),
        description=f"Document {document.file_name} uploaded",
        organisation_id=case.organisation_id,
    )
    db.commit()
    db.refresh(document)

    outcome = notification_service.notify(
        db,
        NotificationEvent(
            category=NotificationCategory.DOCUMENT_UPLOADED,
            subject=f"New document on case {case.account_number}",
            lines=[f"{document.file_name} ({_format_size(document.file_size)})"],
            case=case,
            idempotency_key=f"document:{document.id}",
        ),
        actor,
    )
    logger.info("Document %s uploaded to case %s (%d notified)", document.id, case.id, outcome.sent)
    return document, outcome.sent


def get_document(db: Session, document_id: UUID) -> Document:
    document = db.get(Document, document_id)
    if not document:
        raise EntityNotFound("document", document_id)
    return document


def download_document(db: Session, document_id: UUID, actor: Actor) -> Document:
    """Authorise a download and record it. Every download is audited."""
    document = get_document(db, document_id)
    if document.case_id is not None:
        case_service.check_case_access(db, case_service.get_case(db, document.case_id), actor)

    audit_service.record(
        db,
        "documents",
        document.id,
        AuditOperation.DOWNLOAD,
        actor,
        description=f"Downloaded {document.file_name}",
        organisation_id=document.organisation_id,
    )
    db.commit()
    return document


def list_case_documents(db: Session, case_id: UUID, actor: Actor) -> list[Document]:
    case = case_service.get_case(db, case_id)
    case_service.check_case_access(db, case, actor)
    return list(
        db.execute(
            select(Document).where(Document.case_id == case.id).order_by(Document.created_at.desc())
        ).scalars().all()
    )
