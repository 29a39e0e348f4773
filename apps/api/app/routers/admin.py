"""
Admin case actions.

Protected by X-Internal-Secret; the acting admin is named by X-Actor-User-Id.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.actors import Human
from app.core.deps import get_db, require_admin, require_super_admin
from app.core.json_route import DecimalJSONRoute
from app.db.enums import RecipientType
from app.schemas.portal import (
    AdjustmentUpdate,
    AdminMessageCreate,
    CaseDeleteResponse,
    CaseRead,
    CaseStatsRead,
    LedgerRead,
    MessageRead,
    MessageSendResponse,
    ToggleResponse,
)
from app.services import case_service, ledger_service, message_service, notification_service, user_service

router = APIRouter(prefix="/admin", tags=["admin"], route_class=DecimalJSONRoute)


# =============================================================================
# Cases
# =============================================================================

@router.post("/cases/{case_id}/archive", response_model=CaseRead)
def archive_case(
    case_id: UUID,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return case_service.archive_case(db, case_id, actor)


@router.post("/cases/{case_id}/unarchive", response_model=CaseRead)
def unarchive_case(
    case_id: UUID,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return case_service.unarchive_case(db, case_id, actor)


@router.delete("/cases/{case_id}", response_model=CaseDeleteResponse)
def delete_case(
    case_id: UUID,
    actor: Human = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    """Permanently delete a case with its payments, documents, messages and timeline."""
    removed = case_service.delete_case(db, case_id, actor)
    return CaseDeleteResponse(case_id=case_id, removed=removed)


@router.get("/cases/{case_id}/ledger", response_model=LedgerRead)
def get_ledger(
    case_id: UUID,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Compare the cached outstanding balance with a fresh recomputation."""
    check = ledger_service.verify_outstanding(db, case_id)
    return LedgerRead(
        case_id=check.case_id,
        cached_outstanding=check.cached,
        recomputed_outstanding=check.recomputed,
        payments_total=check.payments_total,
        payment_count=check.payment_count,
        consistent=check.consistent,
    )


@router.patch("/cases/{case_id}/adjustments", response_model=CaseRead)
def update_adjustments(
    case_id: UUID,
    data: AdjustmentUpdate,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return case_service.update_adjustments(db, case_id, data.model_dump(exclude_unset=True), actor)


@router.get("/stats", response_model=CaseStatsRead)
def get_case_stats(
    organisation_id: UUID | None = Query(None, description="Limit to one organisation"),
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Active and closed case counts with outstanding and recovered totals."""
    return ledger_service.case_stats(db, [organisation_id] if organisation_id else None)


# =============================================================================
# Access blocks
# =============================================================================

@router.put("/cases/{case_id}/blocks/{user_id}", response_model=ToggleResponse)
def block_user(
    case_id: UUID,
    user_id: UUID,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Hide a case from one user. Idempotent."""
    case_service.get_case(db, case_id)
    user_service.get_user(db, user_id)
    changed = notification_service.block_user(db, case_id, user_id, actor)
    db.commit()
    return ToggleResponse(case_id=case_id, user_id=user_id, active=True, changed=changed)


@router.delete("/cases/{case_id}/blocks/{user_id}", response_model=ToggleResponse)
def unblock_user(
    case_id: UUID,
    user_id: UUID,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    changed = notification_service.unblock_user(db, case_id, user_id, actor)
    db.commit()
    return ToggleResponse(case_id=case_id, user_id=user_id, active=False, changed=changed)


# =============================================================================
# Messages
# =============================================================================

@router.post("/messages", response_model=MessageSendResponse)
def send_admin_message(
    data: AdminMessageCreate,
    actor: Human = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Message one user or every member of an organisation."""
    result = message_service.send_admin_message(
        db,
        actor,
        RecipientType(data.recipient_type),
        data.recipient_id,
        data.content,
        subject=data.subject,
    )
    return MessageSendResponse(
        message=MessageRead.model_validate(result.message),
        notifications_sent=result.notifications_sent,
    )
