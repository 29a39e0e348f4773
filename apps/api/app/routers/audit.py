"""Audit router - read-back and hash-chain verification (admins)."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.actors import Human
from app.core.deps import get_db, require_admin
from app.db.enums import AuditOperation
from app.services import audit_service
from app.utils.pagination import PaginationParams, get_pagination, page_count

router = APIRouter(prefix="/audit", tags=["Audit"])


# ============================================================================
# Schemas
# ============================================================================

class AuditEntryRead(BaseModel):
    """Audit trail entry for API response."""
    id: int
    table_name: str
    record_id: str
    operation: str
    field_name: str | None
    old_value: str | None = None
    new_value: str | None = None
    actor: str
    actor_user_id: UUID | None
    organisation_id: UUID | None
    description: str | None
    ip_address: str | None
    request_id: str | None
    prev_hash: str | None
    entry_hash: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditEntryListResponse(BaseModel):
    """Paginated audit trail response."""
    items: list[AuditEntryRead]
    total: int
    page: int
    per_page: int
    pages: int


class ChainVerificationResponse(BaseModel):
    ok: bool
    checked: int
    broken_entry_id: int | None = None
    reason: str | None = None


# ============================================================================
# Endpoints
# ============================================================================

@router.get("", response_model=AuditEntryListResponse)
def list_audit_entries(
    table_name: str | None = Query(None, description="Filter by table (e.g. 'payments')"),
    record_id: str | None = Query(None, description="Filter by record id"),
    operation: AuditOperation | None = Query(None, description="Filter by operation"),
    actor: str | None = Query(None, description="User id or 'external'"),
    start_date: datetime | None = Query(None, description="Entries at or after this time"),
    end_date: datetime | None = Query(None, description="Entries at or before this time"),
    pagination: PaginationParams = Depends(get_pagination),
    db: Session = Depends(get_db),
    _: Human = Depends(require_admin),
) -> AuditEntryListResponse:
    """List audit entries, newest first."""
    entries, total = audit_service.list_entries(
        db,
        table_name=table_name,
        record_id=record_id,
        operation=operation,
        actor=actor,
        start=start_date,
        end=end_date,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    return AuditEntryListResponse(
        items=[AuditEntryRead.model_validate(entry) for entry in entries],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
        pages=page_count(total, pagination.per_page),
    )


@router.get("/verify", response_model=ChainVerificationResponse)
def verify_audit_chain(
    db: Session = Depends(get_db),
    _: Human = Depends(require_admin),
) -> ChainVerificationResponse:
    """Recompute the hash chain and report the first broken entry, if any."""
    result = audit_service.verify_chain(db)
    return ChainVerificationResponse(
        ok=result.ok,
        checked=result.checked,
        broken_entry_id=result.broken_entry_id,
        reason=result.reason,
    )
