"""
External system-of-record endpoints.

Protected by the X-External-Api-Key header. Every mutation is performed by
the ExternalSystem actor and keyed on the caller's ``externalRef``; pushing
the same payload twice converges to the same state.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.actors import EXTERNAL_SYSTEM
from app.core.deps import get_db, verify_external_secret
from app.core.json_route import DecimalJSONRoute
from app.core.rate_limit import BULK_LIMIT, EXTERNAL_LIMIT, limiter
from app.schemas.external import (
    ActivityPush,
    BulkSyncRequest,
    BulkSyncResponse,
    CaseUpsert,
    CaseUpsertResponse,
    MessagePush,
    MessagePushResponse,
    OrganisationUpsert,
    PaymentDeleteResponse,
    PaymentResponse,
    PaymentReverse,
    PaymentReverseResponse,
    PaymentUpdate,
    PaymentUpsert,
    TimelineResponse,
    UpsertResponse,
    UserUpsert,
    UserUpsertResponse,
)
from app.services import (
    activity_service,
    bulk_sync_service,
    case_service,
    message_service,
    organisation_service,
    payment_service,
    user_service,
)

router = APIRouter(
    prefix="/external",
    tags=["external"],
    dependencies=[Depends(verify_external_secret)],
    route_class=DecimalJSONRoute,
)


def _payment_response(write: payment_service.PaymentWrite) -> PaymentResponse:
    payment = write.payment
    return PaymentResponse(
        id=payment.id,
        external_ref=payment.external_ref,
        case_id=payment.case_id,
        amount=payment.amount,
        reference=payment.reference,
        created=write.created,
        outstanding_amount=write.outstanding_amount,
    )


# =============================================================================
# Upserts
# =============================================================================

@router.post("/organisations", response_model=UpsertResponse)
@limiter.limit(EXTERNAL_LIMIT)
def upsert_organisation(
    request: Request,
    data: OrganisationUpsert,
    db: Session = Depends(get_db),
):
    """Create or update an organisation by externalRef."""
    result = organisation_service.upsert_organisation(db, data, EXTERNAL_SYSTEM)
    return UpsertResponse(id=result.internal_id, external_ref=data.external_ref, created=result.created)


@router.post("/users", response_model=UserUpsertResponse)
@limiter.limit(EXTERNAL_LIMIT)
def upsert_user(
    request: Request,
    data: UserUpsert,
    db: Session = Depends(get_db),
):
    """
    Create or update a user by externalRef.

    On create the response carries a one-time ``tempPassword``.
    """
    result = user_service.upsert_user(db, data, EXTERNAL_SYSTEM)
    user = result.user
    return UserUpsertResponse(
        id=user.id,
        external_ref=data.external_ref,
        created=result.resolution.created,
        email=user.email,
        temp_password=result.temp_password,
        must_change_password=user.must_change_password,
    )


@router.post("/cases", response_model=CaseUpsertResponse)
@limiter.limit(EXTERNAL_LIMIT)
def upsert_case(
    request: Request,
    data: CaseUpsert,
    db: Session = Depends(get_db),
):
    """Create or update a case by externalRef."""
    result = case_service.upsert_case(db, data, EXTERNAL_SYSTEM)
    case = result.entity
    return CaseUpsertResponse(
        id=case.id,
        external_ref=data.external_ref,
        created=result.created,
        account_number=case.account_number,
        outstanding_amount=case.outstanding_amount,
    )


# =============================================================================
# Payments
# =============================================================================

@router.post("/payments", response_model=PaymentResponse)
@limiter.limit(EXTERNAL_LIMIT)
def create_or_update_payment(
    request: Request,
    data: PaymentUpsert,
    db: Session = Depends(get_db),
):
    """Record a payment, or update it if the externalRef is known."""
    write = payment_service.create_or_update_payment(db, data, EXTERNAL_SYSTEM)
    return _payment_response(write)


@router.put("/payments/{external_ref}", response_model=PaymentResponse)
@limiter.limit(EXTERNAL_LIMIT)
def update_payment(
    request: Request,
    external_ref: str,
    data: PaymentUpdate,
    db: Session = Depends(get_db),
):
    """Partially update a payment. 404 if the externalRef is unknown."""
    write = payment_service.update_payment_by_ref(db, external_ref, data, EXTERNAL_SYSTEM)
    return _payment_response(write)


@router.delete("/payments/{external_ref}", response_model=PaymentDeleteResponse)
@limiter.limit(EXTERNAL_LIMIT)
def delete_payment(
    request: Request,
    external_ref: str,
    db: Session = Depends(get_db),
):
    """Delete a payment and recompute the case balance."""
    outstanding = payment_service.delete_payment_by_ref(db, external_ref, EXTERNAL_SYSTEM)
    return PaymentDeleteResponse(deleted=True, external_ref=external_ref, outstanding_amount=outstanding)


@router.post("/payments/{external_ref}/reverse", response_model=PaymentReverseResponse)
@limiter.limit(EXTERNAL_LIMIT)
def reverse_payment(
    request: Request,
    external_ref: str,
    data: PaymentReverse | None = None,
    db: Session = Depends(get_db),
):
    """Reverse a payment with a linked negative payment. Safe to retry."""
    result = payment_service.reverse_payment(
        db, external_ref, EXTERNAL_SYSTEM, reason=data.reason if data else None
    )
    reversal = result.reversal
    return PaymentReverseResponse(
        id=reversal.id,
        external_ref=reversal.external_ref,
        case_id=reversal.case_id,
        amount=reversal.amount,
        reference=reversal.reference,
        created=not result.already_reversed,
        outstanding_amount=result.outstanding_amount,
        reversal_of=result.original.id,
        already_reversed=result.already_reversed,
    )


# =============================================================================
# Bulk
# =============================================================================

@router.post("/bulk-sync", response_model=BulkSyncResponse)
@limiter.limit(BULK_LIMIT)
def bulk_sync(
    request: Request,
    data: BulkSyncRequest,
    db: Session = Depends(get_db),
):
    """
    Reconcile many entities in one call.

    Always 200; failed items are listed per category with their error code.
    """
    return bulk_sync_service.bulk_sync(db, data, EXTERNAL_SYSTEM)


# =============================================================================
# Timeline
# =============================================================================

@router.post("/activities", response_model=TimelineResponse)
@limiter.limit(EXTERNAL_LIMIT)
def push_activity(
    request: Request,
    data: ActivityPush,
    db: Session = Depends(get_db),
):
    """Append a timeline entry to a case. Never touches the ledger."""
    activity = activity_service.push_activity(db, data, EXTERNAL_SYSTEM)
    return TimelineResponse(id=activity.id, case_id=activity.case_id)


@router.post("/messages", response_model=MessagePushResponse)
@limiter.limit(EXTERNAL_LIMIT)
def push_message(
    request: Request,
    data: MessagePush,
    db: Session = Depends(get_db),
):
    """Post a message on a case and notify the organisation's members."""
    result = message_service.push_external_message(db, data)
    return MessagePushResponse(
        id=result.message.id,
        case_id=result.message.case_id,
        notifications_sent=result.notifications_sent,
    )
