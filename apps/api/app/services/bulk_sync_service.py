"""Bulk reconciliation - many upserts in dependency order, per-item outcomes.

Categories run organisations -> users -> cases -> payments so an item can
depend on one created earlier in the same batch. Each item goes through
the same service call as its single-entity endpoint and commits on its
own; a failing item is rolled back, reported, and the batch carries on.
"""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from app.core.actors import Actor
from app.core.exceptions import ReconciliationError
from app.schemas.external import (
    BulkCategoryResult,
    BulkItemError,
    BulkSyncRequest,
    BulkSyncResponse,
    CaseUpsert,
    OrganisationUpsert,
    PaymentUpsert,
    UserUpsert,
)
from app.services import case_service, organisation_service, payment_service, user_service

logger = logging.getLogger(__name__)


def _upsert_organisation(db: Session, data: OrganisationUpsert, actor: Actor) -> bool:
    return organisation_service.upsert_organisation(db, data, actor).created


def _upsert_user(db: Session, data: UserUpsert, actor: Actor) -> bool:
    return user_service.upsert_user(db, data, actor).resolution.created


def _upsert_case(db: Session, data: CaseUpsert, actor: Actor) -> bool:
    return case_service.upsert_case(db, data, actor).created


def _upsert_payment(db: Session, data: PaymentUpsert, actor: Actor) -> bool:
    return payment_service.create_or_update_payment(db, data, actor).created


# (category, schema, handler returning "created") in dependency order
CATEGORIES: tuple[tuple[str, type[BaseModel], Callable[[Session, Any, Actor], bool]], ...] = (
    ("organisations", OrganisationUpsert, _upsert_organisation),
    ("users", UserUpsert, _upsert_user),
    ("cases", CaseUpsert, _upsert_case),
    ("payments", PaymentUpsert, _upsert_payment),
)


def _item_ref(item: Any) -> str | None:
    if isinstance(item, dict):
        ref = item.get("externalRef", item.get("external_ref"))
        return str(ref) if ref is not None else None
    return None


def _schema_error_message(exc: SchemaValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def sync_category(
    db: Session,
    items: list[Any],
    schema: type[BaseModel],
    handler: Callable[[Session, Any, Actor], bool],
    actor: Actor,
) -> BulkCategoryResult:
    """Apply one category's items in order. Never raises for an item."""
    result = BulkCategoryResult()
    for item in items:
        external_ref = _item_ref(item)
        try:
            data = schema.model_validate(item)
            created = handler(db, data, actor)
        except SchemaValidationError as exc:
            db.rollback()
            result.errors.append(
                BulkItemError(
                    external_ref=external_ref,
                    error=_schema_error_message(exc),
                    code="VALIDATION_ERROR",
                )
            )
            continue
        except ReconciliationError as exc:
            db.rollback()
            result.errors.append(
                BulkItemError(external_ref=external_ref, error=exc.message, code=exc.code)
            )
            continue
        except Exception:
            db.rollback()
            logger.exception("Unexpected failure syncing %s %s", schema.__name__, external_ref)
            result.errors.append(
                BulkItemError(
                    external_ref=external_ref,
                    error="Unexpected error while processing item",
                    code="INTERNAL_ERROR",
                )
            )
            continue

        if created:
            result.created += 1
        else:
            result.updated += 1
    return result


def bulk_sync(db: Session, request: BulkSyncRequest, actor: Actor) -> BulkSyncResponse:
    """
    Reconcile a batch. Partial failure never aborts the batch.

    Returns:
        created / updated counts and per-item errors for every category
    """
    results: dict[str, BulkCategoryResult] = {}
    for category, schema, handler in CATEGORIES:
        results[category] = sync_category(db, getattr(request, category), schema, handler, actor)

    logger.info(
        "Bulk sync finished: %s",
        ", ".join(
            f"{category} {r.created}+{r.updated} ({len(r.errors)} failed)"
            for category, r in results.items()
        ),
    )
    return BulkSyncResponse(**results)
