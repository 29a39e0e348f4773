"""Reference resolver - upsert by external reference.

resolve(model, external_ref, fields):
1. Row with that external_ref exists -> partial update -> UPDATED
2. Optional secondary lookup (cases only: account number) -> backfill
   external_ref, update -> UPDATED
3. Otherwise insert -> CREATED

Callers hold ``app.core.locks.reference_lock`` for the key across
resolve -> commit. The unique constraint on ``external_ref`` backs that up:
the insert runs in a SAVEPOINT and the loser of a race re-reads the winner's
row and updates it instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import DependencyNotFound, DuplicateReference
from app.db.enums import EntityType, ResolveOutcome
from app.db.models import Case, Organisation, Payment, User
from app.services.audit_service import snapshot

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

MODEL_ENTITY_TYPES: dict[type, EntityType] = {
    Organisation: EntityType.ORGANISATION,
    User: EntityType.USER,
    Case: EntityType.CASE,
    Payment: EntityType.PAYMENT,
}


@dataclass
class ResolveResult(Generic[ModelT]):
    outcome: ResolveOutcome
    entity: ModelT
    # Column values before an update (empty on create)
    before: dict[str, Any]

    @property
    def created(self) -> bool:
        return self.outcome == ResolveOutcome.CREATED

    @property
    def internal_id(self) -> UUID:
        return self.entity.id  # type: ignore[attr-defined]


def entity_type_for(model: type) -> EntityType:
    return MODEL_ENTITY_TYPES[model]


def find_by_external_ref(db: Session, model: type[ModelT], external_ref: str) -> ModelT | None:
    """Look up a row of ``model`` by its external reference."""
    return db.execute(
        select(model).where(model.external_ref == external_ref)  # type: ignore[attr-defined]
    ).scalar_one_or_none()


def apply_fields(entity: Any, fields: dict[str, Any]) -> None:
    """Partial update: only keys present in ``fields`` are written."""
    for key, value in fields.items():
        setattr(entity, key, value)


def resolve(
    db: Session,
    model: type[ModelT],
    external_ref: str,
    fields: dict[str, Any],
    *,
    create_defaults: dict[str, Any] | None = None,
    secondary_lookup: Callable[[Session], ModelT | None] | None = None,
    validate_create: Callable[[dict[str, Any]], None] | None = None,
) -> ResolveResult[ModelT]:
    """
    Create-or-update one entity by external reference. Flushes, never commits.

    Args:
        db: Database session
        model: ORM class with an ``external_ref`` column
        external_ref: Reconciliation key from the system of record
        fields: Column values supplied by the caller (partial)
        create_defaults: Entity defaults applied only on insert
        secondary_lookup: Fallback finder tried before concluding "absent"
        validate_create: Called with the merged insert values just before the
            insert; raises when a required field is missing and may add
            derived values (e.g. a credential hash)

    Raises:
        DuplicateReference: the fallback matched a row claimed by another
            external reference, or the insert hit a non-reference conflict
    """
    entity_type = entity_type_for(model)

    existing = find_by_external_ref(db, model, external_ref)
    if existing is not None:
        before = snapshot(existing)
        apply_fields(existing, fields)
        db.flush()
        return ResolveResult(ResolveOutcome.UPDATED, existing, before)

    if secondary_lookup is not None:
        match = secondary_lookup(db)
        if match is not None:
            claimed = getattr(match, "external_ref")
            if claimed and claimed != external_ref:
                raise DuplicateReference(
                    entity_type.value,
                    external_ref,
                    conflicting_id=match.id,  # type: ignore[attr-defined]
                    message=(
                        f"{entity_type.value.capitalize()} matched by secondary key is already "
                        f"linked to reference '{claimed}'"
                    ),
                )
            before = snapshot(match)
            apply_fields(match, fields)
            match.external_ref = external_ref  # type: ignore[attr-defined]
            db.flush()
            logger.info(
                "Backfilled external reference %s onto existing %s %s",
                external_ref,
                entity_type.value,
                match.id,  # type: ignore[attr-defined]
            )
            return ResolveResult(ResolveOutcome.UPDATED, match, before)

    values = {**(create_defaults or {}), **fields}
    if validate_create is not None:
        validate_create(values)

    entity = model(external_ref=external_ref, **values)
    try:
        with db.begin_nested():
            db.add(entity)
            db.flush()
    except IntegrityError as exc:
        # Concurrent insert for the same key won; fall back to update
        winner = find_by_external_ref(db, model, external_ref)
        if winner is None:
            raise DuplicateReference(
                entity_type.value,
                external_ref,
                message=f"{entity_type.value.capitalize()} '{external_ref}' conflicts with an existing record",
            ) from exc
        logger.info("Insert race on %s %s; updating winner", entity_type.value, external_ref)
        before = snapshot(winner)
        apply_fields(winner, fields)
        db.flush()
        return ResolveResult(ResolveOutcome.UPDATED, winner, before)

    return ResolveResult(ResolveOutcome.CREATED, entity, {})


# =============================================================================
# Dependency lookups
# =============================================================================

def require_organisation(db: Session, external_ref: str | None, field: str = "organisationExternalRef") -> Organisation:
    """Raises DependencyNotFound when the referenced organisation is absent."""
    organisation = find_by_external_ref(db, Organisation, external_ref) if external_ref else None
    if organisation is None:
        raise DependencyNotFound(EntityType.ORGANISATION.value, external_ref or "", field=field)
    return organisation


def require_case(db: Session, external_ref: str | None, field: str = "caseExternalRef") -> Case:
    """Raises DependencyNotFound when the referenced case is absent."""
    case = find_by_external_ref(db, Case, external_ref) if external_ref else None
    if case is None:
        raise DependencyNotFound(EntityType.CASE.value, external_ref or "", field=field)
    return case
