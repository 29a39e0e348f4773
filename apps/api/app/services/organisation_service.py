"""Organisation service - external upsert and membership helpers."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.actors import Actor
from app.core.exceptions import MissingField
from app.core.locks import reference_lock
from app.core.structured_logging import build_log_context
from app.db.enums import AuditOperation, EntityType, Role
from app.db.models import Organisation, User, UserOrganisation
from app.schemas.external import OrganisationUpsert
from app.services import audit_service, reference_service
from app.services.reference_service import ResolveResult
from app.utils.normalization import normalize_email, normalize_name

logger = logging.getLogger(__name__)


def _fields(data: OrganisationUpsert) -> dict:
    fields = data.supplied("external_ref")
    if "name" in fields:
        fields["name"] = normalize_name(fields["name"])
    if "contact_email" in fields:
        fields["contact_email"] = normalize_email(fields["contact_email"])
    return {key: value for key, value in fields.items() if value is not None}


def _validate_create(values: dict) -> None:
    if not values.get("name"):
        raise MissingField("name")


def upsert_organisation(
    db: Session,
    data: OrganisationUpsert,
    actor: Actor,
) -> ResolveResult[Organisation]:
    """
    Create or update an organisation by external reference and commit.

    Raises:
        MissingField: creating without a name
    """
    fields = _fields(data)
    with reference_lock(db, EntityType.ORGANISATION.value, data.external_ref):
        result = reference_service.resolve(
            db,
            Organisation,
            data.external_ref,
            fields,
            validate_create=_validate_create,
        )
        organisation = result.entity
        if result.created:
            audit_service.record(
                db,
                "organisations",
                organisation.id,
                AuditOperation.INSERT,
                actor,
                new=audit_service.snapshot(organisation),
                description=f"Organisation {organisation.name} created from external system",
                organisation_id=organisation.id,
            )
        else:
            audit_service.record_change(
                db,
                "organisations",
                organisation.id,
                actor,
                result.before,
                audit_service.snapshot(organisation),
                description="Organisation updated from external system",
                organisation_id=organisation.id,
            )
        db.commit()

    db.refresh(organisation)
    logger.info(
        "Organisation %s %s",
        data.external_ref,
        result.outcome.value,
        extra=build_log_context(entity_type="organisation", external_ref=data.external_ref),
    )
    return result


def get_membership(db: Session, user_id: UUID, organisation_id: UUID) -> UserOrganisation | None:
    return db.execute(
        select(UserOrganisation).where(
            UserOrganisation.user_id == user_id,
            UserOrganisation.organisation_id == organisation_id,
        )
    ).scalar_one_or_none()


def ensure_membership(
    db: Session,
    user: User,
    organisation: Organisation,
    actor: Actor,
    role: Role = Role.MEMBER,
) -> tuple[UserOrganisation, bool]:
    """
    Add the user to the organisation if not already assigned. Does not commit.

    An existing assignment keeps its role.

    Returns:
        (membership, created)
    """
    existing = get_membership(db, user.id, organisation.id)
    if existing:
        return existing, False

    membership = UserOrganisation(user_id=user.id, organisation_id=organisation.id, role=role.value)
    try:
        with db.begin_nested():
            db.add(membership)
            db.flush()
    except IntegrityError:
        # Concurrent assignment already inserted it
        return get_membership(db, user.id, organisation.id), False
    audit_service.record(
        db,
        "user_organisations",
        membership.id,
        AuditOperation.INSERT,
        actor,
        new=audit_service.snapshot(membership),
        description=f"User {user.email} added to organisation {organisation.name}",
        organisation_id=organisation.id,
    )
    return membership, True
