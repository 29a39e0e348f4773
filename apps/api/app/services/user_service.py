"""User service - external upsert with one-time temporary credentials."""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.actors import Actor
from app.core.exceptions import DuplicateReference, EntityNotFound, MissingField
from app.core.locks import reference_lock
from app.core.security import generate_temp_password, hash_password
from app.core.structured_logging import build_log_context
from app.db.enums import AuditOperation, EntityType, Role
from app.db.models import Organisation, User
from app.schemas.external import UserUpsert
from app.services import audit_service, organisation_service, reference_service
from app.services.reference_service import ResolveResult
from app.utils.normalization import normalize_email, normalize_name

logger = logging.getLogger(__name__)


@dataclass
class UserUpsertResult:
    resolution: ResolveResult[User]
    # Plaintext shown once to the caller; only the bcrypt hash is stored
    temp_password: str | None = None

    @property
    def user(self) -> User:
        return self.resolution.entity


def get_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if not user:
        raise EntityNotFound("user", user_id)
    return user


def get_user_by_email(db: Session, email: str) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.execute(select(User).where(User.email == normalized)).scalar_one_or_none()


def _role_for(is_admin: bool | None, current: User | None) -> str | None:
    """Map the external isAdmin flag onto a portal role.

    Super admins are managed inside the portal and never demoted by a push.
    """
    if is_admin is None:
        return None
    if current is not None and current.portal_role == Role.SUPER_ADMIN:
        return None
    return Role.ADMIN.value if is_admin else Role.MEMBER.value


def _check_email_free(db: Session, email: str | None, external_ref: str) -> None:
    if not email:
        return
    holder = get_user_by_email(db, email)
    if holder is not None and holder.external_ref != external_ref:
        raise DuplicateReference(
            EntityType.USER.value,
            external_ref,
            conflicting_id=holder.id,
            field="email",
            message=f"Email {email} already belongs to another user",
        )


def upsert_user(db: Session, data: UserUpsert, actor: Actor) -> UserUpsertResult:
    """
    Create or update a user by external reference and commit.

    On create the user gets a random temporary password (bcrypt-hashed) and
    must change it at first login; the plaintext is returned once. With an
    ``organisationExternalRef`` the user is assigned to that organisation
    (as member unless ``organisationRole`` says owner) if not already.

    Raises:
        DependencyNotFound: organisation reference unknown
        DuplicateReference: email already held by a different user
        MissingField: creating without an email
    """
    organisation: Organisation | None = None
    if data.organisation_external_ref:
        organisation = reference_service.require_organisation(db, data.organisation_external_ref)

    fields = data.supplied(
        "external_ref", "organisation_external_ref", "organisation_role", "is_admin"
    )
    if "email" in fields:
        fields["email"] = normalize_email(fields["email"])
    for key in ("first_name", "last_name"):
        if key in fields:
            fields[key] = normalize_name(fields[key])
    fields = {key: value for key, value in fields.items() if value is not None}

    temp_password: str | None = None

    def validate_create(values: dict) -> None:
        nonlocal temp_password
        if not values.get("email"):
            raise MissingField("email")
        temp_password = generate_temp_password()
        values["hashed_password"] = hash_password(temp_password)
        values["must_change_password"] = True

    with reference_lock(db, EntityType.USER.value, data.external_ref):
        _check_email_free(db, fields.get("email"), data.external_ref)

        current = reference_service.find_by_external_ref(db, User, data.external_ref)
        role = _role_for(data.is_admin, current)
        if role is not None:
            fields["role"] = role

        result = reference_service.resolve(
            db,
            User,
            data.external_ref,
            fields,
            create_defaults={"role": Role.MEMBER.value},
            validate_create=validate_create,
        )
        user = result.entity
        if not result.created:
            # Lost an insert race; the winner's row keeps its own credential
            temp_password = None

        if organisation is not None:
            membership_role = Role(data.organisation_role) if data.organisation_role else Role.MEMBER
            organisation_service.ensure_membership(db, user, organisation, actor, membership_role)

        if result.created:
            audit_service.record(
                db,
                "users",
                user.id,
                AuditOperation.INSERT,
                actor,
                new=audit_service.snapshot(user),
                description=f"User {user.email} created from external system",
                organisation_id=organisation.id if organisation else None,
            )
        else:
            audit_service.record_change(
                db,
                "users",
                user.id,
                actor,
                result.before,
                audit_service.snapshot(user),
                description="User updated from external system",
                organisation_id=organisation.id if organisation else None,
            )
        db.commit()

    db.refresh(user)
    logger.info(
        "User %s %s",
        data.external_ref,
        result.outcome.value,
        extra=build_log_context(entity_type="user", external_ref=data.external_ref),
    )
    return UserUpsertResult(resolution=result, temp_password=temp_password)
