"""FastAPI dependencies for shared-secret auth, acting user and database access."""

from typing import Generator
from uuid import UUID

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.actors import Human, human_from_user
from app.core.config import settings
from app.core.security import verify_secret
from app.db.enums import Role
from app.db.session import SessionLocal


EXTERNAL_KEY_HEADER = "X-External-Api-Key"
INTERNAL_SECRET_HEADER = "X-Internal-Secret"
ACTOR_HEADER = "X-Actor-User-Id"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def verify_external_secret(
    x_external_api_key: str | None = Header(None, alias=EXTERNAL_KEY_HEADER),
) -> None:
    """Verify the system-of-record API key on every /external endpoint."""
    expected = settings.EXTERNAL_API_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="EXTERNAL_API_SECRET not configured")
    if not x_external_api_key or not verify_secret(x_external_api_key, expected):
        raise HTTPException(status_code=403, detail="Invalid external API key")


def verify_internal_secret(
    x_internal_secret: str | None = Header(None, alias=INTERNAL_SECRET_HEADER),
) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not x_internal_secret or not verify_secret(x_internal_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


def get_current_user(
    x_actor_user_id: str | None = Header(None, alias=ACTOR_HEADER),
    _: None = Depends(verify_internal_secret),
    db: Session = Depends(get_db),
):
    """
    Resolve the acting portal user named by the trusted front end.

    Raises:
        HTTPException 401: header missing, malformed or unknown user
    """
    # Import here to avoid circular imports
    from app.db.models import User

    if not x_actor_user_id:
        raise HTTPException(status_code=401, detail=f"{ACTOR_HEADER} header required")
    try:
        user_id = UUID(x_actor_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid acting user id")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Acting user not found")
    return user


def get_current_actor(user=Depends(get_current_user)) -> Human:
    """Acting user as an audit/notification actor."""
    return human_from_user(user)


def require_roles(allowed_roles: list):
    """
    Dependency factory for role-based authorization.

    Uses enum values (not strings) to prevent drift.

    Usage:
        @router.delete("/cases/{id}", dependencies=[Depends(require_roles([Role.SUPER_ADMIN]))])
    """
    def dependency(actor: Human = Depends(get_current_actor)) -> Human:
        if actor.role not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Role '{actor.role.value}' not authorized for this action",
            )
        return actor
    return dependency


require_admin = require_roles([Role.ADMIN, Role.SUPER_ADMIN])
require_super_admin = require_roles([Role.SUPER_ADMIN])
