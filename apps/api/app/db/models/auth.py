"""Organisations, users and organisation membership."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import Role
from app.utils.datetime_parsing import utc_now

if TYPE_CHECKING:
    from app.db.models import Case


class Organisation(Base):
    """
    A client organisation whose debt recovery cases are handled in the portal.

    Created by admins or upserted by the external system of record, keyed by
    ``external_ref``.
    """

    __tablename__ = "organisations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)

    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    # Relationships
    memberships: Mapped[list["UserOrganisation"]] = relationship(
        back_populates="organisation", cascade="all, delete-orphan"
    )
    cases: Mapped[list["Case"]] = relationship(back_populates="organisation")


class User(Base):
    """
    Portal user.

    ``role`` holds the portal-wide role (super_admin / admin / member);
    ownership of an organisation is carried on the membership row.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.MEMBER.value, nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)

    # Credentials: a bcrypt hash of the one-time temporary password
    hashed_password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Notification preferences
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    document_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    case_update_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_mute_new_cases: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    memberships: Mapped[list["UserOrganisation"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email

    @property
    def portal_role(self) -> Role:
        return Role(self.role) if Role.has_value(self.role) else Role.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.portal_role.is_admin


class UserOrganisation(Base):
    """Assignment of a user to an organisation with a member/owner role."""

    __tablename__ = "user_organisations"
    __table_args__ = (
        UniqueConstraint("user_id", "organisation_id", name="uq_user_organisation"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organisation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), default=Role.MEMBER.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    user: Mapped["User"] = relationship(back_populates="memberships")
    organisation: Mapped["Organisation"] = relationship(back_populates="memberships")
