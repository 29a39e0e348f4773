"""Append-only audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.utils.datetime_parsing import utc_now


class AuditEntry(Base):
    """
    One audited mutation or read.

    Security:
    - Rows are never updated or deleted
    - No foreign keys, so deleting a case or user never rewrites history
    - Hash chain (prev_hash -> entry_hash) makes tampering detectable
    - ``actor`` is the acting user id, or "external" for the system of record
    """

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("idx_audit_table_record", "table_name", "record_id"),
        Index("idx_audit_actor_created", "actor", "created_at"),
        Index("idx_audit_created", "created_at"),
        # First-view rule: one VIEW per (record, actor)
        Index(
            "uq_audit_first_view",
            "table_name",
            "record_id",
            "actor",
            unique=True,
            postgresql_where=text("operation = 'VIEW'"),
            sqlite_where=text("operation = 'VIEW'"),
        ),
    )

    # Monotonic id gives the hash chain a total order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)  # AuditOperation

    field_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    organisation_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Request metadata
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Tamper-evident hash chain
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # SHA256 hex
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # SHA256 hex

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
