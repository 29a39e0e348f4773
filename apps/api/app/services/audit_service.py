"""Audit recorder - append-only trail of every mutation, view and download.

Guidelines:
- Entries are never updated or deleted once written
- A failed audit write is logged and swallowed; the business mutation it
  accompanies still commits (writes happen inside a SAVEPOINT)
- NEVER put secrets (temp passwords, API keys) into old/new values
- Every entry is linked into a SHA-256 hash chain (prev_hash -> entry_hash)
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import inspect as sa_inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.actors import Actor, actor_key, actor_user_id
from app.core.config import settings
from app.core.locks import acquire_xact_lock
from app.core.request_audit_context import get_request_audit_context
from app.db.enums import AuditOperation
from app.db.models import AuditEntry
from app.utils.pagination import PaginationParams, paginate

logger = logging.getLogger(__name__)

# Columns never copied into audit snapshots
REDACTED_COLUMNS = frozenset({"hashed_password"})


# =============================================================================
# Serialization
# =============================================================================

def _json_default(value: Any) -> str:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return _hash_timestamp(value)
    return str(value)


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    This MUST be used consistently everywhere hashes are computed.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=_json_default)


def snapshot(instance: Any) -> dict[str, Any]:
    """Column values of an ORM instance, for before/after audit values."""
    mapper = sa_inspect(instance).mapper
    return {
        column.key: getattr(instance, column.key)
        for column in mapper.column_attrs
        if column.key not in REDACTED_COLUMNS
    }


def diff_snapshots(before: dict[str, Any], after: dict[str, Any]) -> tuple[dict, dict]:
    """Reduce two snapshots to only the keys whose values changed."""
    changed = {key for key in after if before.get(key) != after.get(key)}
    changed.discard("updated_at")
    return (
        {key: before.get(key) for key in sorted(changed)},
        {key: after.get(key) for key in sorted(changed)},
    )


def _encode_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return canonical_json(value)
    return _json_default(value) if not isinstance(value, str) else value


# =============================================================================
# Hash Chain (Tamper-Evident Audit Trail)
# =============================================================================

GENESIS_HASH = "0" * 64  # All zeros for first entry
AUDIT_CHAIN_LOCK_KEY = "audit:chain-head"


def _hash_timestamp(value: datetime | None) -> str:
    """UTC, tz-naive ISO form; identical whether read back from PostgreSQL or SQLite."""
    if value is None:
        return ""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def compute_audit_hash(entry: AuditEntry, prev_hash: str) -> str:
    """
    Compute hash for an audit entry.

    Hash = SHA256(all immutable fields joined with |)
    """
    data = "|".join([
        prev_hash,
        str(entry.id),
        entry.table_name,
        entry.record_id,
        entry.operation,
        entry.field_name or "",
        entry.old_value or "",
        entry.new_value or "",
        entry.actor,
        str(entry.organisation_id) if entry.organisation_id else "",
        entry.description or "",
        _hash_timestamp(entry.created_at),
        entry.ip_address or "",
        entry.user_agent or "",
        entry.request_id or "",
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def get_last_audit_hash(db: Session) -> str:
    """Hash of the most recent entry (id order is the chain order)."""
    result = db.execute(
        select(AuditEntry.entry_hash)
        .where(AuditEntry.entry_hash.isnot(None))
        .order_by(AuditEntry.id.desc())
        .limit(1)
    ).scalar()
    return result or GENESIS_HASH


def _append(
    db: Session,
    *,
    table_name: str,
    record_id: Any,
    operation: AuditOperation,
    actor: Actor,
    field_name: str | None,
    old_value: Any,
    new_value: Any,
    description: str | None,
    organisation_id: UUID | None,
) -> AuditEntry:
    # Serialise chain appends across workers (PostgreSQL only)
    acquire_xact_lock(db, AUDIT_CHAIN_LOCK_KEY)
    prev_hash = get_last_audit_hash(db)
    request_context = get_request_audit_context()

    entry = AuditEntry(
        table_name=table_name,
        record_id=str(record_id),
        operation=operation.value,
        field_name=field_name,
        old_value=_encode_value(old_value),
        new_value=_encode_value(new_value),
        actor=actor_key(actor),
        actor_user_id=actor_user_id(actor),
        organisation_id=organisation_id,
        description=description,
        ip_address=request_context.ip_address if request_context else None,
        user_agent=request_context.user_agent if request_context else None,
        request_id=request_context.request_id if request_context else None,
        prev_hash=prev_hash,
    )
    db.add(entry)
    db.flush()  # Get id and created_at

    entry.entry_hash = compute_audit_hash(entry, prev_hash)
    db.flush()
    return entry


# =============================================================================
# Recording
# =============================================================================

def record(
    db: Session,
    table_name: str,
    record_id: Any,
    operation: AuditOperation,
    actor: Actor,
    old: Any = None,
    new: Any = None,
    description: str | None = None,
    field_name: str | None = None,
    organisation_id: UUID | None = None,
) -> AuditEntry | None:
    """
    Append an audit entry in the caller's transaction.

    The write runs in a SAVEPOINT. If it fails the savepoint is rolled back,
    the failure is logged as a soft failure, and None is returned so the
    surrounding mutation can still commit.

    Args:
        db: Database session (caller commits)
        table_name: Table of the affected record (e.g. 'cases', 'payments')
        record_id: Id of the affected record
        operation: INSERT / UPDATE / DELETE / VIEW / DOWNLOAD
        actor: Human user or the external system
        old: Previous value (dict snapshot or scalar when field_name is set)
        new: New value (dict snapshot or scalar when field_name is set)
        description: Free-text summary
        field_name: Single changed field, when auditing one column
        organisation_id: Owning organisation, for scoping read-back

    Returns:
        The created entry, or None when auditing is disabled or failed
    """
    if not settings.AUDIT_ENABLED:
        return None
    try:
        with db.begin_nested():
            return _append(
                db,
                table_name=table_name,
                record_id=record_id,
                operation=operation,
                actor=actor,
                field_name=field_name,
                old_value=old,
                new_value=new,
                description=description,
                organisation_id=organisation_id,
            )
    except Exception:
        logger.warning(
            "Audit write failed for %s %s/%s; mutation continues",
            operation.value,
            table_name,
            record_id,
            exc_info=True,
        )
        return None


def record_change(
    db: Session,
    table_name: str,
    record_id: Any,
    actor: Actor,
    before: dict[str, Any],
    after: dict[str, Any],
    description: str | None = None,
    organisation_id: UUID | None = None,
) -> AuditEntry | None:
    """Record an UPDATE with only the changed columns; no-op if nothing changed."""
    old, new = diff_snapshots(before, after)
    if not new:
        return None
    return record(
        db,
        table_name,
        record_id,
        AuditOperation.UPDATE,
        actor,
        old=old,
        new=new,
        description=description,
        organisation_id=organisation_id,
    )


def _find_view(db: Session, table_name: str, record_id: str, actor: Actor) -> AuditEntry | None:
    return db.execute(
        select(AuditEntry)
        .where(AuditEntry.table_name == table_name)
        .where(AuditEntry.record_id == record_id)
        .where(AuditEntry.operation == AuditOperation.VIEW.value)
        .where(AuditEntry.actor == actor_key(actor))
        .limit(1)
    ).scalar_one_or_none()


def record_first_view(
    db: Session,
    table_name: str,
    record_id: Any,
    actor: Actor,
    description: str | None = None,
    organisation_id: UUID | None = None,
) -> tuple[AuditEntry | None, bool]:
    """
    Record a VIEW only the first time this actor views this record.

    A partial unique index backs the rule, so two concurrent first views
    still produce one entry.

    Returns:
        (entry, created) - the existing entry and False on repeat views
    """
    if not settings.AUDIT_ENABLED:
        return None, False

    record_key = str(record_id)
    existing = _find_view(db, table_name, record_key, actor)
    if existing:
        return existing, False

    try:
        with db.begin_nested():
            entry = _append(
                db,
                table_name=table_name,
                record_id=record_key,
                operation=AuditOperation.VIEW,
                actor=actor,
                field_name=None,
                old_value=None,
                new_value=None,
                description=description,
                organisation_id=organisation_id,
            )
        return entry, True
    except IntegrityError:
        # Lost the race to a concurrent first view
        return _find_view(db, table_name, record_key, actor), False
    except Exception:
        logger.warning(
            "Audit VIEW write failed for %s/%s", table_name, record_key, exc_info=True
        )
        return None, False


# =============================================================================
# Read-back
# =============================================================================

def list_entries(
    db: Session,
    *,
    table_name: str | None = None,
    record_id: str | None = None,
    operation: AuditOperation | None = None,
    actor: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[AuditEntry], int]:
    """
    Filtered audit read-back, newest first.

    ``actor`` is a user id string or "external".

    Returns:
        (entries for the page, total matching)
    """
    stmt = select(AuditEntry)
    if table_name:
        stmt = stmt.where(AuditEntry.table_name == table_name)
    if record_id:
        stmt = stmt.where(AuditEntry.record_id == str(record_id))
    if operation:
        stmt = stmt.where(AuditEntry.operation == operation.value)
    if actor:
        stmt = stmt.where(AuditEntry.actor == actor)
    if start:
        stmt = stmt.where(AuditEntry.created_at >= start)
    if end:
        stmt = stmt.where(AuditEntry.created_at <= end)

    return paginate(db, stmt.order_by(AuditEntry.id.desc()), PaginationParams(page=page, per_page=per_page))


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    checked: int
    broken_entry_id: int | None = None
    reason: str | None = None


def verify_chain(db: Session, batch_size: int = 500) -> ChainVerification:
    """Walk the trail in id order and report the first entry that breaks the chain."""
    expected_prev = GENESIS_HASH
    checked = 0
    stmt = select(AuditEntry).order_by(AuditEntry.id.asc()).execution_options(yield_per=batch_size)
    for entry in db.execute(stmt).scalars():
        if entry.prev_hash != expected_prev:
            return ChainVerification(False, checked, entry.id, "prev_hash does not link to previous entry")
        if entry.entry_hash != compute_audit_hash(entry, entry.prev_hash):
            return ChainVerification(False, checked, entry.id, "entry_hash does not match contents")
        expected_prev = entry.entry_hash
        checked += 1
    return ChainVerification(True, checked)
