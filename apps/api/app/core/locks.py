"""Per-key mutual exclusion for reconciliation writes.

Two pushes for the same (entity type, external reference) must not both
take the create branch. Callers hold ``reference_lock`` across
lookup -> write -> commit:

- In-process, a keyed ``threading.Lock`` serialises request threads.
- On PostgreSQL, ``pg_advisory_xact_lock`` extends that across workers;
  it is released when the surrounding transaction ends.

The unique constraint on ``external_ref`` remains the last line: the loser
of an insert race re-reads and updates (see reference_service).
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.orm import Session


class KeyedLockRegistry:
    """Reference-counted registry of per-key locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_registry = KeyedLockRegistry()


def lock_key(entity_type: str, reference: str) -> str:
    return f"{entity_type}:{reference}"


def advisory_lock_id(key: str) -> int:
    """Map a lock key onto PostgreSQL's signed 64-bit advisory lock space."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def acquire_xact_lock(db: Session, key: str) -> None:
    """Take a PostgreSQL advisory lock held until the transaction ends.

    No-op on other backends.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(
        text("SELECT pg_advisory_xact_lock(:lock_id)"),
        {"lock_id": advisory_lock_id(key)},
    )


@contextmanager
def reference_lock(db: Session, entity_type: str, reference: str | None) -> Iterator[None]:
    """Serialise resolve-then-write for one (entity type, reference) key."""
    if not reference:
        yield
        return
    key = lock_key(entity_type, reference)
    with _registry.hold(key):
        acquire_xact_lock(db, key)
        yield
