"""Typed reconciliation errors.

Every error carries a stable machine-readable ``code`` plus structured
fields so that single-entity endpoints can map it to an HTTP response and
bulk sync can embed it in a per-item report without parsing messages.

    ReconciliationError
    +-- ValidationError           (400)
    |   +-- InvalidAmount
    |   +-- InvalidDate
    |   +-- MissingField
    +-- DependencyNotFound        (404)
    +-- EntityNotFound            (404)
    +-- DuplicateReference        (409)
    +-- TransportFailure          (never leaves notification/audit paths)
"""

from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """Base exception for reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"
    status_code: int = 500

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(ReconciliationError):
    """Malformed input, rejected before any write."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"

    def __init__(self, value: Any, field: str | None = "amount", reason: str | None = None):
        self.value = value
        message = f"Invalid amount {value!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, field=field)


class InvalidDate(ValidationError):
    code = "INVALID_DATE"

    def __init__(self, value: Any, field: str | None = "date", reason: str | None = None):
        self.value = value
        message = f"Invalid date {value!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, field=field)


class MissingField(ValidationError):
    code = "MISSING_FIELD"

    def __init__(self, field: str):
        super().__init__(f"Missing required field '{field}'", field=field)


class DependencyNotFound(ReconciliationError):
    """A referenced organisation/case/user does not exist."""

    code = "DEPENDENCY_NOT_FOUND"
    status_code = 404

    def __init__(self, entity_type: str, reference: str, field: str | None = None):
        self.entity_type = entity_type
        self.reference = reference
        super().__init__(
            f"{entity_type.capitalize()} with reference '{reference}' not found",
            field=field,
        )


class EntityNotFound(ReconciliationError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity_type: str, identifier: Any):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"{entity_type.capitalize()} '{identifier}' not found")


class DuplicateReference(ReconciliationError):
    """A reference is already claimed by a different entity."""

    code = "DUPLICATE_REFERENCE"
    status_code = 409

    def __init__(
        self,
        entity_type: str,
        reference: str,
        conflicting_id: Any = None,
        field: str | None = "externalRef",
        message: str | None = None,
    ):
        self.entity_type = entity_type
        self.reference = reference
        self.conflicting_id = conflicting_id
        super().__init__(
            message
            or f"{entity_type.capitalize()} reference '{reference}' is already claimed by another record",
            field=field,
        )


class PermissionDenied(ReconciliationError):
    code = "FORBIDDEN"
    status_code = 403


class TransportFailure(ReconciliationError):
    """Notification or audit sink unavailable. Logged and swallowed by callers."""

    code = "TRANSPORT_FAILURE"
    status_code = 502
