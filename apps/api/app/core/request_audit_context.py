"""Per-request context consumed by the audit recorder and log helpers."""

from contextvars import ContextVar, Token
from dataclasses import dataclass


@dataclass(frozen=True)
class RequestAuditContext:
    request_id: str
    ip_address: str | None = None
    user_agent: str | None = None


_REQUEST_AUDIT_CONTEXT: ContextVar[RequestAuditContext | None] = ContextVar(
    "request_audit_context",
    default=None,
)


def start_request_audit_context(
    request_id: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Token:
    """Initialize request-local audit state and return context token."""
    return _REQUEST_AUDIT_CONTEXT.set(
        RequestAuditContext(
            request_id=request_id,
            ip_address=ip_address,
            # Truncate to 500 chars (DB limit)
            user_agent=user_agent[:500] if user_agent else None,
        )
    )


def reset_request_audit_context(token: Token) -> None:
    """Restore the previous request-local audit state."""
    _REQUEST_AUDIT_CONTEXT.reset(token)


def get_request_audit_context() -> RequestAuditContext | None:
    return _REQUEST_AUDIT_CONTEXT.get()


def current_request_id() -> str | None:
    context = _REQUEST_AUDIT_CONTEXT.get()
    return context.request_id if context else None
