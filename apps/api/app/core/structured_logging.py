"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any

from app.core.actors import Actor, actor_key
from app.core.config import settings
from app.core.request_audit_context import current_request_id

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    """Apply LOG_LEVEL to the root logger once at startup."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def build_log_context(
    *,
    actor: Actor | str | None = None,
    entity_type: str | None = None,
    external_ref: str | None = None,
    case_id: Any = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict (ids and references only)."""
    context: dict[str, Any] = {}
    if actor:
        context["actor"] = actor if isinstance(actor, str) else actor_key(actor)
    if entity_type:
        context["entity_type"] = entity_type
    if external_ref:
        context["external_ref"] = external_ref
    if case_id:
        context["case_id"] = str(case_id)
    request_id = request_id or current_request_id()
    if request_id:
        context["request_id"] = request_id
    return context
