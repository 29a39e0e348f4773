"""API routers."""

from app.routers.admin import router as admin_router
from app.routers.audit import router as audit_router
from app.routers.external import router as external_router
from app.routers.portal import router as portal_router

__all__ = [
    "admin_router",
    "audit_router",
    "external_router",
    "portal_router",
]
