"""API routers for the escrow backend."""
from fastapi import APIRouter

from . import apikeys, disputes, health, milestones, notifications, payments, projects, psp, users


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(users.router)
    api_router.include_router(apikeys.router)
    api_router.include_router(projects.router)
    api_router.include_router(milestones.router)
    api_router.include_router(payments.router)
    api_router.include_router(disputes.router)
    api_router.include_router(disputes.admin_router)
    api_router.include_router(notifications.router)
    api_router.include_router(notifications.audit_router)
    api_router.include_router(psp.router)
    return api_router
