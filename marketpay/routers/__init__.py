"""API routers for the marketpay backend."""
from fastapi import APIRouter

from . import admin, alerts, apikeys, health, payments, users


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(users.router)
    api_router.include_router(apikeys.router)
    api_router.include_router(payments.router)
    api_router.include_router(admin.router)
    api_router.include_router(alerts.router)
    return api_router
