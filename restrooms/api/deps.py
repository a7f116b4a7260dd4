"""
Request-scoped accessors for the services held on app.state, plus the
admin token check.
"""

import secrets

from fastapi import HTTPException, Request

from ..core.config import ServiceConfig
from ..core.hydration import HydrationService
from ..core.locations import LocationService
from ..db.store import LocationStore

ADMIN_TOKEN_HEADER = "X-Admin-Token"


def get_location_service(request: Request) -> LocationService:
    return request.app.state.locations


def get_hydration_service(request: Request) -> HydrationService:
    return request.app.state.hydration


def get_store(request: Request) -> LocationStore:
    return request.app.state.store


def get_service_config(request: Request) -> ServiceConfig:
    return request.app.state.service_config


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def require_admin(request: Request) -> None:
    """Shared-secret check on X-Admin-Token. Admin is off when no token is configured."""
    expected = get_service_config(request).admin_token
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API is disabled")

    supplied = request.headers.get(ADMIN_TOKEN_HEADER)
    if not supplied:
        raise HTTPException(status_code=401, detail="Admin token required")
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Invalid admin token")
