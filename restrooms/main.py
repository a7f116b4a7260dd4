"""
Restroom Directory - Location Reconciliation Service

Main application entry point.

Serves restroom locations from the local store, backfilling from the
remote restroom API when a search comes back sparse.

    uvicorn restrooms.main:app
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes_admin import router as admin_router
from .api.routes_public import router as public_router
from .core.collaborators import GoogleGeocoder, NullGeocoder, RecaptchaValidator
from .core.config import HydrationConfig, ServiceConfig
from .core.errors import LocationError
from .core.hydration import HydrationService
from .core.locations import LocationService
from .core.remote import RefugeApiClient
from .db.store import LocationStore, open_location_store
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)

VERSION = "0.1.0"

# Error kind -> HTTP status
STATUS_BY_KIND = {
    "not-found": 404,
    "validation-error": 422,
    "invalid-data": 422,
    "invalid-token": 403,
    "already-exists": 409,
    "remote-fetch-error": 502,
    "geocoding-error": 502,
    "remote-timeout": 504,
    "store-error": 500,
}

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def create_app(
    store: Optional[LocationStore] = None,
    remote_client=None,
    geocoder=None,
    validator=None,
    hydration_config: Optional[HydrationConfig] = None,
    service_config: Optional[ServiceConfig] = None,
) -> FastAPI:
    """
    Build the application.

    Anything passed in is used as-is (tests inject fakes); anything left
    out is built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hydration_cfg = hydration_config or HydrationConfig.from_env()
        service_cfg = service_config or ServiceConfig.from_env()
        owned = []

        app.state.store = store or await open_location_store()
        if store is None:
            owned.append(app.state.store.close)

        client = remote_client
        if client is None:
            client = RefugeApiClient(hydration_cfg.api_url, hydration_cfg.timeout_seconds)
            owned.append(client.aclose)

        geo = geocoder
        if geo is None:
            if service_cfg.google_maps_api_key:
                geo = GoogleGeocoder(service_cfg.google_maps_api_key)
                owned.append(geo.aclose)
            else:
                geo = NullGeocoder()

        token_validator = validator
        if token_validator is None:
            token_validator = RecaptchaValidator(service_cfg.recaptcha_secret_key)
            owned.append(token_validator.aclose)

        app.state.service_config = service_cfg
        app.state.hydration = HydrationService(app.state.store, client, hydration_cfg)
        app.state.locations = LocationService(
            app.state.store,
            app.state.hydration,
            geo,
            token_validator,
            sparsity_threshold=hydration_cfg.sparsity_threshold,
        )

        logger.info(
            "Application startup complete",
            store_type=type(app.state.store).__name__,
            hydration_enabled=app.state.hydration.enabled,
            api_url=app.state.hydration.api_url,
            geocoding=type(geo).__name__,
        )

        yield

        for close in reversed(owned):
            await close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Restroom Directory",
        description="""
## Restroom Location Service

Restrooms are stored as FHIR-flavoured `Location` resources with
extensions for accessibility, ratings, facility details and provenance.

### Output formats

Every read accepts `returnLegacyFormat` (default `true`): the flat legacy
record, or the FHIR resource when `false`.

### Hydration

When a search finds fewer than five local results and hydration is
enabled, the remote restroom API is queried and new records are stored.
Remote failures never fail the search; the `hydration` block in the
response says what happened.

### Storage Backends

- **InMemoryLocationStore**: Development/testing (default)
- **AsyncPostgresLocationStore**: Production (set `DATABASE_URL`)
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    origins = os.environ.get("RESTROOMS_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LocationError)
    async def location_error_handler(request: Request, exc: LocationError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(
                "Request failed",
                path=request.url.path,
                error_kind=exc.kind,
                error=exc.message,
            )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(public_router)
    app.include_router(admin_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "restrooms"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Location store connectivity
        - Hydration toggle state

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = await check_health(
            store=request.app.state.store,
            hydration=request.app.state.hydration,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    @app.get("/api", tags=["System"])
    async def api_info(request: Request):
        return {
            "name": "Restroom Directory API",
            "version": VERSION,
            "storage_backend": type(request.app.state.store).__name__,
            "hydration_enabled": request.app.state.hydration.enabled,
            "endpoints": {
                "public": {
                    "list": "/api/locations",
                    "near": "/api/locations/near",
                    "search": "/api/locations/search",
                    "detail": "/api/locations/{id}",
                    "submit": "/api/locations",
                    "upvote": "/api/locations/{id}/upvote",
                    "downvote": "/api/locations/{id}/downvote",
                },
                "admin": {
                    "hydration": "/api/admin/hydration",
                    "toggle": "/api/admin/hydration/toggle",
                    "stats": "/api/admin/hydration/stats",
                    "run": "/api/admin/hydration/run",
                    "update": "/api/admin/locations/{id}",
                    "purge": "/api/admin/hydrated",
                    "test_data": "/api/admin/test-data",
                },
            },
        }

    return app


app = create_app()
