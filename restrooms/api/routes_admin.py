"""
Admin API

Hydration control, administrative patches, purges and test data.
Every route requires the X-Admin-Token header (see deps.require_admin).
"""

from typing import Any, Literal, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator

from ..db.fixtures import clear_test_locations, seed_test_locations
from ..schemas import HydrationStats
from .deps import (
    get_hydration_service,
    get_location_service,
    get_service_config,
    get_store,
    require_admin,
)


router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)],
)


# ============================================================
# Request / Response Models
# ============================================================

class HydrationStatusResponse(BaseModel):
    enabled: bool
    api_url: str
    per_page: int
    sparsity_threshold: int


class ToggleRequest(BaseModel):
    enabled: bool


class HydrationRunRequest(BaseModel):
    """
    Run one hydration selector by hand.

    location needs lat/lng, search needs query, date needs
    day/month/year; filters takes the optional accessibility flags.
    """
    selector: Literal["location", "search", "filters", "date"]
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    query: Optional[str] = None
    accessible: Optional[bool] = None
    unisex: Optional[bool] = None
    day: Optional[int] = Field(default=None, ge=1, le=31)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970)
    per_page: Optional[int] = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def _selector_arguments(self):
        required = {
            "location": ("lat", "lng"),
            "search": ("query",),
            "date": ("day", "month", "year"),
            "filters": (),
        }[self.selector]
        missing = [name for name in required if getattr(self, name) in (None, "")]
        if missing:
            raise ValueError(f"selector '{self.selector}' requires: {', '.join(missing)}")
        return self


# ============================================================
# Hydration
# ============================================================

@router.get("/hydration", response_model=HydrationStatusResponse)
async def hydration_status(request: Request):
    hydration = get_hydration_service(request)
    return HydrationStatusResponse(
        enabled=hydration.enabled,
        api_url=hydration.api_url,
        per_page=hydration.per_page,
        sparsity_threshold=get_location_service(request).sparsity_threshold,
    )


@router.post("/hydration/toggle")
async def toggle_hydration(request: Request, body: ToggleRequest):
    hydration = get_hydration_service(request)
    return {"enabled": hydration.set_enabled(body.enabled)}


@router.get("/hydration/stats", response_model=HydrationStats)
async def hydration_stats(request: Request):
    return await get_hydration_service(request).get_stats()


@router.post("/hydration/run")
async def run_hydration(request: Request, body: HydrationRunRequest):
    """
    Returns the HydrationSummary, or {skipped, reason} when hydration is
    disabled. A failed remote fetch surfaces as 502/504.
    """
    hydration = get_hydration_service(request)
    if body.selector == "location":
        outcome = await hydration.hydrate_by_location(body.lat, body.lng, body.per_page)
    elif body.selector == "search":
        outcome = await hydration.hydrate_by_search(body.query, body.per_page)
    elif body.selector == "date":
        outcome = await hydration.hydrate_by_date(body.day, body.month, body.year, body.per_page)
    else:
        outcome = await hydration.hydrate_with_filters(
            {"accessible": body.accessible, "unisex": body.unisex}, body.per_page
        )
    return outcome.model_dump(mode="json")


@router.delete("/hydrated")
async def purge_hydrated(request: Request):
    removed = await get_hydration_service(request).purge_hydrated()
    return {"success": True, "count": removed}


# ============================================================
# Locations
# ============================================================

@router.patch("/locations/{location_id}")
async def update_location(
    request: Request,
    location_id: str,
    patch: dict[str, Any] = Body(..., description="$set-style fields, dotted paths allowed"),
    legacy: bool = Query(False, alias="returnLegacyFormat"),
):
    service = get_location_service(request)
    return await service.update(location_id, patch, {"returnLegacyFormat": legacy})


# ============================================================
# Test Data
# ============================================================

def _require_test_data(request: Request) -> None:
    if not get_service_config(request).enable_test_data:
        raise HTTPException(
            status_code=403,
            detail="Test data is disabled (set RESTROOMS_ENABLE_TEST_DATA=1)",
        )


@router.post("/test-data")
async def create_test_data(request: Request, count: int = Query(10, ge=1, le=500)):
    _require_test_data(request)
    ids = await seed_test_locations(get_store(request), count)
    return {
        "success": True,
        "count": len(ids),
        "message": f"Inserted {len(ids)} test restrooms",
        "ids": ids,
    }


@router.delete("/test-data")
async def delete_test_data(request: Request):
    _require_test_data(request)
    removed = await clear_test_locations(get_store(request))
    return {"success": True, "count": removed}
