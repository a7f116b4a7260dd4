"""
Public Location API

Search, listing, lookup, submission and voting. Responses use the legacy
flat shape unless returnLegacyFormat=false is passed.

Errors raised by the services are LocationError subclasses; the handler
registered in restrooms.main turns them into {error, message} JSON.
"""

from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..schemas import HydrationReport
from .deps import client_ip, get_location_service


router = APIRouter(prefix="/api/locations", tags=["Locations"])


# ============================================================
# Request / Response Models
# ============================================================

class SubmitLocationRequest(BaseModel):
    """A new restroom, in legacy or FHIR shape, plus the anti-abuse token."""
    location: dict[str, Any] = Field(..., description="LegacyRecord or FHIR Location")
    recaptcha_token: Optional[str] = Field(default=None, description="reCAPTCHA response token")


class LocationPage(BaseModel):
    locations: list[dict[str, Any]]
    count: int


class SearchResponse(BaseModel):
    """Search results plus what sparsity-triggered hydration did."""
    locations: list[dict[str, Any]]
    count: int
    hydration: HydrationReport


class InsertResponse(BaseModel):
    success: bool
    insertedId: str
    fhirId: str
    approved: bool


# ============================================================
# Helper Functions
# ============================================================

def _options(
    limit: int,
    skip: int,
    legacy: bool,
    radius: Optional[float] = None,
    accessible: Optional[bool] = None,
    unisex: Optional[bool] = None,
    changing_table: Optional[bool] = None,
) -> dict[str, Any]:
    options: dict[str, Any] = {
        "limit": limit,
        "skip": skip,
        "returnLegacyFormat": legacy,
        "accessible": accessible,
        "unisex": unisex,
        "changing_table": changing_table,
    }
    if radius is not None:
        options["radius"] = radius
    return options


# ============================================================
# Endpoints
# ============================================================

@router.get("", response_model=LocationPage)
async def list_locations(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    accessible: Optional[bool] = None,
    unisex: Optional[bool] = None,
    changing_table: Optional[bool] = None,
    legacy: bool = Query(True, alias="returnLegacyFormat"),
):
    """Newest locations first, optionally filtered by accessibility features."""
    service = get_location_service(request)
    return await service.get_all(
        _options(limit, skip, legacy, None, accessible, unisex, changing_table)
    )


@router.get("/near", response_model=SearchResponse)
async def search_near(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(20.0, gt=0, description="Miles"),
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    legacy: bool = Query(True, alias="returnLegacyFormat"),
):
    """
    Locations within `radius` miles, nearest first.

    Sparse local results trigger hydration from the remote source when it
    is enabled; the `hydration` block reports what happened.
    """
    service = get_location_service(request)
    results, report = await service.search_by_location_with_report(
        lat, lng, _options(limit, skip, legacy, radius)
    )
    return SearchResponse(locations=results, count=len(results), hydration=report)


@router.get("/search", response_model=SearchResponse)
async def search_text(
    request: Request,
    q: str = Query(..., min_length=1, description="Name or address text"),
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    legacy: bool = Query(True, alias="returnLegacyFormat"),
):
    service = get_location_service(request)
    results, report = await service.search_by_text_with_report(
        q, _options(limit, skip, legacy)
    )
    return SearchResponse(locations=results, count=len(results), hydration=report)


@router.get("/{location_id}")
async def get_location(
    request: Request,
    location_id: str,
    legacy: bool = Query(True, alias="returnLegacyFormat"),
):
    service = get_location_service(request)
    return await service.get_by_id(location_id, {"returnLegacyFormat": legacy})


@router.post("", response_model=InsertResponse, status_code=201)
async def submit_location(request: Request, body: SubmitLocationRequest):
    """
    Submit a new restroom.

    Submissions are auto-approved. A missing position is geocoded from
    the address when possible.
    """
    service = get_location_service(request)
    result = await service.insert(body.location, body.recaptcha_token, client_ip(request))
    return JSONResponse(status_code=201, content=result.model_dump(by_alias=True))


@router.post("/{location_id}/upvote")
async def upvote_location(
    request: Request,
    location_id: str,
    legacy: bool = Query(True, alias="returnLegacyFormat"),
):
    service = get_location_service(request)
    return await service.upvote(location_id, {"returnLegacyFormat": legacy})


@router.post("/{location_id}/downvote")
async def downvote_location(
    request: Request,
    location_id: str,
    legacy: bool = Query(True, alias="returnLegacyFormat"),
):
    service = get_location_service(request)
    return await service.downvote(location_id, {"returnLegacyFormat": legacy})
