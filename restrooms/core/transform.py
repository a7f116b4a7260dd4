"""
Format Transform

Pure mapping between the flat legacy record and the canonical
LocationResource, plus classification of incoming objects.

    to_canonical(record)  legacy / remote record -> LocationResource
    to_legacy(resource)   LocationResource / FHIR dict -> flat dict
    detect_format(obj)    RecordFormat.CANONICAL | LEGACY | UNKNOWN

Missing optional fields never raise. to_canonical raises InvalidDataError
only when handed something that is not a mapping; to_legacy returns a
skeleton of defaults instead.

Both the remote API's keys (id, latitude, created_at, updated_at) and the
legacy projection's keys (productionId, position, createdAt, updatedAt,
_id) are accepted, so legacy -> canonical -> legacy reproduces the fields
that were present.
"""

import math
import secrets
import string
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..schemas.extensions import (
    AccessibilityFeatures,
    ApprovalStatus,
    CommunityRating,
    FacilityDetails,
    Timestamps,
    parse_datetime,
)
from ..schemas.location import (
    DEFAULT_COUNTRY,
    Address,
    Identifier,
    IdentifierSystem,
    IdentifierUse,
    LocationResource,
    LocationStatus,
    Meta,
    Position,
    ResourceSource,
    utc_now,
)
from .errors import InvalidDataError


DEFAULT_NAME = "Unnamed Restroom"

# Presence of any of these marks an object as legacy-shaped
LEGACY_MARKER_KEYS = ("id", "latitude", "upvote")

_ID_ALPHABET = string.digits + string.ascii_lowercase
_TRUE_STRINGS = ("true", "1", "yes", "t", "on")


class RecordFormat(str, Enum):
    CANONICAL = "canonical"
    LEGACY = "legacy"
    UNKNOWN = "unknown"


# ============================================================
# DETECTION
# ============================================================

def is_canonical(obj: Any) -> bool:
    if isinstance(obj, LocationResource):
        return True
    return isinstance(obj, Mapping) and obj.get("resourceType") == "Location"


def is_legacy_format(obj: Any) -> bool:
    """
    Heuristic: any of id / latitude / upvote present.

    A legacy record carrying none of those keys is reported as not
    legacy. Boundaries that need certainty validate through LegacyRecord.
    """
    if not isinstance(obj, Mapping):
        return False
    return any(key in obj for key in LEGACY_MARKER_KEYS)


def detect_format(obj: Any) -> RecordFormat:
    if is_canonical(obj):
        return RecordFormat.CANONICAL
    if is_legacy_format(obj):
        return RecordFormat.LEGACY
    return RecordFormat.UNKNOWN


# ============================================================
# VALUE PARSING
# ============================================================

def generate_local_id(now: Optional[datetime] = None) -> str:
    """local-<epoch ms>-<9 random base36 chars>"""
    millis = int((now or utc_now()).timestamp() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"local-{millis}-{suffix}"


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if _present(value):
            return value
    return None


def _parse_float(value: Any) -> Optional[float]:
    if not _present(value) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_count(value: Any) -> int:
    """Vote counts: integers, 0 when unparseable, never negative."""
    if not _present(value) or isinstance(value, bool):
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        try:
            number = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return 0
    return max(number, 0)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _position_from(record: Mapping[str, Any]) -> Optional[Position]:
    """Position from GeoJSON, a {latitude, longitude} mapping, or flat keys."""
    lat = lng = None
    raw = record.get("position")
    if isinstance(raw, Mapping):
        coordinates = raw.get("coordinates")
        if isinstance(coordinates, (list, tuple)) and len(coordinates) >= 2:
            lng, lat = _parse_float(coordinates[0]), _parse_float(coordinates[1])
        else:
            lat, lng = _parse_float(raw.get("latitude")), _parse_float(raw.get("longitude"))

    if lat is None or lng is None:
        lat, lng = _parse_float(record.get("latitude")), _parse_float(record.get("longitude"))

    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return Position(latitude=lat, longitude=lng)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


# ============================================================
# LEGACY -> CANONICAL
# ============================================================

def to_canonical(
    record: Any,
    source: str = ResourceSource.LEGACY_API.value,
    now: Optional[datetime] = None,
) -> LocationResource:
    """
    Build a LocationResource from a legacy or remote record.

    Intended for the hydration path: approval defaults to approved and
    from-hydration unless the record says otherwise.
    """
    if isinstance(record, BaseModel):
        record = record.model_dump(by_alias=True, exclude_none=True)
    if not isinstance(record, Mapping):
        raise InvalidDataError(f"expected a mapping, got {type(record).__name__}")

    now = now or utc_now()
    external_id = _first(record, "id", "productionId")
    external_id = _as_text(external_id) if external_id is not None else None
    edit_id = _first(record, "edit_id")

    if _present(record.get("_id")):
        resource_id = _as_text(record["_id"])
    elif external_id:
        resource_id = f"legacy-{external_id}"
    else:
        resource_id = generate_local_id(now)

    identifiers = []
    if external_id:
        identifiers.append(Identifier(
            use=IdentifierUse.SECONDARY,
            system=IdentifierSystem.LEGACY_API.value,
            value=external_id,
        ))
    if edit_id is not None:
        identifiers.append(Identifier(
            use=IdentifierUse.SECONDARY,
            system=IdentifierSystem.EDIT_ID.value,
            value=_as_text(edit_id),
        ))

    street = _first(record, "street")
    address = Address(
        line=[_as_text(street)] if street is not None else [],
        city=_first(record, "city"),
        state=_first(record, "state"),
        country=_first(record, "country") or DEFAULT_COUNTRY,
    )

    status = record.get("status")
    try:
        status = LocationStatus(status) if status else LocationStatus.ACTIVE
    except ValueError:
        status = LocationStatus.ACTIVE

    directions = _as_text(record.get("directions"))
    comment = _as_text(record.get("comment"))
    facility = None
    if directions or comment:
        facility = FacilityDetails(directions=directions, comments=comment)

    created_at = parse_datetime(_first(record, "created_at", "createdAt"))
    last_updated = parse_datetime(_first(record, "updated_at", "updatedAt")) or now

    approved = record.get("approved")
    from_hydration = record.get("fromHydration")

    return LocationResource(
        id=resource_id,
        meta=Meta(version_id="1", last_updated=last_updated, source=source),
        status=status,
        name=_as_text(record.get("name")).strip() or DEFAULT_NAME,
        identifier=identifiers,
        address=address,
        position=_position_from(record),
        accessibility=AccessibilityFeatures(
            accessible=_as_bool(record.get("accessible")),
            unisex=_as_bool(record.get("unisex")),
            changing_table=_as_bool(record.get("changing_table")),
        ),
        facility_details=facility,
        rating=CommunityRating(
            upvotes=_parse_count(record.get("upvote")),
            downvotes=_parse_count(record.get("downvote")),
        ),
        approval=ApprovalStatus(
            approved=True if approved is None else _as_bool(approved),
            from_hydration=True if from_hydration is None else _as_bool(from_hydration),
        ),
        timestamps=Timestamps(created_at=created_at) if created_at else None,
    )


def stamp_submission(resource: LocationResource, now: Optional[datetime] = None) -> LocationResource:
    """
    Mark a resource as a fresh direct submission.

    New local id, version 1, source local-submission, active, and an
    auto-approved approval block that replaces any existing one.
    """
    now = now or utc_now()
    resource.id = generate_local_id(now)
    resource.meta.version_id = "1"
    resource.meta.last_updated = now
    resource.meta.source = ResourceSource.LOCAL_SUBMISSION.value
    resource.ensure_profile()
    resource.status = LocationStatus.ACTIVE
    resource.approval = ApprovalStatus(approved=True, from_hydration=False)
    resource.distance = None
    return resource


def submission_to_canonical(record: Any, now: Optional[datetime] = None) -> LocationResource:
    """Insert-path variant of to_canonical."""
    resource = to_canonical(record, source=ResourceSource.LOCAL_SUBMISSION.value, now=now)
    return stamp_submission(resource, now=now)


def stamp_hydrated(resource: LocationResource) -> LocationResource:
    """Force the hydration markers: active, approved, from-hydration."""
    resource.status = LocationStatus.ACTIVE
    resource.approval = ApprovalStatus(approved=True, from_hydration=True)
    resource.distance = None
    return resource


def hydrated_to_canonical(record: Any, now: Optional[datetime] = None) -> LocationResource:
    """Hydration-path variant of to_canonical."""
    resource = to_canonical(record, source=ResourceSource.LEGACY_API.value, now=now)
    return stamp_hydrated(resource)


# ============================================================
# CANONICAL -> LEGACY
# ============================================================

def _legacy_skeleton() -> dict[str, Any]:
    return {
        "_id": None,
        "name": "",
        "street": "",
        "city": "",
        "state": "",
        "country": "",
        "accessible": False,
        "unisex": False,
        "changing_table": False,
        "directions": "",
        "comment": "",
        "upvote": 0,
        "downvote": 0,
        "approved": False,
        "fromHydration": False,
    }


def to_legacy(resource: Any) -> dict[str, Any]:
    """Flatten a LocationResource (or FHIR dict) into the legacy shape."""
    if isinstance(resource, Mapping):
        try:
            resource = LocationResource.from_fhir(resource)
        except PydanticValidationError:
            legacy = _legacy_skeleton()
            legacy["_id"] = resource.get("id")
            legacy["name"] = _as_text(resource.get("name"))
            return legacy
    if not isinstance(resource, LocationResource):
        return _legacy_skeleton()

    legacy = _legacy_skeleton()
    legacy["_id"] = resource.id
    legacy["name"] = resource.name
    legacy["status"] = resource.status.value

    production_id = resource.external_id(IdentifierSystem.LEGACY_API)
    if production_id is not None:
        legacy["productionId"] = production_id
    edit_id = resource.external_id(IdentifierSystem.EDIT_ID)
    if edit_id is not None:
        legacy["edit_id"] = edit_id

    if resource.address is not None:
        legacy["street"] = resource.address.street or ""
        legacy["city"] = resource.address.city or ""
        legacy["state"] = resource.address.state or ""
        legacy["country"] = resource.address.country or ""

    if resource.position is not None:
        lat, lng = resource.position.latitude, resource.position.longitude
        legacy["latitude"] = lat
        legacy["longitude"] = lng
        legacy["position"] = {"type": "Point", "coordinates": [lng, lat]}

    if resource.accessibility is not None:
        legacy["accessible"] = resource.accessibility.accessible
        legacy["unisex"] = resource.accessibility.unisex
        legacy["changing_table"] = resource.accessibility.changing_table

    if resource.facility_details is not None:
        legacy["directions"] = resource.facility_details.directions
        legacy["comment"] = resource.facility_details.comments

    if resource.rating is not None:
        legacy["upvote"] = resource.rating.upvotes
        legacy["downvote"] = resource.rating.downvotes

    if resource.approval is not None:
        legacy["approved"] = resource.approval.approved
        legacy["fromHydration"] = resource.approval.from_hydration

    if resource.timestamps is not None and resource.timestamps.created_at is not None:
        legacy["createdAt"] = format_timestamp(resource.timestamps.created_at)
    legacy["updatedAt"] = format_timestamp(resource.meta.last_updated)

    if resource.distance is not None:
        legacy["distance"] = resource.distance

    return legacy


def present(resource: LocationResource, legacy: bool) -> dict[str, Any]:
    """Output shape for callers: flat legacy dict or FHIR JSON."""
    if legacy:
        return to_legacy(resource)
    document = resource.to_fhir(mode="json")
    if resource.distance is not None:
        document["distance"] = resource.distance
    return document
