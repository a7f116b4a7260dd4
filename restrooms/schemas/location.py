"""
Location Resource Schema

The canonical shape of a restroom: a FHIR-flavoured Location resource.

Only the subset of FHIR Location this system actually uses is modelled.
Storage and wire form use FHIR camelCase keys (resourceType, versionId,
lastUpdated, postalCode, physicalType); Python code works with snake_case
attributes and typed extension blocks.

Invariants:
- id never changes once assigned
- meta.versionId is an integer string, +1 on every mutation
- at most one block per extension URL
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .extensions import (
    EXTENSION_BASE_URL,
    EXTENSION_FIELDS,
    EXTENSION_URLS,
    AccessibilityFeatures,
    ApprovalStatus,
    CommunityRating,
    FacilityDetails,
    LocationExtension,
    Timestamps,
)


RESTROOM_PROFILE = f"{EXTENSION_BASE_URL}/RestroomLocation"
PHYSICAL_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/location-physical-type"
DEFAULT_COUNTRY = "United States"


class IdentifierSystem(str, Enum):
    """Well-known identifier systems, one per identifier kind."""
    LEGACY_API = "http://refugerestrooms.org/legacy-api"
    EDIT_ID = "http://refugerestrooms.org/edit-id"
    PRODUCTION_ID = "http://refugerestrooms.org/production-id"


class LocationStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class ResourceSource(str, Enum):
    """Provenance tag stored in meta.source."""
    LEGACY_API = "legacy-api"
    LOCAL_SUBMISSION = "local-submission"
    TEST_DATA = "test-data"


class IdentifierUse(str, Enum):
    USUAL = "usual"
    OFFICIAL = "official"
    TEMP = "temp"
    SECONDARY = "secondary"
    OLD = "old"


class AddressUse(str, Enum):
    HOME = "home"
    WORK = "work"
    TEMP = "temp"
    OLD = "old"
    BILLING = "billing"


class AddressType(str, Enum):
    POSTAL = "postal"
    PHYSICAL = "physical"
    BOTH = "both"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# FHIR DATATYPES
# ============================================================

class FhirModel(BaseModel):
    """Base for FHIR datatypes: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Meta(FhirModel):
    version_id: str = Field(default="1", description="Monotonic integer, as a string")
    last_updated: datetime = Field(default_factory=utc_now)
    profile: list[str] = Field(default_factory=lambda: [RESTROOM_PROFILE])
    source: Optional[str] = Field(default=None, description="Provenance tag")

    @field_validator("version_id", mode="before")
    @classmethod
    def _coerce_version(cls, v):
        return str(v) if isinstance(v, int) else v

    @property
    def version(self) -> int:
        try:
            return int(self.version_id)
        except ValueError:
            return 1


class Identifier(FhirModel):
    use: Optional[IdentifierUse] = None
    system: Optional[str] = None
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v):
        # Remote ids arrive as integers
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class Address(FhirModel):
    use: Optional[AddressUse] = AddressUse.WORK
    type: Optional[AddressType] = AddressType.PHYSICAL
    line: list[str] = Field(default_factory=list)
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @property
    def street(self) -> Optional[str]:
        return self.line[0] if self.line else None

    def full_text(self) -> str:
        """Street, city, state; country is appended unless it is the default."""
        parts = [self.street, self.city, self.state]
        if self.country and self.country != DEFAULT_COUNTRY:
            parts.append(self.country)
        return ", ".join(p for p in parts if p)


class Position(FhirModel):
    """Plain decimal degrees, not GeoJSON."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    altitude: Optional[float] = None


class Coding(FhirModel):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(FhirModel):
    coding: list[Coding] = Field(default_factory=list)


def building_type() -> CodeableConcept:
    return CodeableConcept(
        coding=[Coding(system=PHYSICAL_TYPE_SYSTEM, code="bu", display="Building")]
    )


# ============================================================
# LOCATION RESOURCE
# ============================================================

# Never written to storage
_TRANSIENT_FIELDS = {"distance"}
_EXTENSION_ATTRS = set(EXTENSION_FIELDS) | {"other_extensions"}


class LocationResource(FhirModel):
    """
    A restroom as a FHIR Location resource.

    Extension blocks are held as typed attributes. The URI-keyed
    `extension` array only exists in the stored / wire document, see
    from_fhir() and to_fhir().
    """
    resource_type: Literal["Location"] = "Location"
    id: str = Field(..., min_length=1)
    meta: Meta = Field(default_factory=Meta)
    status: LocationStatus = LocationStatus.ACTIVE
    name: str = Field(..., min_length=1)
    identifier: list[Identifier] = Field(default_factory=list)
    address: Optional[Address] = None
    position: Optional[Position] = None
    physical_type: Optional[CodeableConcept] = Field(default_factory=building_type)

    accessibility: Optional[AccessibilityFeatures] = None
    facility_details: Optional[FacilityDetails] = None
    rating: Optional[CommunityRating] = None
    approval: Optional[ApprovalStatus] = None
    timestamps: Optional[Timestamps] = None
    other_extensions: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Extension blocks with unrecognised URLs, kept verbatim",
    )

    distance: Optional[float] = Field(
        default=None,
        description="Miles from the search origin; only set by radius search",
    )

    @model_validator(mode="before")
    @classmethod
    def _unpack_extensions(cls, data: Any) -> Any:
        if not isinstance(data, Mapping) or "extension" not in data:
            return data

        data = dict(data)
        blocks = data.pop("extension") or []
        other = list(data.pop("other_extensions", None) or data.pop("otherExtensions", None) or [])
        seen: set[str] = set()

        for block in blocks:
            url = block.get("url") if isinstance(block, Mapping) else None
            attr = EXTENSION_URLS.get(url)
            if attr is None:
                other.append(block)
                continue
            if attr in seen:
                continue
            seen.add(attr)
            data[attr] = EXTENSION_FIELDS[attr].from_extension(block)

        data["other_extensions"] = other
        return data

    # --------------------------------------------------------
    # Serialization
    # --------------------------------------------------------

    @classmethod
    def from_fhir(cls, document: Mapping[str, Any]) -> "LocationResource":
        return cls.model_validate(document)

    def to_fhir(self, mode: str = "python") -> dict[str, Any]:
        """
        Serialize to the FHIR document shape.

        mode="python" keeps datetimes as objects (store form),
        mode="json" renders ISO strings (wire form).
        """
        document = self.model_dump(
            mode=mode,
            by_alias=True,
            exclude_none=True,
            exclude=_EXTENSION_ATTRS | _TRANSIENT_FIELDS,
        )
        extensions = [block.to_extension() for block in self.extensions()]
        extensions.extend(dict(block) for block in self.other_extensions)
        if extensions:
            document["extension"] = extensions
        return document

    def extensions(self) -> Iterator[LocationExtension]:
        for attr in EXTENSION_FIELDS:
            block = getattr(self, attr)
            if block is not None:
                yield block

    # --------------------------------------------------------
    # Helpers
    # --------------------------------------------------------

    @property
    def source(self) -> Optional[str]:
        return self.meta.source

    def external_id(self, system: str) -> Optional[str]:
        system = system.value if isinstance(system, Enum) else system
        for ident in self.identifier:
            if ident.system == system and ident.value:
                return ident.value
        return None

    def external_ids(self) -> list[tuple[str, str]]:
        return [
            (ident.system, ident.value)
            for ident in self.identifier
            if ident.system and ident.value
        ]

    def touch(self, now: Optional[datetime] = None) -> None:
        """Record a mutation: bump versionId and lastUpdated."""
        self.meta.version_id = str(self.meta.version + 1)
        self.meta.last_updated = now or utc_now()

    def ensure_profile(self) -> None:
        if RESTROOM_PROFILE not in self.meta.profile:
            self.meta.profile.append(RESTROOM_PROFILE)

    def with_distance(self, distance: float) -> "LocationResource":
        return self.model_copy(update={"distance": distance})
