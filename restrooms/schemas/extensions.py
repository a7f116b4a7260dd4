"""
Location Extension Schema

Restroom facts that have no home in the base FHIR Location resource travel
as extensions. On the wire each one is a URI-keyed block of nested
sub-extensions:

    {
        "url": "http://refugerestrooms.org/fhir/StructureDefinition/accessibility-features",
        "extension": [
            {"url": "wheelchair-accessible", "valueBoolean": true},
            {"url": "unisex-facility", "valueBoolean": false},
            {"url": "changing-table", "valueBoolean": false}
        ]
    }

Inside the application every block is a typed model. The URI nesting only
exists at the serialization boundary (to_extension / from_extension).
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError


EXTENSION_BASE_URL = "http://refugerestrooms.org/fhir/StructureDefinition"

_DATETIME_ADAPTER = TypeAdapter(datetime)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO string, epoch number or datetime into an aware datetime.

    Naive values are assumed to be UTC. Unparseable input yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = _DATETIME_ADAPTER.validate_python(value)
        except PydanticValidationError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VoteKind(str, Enum):
    """Community rating counters that can be incremented."""
    UPVOTE = "upvote"
    DOWNVOTE = "downvote"


class RatingLevel(str, Enum):
    """Traffic-light classification of a rating percentage."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"
    UNRATED = "unrated"


# ============================================================
# BASE
# ============================================================

class LocationExtension(BaseModel):
    """
    Base class for typed extension blocks.

    Subclasses declare their block URL and a mapping of
    sub-extension url -> (attribute name, FHIR value[x] key).
    """
    URL: ClassVar[str]
    SUB_EXTENSIONS: ClassVar[dict[str, tuple[str, str]]]

    # Blank strings are dropped from the wire form when False
    EMIT_EMPTY_STRINGS: ClassVar[bool] = True

    def to_extension(self) -> dict[str, Any]:
        """Render the URI-keyed wire block."""
        sub_extensions = []
        for sub_url, (attr, value_key) in self.SUB_EXTENSIONS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if value == "" and not self.EMIT_EMPTY_STRINGS:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            sub_extensions.append({"url": sub_url, value_key: value})
        return {"url": self.URL, "extension": sub_extensions}

    @classmethod
    def from_extension(cls, block: Mapping[str, Any]) -> "LocationExtension":
        """Build the typed block from its wire form, first sub-extension wins."""
        values: dict[str, Any] = {}
        for sub in block.get("extension") or []:
            if not isinstance(sub, Mapping):
                continue
            target = cls.SUB_EXTENSIONS.get(sub.get("url"))
            if target is None:
                continue
            attr, value_key = target
            if attr not in values and sub.get(value_key) is not None:
                values[attr] = sub[value_key]
        return cls.model_validate(values)


# ============================================================
# EXTENSION KINDS
# ============================================================

class AccessibilityFeatures(LocationExtension):
    """Wheelchair access, unisex facility and changing table flags."""
    URL: ClassVar[str] = f"{EXTENSION_BASE_URL}/accessibility-features"
    SUB_EXTENSIONS: ClassVar[dict[str, tuple[str, str]]] = {
        "wheelchair-accessible": ("accessible", "valueBoolean"),
        "unisex-facility": ("unisex", "valueBoolean"),
        "changing-table": ("changing_table", "valueBoolean"),
    }

    accessible: bool = False
    unisex: bool = False
    changing_table: bool = False


class FacilityDetails(LocationExtension):
    """Free-text directions and comments."""
    URL: ClassVar[str] = f"{EXTENSION_BASE_URL}/facility-details"
    SUB_EXTENSIONS: ClassVar[dict[str, tuple[str, str]]] = {
        "directions": ("directions", "valueString"),
        "comments": ("comments", "valueString"),
    }
    EMIT_EMPTY_STRINGS: ClassVar[bool] = False

    directions: str = ""
    comments: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.directions and not self.comments


class CommunityRating(LocationExtension):
    """
    Up/down vote counters.

    Counts only move upwards through increment(); there is no
    decrement operation.
    """
    URL: ClassVar[str] = f"{EXTENSION_BASE_URL}/community-rating"
    SUB_EXTENSIONS: ClassVar[dict[str, tuple[str, str]]] = {
        "upvotes": ("upvotes", "valueInteger"),
        "downvotes": ("downvotes", "valueInteger"),
    }

    GREEN_THRESHOLD: ClassVar[float] = 70.0
    YELLOW_THRESHOLD: ClassVar[float] = 50.0

    upvotes: int = Field(default=0, ge=0)
    downvotes: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.upvotes + self.downvotes

    @property
    def is_rated(self) -> bool:
        return self.total > 0

    @property
    def percentage(self) -> float:
        """Share of upvotes, 0-100. Unrated locations report 0."""
        if not self.is_rated:
            return 0.0
        return (self.upvotes / self.total) * 100

    @property
    def level(self) -> RatingLevel:
        if not self.is_rated:
            return RatingLevel.UNRATED
        if self.percentage >= self.GREEN_THRESHOLD:
            return RatingLevel.GREEN
        if self.percentage >= self.YELLOW_THRESHOLD:
            return RatingLevel.YELLOW
        return RatingLevel.RED

    def increment(self, kind: VoteKind) -> "CommunityRating":
        """Return a copy with the named counter raised by one."""
        if VoteKind(kind) == VoteKind.UPVOTE:
            return self.model_copy(update={"upvotes": self.upvotes + 1})
        return self.model_copy(update={"downvotes": self.downvotes + 1})


class ApprovalStatus(LocationExtension):
    """Moderation state plus whether the record arrived through hydration."""
    URL: ClassVar[str] = f"{EXTENSION_BASE_URL}/approval-status"
    SUB_EXTENSIONS: ClassVar[dict[str, tuple[str, str]]] = {
        "approved": ("approved", "valueBoolean"),
        "from-hydration": ("from_hydration", "valueBoolean"),
    }

    approved: bool = False
    from_hydration: bool = False


class Timestamps(LocationExtension):
    """Original creation time of the restroom record."""
    URL: ClassVar[str] = f"{EXTENSION_BASE_URL}/timestamps"
    SUB_EXTENSIONS: ClassVar[dict[str, tuple[str, str]]] = {
        "created-at": ("created_at", "valueDateTime"),
    }

    created_at: Optional[datetime] = None


# LocationResource attribute -> extension model, in wire emission order
EXTENSION_FIELDS: dict[str, type[LocationExtension]] = {
    "accessibility": AccessibilityFeatures,
    "facility_details": FacilityDetails,
    "rating": CommunityRating,
    "approval": ApprovalStatus,
    "timestamps": Timestamps,
}

EXTENSION_URLS: dict[str, str] = {
    model.URL: attr for attr, model in EXTENSION_FIELDS.items()
}
