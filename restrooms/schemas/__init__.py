# Canonical Schemas for the Restroom Directory
# LocationResource is the source of truth; LegacyRecord is a boundary view.

from .extensions import (
    LocationExtension,
    AccessibilityFeatures,
    FacilityDetails,
    CommunityRating,
    ApprovalStatus,
    Timestamps,
    VoteKind,
    RatingLevel,
)
from .location import (
    LocationResource,
    LocationStatus,
    ResourceSource,
    IdentifierSystem,
    Identifier,
    IdentifierUse,
    Address,
    Position,
    Meta,
    RESTROOM_PROFILE,
)
from .legacy import LegacyRecord
from .hydration import (
    HydrationItemResult,
    HydrationItemStatus,
    HydrationSummary,
    HydrationSkipped,
    HydrationOutcome,
    HydrationStats,
    HydrationReport,
    SkipReason,
)

__all__ = [
    # Extensions
    "LocationExtension",
    "AccessibilityFeatures",
    "FacilityDetails",
    "CommunityRating",
    "ApprovalStatus",
    "Timestamps",
    "VoteKind",
    "RatingLevel",
    # Location
    "LocationResource",
    "LocationStatus",
    "ResourceSource",
    "IdentifierSystem",
    "Identifier",
    "IdentifierUse",
    "Address",
    "Position",
    "Meta",
    "RESTROOM_PROFILE",
    # Legacy
    "LegacyRecord",
    # Hydration
    "HydrationItemResult",
    "HydrationItemStatus",
    "HydrationSummary",
    "HydrationSkipped",
    "HydrationOutcome",
    "HydrationStats",
    "HydrationReport",
    "SkipReason",
]
