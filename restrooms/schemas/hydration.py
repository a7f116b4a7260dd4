"""
Hydration Outcome Schemas

What a hydration run reports back. A run either never starts
(HydrationSkipped, the toggle is off) or processes a batch of remote
candidates and summarises them (HydrationSummary).
"""

from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class HydrationItemStatus(str, Enum):
    SAVED = "saved"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    HYDRATION_DISABLED = "hydration-disabled"
    INVALID_DATA = "invalid-data"
    ALREADY_EXISTS = "already-exists"


class HydrationItemResult(BaseModel):
    """Outcome for one remote candidate."""
    status: HydrationItemStatus
    reason: Optional[str] = Field(default=None, description="Skip reason or error message")
    legacy_id: Optional[str] = None
    fhir_id: Optional[str] = None


class HydrationSummary(BaseModel):
    """Aggregate outcome of one hydration batch."""
    total: int = 0
    saved: int = 0
    skipped: int = 0
    failed: int = 0
    details: list[HydrationItemResult] = Field(default_factory=list)

    def record(self, item: HydrationItemResult) -> None:
        self.details.append(item)
        if item.status == HydrationItemStatus.SAVED:
            self.saved += 1
        elif item.status == HydrationItemStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class HydrationSkipped(BaseModel):
    """Returned without any network call when hydration is disabled."""
    skipped: Literal[True] = True
    reason: str = SkipReason.HYDRATION_DISABLED.value


HydrationOutcome = Union[HydrationSummary, HydrationSkipped]


class HydrationStats(BaseModel):
    """How much of the store came from the remote source."""
    total: int
    hydrated: int
    local: int
    hydration_percentage: float


class HydrationReport(BaseModel):
    """
    What a sparsity-triggered hydration did during a query.

    status is one of: not-needed, skipped, completed, failed.
    """
    attempted: bool = False
    status: str = "not-needed"
    saved: int = 0
    reason: Optional[str] = None
