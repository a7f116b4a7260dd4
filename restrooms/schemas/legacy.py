"""
Legacy Record Schema

The flat projection of a restroom used by older UI code and by the
upstream production API. It is lossy: there is no room for multiple
identifiers, extension provenance or FHIR meta.

LegacyRecord is also the envelope that validates non-canonical input
on the insert path.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LegacyRecord(BaseModel):
    """A submission or projection in the flat legacy shape."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    record_id: Optional[str] = Field(default=None, alias="_id")
    name: str = Field(..., min_length=1, description="Required, non-blank")
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    position: Optional[dict[str, Any]] = Field(
        default=None,
        description="GeoJSON Point or {latitude, longitude}",
    )

    accessible: bool = False
    unisex: bool = False
    changing_table: bool = False
    directions: str = ""
    comment: str = ""
    upvote: int = Field(default=0, ge=0)
    downvote: int = Field(default=0, ge=0)

    approved: Optional[bool] = None
    from_hydration: Optional[bool] = Field(default=None, alias="fromHydration")
    production_id: Optional[str] = Field(default=None, alias="productionId")
    edit_id: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("production_id", "edit_id", "record_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _stringify_timestamps(cls, v):
        if hasattr(v, "isoformat"):
            return v.isoformat()
        return v

    @field_validator("directions", "comment", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v

    def to_submission(self) -> dict[str, Any]:
        """Flat dict with the legacy key names, unset optionals dropped."""
        return self.model_dump(by_alias=True, exclude_none=True)
