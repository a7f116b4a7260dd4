"""
Location Query Service

Request-facing operations. Store reads are combined with on-demand
hydration when the local result set is sparse:

    LOCAL_READ -> (count < sparsity threshold and hydration enabled)
               -> HYDRATE -> RE_READ (only if something was saved) -> RETURN

A failed remote fetch during that flow is logged and the local results
are returned as they were. Every other error propagates.

Output is FHIR JSON or the flat legacy shape, chosen per call by
QueryOptions.return_legacy_format (default: legacy). LegacyLocationService
keeps the old entry points, pinned to legacy output.
"""

from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..db.store import LocationFilters, LocationStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    HydrationReport,
    HydrationSkipped,
    LegacyRecord,
    LocationResource,
    Position,
    VoteKind,
)
from ..schemas.location import DEFAULT_COUNTRY
from .collaborators import Geocoder, TokenValidator
from .errors import (
    GeocodingError,
    InvalidTokenError,
    NotFoundError,
    RemoteFetchError,
    ValidationError,
    validation_error_from_pydantic,
)
from .hydration import HydrationService
from .transform import (
    RecordFormat,
    detect_format,
    present,
    stamp_submission,
    submission_to_canonical,
)

logger = get_logger(__name__)

DEFAULT_SPARSITY_THRESHOLD = 5


class QueryOptions(BaseModel):
    """Options bag accepted by every query operation."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    limit: int = Field(default=20, ge=1, le=100)
    skip: int = Field(default=0, ge=0)
    radius: float = Field(default=20.0, gt=0, description="Miles")
    accessible: Optional[bool] = None
    unisex: Optional[bool] = None
    changing_table: Optional[bool] = None
    return_legacy_format: bool = Field(default=True, alias="returnLegacyFormat")

    @classmethod
    def coerce(cls, options: Union["QueryOptions", Mapping[str, Any], None]) -> "QueryOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if not isinstance(options, Mapping):
            raise ValidationError("options must be a mapping")
        try:
            return cls.model_validate(dict(options))
        except PydanticValidationError as e:
            raise validation_error_from_pydantic(e) from e

    @property
    def filters(self) -> LocationFilters:
        return LocationFilters(
            accessible=self.accessible,
            unisex=self.unisex,
            changing_table=self.changing_table,
        )


class InsertResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    inserted_id: str
    fhir_id: str
    approved: bool = True


def _check_coordinates(lat: float, lng: float) -> None:
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        raise ValidationError("latitude and longitude must be numbers") from None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError(
            "coordinates out of range", latitude=lat, longitude=lng
        )


class LocationService:
    """
    Query orchestrator over the store, hydration and the collaborators.

    Usage:
        service = LocationService(store, hydration, geocoder, validator)
        results = await service.search_by_location(40.71, -74.0, {"radius": 5})
    """

    def __init__(
        self,
        store: LocationStore,
        hydration: Optional[HydrationService] = None,
        geocoder: Optional[Geocoder] = None,
        validator: Optional[TokenValidator] = None,
        sparsity_threshold: int = DEFAULT_SPARSITY_THRESHOLD,
    ):
        self._store = store
        self._hydration = hydration
        self._geocoder = geocoder
        self._validator = validator
        self.sparsity_threshold = sparsity_threshold

    # ============================================================
    # SPARSITY-TRIGGERED HYDRATION
    # ============================================================

    async def _read_with_hydration(
        self,
        read: Callable[[], Awaitable[list[LocationResource]]],
        hydrate: Callable[[], Awaitable[Any]],
        selector: str,
    ) -> tuple[list[LocationResource], HydrationReport]:
        results = await read()

        if len(results) >= self.sparsity_threshold:
            return results, HydrationReport()
        if self._hydration is None or not self._hydration.enabled:
            return results, HydrationReport(status="skipped", reason="hydration-disabled")

        logger.info(
            "Sparse local results, hydrating",
            selector=selector,
            local_count=len(results),
            threshold=self.sparsity_threshold,
        )
        try:
            outcome = await hydrate()
        except RemoteFetchError as e:
            logger.warning(
                "Hydration failed, returning local results",
                selector=selector,
                error_kind=e.kind,
                error=e.message,
            )
            return results, HydrationReport(attempted=True, status="failed", reason=e.kind)

        if isinstance(outcome, HydrationSkipped):
            return results, HydrationReport(attempted=True, status="skipped", reason=outcome.reason)

        if outcome.saved > 0:
            results = await read()
        return results, HydrationReport(attempted=True, status="completed", saved=outcome.saved)

    # ============================================================
    # READS
    # ============================================================

    async def search_by_location_with_report(
        self, lat: float, lng: float, options=None
    ) -> tuple[list[dict[str, Any]], HydrationReport]:
        opts = QueryOptions.coerce(options)
        _check_coordinates(lat, lng)
        lat, lng = float(lat), float(lng)

        resources, report = await self._read_with_hydration(
            lambda: self._store.search_by_radius(lat, lng, opts.radius, opts.limit, opts.skip),
            lambda: self._hydration.hydrate_by_location(lat, lng, opts.limit),
            "location",
        )
        return [present(r, opts.return_legacy_format) for r in resources], report

    async def search_by_location(self, lat: float, lng: float, options=None) -> list[dict[str, Any]]:
        results, _ = await self.search_by_location_with_report(lat, lng, options)
        return results

    async def search_by_text_with_report(
        self, query: str, options=None
    ) -> tuple[list[dict[str, Any]], HydrationReport]:
        opts = QueryOptions.coerce(options)
        query = (query or "").strip()
        if not query:
            raise ValidationError("search query must not be empty")

        resources, report = await self._read_with_hydration(
            lambda: self._store.search_by_text(query, opts.limit, opts.skip),
            lambda: self._hydration.hydrate_by_search(query, opts.limit),
            "search",
        )
        return [present(r, opts.return_legacy_format) for r in resources], report

    async def search_by_text(self, query: str, options=None) -> list[dict[str, Any]]:
        results, _ = await self.search_by_text_with_report(query, options)
        return results

    async def get_all(self, options=None) -> dict[str, Any]:
        """Filtered listing, newest first. Never hydrates."""
        opts = QueryOptions.coerce(options)
        resources, total = await self._store.list_filtered(
            opts.filters, limit=opts.limit, skip=opts.skip
        )
        return {
            "locations": [present(r, opts.return_legacy_format) for r in resources],
            "count": total,
        }

    async def get_by_id(self, location_id: str, options=None) -> dict[str, Any]:
        opts = QueryOptions.coerce(options)
        resource = await self._store.find_by_id(location_id)
        if resource is None:
            raise NotFoundError(f"location {location_id} not found", location_id=location_id)
        return present(resource, opts.return_legacy_format)

    # ============================================================
    # WRITES
    # ============================================================

    def _build_submission(self, data: Any) -> LocationResource:
        fmt = detect_format(data)
        if fmt == RecordFormat.CANONICAL:
            if isinstance(data, LocationResource):
                resource = data.model_copy(deep=True)
            else:
                try:
                    # id is reassigned below; a missing one is not an error
                    resource = LocationResource.from_fhir(dict(data, id=data.get("id") or "pending"))
                except PydanticValidationError as e:
                    raise validation_error_from_pydantic(e) from e
            return stamp_submission(resource)

        if not isinstance(data, Mapping):
            raise ValidationError("location data must be an object")
        try:
            record = LegacyRecord.model_validate(data)
        except PydanticValidationError as e:
            raise validation_error_from_pydantic(e) from e
        return submission_to_canonical(record)

    async def _geocode(self, resource: LocationResource) -> None:
        """Fill in position from the address. Failures leave it unset."""
        address = resource.address
        if self._geocoder is None or address is None:
            return
        if not (address.street and address.city and address.state):
            return

        text = ", ".join([address.street, address.city, address.state, address.country or DEFAULT_COUNTRY])
        try:
            coordinates = await self._geocoder.geocode_address(text)
        except GeocodingError as e:
            logger.warning("Geocoding failed, inserting without position", error=e.message)
            return

        if coordinates is None:
            logger.info("Geocoding found no match, inserting without position")
            return
        try:
            resource.position = Position(
                latitude=coordinates.latitude, longitude=coordinates.longitude
            )
        except PydanticValidationError:
            logger.warning(
                "Geocoder returned out-of-range coordinates",
                latitude=coordinates.latitude,
                longitude=coordinates.longitude,
            )

    async def insert(
        self, data: Any, token: Optional[str], remote_ip: Optional[str] = None
    ) -> InsertResult:
        """
        Validate the anti-abuse token, build an auto-approved local
        submission, geocode it if it has no position, and store it.
        """
        if self._validator is None or not await self._validator.validate(token, remote_ip):
            raise InvalidTokenError("anti-abuse token was rejected")

        resource = self._build_submission(data)
        if resource.position is None:
            await self._geocode(resource)

        await self._store.insert(resource)
        get_metrics().record_insert()
        logger.info(
            "Location submitted",
            location_id=resource.id,
            has_position=resource.position is not None,
        )
        return InsertResult(inserted_id=resource.id, fhir_id=resource.id)

    async def update(self, location_id: str, patch: Mapping[str, Any], options=None) -> dict[str, Any]:
        """Administrative $set-style patch; bumps the version."""
        opts = QueryOptions.coerce(options)
        resource = await self._store.update(location_id, patch)
        logger.info(
            "Location updated",
            location_id=location_id,
            fields=sorted(str(k) for k in patch),
            version=resource.meta.version_id,
        )
        return present(resource, opts.return_legacy_format)

    async def _vote(self, location_id: str, kind: VoteKind, options=None) -> dict[str, Any]:
        opts = QueryOptions.coerce(options)
        resource = await self._store.increment_vote(location_id, kind)
        get_metrics().record_vote()
        return present(resource, opts.return_legacy_format)

    async def upvote(self, location_id: str, options=None) -> dict[str, Any]:
        return await self._vote(location_id, VoteKind.UPVOTE, options)

    async def downvote(self, location_id: str, options=None) -> dict[str, Any]:
        return await self._vote(location_id, VoteKind.DOWNVOTE, options)


class LegacyLocationService:
    """
    Entry points for older callers.

    Same operations as LocationService, with return_legacy_format forced
    on.
    """

    def __init__(self, service: LocationService):
        self._service = service

    @staticmethod
    def _legacy(options) -> QueryOptions:
        return QueryOptions.coerce(options).model_copy(update={"return_legacy_format": True})

    async def search_by_location(self, lat, lng, options=None):
        return await self._service.search_by_location(lat, lng, self._legacy(options))

    async def search_by_text(self, query, options=None):
        return await self._service.search_by_text(query, self._legacy(options))

    async def get_all(self, options=None):
        return await self._service.get_all(self._legacy(options))

    async def get_by_id(self, location_id, options=None):
        return await self._service.get_by_id(location_id, self._legacy(options))

    async def insert(self, data, token, remote_ip=None):
        return await self._service.insert(data, token, remote_ip)

    async def upvote(self, location_id, options=None):
        return await self._service.upvote(location_id, self._legacy(options))

    async def downvote(self, location_id, options=None):
        return await self._service.downvote(location_id, self._legacy(options))
