"""
Hydration Service

Backfills the local store from the remote source of truth without
creating duplicates, and only while hydration is enabled.

FLOW (per call):
1. Disabled -> HydrationSkipped, no network call
2. Fetch candidates through one of four selectors
3. Per candidate:
   - no external id        -> skipped, invalid-data
   - external id known     -> skipped, already-exists
   - otherwise hydrated_to_canonical + insert
       - store unique constraint fires -> skipped, already-exists
       - transform/store error         -> failed, error message
4. Return HydrationSummary

A failing candidate never aborts the batch. Only a failed fetch
(RemoteFetchError / RemoteTimeoutError) propagates.

The enabled flag comes from HydrationConfig and is changed only through
set_enabled().
"""

import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..db.store import LocationStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    HydrationItemResult,
    HydrationItemStatus,
    HydrationOutcome,
    HydrationSkipped,
    HydrationStats,
    HydrationSummary,
    IdentifierSystem,
    ResourceSource,
    SkipReason,
)
from .config import HydrationConfig
from .errors import LocationError, RemoteFetchError
from .remote import RefugeApiClient
from .transform import hydrated_to_canonical

logger = get_logger(__name__)


def _external_id(record: Any) -> Optional[str]:
    if not isinstance(record, Mapping):
        return None
    value = record.get("id")
    if value is None or value == "" or isinstance(value, bool):
        return None
    return str(value)


class HydrationService:
    """
    Remote backfill gated by a runtime toggle.

    Usage:
        service = HydrationService(store, RefugeApiClient(), HydrationConfig.from_env())
        outcome = await service.hydrate_by_location(40.71, -74.0)
    """

    def __init__(
        self,
        store: LocationStore,
        client: RefugeApiClient,
        config: Optional[HydrationConfig] = None,
    ):
        self._store = store
        self._client = client
        self._config = config or HydrationConfig()
        self._enabled = self._config.enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def api_url(self) -> str:
        return getattr(self._client, "base_url", self._config.api_url)

    @property
    def per_page(self) -> int:
        return self._config.per_page

    def set_enabled(self, enabled: bool) -> bool:
        """Administrative toggle. Returns the new state."""
        previous, self._enabled = self._enabled, bool(enabled)
        if previous != self._enabled:
            logger.info("Hydration toggled", enabled=self._enabled)
        return self._enabled

    # --------------------------------------------------------
    # Selectors
    # --------------------------------------------------------

    async def hydrate_by_location(
        self, lat: float, lng: float, per_page: Optional[int] = None
    ) -> HydrationOutcome:
        return await self._run(
            "location",
            lambda n: self._client.fetch_by_location(lat, lng, n),
            per_page,
            lat=lat,
            lng=lng,
        )

    async def hydrate_by_search(self, query: str, per_page: Optional[int] = None) -> HydrationOutcome:
        return await self._run(
            "search",
            lambda n: self._client.fetch_by_search(query, n),
            per_page,
            query=query,
        )

    async def hydrate_with_filters(
        self, filters: Optional[dict] = None, per_page: Optional[int] = None
    ) -> HydrationOutcome:
        return await self._run(
            "filters",
            lambda n: self._client.fetch_with_filters(filters, n),
            per_page,
            filters=filters or {},
        )

    async def hydrate_by_date(
        self, day: int, month: int, year: int, per_page: Optional[int] = None
    ) -> HydrationOutcome:
        return await self._run(
            "date",
            lambda n: self._client.fetch_by_date(day, month, year, n),
            per_page,
            date=f"{year:04d}-{month:02d}-{day:02d}",
        )

    async def _run(
        self,
        selector: str,
        fetch: Callable[[int], Awaitable[list]],
        per_page: Optional[int],
        **context: Any,
    ) -> HydrationOutcome:
        metrics = get_metrics()
        if not self._enabled:
            metrics.record_hydration_disabled()
            logger.debug("Hydration disabled, skipping", selector=selector)
            return HydrationSkipped()

        per_page = per_page or self._config.per_page
        start = time.perf_counter()
        try:
            records = await fetch(per_page)
        except RemoteFetchError as e:
            metrics.record_remote_error()
            logger.warning(
                "Hydration fetch failed",
                selector=selector,
                error_kind=e.kind,
                error=e.message,
                **context,
            )
            raise

        summary = await self.hydrate_from_results(records)
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_hydration(duration_ms, summary.saved, summary.skipped, summary.failed)
        logger.info(
            "Hydration complete",
            selector=selector,
            total=summary.total,
            saved=summary.saved,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_ms=round(duration_ms, 2),
            **context,
        )
        return summary

    # --------------------------------------------------------
    # Candidate processing
    # --------------------------------------------------------

    async def hydrate_from_results(self, records: Sequence[Any]) -> HydrationSummary:
        """Dedup, transform and insert each candidate; never raises per item."""
        summary = HydrationSummary(total=len(records))
        for record in records:
            summary.record(await self.save_record(record))
        return summary

    async def save_record(self, record: Any) -> HydrationItemResult:
        legacy_id = _external_id(record)
        if legacy_id is None:
            return HydrationItemResult(
                status=HydrationItemStatus.SKIPPED,
                reason=SkipReason.INVALID_DATA.value,
            )

        try:
            if await self._store.exists_by_external_id(IdentifierSystem.LEGACY_API.value, legacy_id):
                return HydrationItemResult(
                    status=HydrationItemStatus.SKIPPED,
                    reason=SkipReason.ALREADY_EXISTS.value,
                    legacy_id=legacy_id,
                )
            resource = hydrated_to_canonical(record)
            inserted = await self._store.upsert_external(resource)
        except (LocationError, ValueError) as e:
            logger.warning("Hydration candidate failed", legacy_id=legacy_id, error=str(e))
            return HydrationItemResult(
                status=HydrationItemStatus.FAILED,
                reason=str(e),
                legacy_id=legacy_id,
            )

        if not inserted:
            return HydrationItemResult(
                status=HydrationItemStatus.SKIPPED,
                reason=SkipReason.ALREADY_EXISTS.value,
                legacy_id=legacy_id,
            )
        return HydrationItemResult(
            status=HydrationItemStatus.SAVED,
            legacy_id=legacy_id,
            fhir_id=resource.id,
        )

    # --------------------------------------------------------
    # Administration
    # --------------------------------------------------------

    async def get_stats(self) -> HydrationStats:
        total = await self._store.count()
        hydrated = await self._store.count(source=ResourceSource.LEGACY_API.value)
        percentage = round(hydrated / total * 100, 2) if total else 0.0
        return HydrationStats(
            total=total,
            hydrated=hydrated,
            local=total - hydrated,
            hydration_percentage=percentage,
        )

    async def purge_hydrated(self) -> int:
        """Delete every resource that arrived through hydration."""
        removed = await self._store.delete_by_source(ResourceSource.LEGACY_API.value)
        logger.warning("Purged hydrated locations", removed=removed)
        return removed
