"""
Remote Source Client

Async client for the upstream restroom API (the source of truth that
hydration backfills from). Four selectors, each returning the raw record
list the API sends:

    GET /restrooms/by_location?lat&lng&per_page
    GET /restrooms/search?query&per_page
    GET /restrooms?ada&unisex&per_page
    GET /restrooms/by_date?day&month&year&per_page

Every call is bounded by the timeout budget. A timeout raises
RemoteTimeoutError; any other transport failure, a non-2xx status or a
payload that is not a list raises RemoteFetchError.
"""

from typing import Any, Optional

import httpx

from ..observability import get_logger
from .config import DEFAULT_API_URL
from .errors import RemoteFetchError, RemoteTimeoutError

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
USER_AGENT = "restrooms-hydration/0.1"


class RefugeApiClient:
    """Thin wrapper around httpx.AsyncClient for the remote restroom API."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )

    async def _get_records(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            logger.warning("Remote source timed out", path=path, timeout_s=self.timeout)
            raise RemoteTimeoutError(
                f"remote source timed out after {self.timeout}s", path=path
            ) from e
        except httpx.HTTPStatusError as e:
            raise RemoteFetchError(
                f"remote source returned HTTP {e.response.status_code}",
                path=path,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteFetchError(f"remote source unreachable: {e}", path=path) from e
        except ValueError as e:
            raise RemoteFetchError("remote source returned invalid JSON", path=path) from e

        if payload is None:
            return []
        if not isinstance(payload, list):
            raise RemoteFetchError(
                f"expected a list of records, got {type(payload).__name__}", path=path
            )
        return payload

    async def fetch_by_location(self, lat: float, lng: float, per_page: int = 20) -> list[dict]:
        return await self._get_records(
            "/restrooms/by_location",
            {"lat": lat, "lng": lng, "per_page": per_page},
        )

    async def fetch_by_search(self, query: str, per_page: int = 20) -> list[dict]:
        return await self._get_records(
            "/restrooms/search",
            {"query": query, "per_page": per_page},
        )

    async def fetch_with_filters(self, filters: Optional[dict] = None, per_page: int = 20) -> list[dict]:
        """filters: accessible / ada and unisex flags; only true flags are sent."""
        filters = filters or {}
        params: dict[str, Any] = {"per_page": per_page}
        if filters.get("accessible") or filters.get("ada"):
            params["ada"] = "true"
        if filters.get("unisex"):
            params["unisex"] = "true"
        return await self._get_records("/restrooms", params)

    async def fetch_by_date(
        self, day: int, month: int, year: int, per_page: int = 20
    ) -> list[dict]:
        return await self._get_records(
            "/restrooms/by_date",
            {"day": day, "month": month, "year": year, "per_page": per_page},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
