"""
Fakes and record builders shared by the test modules.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from restrooms.core.collaborators import Coordinates
from restrooms.core.transform import to_canonical
from restrooms.schemas import LocationResource, ResourceSource


BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

NEW_YORK = (40.7128, -74.0060)


def remote_record(index: int, **overrides) -> dict:
    """A record as the remote restroom API returns it."""
    lat, lng = NEW_YORK
    record = {
        "id": 1000 + index,
        "name": f"Remote Restroom {index}",
        "street": f"{index} Broadway",
        "city": "New York",
        "state": "NY",
        "country": "US",
        "latitude": lat + index * 0.001,
        "longitude": lng,
        "accessible": True,
        "unisex": False,
        "changing_table": False,
        "directions": "",
        "comment": "",
        "upvote": 2,
        "downvote": 0,
        "edit_id": 5000 + index,
        "created_at": "2023-01-01T00:00:00Z",
        "updated_at": "2023-06-01T00:00:00Z",
    }
    record.update(overrides)
    return record


def make_resource(
    resource_id: str,
    name: str = "Test Restroom",
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    minutes_ago: int = 0,
    source: str = ResourceSource.LOCAL_SUBMISSION.value,
    **fields,
) -> LocationResource:
    """Build a canonical resource through the transform, with a fixed lastUpdated."""
    record = {
        "_id": resource_id,
        "name": name,
        "street": fields.pop("street", "1 Main St"),
        "city": fields.pop("city", "Springfield"),
        "state": fields.pop("state", "IL"),
        "updated_at": (BASE_TIME - timedelta(minutes=minutes_ago)).isoformat(),
        **fields,
    }
    if lat is not None and lng is not None:
        record["latitude"] = lat
        record["longitude"] = lng
    return to_canonical(record, source=source)


class FakeRemoteClient:
    """Stands in for RefugeApiClient; records every call."""

    base_url = "https://remote.test/api/v1"

    def __init__(self, records=None, error: Optional[Exception] = None):
        self.records = list(records or [])
        self.error = error
        self.calls = []

    async def _respond(self, call):
        self.calls.append(call)
        if self.error is not None:
            raise self.error
        return [dict(r) if isinstance(r, dict) else r for r in self.records]

    async def fetch_by_location(self, lat, lng, per_page=20):
        return await self._respond(("location", lat, lng, per_page))

    async def fetch_by_search(self, query, per_page=20):
        return await self._respond(("search", query, per_page))

    async def fetch_with_filters(self, filters=None, per_page=20):
        return await self._respond(("filters", filters, per_page))

    async def fetch_by_date(self, day, month, year, per_page=20):
        return await self._respond(("date", day, month, year, per_page))

    async def aclose(self):
        pass


class FakeGeocoder:
    def __init__(self, result: Optional[Coordinates] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.addresses = []

    async def geocode_address(self, address):
        self.addresses.append(address)
        if self.error is not None:
            raise self.error
        return self.result


class FakeValidator:
    def __init__(self, valid: bool = True):
        self.valid = valid
        self.tokens = []

    async def validate(self, token, remote_ip=None):
        self.tokens.append(token)
        return self.valid and bool(token)
