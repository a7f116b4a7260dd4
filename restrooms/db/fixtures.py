"""
Test Data

Seeds a store with synthetic restrooms around ten US cities, tagged
meta.source = "test-data" so they can be removed in one call. Only
reachable when RESTROOMS_ENABLE_TEST_DATA is set (API) or explicitly
requested (CLI).
"""

import random
from datetime import timedelta
from typing import Optional

from ..core.transform import to_canonical
from ..observability import get_logger
from ..schemas import ResourceSource
from ..schemas.location import utc_now
from .store import LocationStore

logger = get_logger(__name__)


CITIES = [
    ("New York", "NY", 40.7128, -74.0060),
    ("Los Angeles", "CA", 34.0522, -118.2437),
    ("Chicago", "IL", 41.8781, -87.6298),
    ("Houston", "TX", 29.7604, -95.3698),
    ("Philadelphia", "PA", 39.9526, -75.1652),
    ("Phoenix", "AZ", 33.4484, -112.0740),
    ("San Antonio", "TX", 29.4241, -98.4936),
    ("San Diego", "CA", 32.7157, -117.1611),
    ("Dallas", "TX", 32.7767, -96.7970),
    ("San Jose", "CA", 37.3382, -121.8863),
]

RESTROOM_NAMES = [
    "Coffee Shop Restroom", "Library Bathroom", "Mall Facilities",
    "Restaurant Restroom", "Gas Station Toilet", "Park Bathroom",
    "Museum Facilities", "Theater Restroom", "Hotel Bathroom",
    "Gym Restroom", "University Facilities", "Hospital Bathroom",
    "Airport Restroom", "Train Station Toilet", "Office Building Bathroom",
]

# Roughly 1 km either way
JITTER_DEGREES = 0.01


def build_test_record(index: int, rng: random.Random) -> dict:
    """One flat test record; index picks the city and name round-robin."""
    city, state, lat, lng = CITIES[index % len(CITIES)]
    name = RESTROOM_NAMES[index % len(RESTROOM_NAMES)]
    now = utc_now()
    return {
        "_id": f"test-{index + 1}",
        "name": f"{name} {index + 1}",
        "street": f"{100 + index} Main St",
        "city": city,
        "state": state,
        "country": "United States",
        "position": {
            "type": "Point",
            "coordinates": [
                lng + rng.uniform(-JITTER_DEGREES, JITTER_DEGREES),
                lat + rng.uniform(-JITTER_DEGREES, JITTER_DEGREES),
            ],
        },
        "accessible": rng.random() > 0.5,
        "unisex": rng.random() > 0.3,
        "changing_table": rng.random() > 0.7,
        "directions": "Enter through the main door and turn right.",
        "comment": "Clean and well-maintained.",
        "upvote": rng.randrange(50),
        "downvote": rng.randrange(10),
        "approved": True,
        "fromHydration": False,
        "status": "active",
        "edit_id": f"test-{index}",
        "createdAt": (now - timedelta(seconds=rng.randrange(10_000_000))).isoformat(),
        "updatedAt": now.isoformat(),
    }


async def seed_test_locations(
    store: LocationStore,
    count: int = 10,
    rng: Optional[random.Random] = None,
) -> list[str]:
    """Replace existing test data with `count` fresh resources. Returns their ids."""
    rng = rng or random.Random()
    removed = await store.delete_by_source(ResourceSource.TEST_DATA.value)

    inserted = []
    for index in range(count):
        resource = to_canonical(
            build_test_record(index, rng),
            source=ResourceSource.TEST_DATA.value,
        )
        await store.insert(resource)
        inserted.append(resource.id)

    logger.info("Seeded test locations", inserted=len(inserted), removed=removed)
    return inserted


async def clear_test_locations(store: LocationStore) -> int:
    removed = await store.delete_by_source(ResourceSource.TEST_DATA.value)
    logger.info("Cleared test locations", removed=removed)
    return removed
