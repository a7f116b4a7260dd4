"""
Database Layer for the Restroom Directory

Provides:
- LocationStore abstraction (InMemory for dev, asyncpg/PostgreSQL for prod)
- Connection pooling and configuration
- Test-data seeding
"""

from .store import (
    LocationStore,
    InMemoryLocationStore,
    AsyncPostgresLocationStore,
    LocationFilters,
    StoreError,
    DuplicateLocationError,
    open_location_store,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "LocationStore",
    "InMemoryLocationStore",
    "AsyncPostgresLocationStore",
    "LocationFilters",
    "StoreError",
    "DuplicateLocationError",
    "open_location_store",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
