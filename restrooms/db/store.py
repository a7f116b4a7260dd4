"""
Location Store Abstraction

This module defines the LocationStore interface and provides two
implementations:
- InMemoryLocationStore: For development and testing
- AsyncPostgresLocationStore: For production (asyncpg, JSONB documents)

The store is responsible for:
- Persisting canonical LocationResource documents
- Radius, text and filtered queries
- Single-document atomic mutations (insert, patch, vote increment)
- Uniqueness of ids and external identifiers

Callers retain responsibility for:
- Format transforms (restrooms.core.transform)
- Deciding when to hydrate (restrooms.core.hydration / locations)

STATUS CONTRACT:
Every read defaults to status=active. Pass status=None to read any status.

UNIQUENESS CONTRACT:
insert() raises DuplicateLocationError when the id or a
(identifier.system, identifier.value) pair of a UNIQUE_IDENTIFIER_SYSTEMS
system already exists. edit-id values link revisions of one upstream
restroom and may repeat. The Postgres driver enforces this with a partial
unique index on fhir_location_identifiers, so two concurrent hydrations
for the same remote record cannot both insert.
"""

import copy
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from string import Template
from threading import Lock
from typing import Any, AsyncIterator, Optional

import asyncpg
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import (
    LocationError,
    NotFoundError,
    ValidationError,
    validation_error_from_pydantic,
)
from ..core.geo import bounding_box, haversine_miles
from ..observability import get_logger
from ..schemas import (
    CommunityRating,
    IdentifierSystem,
    LocationResource,
    LocationStatus,
    VoteKind,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(LocationError):
    """Underlying persistence failure. Always surfaced."""
    kind = "store-error"


class DuplicateLocationError(StoreError):
    """Raised when an insert collides on id or external identifier."""
    kind = "already-exists"


# ============================================================
# QUERY HELPERS
# ============================================================

IMMUTABLE_FIELDS = ("id", "resourceType")

# Identifier systems whose values may belong to one resource only
UNIQUE_IDENTIFIER_SYSTEMS = frozenset({
    IdentifierSystem.LEGACY_API.value,
    IdentifierSystem.PRODUCTION_ID.value,
})

# Relevance weights for text search
TEXT_WEIGHTS = {"name": 10, "line": 5, "city": 3, "state": 2}


@dataclass
class LocationFilters:
    """
    Accessibility filters for listings.

    A filter only constrains when it is True; None and False impose
    nothing.
    """
    accessible: Optional[bool] = None
    unisex: Optional[bool] = None
    changing_table: Optional[bool] = None

    def active(self) -> list[str]:
        return [
            name for name in ("accessible", "unisex", "changing_table")
            if getattr(self, name) is True
        ]

    def matches(self, resource: LocationResource) -> bool:
        wanted = self.active()
        if not wanted:
            return True
        features = resource.accessibility
        if features is None:
            return False
        return all(getattr(features, name) for name in wanted)


def text_relevance(resource: LocationResource, query: str) -> int:
    """
    Weighted case-insensitive substring score of the whole query.

    0 means no match.
    """
    needle = query.lower()
    score = 0
    if needle in resource.name.lower():
        score += TEXT_WEIGHTS["name"]
    address = resource.address
    if address is not None:
        if any(needle in line.lower() for line in address.line):
            score += TEXT_WEIGHTS["line"]
        if address.city and needle in address.city.lower():
            score += TEXT_WEIGHTS["city"]
        if address.state and needle in address.state.lower():
            score += TEXT_WEIGHTS["state"]
    return score


def apply_patch(document: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """
    Apply $set-style assignments to a FHIR document.

    Keys are top-level names ("name") or dotted paths ("address.city",
    "identifier.0.value"). Returns a new document.
    """
    if not isinstance(patch, Mapping) or not patch:
        raise ValidationError("update patch must be a non-empty mapping")

    patched = copy.deepcopy(dict(document))
    for path, value in patch.items():
        parts = str(path).split(".")
        if parts[0] in IMMUTABLE_FIELDS:
            raise ValidationError(f"{parts[0]} cannot be changed")

        target: Any = patched
        for part in parts[:-1]:
            if isinstance(target, list):
                target = _list_slot(target, part, path)
                continue
            nxt = target.get(part)
            if not isinstance(nxt, (dict, list)):
                nxt = {}
                target[part] = nxt
            target = nxt

        last = parts[-1]
        if isinstance(target, list):
            index = _list_index(target, last, path)
            target[index] = value
        else:
            target[last] = value
    return patched


def _list_index(items: list, part: str, path: str) -> int:
    try:
        index = int(part)
    except ValueError:
        raise ValidationError(f"{path}: '{part}' is not a list index") from None
    if not 0 <= index < len(items):
        raise ValidationError(f"{path}: index {index} out of range")
    return index


def _list_slot(items: list, part: str, path: str) -> Any:
    slot = items[_list_index(items, part, path)]
    if not isinstance(slot, (dict, list)):
        raise ValidationError(f"{path}: cannot descend into a scalar")
    return slot


def _revalidate(document: Mapping[str, Any]) -> LocationResource:
    try:
        return LocationResource.from_fhir(document)
    except PydanticValidationError as e:
        raise validation_error_from_pydantic(e) from e


def _status_value(status: Optional[LocationStatus]) -> Optional[str]:
    if status is None:
        return None
    return LocationStatus(status).value


# ============================================================
# ABSTRACT INTERFACE
# ============================================================

class LocationStore(ABC):
    """
    Abstract base class for location storage.

    All operations are coroutines; each mutation is atomic for the one
    document it touches.
    """

    @abstractmethod
    async def find_by_id(
        self,
        location_id: str,
        status: Optional[LocationStatus] = LocationStatus.ACTIVE,
    ) -> Optional[LocationResource]:
        """Return the resource or None."""
        pass

    @abstractmethod
    async def exists_by_external_id(self, system: str, value: str) -> bool:
        """Indexed existence check on (identifier.system, identifier.value)."""
        pass

    @abstractmethod
    async def search_by_radius(
        self,
        lat: float,
        lng: float,
        radius_miles: float = 20.0,
        limit: int = 20,
        skip: int = 0,
        status: Optional[LocationStatus] = LocationStatus.ACTIVE,
    ) -> list[LocationResource]:
        """
        Resources within radius_miles, nearest first.

        Each result carries `distance` (miles, 2 decimals). Resources
        without a position are excluded. Ties are broken by id.
        """
        pass

    @abstractmethod
    async def search_by_text(
        self,
        query: str,
        limit: int = 20,
        skip: int = 0,
        status: Optional[LocationStatus] = LocationStatus.ACTIVE,
    ) -> list[LocationResource]:
        """Relevance-ranked substring search over name and address."""
        pass

    @abstractmethod
    async def list_filtered(
        self,
        filters: Optional[LocationFilters] = None,
        status: Optional[LocationStatus] = LocationStatus.ACTIVE,
        limit: int = 20,
        skip: int = 0,
    ) -> tuple[list[LocationResource], int]:
        """Newest first; returns (page, total matching)."""
        pass

    @abstractmethod
    async def insert(self, resource: LocationResource) -> LocationResource:
        """Insert a new resource. Raises DuplicateLocationError."""
        pass

    async def upsert_external(self, resource: LocationResource) -> bool:
        """
        Insert unless the id or an external identifier is already present.

        Returns True if inserted. The uniqueness check is the store's own,
        so a racing insert of the same record reports False here.
        """
        try:
            await self.insert(resource)
        except DuplicateLocationError:
            return False
        return True

    @abstractmethod
    async def update(self, location_id: str, patch: Mapping[str, Any]) -> LocationResource:
        """Apply a $set-style patch and bump the version. Any status."""
        pass

    @abstractmethod
    async def increment_vote(self, location_id: str, kind: VoteKind) -> LocationResource:
        """Find-or-create the rating block, +1 on one counter, bump version."""
        pass

    @abstractmethod
    async def delete_by_source(self, source: str) -> int:
        """Hard-delete every resource with meta.source == source."""
        pass

    @abstractmethod
    async def count(self, source: Optional[str] = None) -> int:
        """Count resources of any status, optionally by meta.source."""
        pass

    async def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLocationStore(LocationStore):
    """
    In-memory implementation of LocationStore.

    Keeps FHIR JSON documents (as a document database would) and
    re-validates them on every read, so callers never share mutable
    state with the store.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._documents: dict[str, dict[str, Any]] = {}
        # (system, value) -> ids of the resources carrying it
        self._external_ids: dict[tuple[str, str], set[str]] = {}
        self._lock = Lock()

    def _snapshot(self, status: Optional[LocationStatus]) -> list[LocationResource]:
        wanted = _status_value(status)
        with self._lock:
            documents = list(self._documents.values())
        resources = [LocationResource.from_fhir(doc) for doc in documents]
        if wanted is None:
            return resources
        return [r for r in resources if r.status.value == wanted]

    def _store(self, resource: LocationResource, previous: Optional[LocationResource] = None) -> None:
        """Write a document and its identifier index entries. Caller holds the lock."""
        if previous is not None:
            self._unindex(previous.id, previous.external_ids())
        self._documents[resource.id] = resource.to_fhir(mode="json")
        for key in resource.external_ids():
            self._external_ids.setdefault(key, set()).add(resource.id)

    def _unindex(self, location_id: str, keys) -> None:
        for key in keys:
            owners = self._external_ids.get(key)
            if owners is None:
                continue
            owners.discard(location_id)
            if not owners:
                del self._external_ids[key]

    def _check_identifiers(self, resource: LocationResource) -> None:
        for key in resource.external_ids():
            if key[0] not in UNIQUE_IDENTIFIER_SYSTEMS:
                continue
            others = self._external_ids.get(key, set()) - {resource.id}
            if others:
                owner = min(others)
                raise DuplicateLocationError(
                    f"identifier {key[0]}|{key[1]} already belongs to {owner}",
                    location_id=owner,
                )

    async def find_by_id(self, location_id, status=LocationStatus.ACTIVE):
        with self._lock:
            document = self._documents.get(location_id)
        if document is None:
            return None
        resource = LocationResource.from_fhir(document)
        wanted = _status_value(status)
        if wanted is not None and resource.status.value != wanted:
            return None
        return resource

    async def exists_by_external_id(self, system, value):
        with self._lock:
            return (system, str(value)) in self._external_ids

    async def search_by_radius(
        self, lat, lng, radius_miles=20.0, limit=20, skip=0, status=LocationStatus.ACTIVE
    ):
        box = bounding_box(lat, lng, radius_miles)
        hits = []
        for resource in self._snapshot(status):
            position = resource.position
            if position is None or not box.contains(position.latitude, position.longitude):
                continue
            distance = haversine_miles(lat, lng, position.latitude, position.longitude)
            if distance <= radius_miles:
                hits.append(resource.with_distance(distance))
        hits.sort(key=lambda r: (r.distance, r.id))
        return hits[skip:skip + limit]

    async def search_by_text(self, query, limit=20, skip=0, status=LocationStatus.ACTIVE):
        query = (query or "").strip()
        if not query:
            return []
        scored = []
        for resource in self._snapshot(status):
            score = text_relevance(resource, query)
            if score > 0:
                scored.append((score, resource))
        scored.sort(key=lambda pair: pair[1].id)
        scored.sort(key=lambda pair: (pair[0], pair[1].meta.last_updated), reverse=True)
        return [resource for _, resource in scored[skip:skip + limit]]

    async def list_filtered(self, filters=None, status=LocationStatus.ACTIVE, limit=20, skip=0):
        filters = filters or LocationFilters()
        matching = [r for r in self._snapshot(status) if filters.matches(r)]
        matching.sort(key=lambda r: r.id)
        matching.sort(key=lambda r: r.meta.last_updated, reverse=True)
        return matching[skip:skip + limit], len(matching)

    async def insert(self, resource):
        with self._lock:
            if resource.id in self._documents:
                raise DuplicateLocationError(
                    f"location {resource.id} already exists",
                    location_id=resource.id,
                )
            self._check_identifiers(resource)
            self._store(resource)
        return resource

    async def update(self, location_id, patch):
        with self._lock:
            document = self._documents.get(location_id)
            if document is None:
                raise NotFoundError(f"location {location_id} not found", location_id=location_id)
            previous = LocationResource.from_fhir(document)
            resource = _revalidate(apply_patch(document, patch))
            resource.touch()
            self._check_identifiers(resource)
            self._store(resource, previous=previous)
        return resource

    async def increment_vote(self, location_id, kind):
        with self._lock:
            document = self._documents.get(location_id)
            if document is None:
                raise NotFoundError(f"location {location_id} not found", location_id=location_id)
            resource = LocationResource.from_fhir(document)
            resource.rating = (resource.rating or CommunityRating()).increment(kind)
            resource.touch()
            self._store(resource)
        return resource

    async def delete_by_source(self, source):
        with self._lock:
            doomed = [
                location_id for location_id, doc in self._documents.items()
                if (doc.get("meta") or {}).get("source") == source
            ]
            for location_id in doomed:
                document = self._documents.pop(location_id)
                self._unindex(location_id, LocationResource.from_fhir(document).external_ids())
        return len(doomed)

    async def count(self, source=None):
        with self._lock:
            if source is None:
                return len(self._documents)
            return sum(
                1 for doc in self._documents.values()
                if (doc.get("meta") or {}).get("source") == source
            )

    def clear(self) -> None:
        """Clear all documents (for testing only)."""
        with self._lock:
            self._documents.clear()
            self._external_ids.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION (ASYNC)
# ============================================================

SCHEMA_SQL = Template("""
CREATE TABLE IF NOT EXISTS fhir_locations (
    id              TEXT PRIMARY KEY,
    status          TEXT NOT NULL,
    name            TEXT NOT NULL,
    source          TEXT,
    latitude        DOUBLE PRECISION,
    longitude       DOUBLE PRECISION,
    accessible      BOOLEAN NOT NULL DEFAULT FALSE,
    unisex          BOOLEAN NOT NULL DEFAULT FALSE,
    changing_table  BOOLEAN NOT NULL DEFAULT FALSE,
    address_line    TEXT,
    city            TEXT,
    state           TEXT,
    last_updated    TIMESTAMPTZ NOT NULL,
    resource        JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS fhir_location_identifiers (
    system       TEXT NOT NULL,
    value        TEXT NOT NULL,
    location_id  TEXT NOT NULL REFERENCES fhir_locations(id) ON DELETE CASCADE,
    PRIMARY KEY (system, value, location_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_fhir_location_identifiers_external
    ON fhir_location_identifiers (system, value)
    WHERE system IN ('$legacy_api', '$production_id');

CREATE INDEX IF NOT EXISTS idx_fhir_location_identifiers_value
    ON fhir_location_identifiers (value);
CREATE INDEX IF NOT EXISTS idx_fhir_location_identifiers_location
    ON fhir_location_identifiers (location_id);
CREATE INDEX IF NOT EXISTS idx_fhir_locations_position
    ON fhir_locations (latitude, longitude);
CREATE INDEX IF NOT EXISTS idx_fhir_locations_status
    ON fhir_locations (status);
CREATE INDEX IF NOT EXISTS idx_fhir_locations_source
    ON fhir_locations (source);
CREATE INDEX IF NOT EXISTS idx_fhir_locations_last_updated
    ON fhir_locations (last_updated DESC);
""").substitute(
    legacy_api=IdentifierSystem.LEGACY_API.value,
    production_id=IdentifierSystem.PRODUCTION_ID.value,
)

_UPSERT_ROW_SQL = """
    INSERT INTO fhir_locations (
        id, status, name, source, latitude, longitude,
        accessible, unisex, changing_table, address_line, city, state,
        last_updated, resource
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb)
"""

_UPDATE_ROW_SQL = """
    UPDATE fhir_locations SET
        status = $2, name = $3, source = $4, latitude = $5, longitude = $6,
        accessible = $7, unisex = $8, changing_table = $9, address_line = $10,
        city = $11, state = $12, last_updated = $13, resource = $14::jsonb
    WHERE id = $1
"""


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_values(resource: LocationResource) -> tuple:
    """Projected columns followed by the JSONB document."""
    features = resource.accessibility
    address = resource.address
    position = resource.position
    return (
        resource.id,
        resource.status.value,
        resource.name,
        resource.meta.source,
        position.latitude if position else None,
        position.longitude if position else None,
        bool(features and features.accessible),
        bool(features and features.unisex),
        bool(features and features.changing_table),
        "\n".join(address.line) if address and address.line else None,
        address.city if address else None,
        address.state if address else None,
        resource.meta.last_updated,
        json.dumps(resource.to_fhir(mode="json")),
    )


class AsyncPostgresLocationStore(LocationStore):
    """
    Async PostgreSQL implementation using asyncpg.

    Documents live in fhir_locations.resource (JSONB) with the queried
    fields projected into plain columns. External identifiers are rows in
    fhir_location_identifiers; a partial unique index over the
    UNIQUE_IDENTIFIER_SYSTEMS rows is the dedup constraint.

    Usage:
        pool = await asyncpg.create_pool(...)
        store = AsyncPostgresLocationStore(pool)
        await store.init_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        pool,
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            pool: asyncpg connection pool
            lock_timeout_ms: How long to wait for a row lock (ms)
            statement_timeout_ms: Max statement execution time (ms)
        """
        self._pool = pool
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @asynccontextmanager
    async def _connection(self, transactional: bool = False) -> AsyncIterator[Any]:
        """
        Acquire a pooled connection, optionally inside a transaction.

        asyncpg failures surface as StoreError; unique violations as
        DuplicateLocationError.
        """
        try:
            async with self._pool.acquire() as conn:
                if not transactional:
                    yield conn
                    return
                async with conn.transaction():
                    # SET LOCAL keeps the timeouts transaction-scoped
                    await conn.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                    await conn.execute(
                        f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'"
                    )
                    yield conn
        except asyncpg.UniqueViolationError as e:
            raise DuplicateLocationError(f"location already exists: {e.detail or e}") from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"database error: {e}") from e

    async def init_schema(self) -> None:
        """Create tables and indexes if they are missing."""
        async with self._connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        await self._pool.close()

    @staticmethod
    def _to_resource(row, distance: Optional[float] = None) -> LocationResource:
        document = row["resource"]
        if isinstance(document, str):
            document = json.loads(document)
        resource = LocationResource.from_fhir(document)
        if distance is not None:
            resource.distance = distance
        return resource

    async def _write_identifiers(self, conn, resource: LocationResource) -> None:
        for system, value in dict.fromkeys(resource.external_ids()):
            await conn.execute(
                """
                INSERT INTO fhir_location_identifiers (system, value, location_id)
                VALUES ($1, $2, $3)
                """,
                system, value, resource.id,
            )

    async def _lock_row(self, conn, location_id: str) -> LocationResource:
        row = await conn.fetchrow(
            "SELECT resource FROM fhir_locations WHERE id = $1 FOR UPDATE",
            location_id,
        )
        if row is None:
            raise NotFoundError(f"location {location_id} not found", location_id=location_id)
        return self._to_resource(row)

    async def find_by_id(self, location_id, status=LocationStatus.ACTIVE):
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT resource FROM fhir_locations
                WHERE id = $1 AND ($2::text IS NULL OR status = $2)
                """,
                location_id, _status_value(status),
            )
        return self._to_resource(row) if row else None

    async def exists_by_external_id(self, system, value):
        async with self._connection() as conn:
            return await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM fhir_location_identifiers
                    WHERE system = $1 AND value = $2
                )
                """,
                system, str(value),
            )

    async def search_by_radius(
        self, lat, lng, radius_miles=20.0, limit=20, skip=0, status=LocationStatus.ACTIVE
    ):
        # Box prefilter in SQL, exact Haversine here
        box = bounding_box(lat, lng, radius_miles)
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT resource, latitude, longitude FROM fhir_locations
                WHERE latitude BETWEEN $1 AND $2
                  AND longitude BETWEEN $3 AND $4
                  AND ($5::text IS NULL OR status = $5)
                """,
                box.min_lat, box.max_lat, box.min_lng, box.max_lng, _status_value(status),
            )
        hits = []
        for row in rows:
            distance = haversine_miles(lat, lng, row["latitude"], row["longitude"])
            if distance <= radius_miles:
                hits.append(self._to_resource(row, distance=distance))
        hits.sort(key=lambda r: (r.distance, r.id))
        return hits[skip:skip + limit]

    async def search_by_text(self, query, limit=20, skip=0, status=LocationStatus.ACTIVE):
        query = (query or "").strip()
        if not query:
            return []
        pattern = f"%{_escape_like(query)}%"
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT resource,
                    (CASE WHEN name ILIKE $1 THEN {TEXT_WEIGHTS['name']} ELSE 0 END
                   + CASE WHEN address_line ILIKE $1 THEN {TEXT_WEIGHTS['line']} ELSE 0 END
                   + CASE WHEN city ILIKE $1 THEN {TEXT_WEIGHTS['city']} ELSE 0 END
                   + CASE WHEN state ILIKE $1 THEN {TEXT_WEIGHTS['state']} ELSE 0 END) AS score
                FROM fhir_locations
                WHERE ($2::text IS NULL OR status = $2)
                  AND (name ILIKE $1 OR address_line ILIKE $1 OR city ILIKE $1 OR state ILIKE $1)
                ORDER BY score DESC, last_updated DESC, id
                LIMIT $3 OFFSET $4
                """,
                pattern, _status_value(status), limit, skip,
            )
        return [self._to_resource(row) for row in rows]

    async def list_filtered(self, filters=None, status=LocationStatus.ACTIVE, limit=20, skip=0):
        filters = filters or LocationFilters()
        # Column names come from LocationFilters, never from input
        clauses = ["($1::text IS NULL OR status = $1)"]
        clauses.extend(f"{column} = TRUE" for column in filters.active())
        where = " AND ".join(clauses)
        status_value = _status_value(status)

        async with self._connection() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM fhir_locations WHERE {where}",
                status_value,
            )
            rows = await conn.fetch(
                f"""
                SELECT resource FROM fhir_locations
                WHERE {where}
                ORDER BY last_updated DESC, id
                LIMIT $2 OFFSET $3
                """,
                status_value, limit, skip,
            )
        return [self._to_resource(row) for row in rows], total

    async def insert(self, resource):
        async with self._connection(transactional=True) as conn:
            await conn.execute(_UPSERT_ROW_SQL, *_row_values(resource))
            await self._write_identifiers(conn, resource)
        return resource

    async def update(self, location_id, patch):
        async with self._connection(transactional=True) as conn:
            current = await self._lock_row(conn, location_id)
            resource = _revalidate(apply_patch(current.to_fhir(mode="json"), patch))
            resource.touch()
            await conn.execute(_UPDATE_ROW_SQL, *_row_values(resource))
            if resource.external_ids() != current.external_ids():
                await conn.execute(
                    "DELETE FROM fhir_location_identifiers WHERE location_id = $1",
                    location_id,
                )
                await self._write_identifiers(conn, resource)
        return resource

    async def increment_vote(self, location_id, kind):
        async with self._connection(transactional=True) as conn:
            resource = await self._lock_row(conn, location_id)
            resource.rating = (resource.rating or CommunityRating()).increment(kind)
            resource.touch()
            await conn.execute(_UPDATE_ROW_SQL, *_row_values(resource))
        return resource

    async def delete_by_source(self, source):
        async with self._connection(transactional=True) as conn:
            result = await conn.execute("DELETE FROM fhir_locations WHERE source = $1", source)
        # asyncpg returns the command tag, e.g. "DELETE 12"
        return int(result.split()[-1])

    async def count(self, source=None):
        async with self._connection() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM fhir_locations WHERE ($1::text IS NULL OR source = $1)",
                source,
            )


# ============================================================
# FACTORY
# ============================================================

async def open_location_store(driver: Optional[StoreDriver] = None) -> LocationStore:
    """
    Create the LocationStore selected by configuration.

    A configured database that cannot be reached is logged and replaced
    by the in-memory store so the service still starts.
    """
    driver = driver or get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory location store (no persistence)")
        return InMemoryLocationStore()

    db_url = get_database_url()
    if db_url is None:
        logger.warning(
            "Store driver requested but no database configured, using in-memory store",
            driver=driver.value,
        )
        return InMemoryLocationStore()

    config = DatabaseConfig.from_env()
    try:
        pool = await asyncpg.create_pool(
            dsn=db_url,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            timeout=config.pool_timeout,
        )
        store = AsyncPostgresLocationStore(pool)
        await store.init_schema()
    except (asyncpg.PostgresError, OSError, TimeoutError, StoreError) as e:
        logger.error(
            "Could not open PostgreSQL location store, falling back to in-memory",
            database=config.to_url(include_password=False),
            error=str(e),
        )
        return InMemoryLocationStore()

    logger.info(
        "Using PostgreSQL location store",
        database=config.to_url(include_password=False),
    )
    return store
