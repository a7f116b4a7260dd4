"""
Tests for the in-memory LocationStore.

The Postgres driver implements the same contract; these tests pin that
contract down against the in-memory implementation.
"""

import asyncio
import pytest

from restrooms.core.errors import NotFoundError, ValidationError
from restrooms.core.transform import to_canonical
from restrooms.db.store import (
    DuplicateLocationError,
    InMemoryLocationStore,
    LocationFilters,
    apply_patch,
    text_relevance,
)
from restrooms.schemas import (
    IdentifierSystem,
    LocationStatus,
    ResourceSource,
    VoteKind,
)

from tests.helpers import make_resource, remote_record


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store():
    return InMemoryLocationStore()


class TestInsertAndFind:

    def test_insert_and_find(self, store):
        resource = make_resource("loc-1", lat=40.0, lng=-74.0)
        run(store.insert(resource))

        found = run(store.find_by_id("loc-1"))
        assert found.id == "loc-1"
        assert found.position.latitude == 40.0
        assert run(store.find_by_id("missing")) is None

    def test_reads_are_copies(self, store):
        """Mutating a returned resource does not touch the stored one."""
        run(store.insert(make_resource("loc-1")))
        found = run(store.find_by_id("loc-1"))
        found.name = "Changed"
        assert run(store.find_by_id("loc-1")).name == "Test Restroom"

    def test_duplicate_id_rejected(self, store):
        run(store.insert(make_resource("loc-1")))
        with pytest.raises(DuplicateLocationError):
            run(store.insert(make_resource("loc-1", name="Other")))

    def test_duplicate_external_id_rejected(self, store):
        """Two resources cannot share (system, value)."""
        first = to_canonical(remote_record(1))
        second = to_canonical(remote_record(1), source=ResourceSource.LEGACY_API.value)
        second.id = "another-id"

        run(store.insert(first))
        with pytest.raises(DuplicateLocationError) as exc_info:
            run(store.insert(second))
        assert exc_info.value.kind == "already-exists"
        assert run(store.count()) == 1

    def test_upsert_external_reports_duplicates(self, store):
        assert run(store.upsert_external(to_canonical(remote_record(1)))) is True
        assert run(store.upsert_external(to_canonical(remote_record(1)))) is False

    def test_shared_edit_id_allowed(self, store):
        """edit-id values may repeat across resources."""
        run(store.insert(to_canonical(remote_record(1, edit_id=77))))
        run(store.insert(to_canonical(remote_record(2, edit_id=77))))

        assert run(store.count()) == 2
        assert run(store.exists_by_external_id(IdentifierSystem.EDIT_ID.value, "77"))

    def test_shared_edit_id_survives_one_delete(self, store):
        run(store.insert(to_canonical(remote_record(1, edit_id=77))))
        run(store.insert(make_resource("mine", edit_id=77)))

        run(store.delete_by_source(ResourceSource.LEGACY_API.value))
        assert run(store.exists_by_external_id(IdentifierSystem.EDIT_ID.value, "77"))

        run(store.delete_by_source(ResourceSource.LOCAL_SUBMISSION.value))
        assert not run(store.exists_by_external_id(IdentifierSystem.EDIT_ID.value, "77"))

    def test_exists_by_external_id(self, store):
        run(store.insert(to_canonical(remote_record(3))))
        assert run(store.exists_by_external_id(IdentifierSystem.LEGACY_API.value, "1003"))
        assert not run(store.exists_by_external_id(IdentifierSystem.LEGACY_API.value, "9"))

    def test_status_filter_defaults_to_active(self, store):
        run(store.insert(make_resource("gone", status="inactive")))
        assert run(store.find_by_id("gone")) is None
        assert run(store.find_by_id("gone", status=None)).status == LocationStatus.INACTIVE


class TestRadiusSearch:

    @pytest.fixture
    def populated(self, store):
        run(store.insert(make_resource("far", lat=40.10, lng=-74.0)))
        run(store.insert(make_resource("near", lat=40.01, lng=-74.0)))
        run(store.insert(make_resource("origin", lat=40.00, lng=-74.0)))
        run(store.insert(make_resource("elsewhere", lat=34.05, lng=-118.24)))
        run(store.insert(make_resource("nowhere")))
        return store

    def test_nearest_first_with_distance(self, populated):
        results = run(populated.search_by_radius(40.0, -74.0, radius_miles=20))

        assert [r.id for r in results] == ["origin", "near", "far"]
        assert results[0].distance == 0.0
        distances = [r.distance for r in results]
        assert distances == sorted(distances)
        assert all(d <= 20 for d in distances)

    def test_excludes_positionless_and_distant(self, populated):
        ids = {r.id for r in run(populated.search_by_radius(40.0, -74.0, radius_miles=5000))}
        assert "nowhere" not in ids
        assert "elsewhere" in ids

        ids = {r.id for r in run(populated.search_by_radius(40.0, -74.0, radius_miles=1))}
        assert ids == {"origin", "near"}

    def test_limit_and_skip(self, populated):
        page = run(populated.search_by_radius(40.0, -74.0, radius_miles=20, limit=1, skip=1))
        assert [r.id for r in page] == ["near"]

    def test_distance_not_persisted(self, populated):
        run(populated.search_by_radius(40.0, -74.0))
        assert run(populated.find_by_id("near")).distance is None


class TestTextSearch:

    def test_relevance_ordering(self, store):
        """Name matches outrank address matches."""
        run(store.insert(make_resource("street-hit", name="Cafe", street="1 Library Way")))
        run(store.insert(make_resource("name-hit", name="Library Bathroom")))
        run(store.insert(make_resource("miss", name="Gym")))

        results = run(store.search_by_text("library"))
        assert [r.id for r in results] == ["name-hit", "street-hit"]

    def test_equal_scores_newest_first(self, store):
        run(store.insert(make_resource("older", name="Park Restroom", minutes_ago=10)))
        run(store.insert(make_resource("newer", name="Park Bathroom", minutes_ago=1)))
        assert [r.id for r in run(store.search_by_text("park"))] == ["newer", "older"]

    def test_blank_query_returns_nothing(self, store):
        run(store.insert(make_resource("loc-1")))
        assert run(store.search_by_text("   ")) == []

    def test_text_relevance_weights(self):
        resource = make_resource("x", name="Springfield Library", city="Springfield")
        assert text_relevance(resource, "springfield") == 13
        assert text_relevance(resource, "IL") == 2
        assert text_relevance(resource, "nothing") == 0


class TestListFiltered:

    def test_filters_are_conjunctive(self, store):
        run(store.insert(make_resource("both", accessible=True, unisex=True)))
        run(store.insert(make_resource("ada-only", accessible=True, unisex=False)))
        run(store.insert(make_resource("neither")))

        page, total = run(store.list_filtered(LocationFilters(accessible=True, unisex=True)))
        assert [r.id for r in page] == ["both"]
        assert total == 1

        page, total = run(store.list_filtered(LocationFilters(accessible=True)))
        assert {r.id for r in page} == {"both", "ada-only"}

    def test_false_filter_does_not_constrain(self, store):
        run(store.insert(make_resource("ada", accessible=True)))
        _, total = run(store.list_filtered(LocationFilters(accessible=False)))
        assert total == 1

    def test_newest_first_with_total(self, store):
        for i in range(5):
            run(store.insert(make_resource(f"loc-{i}", minutes_ago=i)))

        page, total = run(store.list_filtered(limit=2, skip=1))
        assert [r.id for r in page] == ["loc-1", "loc-2"]
        assert total == 5


class TestMutations:

    def test_update_sets_dotted_paths_and_bumps_version(self, store):
        run(store.insert(make_resource("loc-1")))
        updated = run(store.update("loc-1", {"name": "Renamed", "address.city": "Shelbyville"}))

        assert updated.name == "Renamed"
        assert updated.address.city == "Shelbyville"
        assert updated.meta.version_id == "2"
        assert run(store.find_by_id("loc-1")).address.city == "Shelbyville"

    def test_update_rejects_immutable_fields(self, store):
        run(store.insert(make_resource("loc-1")))
        with pytest.raises(ValidationError):
            run(store.update("loc-1", {"id": "loc-2"}))
        with pytest.raises(ValidationError):
            run(store.update("loc-1", {"resourceType": "Patient"}))

    def test_update_revalidates(self, store):
        run(store.insert(make_resource("loc-1")))
        with pytest.raises(ValidationError):
            run(store.update("loc-1", {"position": {"latitude": 500, "longitude": 0}}))
        assert run(store.find_by_id("loc-1")).meta.version_id == "1"

    def test_update_any_status(self, store):
        run(store.insert(make_resource("loc-1", status="suspended")))
        updated = run(store.update("loc-1", {"status": "active"}))
        assert updated.status == LocationStatus.ACTIVE

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            run(store.update("nope", {"name": "x"}))

    def test_votes_are_monotonic(self, store):
        """N votes raise the counter by N and the version by N."""
        run(store.insert(make_resource("loc-1", upvote=2, downvote=1)))
        for _ in range(3):
            run(store.increment_vote("loc-1", VoteKind.UPVOTE))
        resource = run(store.increment_vote("loc-1", VoteKind.DOWNVOTE))

        assert resource.rating.upvotes == 5
        assert resource.rating.downvotes == 2
        assert resource.meta.version_id == "5"

    def test_vote_creates_rating_block(self, store):
        resource = make_resource("loc-1")
        resource.rating = None
        run(store.insert(resource))

        voted = run(store.increment_vote("loc-1", VoteKind.DOWNVOTE))
        assert (voted.rating.upvotes, voted.rating.downvotes) == (0, 1)

    def test_vote_missing(self, store):
        with pytest.raises(NotFoundError):
            run(store.increment_vote("nope", VoteKind.UPVOTE))

    def test_concurrent_votes_all_count(self, store):
        run(store.insert(make_resource("loc-1")))

        async def vote_many():
            await asyncio.gather(*[
                store.increment_vote("loc-1", VoteKind.UPVOTE) for _ in range(20)
            ])

        run(vote_many())
        assert run(store.find_by_id("loc-1")).rating.upvotes == 20


class TestDeleteAndCount:

    def test_delete_by_source(self, store):
        run(store.insert(to_canonical(remote_record(1))))
        run(store.insert(to_canonical(remote_record(2))))
        run(store.insert(make_resource("mine")))

        assert run(store.count()) == 3
        assert run(store.count(source=ResourceSource.LEGACY_API.value)) == 2

        assert run(store.delete_by_source(ResourceSource.LEGACY_API.value)) == 2
        assert run(store.count()) == 1
        # identifiers are released with their documents
        assert not run(store.exists_by_external_id(IdentifierSystem.LEGACY_API.value, "1001"))

    def test_delete_unknown_source(self, store):
        assert run(store.delete_by_source("nothing")) == 0


class TestApplyPatch:

    def test_nested_list_index(self):
        document = {"identifier": [{"system": "a", "value": "1"}]}
        patched = apply_patch(document, {"identifier.0.value": "2"})
        assert patched["identifier"][0]["value"] == "2"
        assert document["identifier"][0]["value"] == "1"

    def test_creates_missing_objects(self):
        assert apply_patch({}, {"address.city": "X"}) == {"address": {"city": "X"}}

    def test_bad_index(self):
        with pytest.raises(ValidationError):
            apply_patch({"identifier": []}, {"identifier.3.value": "x"})

    @pytest.mark.parametrize("patch", [{}, None, ["name"]])
    def test_empty_or_malformed_patch(self, patch):
        with pytest.raises(ValidationError):
            apply_patch({"name": "x"}, patch)
