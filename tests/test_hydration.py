"""
Tests for remote hydration.

Covers:
1. The enabled toggle (no network call while disabled)
2. Per-candidate dedup, transform and insert
3. Failure isolation: one bad candidate never aborts the batch
4. The httpx-backed remote client
"""

import asyncio
import json
import httpx
import pytest

from restrooms.core.config import HydrationConfig
from restrooms.core.errors import RemoteFetchError, RemoteTimeoutError
from restrooms.core.hydration import HydrationService
from restrooms.core.remote import RefugeApiClient
from restrooms.db.store import InMemoryLocationStore, StoreError
from restrooms.observability import get_metrics
from restrooms.schemas import (
    HydrationItemStatus,
    HydrationSkipped,
    HydrationSummary,
    IdentifierSystem,
    LocationStatus,
    ResourceSource,
    SkipReason,
)

from tests.helpers import FakeRemoteClient, make_resource, remote_record


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def store():
    return InMemoryLocationStore()


def make_service(store, client, enabled=True, per_page=20):
    return HydrationService(store, client, HydrationConfig(enabled=enabled, per_page=per_page))


class TestToggle:

    def test_disabled_makes_no_calls(self, store):
        """Every selector short-circuits while disabled."""
        client = FakeRemoteClient([remote_record(1)])
        service = make_service(store, client, enabled=False)

        outcomes = [
            run(service.hydrate_by_location(40.7, -74.0)),
            run(service.hydrate_by_search("library")),
            run(service.hydrate_with_filters({"accessible": True})),
            run(service.hydrate_by_date(1, 1, 2024)),
        ]

        assert client.calls == []
        for outcome in outcomes:
            assert isinstance(outcome, HydrationSkipped)
            assert outcome.reason == SkipReason.HYDRATION_DISABLED.value
        assert run(store.count()) == 0
        assert get_metrics().hydration_skipped_disabled == 4

    def test_set_enabled(self, store):
        client = FakeRemoteClient([remote_record(1)])
        service = make_service(store, client, enabled=False)

        assert service.set_enabled(True) is True
        assert service.enabled
        outcome = run(service.hydrate_by_search("broadway"))
        assert isinstance(outcome, HydrationSummary)
        assert len(client.calls) == 1

        service.set_enabled(False)
        assert isinstance(run(service.hydrate_by_search("broadway")), HydrationSkipped)
        assert len(client.calls) == 1

    def test_enabled_follows_config(self, store):
        assert make_service(store, FakeRemoteClient(), enabled=True).enabled
        assert not HydrationService(store, FakeRemoteClient()).enabled


class TestHydrateBatch:

    def test_saves_new_candidates(self, store):
        client = FakeRemoteClient([remote_record(i) for i in range(3)])
        summary = run(make_service(store, client).hydrate_by_location(40.7, -74.0))

        assert (summary.total, summary.saved, summary.skipped, summary.failed) == (3, 3, 0, 0)
        assert client.calls == [("location", 40.7, -74.0, 20)]
        assert run(store.count(source=ResourceSource.LEGACY_API.value)) == 3

        saved = run(store.find_by_id("legacy-1000"))
        assert saved.approval.from_hydration is True
        assert saved.external_id(IdentifierSystem.LEGACY_API) == "1000"
        assert summary.details[0].fhir_id == "legacy-1000"
        assert summary.details[0].legacy_id == "1000"

    def test_second_run_is_idempotent(self, store):
        """Re-hydrating the same records saves nothing new."""
        client = FakeRemoteClient([remote_record(i) for i in range(3)])
        service = make_service(store, client)

        run(service.hydrate_by_search("broadway"))
        second = run(service.hydrate_by_search("broadway"))

        assert (second.saved, second.skipped) == (0, 3)
        assert all(d.reason == SkipReason.ALREADY_EXISTS.value for d in second.details)
        assert run(store.count()) == 3

    def test_candidates_without_id_are_skipped(self, store):
        client = FakeRemoteClient([
            remote_record(1, id=None),
            remote_record(2, id=""),
            "not a record",
            remote_record(3),
        ])
        summary = run(make_service(store, client).hydrate_with_filters())

        assert (summary.saved, summary.skipped, summary.failed) == (1, 3, 0)
        reasons = [d.reason for d in summary.details if d.status == HydrationItemStatus.SKIPPED]
        assert reasons == [SkipReason.INVALID_DATA.value] * 3

    def test_duplicate_within_batch(self, store):
        client = FakeRemoteClient([remote_record(1), remote_record(1, name="Renamed")])
        summary = run(make_service(store, client).hydrate_by_search("x"))

        assert (summary.saved, summary.skipped) == (1, 1)
        assert run(store.find_by_id("legacy-1001")).name == "Remote Restroom 1"

    def test_hydrated_resources_are_active_and_approved(self, store):
        """Remote approval and status fields never override the hydration markers."""
        client = FakeRemoteClient([
            remote_record(7, approved=False, fromHydration=False, status="inactive"),
        ])
        summary = run(make_service(store, client).hydrate_by_search("x"))

        assert summary.saved == 1
        saved = run(store.find_by_id("legacy-1007"))
        assert saved is not None
        assert saved.status == LocationStatus.ACTIVE
        assert saved.approval.approved is True
        assert saved.approval.from_hydration is True
        assert saved.meta.source == ResourceSource.LEGACY_API.value

    def test_shared_edit_id_is_not_a_duplicate(self, store):
        """Revisions of one upstream restroom share edit_id but are distinct records."""
        client = FakeRemoteClient([remote_record(1, edit_id=1), remote_record(2, edit_id=1)])
        summary = run(make_service(store, client).hydrate_by_search("x"))

        assert (summary.saved, summary.skipped) == (2, 0)
        assert run(store.find_by_id("legacy-1002")).external_id(IdentifierSystem.EDIT_ID) == "1"

    def test_existing_local_resource_with_same_identifier(self, store):
        """A locally stored copy of a remote record blocks hydration of it."""
        local = make_resource("mine", id=1002)
        run(store.insert(local))

        client = FakeRemoteClient([remote_record(2)])
        summary = run(make_service(store, client).hydrate_by_search("x"))
        assert summary.skipped == 1
        assert summary.details[0].reason == SkipReason.ALREADY_EXISTS.value

    def test_store_failure_marks_item_failed(self, store):
        """One failing insert is reported and the batch continues."""
        class FlakyStore(InMemoryLocationStore):
            async def insert(self, resource):
                if resource.id == "legacy-1001":
                    raise StoreError("disk full")
                return await super().insert(resource)

        flaky = FlakyStore()
        client = FakeRemoteClient([remote_record(1), remote_record(2)])
        summary = run(make_service(flaky, client).hydrate_by_search("x"))

        assert (summary.saved, summary.failed) == (1, 1)
        failed = [d for d in summary.details if d.status == HydrationItemStatus.FAILED]
        assert failed[0].legacy_id == "1001"
        assert "disk full" in failed[0].reason

    def test_per_page_override(self, store):
        client = FakeRemoteClient([])
        service = make_service(store, client, per_page=7)

        run(service.hydrate_by_search("x"))
        run(service.hydrate_by_date(2, 3, 2024, per_page=50))
        assert client.calls == [("search", "x", 7), ("date", 2, 3, 2024, 50)]

    def test_remote_error_propagates(self, store):
        client = FakeRemoteClient(error=RemoteTimeoutError("slow"))
        service = make_service(store, client)

        with pytest.raises(RemoteTimeoutError):
            run(service.hydrate_by_location(40.7, -74.0))
        assert get_metrics().remote_fetch_errors == 1

    def test_metrics_recorded(self, store):
        client = FakeRemoteClient([remote_record(1), remote_record(1)])
        run(make_service(store, client).hydrate_by_search("x"))

        metrics = get_metrics()
        assert metrics.hydration_runs == 1
        assert metrics.candidates_saved == 1
        assert metrics.candidates_skipped == 1


class TestAdministration:

    def test_stats(self, store):
        run(store.insert(make_resource("mine")))
        client = FakeRemoteClient([remote_record(1), remote_record(2), remote_record(3)])
        service = make_service(store, client)
        run(service.hydrate_by_search("x"))

        stats = run(service.get_stats())
        assert (stats.total, stats.hydrated, stats.local) == (4, 3, 1)
        assert stats.hydration_percentage == 75.0

    def test_stats_empty_store(self, store):
        stats = run(make_service(store, FakeRemoteClient()).get_stats())
        assert stats.total == 0
        assert stats.hydration_percentage == 0.0

    def test_purge_hydrated(self, store):
        run(store.insert(make_resource("mine")))
        client = FakeRemoteClient([remote_record(1), remote_record(2)])
        service = make_service(store, client)
        run(service.hydrate_by_search("x"))

        assert run(service.purge_hydrated()) == 2
        assert run(store.count()) == 1
        assert run(store.find_by_id("mine")) is not None


class TestRefugeApiClient:
    """The httpx client, against a mock transport."""

    @staticmethod
    def client_for(handler):
        return RefugeApiClient(
            "https://remote.test/api/v1",
            timeout=2.0,
            transport=httpx.MockTransport(handler),
        )

    def test_fetch_by_location(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[remote_record(1)])

        async def go():
            client = self.client_for(handler)
            try:
                return await client.fetch_by_location(40.7, -74.0, per_page=5)
            finally:
                await client.aclose()

        records = run(go())
        assert records[0]["id"] == 1001
        assert seen[0].url.path == "/api/v1/restrooms/by_location"
        assert seen[0].url.params["lat"] == "40.7"
        assert seen[0].url.params["per_page"] == "5"

    def test_filters_send_only_true_flags(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async def go():
            client = self.client_for(handler)
            try:
                await client.fetch_with_filters({"accessible": True, "unisex": False})
            finally:
                await client.aclose()

        run(go())
        params = seen[0].url.params
        assert seen[0].url.path == "/api/v1/restrooms"
        assert params["ada"] == "true"
        assert "unisex" not in params

    def test_null_payload_is_empty(self):
        async def go():
            client = self.client_for(lambda request: httpx.Response(200, content=b"null"))
            try:
                return await client.fetch_by_search("x")
            finally:
                await client.aclose()

        assert run(go()) == []

    def test_non_list_payload_raises(self):
        async def go():
            client = self.client_for(lambda request: httpx.Response(200, json={"error": "nope"}))
            try:
                await client.fetch_by_search("x")
            finally:
                await client.aclose()

        with pytest.raises(RemoteFetchError, match="expected a list"):
            run(go())

    def test_http_error_status(self):
        async def go():
            client = self.client_for(lambda request: httpx.Response(500, text="boom"))
            try:
                await client.fetch_by_date(1, 2, 2024)
            finally:
                await client.aclose()

        with pytest.raises(RemoteFetchError) as exc_info:
            run(go())
        assert exc_info.value.details["status_code"] == 500
        assert not isinstance(exc_info.value, RemoteTimeoutError)

    def test_invalid_json(self):
        async def go():
            client = self.client_for(lambda request: httpx.Response(200, content=b"<html>"))
            try:
                await client.fetch_by_search("x")
            finally:
                await client.aclose()

        with pytest.raises(RemoteFetchError, match="invalid JSON"):
            run(go())

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async def go():
            client = self.client_for(handler)
            try:
                await client.fetch_by_location(0, 0)
            finally:
                await client.aclose()

        with pytest.raises(RemoteTimeoutError):
            run(go())

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async def go():
            client = self.client_for(handler)
            try:
                await client.fetch_by_location(0, 0)
            finally:
                await client.aclose()

        with pytest.raises(RemoteFetchError, match="unreachable"):
            run(go())

    def test_service_with_real_client(self, store):
        """End to end through HydrationService and the httpx client."""
        payload = json.dumps([remote_record(1), remote_record(2)]).encode()

        async def go():
            client = self.client_for(lambda request: httpx.Response(200, content=payload))
            try:
                service = make_service(store, client)
                return await service.hydrate_by_location(40.7, -74.0)
            finally:
                await client.aclose()

        summary = run(go())
        assert summary.saved == 2
        assert run(store.count()) == 2
