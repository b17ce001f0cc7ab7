"""
Tests for the client entitlement cache, session lifecycle, HTTP client and flag stores
"""
import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from client.entitlement_cache import EntitlementCache, EntitlementSession
from client.entitlement_client import EntitlementClient
from client.flag_store import InMemoryFlagStore, JsonFileFlagStore
from models.entitlement import EntitlementSnapshot
from services.errors import AuthenticationError, ProviderUnavailable

NOW = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


class ScriptedFetcher:
    """Fetch function whose calls complete only when the test releases them."""

    def __init__(self):
        self.pending: list = []

    async def __call__(self) -> EntitlementSnapshot:
        future = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        return await future


class CountingClient:
    def __init__(self, snapshot: EntitlementSnapshot):
        self.snapshot = snapshot
        self.calls = 0

    async def fetch(self, token: str) -> EntitlementSnapshot:
        self.calls += 1
        return self.snapshot


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_slow_earlier_fetch_does_not_overwrite_newer_result():
    fetcher = ScriptedFetcher()
    cache = EntitlementCache(fetcher)

    slow = asyncio.create_task(cache.refresh())
    await settle()
    fast = asyncio.create_task(cache.refresh())
    await settle()
    assert cache.in_flight == 2

    fetcher.pending[1].set_result(EntitlementSnapshot(subscribed=True, status="active"))
    await fast
    fetcher.pending[0].set_result(EntitlementSnapshot(subscribed=False))
    result = await slow

    assert cache.snapshot.subscribed is True
    assert result.subscribed is True


@pytest.mark.asyncio
async def test_in_order_completions_apply_latest():
    fetcher = ScriptedFetcher()
    cache = EntitlementCache(fetcher)

    first = asyncio.create_task(cache.refresh())
    await settle()
    second = asyncio.create_task(cache.refresh())
    await settle()

    fetcher.pending[0].set_result(EntitlementSnapshot(subscribed=False, in_trial=True))
    await first
    assert cache.snapshot.in_trial is True

    fetcher.pending[1].set_result(EntitlementSnapshot(subscribed=True))
    await second
    assert cache.snapshot.subscribed is True


@pytest.mark.asyncio
async def test_failed_fetch_is_applied_as_denial():
    async def failing():
        raise ProviderUnavailable("timed out")

    cache = EntitlementCache(failing)
    cache.snapshot = EntitlementSnapshot(subscribed=True)

    snapshot = await cache.refresh()

    assert snapshot.subscribed is False
    assert snapshot.in_trial is False


@pytest.mark.asyncio
async def test_invalidate_discards_in_flight_responses():
    fetcher = ScriptedFetcher()
    cache = EntitlementCache(fetcher)

    pending = asyncio.create_task(cache.refresh())
    await settle()
    cache.invalidate()
    fetcher.pending[0].set_result(EntitlementSnapshot(subscribed=True))
    await pending

    assert cache.snapshot is None


@pytest.mark.asyncio
async def test_session_refreshes_periodically_until_closed():
    client = CountingClient(EntitlementSnapshot(subscribed=True))
    session = EntitlementSession(client, "token", refresh_interval=0.01)

    await session.start()
    assert client.calls == 1
    assert session.active is True

    await asyncio.sleep(0.05)
    assert client.calls >= 2

    await session.close()
    calls_at_close = client.calls
    await asyncio.sleep(0.05)

    assert session.active is False
    assert client.calls == calls_at_close
    assert session.snapshot.subscribed is False


@pytest.mark.asyncio
async def test_gated_screen_triggers_refresh():
    client = CountingClient(EntitlementSnapshot(subscribed=False, in_trial=True, trial_end=NOW + timedelta(days=2)))
    async with EntitlementSession(client, "token", refresh_interval=60, clock=lambda: NOW) as session:
        state = await session.enter_gated_screen()
        assert client.calls == 2
        assert state.warning_level == "warning"
        assert session.can_access_feature("create_job") is True
        assert session.status_message() == "2 days left in trial"
    assert session.active is False


@pytest.mark.asyncio
async def test_session_marks_warning_once_per_day():
    client = CountingClient(EntitlementSnapshot(subscribed=False, in_trial=True, trial_end=NOW - timedelta(hours=1)))
    store = InMemoryFlagStore()
    clock = {"now": NOW}
    session = EntitlementSession(client, "token", flag_store=store, refresh_interval=60, clock=lambda: clock["now"])
    await session.start()

    assert session.trial_state().should_show_warning is True
    assert session.can_access_feature("create_job") is False
    assert session.can_access_feature("view_jobs") is True

    session.mark_warning_shown()
    assert session.trial_state().should_show_warning is False

    clock["now"] = NOW + timedelta(days=1)
    assert session.trial_state().should_show_warning is True
    await session.close()


def test_json_flag_store_persists_across_instances(tmp_path):
    path = tmp_path / "profile" / "flags.json"
    JsonFileFlagStore(path).set("trial-warning-shown", "2026-05-04")

    assert JsonFileFlagStore(path).get("trial-warning-shown") == "2026-05-04"
    assert JsonFileFlagStore(path).get("missing") is None


def test_json_flag_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "flags.json"
    path.write_text("{not json")

    store = JsonFileFlagStore(path)
    assert store.get("trial-warning-shown") is None
    store.set("trial-warning-shown", "2026-05-04")
    assert store.get("trial-warning-shown") == "2026-05-04"


def _client_for(handler) -> EntitlementClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EntitlementClient(base_url="http://api.test", http_client=http_client)


@pytest.mark.asyncio
async def test_client_parses_snapshot_and_sends_bearer():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        return httpx.Response(200, json={
            "subscribed": False,
            "product_id": None,
            "subscription_end": "2026-05-10T12:00:00+00:00",
            "in_trial": True,
            "customer_id": None,
            "subscription_status": "inactive",
        })

    snapshot = await _client_for(handler).fetch("tok_123")

    assert seen == {"auth": "Bearer tok_123", "path": "/api/entitlement"}
    assert snapshot.in_trial is True
    assert snapshot.trial_end == datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_client_maps_401_to_authentication_error():
    client = _client_for(lambda request: httpx.Response(401, json={"detail": "Invalid or expired token"}))

    with pytest.raises(AuthenticationError):
        await client.fetch("expired")


@pytest.mark.asyncio
async def test_client_maps_server_errors_to_provider_unavailable():
    client = _client_for(lambda request: httpx.Response(500, json={"ok": False}))

    with pytest.raises(ProviderUnavailable):
        await client.fetch("tok")


@pytest.mark.asyncio
async def test_client_transport_error_becomes_denial_in_cache():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    client = _client_for(handler)
    cache = EntitlementCache(lambda: client.fetch("tok"))

    snapshot = await cache.refresh()
    assert snapshot.subscribed is False


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>gateway</html>"),
    httpx.Response(200, json={"subscribed": True, "subscription_end": "not-a-date"}),
    httpx.Response(200, json=["unexpected"]),
])
async def test_malformed_body_replaces_granting_snapshot_with_denial(response):
    bodies = iter([
        httpx.Response(200, json={"subscribed": True, "in_trial": False, "subscription_status": "active"}),
        response,
    ])
    client = _client_for(lambda request: next(bodies))
    cache = EntitlementCache(lambda: client.fetch("tok"))

    assert (await cache.refresh()).subscribed is True
    snapshot = await cache.refresh()

    assert snapshot.subscribed is False
    assert snapshot.in_trial is False
    assert cache.in_flight == 0
