import asyncio
import json
import threading

from time import time

import pytest

from featurebook import (
    AbstractAsyncPayloadTransport,
    AbstractPayloadTransport,
    AsyncFeatureRepository,
    FeatureRepository,
    HttpTransport,
    InMemoryFeatureCache,
    PayloadSnapshot,
    TransportResponse,
    get_feature_repository,
)

PAYLOAD_V1 = {"features": {"feature": {"defaultValue": 1}}}
PAYLOAD_V2 = {"features": {"feature": {"defaultValue": 2}}}


class FakeTransport(AbstractPayloadTransport):
    def __init__(self, responses=None, release: threading.Event = None):
        self.responses = list(responses or [])
        self.release = release
        self.calls = []
        self.called = threading.Event()
        self._lock = threading.Lock()

    def fetch_payload(self, last_version=None):
        with self._lock:
            self.calls.append(last_version)
        self.called.set()
        if self.release is not None:
            self.release.wait(5)
        if not self.responses:
            return None
        res = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(res, Exception):
            raise res
        return res


class FakeAsyncTransport(AbstractAsyncPayloadTransport):
    def __init__(self, response):
        self.response = response
        self.calls = 0

    async def fetch_payload(self, last_version=None):
        self.calls += 1
        await asyncio.sleep(0.01)
        return self.response


def make_stale(repo):
    snapshot = repo.snapshot
    repo._snapshot = PayloadSnapshot(snapshot.payload, snapshot.version, time() - 3600)


def test_cold_cache_fetches_once():
    transport = FakeTransport([TransportResponse(PAYLOAD_V1, '"v1"')])
    repo = FeatureRepository(transport, cache_ttl=60)

    assert repo.get_payload() == PAYLOAD_V1
    assert repo.get_payload() == PAYLOAD_V1
    assert len(transport.calls) == 1
    assert repo.snapshot.version == '"v1"'


def test_concurrent_refreshes_share_one_fetch():
    release = threading.Event()
    transport = FakeTransport([TransportResponse(PAYLOAD_V1, '"v1"')], release=release)
    repo = FeatureRepository(transport, cache_ttl=60)

    results = []
    threads = [threading.Thread(target=lambda: results.append(repo.refresh())) for _ in range(5)]
    for t in threads:
        t.start()
    assert transport.called.wait(5)
    release.set()
    for t in threads:
        t.join(5)

    assert len(transport.calls) == 1
    assert results == [PAYLOAD_V1] * 5


@pytest.mark.asyncio
async def test_async_concurrent_refreshes_share_one_fetch():
    transport = FakeAsyncTransport(TransportResponse(PAYLOAD_V1, '"v1"'))
    repo = AsyncFeatureRepository(transport, cache_ttl=60)

    results = await asyncio.gather(*[repo.refresh(force=True) for _ in range(5)])

    assert transport.calls == 1
    assert results == [PAYLOAD_V1] * 5
    assert await repo.get_payload() == PAYLOAD_V1
    assert transport.calls == 1
    await repo.close()


@pytest.mark.asyncio
async def test_async_stale_payload_is_served_while_revalidating():
    transport = FakeAsyncTransport(TransportResponse(PAYLOAD_V2, '"v2"'))
    repo = AsyncFeatureRepository(transport, cache_ttl=60)
    repo.ingest(PAYLOAD_V1, '"v1"')
    make_stale(repo)

    assert await repo.get_payload() == PAYLOAD_V1
    await repo._background
    assert repo.snapshot.payload == PAYLOAD_V2
    assert transport.calls == 1
    await repo.close()


def test_stale_payload_is_served_while_revalidating():
    transport = FakeTransport([None])
    repo = FeatureRepository(transport, cache_ttl=60)
    repo.ingest(PAYLOAD_V1, '"v1"')
    make_stale(repo)

    # Stale reads never block
    assert repo.get_payload() == PAYLOAD_V1
    assert transport.called.wait(5)

    # A failed background fetch keeps the stale payload and isn't retried within the TTL window
    assert repo.get_payload() == PAYLOAD_V1
    assert repo.get_payload() == PAYLOAD_V1
    assert len(transport.calls) == 1


def test_background_refresh_applies_new_payload():
    transport = FakeTransport([TransportResponse(PAYLOAD_V2, '"v2"')])
    repo = FeatureRepository(transport, cache_ttl=60)
    repo.ingest(PAYLOAD_V1, '"v1"')
    make_stale(repo)

    updated = threading.Event()
    repo.subscribe(lambda payload: updated.set())

    assert repo.get_payload() == PAYLOAD_V1
    assert updated.wait(5)
    assert repo.get_payload() == PAYLOAD_V2
    assert transport.calls == ['"v1"']


def test_subscribers_notified_in_order_after_swap():
    transport = FakeTransport([TransportResponse(PAYLOAD_V1, '"v1"'), TransportResponse(PAYLOAD_V2, '"v2"')])
    repo = FeatureRepository(transport, cache_ttl=60)

    calls = []

    def first(payload):
        # The new payload is already visible to readers
        calls.append(("first", payload, repo.get_payload()))

    def broken(payload):
        raise RuntimeError("listener failed")

    def second(payload):
        calls.append(("second", payload, repo.get_payload()))

    repo.subscribe(first)
    repo.subscribe(broken)
    unsubscribe = repo.subscribe(second)

    repo.refresh()
    assert calls == [("first", PAYLOAD_V1, PAYLOAD_V1), ("second", PAYLOAD_V1, PAYLOAD_V1)]

    unsubscribe()
    calls.clear()
    repo.refresh(force=True)
    assert calls == [("first", PAYLOAD_V2, PAYLOAD_V2)]


def test_not_modified_keeps_payload_without_notifying():
    transport = FakeTransport([
        TransportResponse(PAYLOAD_V1, '"v1"'),
        TransportResponse(version='"v1"', not_modified=True),
    ])
    repo = FeatureRepository(transport, cache_ttl=60)
    assert repo.refresh() == PAYLOAD_V1

    notified = []
    repo.subscribe(notified.append)
    make_stale(repo)

    assert repo.refresh() == PAYLOAD_V1
    assert transport.calls == [None, '"v1"']
    assert notified == []
    assert not repo.snapshot.is_stale(60)


def test_failed_fetch_keeps_cached_payload():
    transport = FakeTransport([TransportResponse(PAYLOAD_V1), ConnectionError("down"), None])
    repo = FeatureRepository(transport, cache_ttl=60)

    assert repo.refresh() == PAYLOAD_V1
    assert repo.refresh(force=True) == PAYLOAD_V1
    assert repo.refresh(force=True) == PAYLOAD_V1


def test_failed_cold_fetch_returns_none():
    repo = FeatureRepository(FakeTransport([None]), cache_ttl=60)
    assert repo.get_payload() is None
    assert repo.snapshot is None


def test_unresolved_refresh_serves_last_known_payload():
    release = threading.Event()
    transport = FakeTransport([TransportResponse(PAYLOAD_V2)], release=release)
    repo = FeatureRepository(transport, cache_ttl=60)
    repo.ingest(PAYLOAD_V1)

    owner = threading.Thread(target=lambda: repo.refresh(force=True))
    owner.start()
    assert transport.called.wait(5)

    assert repo.refresh(force=True, timeout=0.05) == PAYLOAD_V1
    assert repo.get_payload() == PAYLOAD_V1

    release.set()
    owner.join(5)
    assert repo.get_payload() == PAYLOAD_V2
    assert len(transport.calls) == 1


def test_clear_cache_forces_synchronous_fetch():
    transport = FakeTransport([TransportResponse(PAYLOAD_V1, '"v1"'), TransportResponse(PAYLOAD_V2, '"v2"')])
    repo = FeatureRepository(transport, cache_ttl=60)
    assert repo.get_payload() == PAYLOAD_V1

    repo.clear_cache()
    assert repo.snapshot is None
    assert repo.get_payload() == PAYLOAD_V2
    # The version token is dropped together with the payload
    assert transport.calls == [None, None]


def test_persistent_cache_warm_up_and_write_through():
    cache = InMemoryFeatureCache()
    transport = FakeTransport([TransportResponse(PAYLOAD_V2)])
    cache.set(transport.cache_key, PAYLOAD_V1, 60)

    repo = FeatureRepository(transport, cache_ttl=60, persistent_cache=cache)
    assert repo.get_payload() == PAYLOAD_V1
    assert transport.calls == []

    repo.refresh(force=True)
    assert cache.get(transport.cache_key) == PAYLOAD_V2


def test_stream_events():
    transport = FakeTransport([TransportResponse(PAYLOAD_V2)])
    repo = FeatureRepository(transport, cache_ttl=60)

    repo.handle_stream_event({"type": "features", "data": json.dumps(PAYLOAD_V1)})
    assert repo.get_payload() == PAYLOAD_V1
    assert transport.calls == []

    repo.handle_stream_event({"type": "features-updated", "data": "{}"})
    assert repo.get_payload() == PAYLOAD_V2
    assert len(transport.calls) == 1

    repo.handle_stream_event({"type": "unknown", "data": "{}"})
    assert len(transport.calls) == 1


def test_streaming_client_lifecycle(mocker):
    repo = FeatureRepository(FakeTransport(), cache_ttl=60)
    client = mocker.Mock()

    repo.start_streaming(client)
    client.connect.assert_called_once_with()

    repo.stop_streaming()
    client.disconnect.assert_called_once_with()
    repo.stop_streaming()
    assert client.disconnect.call_count == 1


def test_shared_repository_per_cache_key():
    a = get_feature_repository(HttpTransport("https://cdn.example.com", "sdk-abc123"))
    b = get_feature_repository(HttpTransport("https://cdn.example.com/", "sdk-abc123"))
    c = get_feature_repository(HttpTransport("https://cdn.example.com", "sdk-other"))

    assert a is b
    assert a is not c
