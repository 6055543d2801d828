"""
Definitions cache.

A repository owns the latest payload for one transport. Readers always
get a complete payload: every update builds a new ``PayloadSnapshot`` and
swaps a single reference under a lock, and subscribers are notified only
after the swap. Concurrent refreshes share one in-flight fetch.
"""

import asyncio
import json
import logging
import threading

from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from time import time
from typing import Callable, Dict, List, Optional

from .cache_interfaces import AbstractFeatureCache
from .transport import AbstractAsyncPayloadTransport, AbstractPayloadTransport, TransportResponse

logger = logging.getLogger("featurebook.repository")

PayloadListener = Callable[[Dict], None]


@dataclass(frozen=True)
class PayloadSnapshot:
    payload: Dict
    version: Optional[str]
    fetched_at: float

    def is_stale(self, ttl: float) -> bool:
        return time() - self.fetched_at >= ttl


class _BaseRepository(object):
    def __init__(self, transport, cache_ttl: int = 60, persistent_cache: AbstractFeatureCache = None) -> None:
        self.transport = transport
        self.cache_ttl = cache_ttl
        self.persistent_cache = persistent_cache

        self._lock = threading.Lock()
        self._snapshot: Optional[PayloadSnapshot] = None
        self._last_revalidation = 0.0
        self._listeners: List[PayloadListener] = []

    @property
    def cache_key(self) -> str:
        return self.transport.cache_key

    @property
    def snapshot(self) -> Optional[PayloadSnapshot]:
        return self._snapshot

    def subscribe(self, listener: PayloadListener) -> Callable[[], None]:
        """Registers ``listener`` for payload updates and returns a function that removes it."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, payload: Dict) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.warning("Error in payload listener: %s", e)

    def ingest(self, payload: Dict, version: Optional[str] = None) -> Dict:
        """Applies a new payload (fetched or pushed) and fans it out to subscribers."""
        snapshot = PayloadSnapshot(payload=payload, version=version, fetched_at=time())
        with self._lock:
            self._snapshot = snapshot

        if self.persistent_cache is not None:
            try:
                self.persistent_cache.set(self.cache_key, payload, self.cache_ttl)
            except Exception as e:
                logger.warning("Failed to write payload to persistent cache: %s", e)

        self._notify(payload)
        return payload

    def _touch(self, snapshot: PayloadSnapshot) -> Dict:
        with self._lock:
            self._snapshot = PayloadSnapshot(snapshot.payload, snapshot.version, time())
        return snapshot.payload

    def _apply(self, response: Optional[TransportResponse]) -> Optional[Dict]:
        current = self._snapshot
        if response is None:
            logger.debug("Fetch failed, keeping the cached payload for %s", self.cache_key)
            return current.payload if current else None
        if response.not_modified:
            if current is None:
                return None
            logger.debug("Payload not modified for %s", self.cache_key)
            return self._touch(current)
        if response.payload is None:
            return current.payload if current else None
        return self.ingest(response.payload, response.version)

    def _warm_up(self) -> Optional[PayloadSnapshot]:
        if self.persistent_cache is None:
            return None
        try:
            cached = self.persistent_cache.get(self.cache_key)
        except Exception as e:
            logger.warning("Failed to read persistent cache: %s", e)
            return None
        if not cached:
            return None
        with self._lock:
            if self._snapshot is None:
                self._snapshot = PayloadSnapshot(payload=cached, version=None, fetched_at=time())
            return self._snapshot

    def _should_revalidate(self) -> bool:
        now = time()
        if now - self._last_revalidation < self.cache_ttl:
            return False
        self._last_revalidation = now
        return True

    def clear_cache(self) -> None:
        with self._lock:
            self._snapshot = None
            self._last_revalidation = 0.0
        if self.persistent_cache is not None:
            self.persistent_cache.clear()


class FeatureRepository(_BaseRepository):
    """Thread-safe repository for a blocking transport."""

    def __init__(
        self, transport: AbstractPayloadTransport, cache_ttl: int = 60, persistent_cache: AbstractFeatureCache = None
    ) -> None:
        super().__init__(transport, cache_ttl, persistent_cache)
        self._inflight: Optional[Future] = None
        self._streaming = None

    def get_payload(self) -> Optional[Dict]:
        """
        Returns the cached payload, fetching synchronously only when the
        cache is empty. A stale payload is returned as-is while a
        background refresh runs (at most once per TTL window).
        """
        snapshot = self._snapshot or self._warm_up()
        if snapshot is None:
            return self.refresh()
        if snapshot.is_stale(self.cache_ttl):
            self._revalidate_in_background()
        return snapshot.payload

    def refresh(self, force: bool = False, timeout: float = None) -> Optional[Dict]:
        """
        Fetches through the transport unless the cache is fresh and
        ``force`` is False. Callers arriving while a fetch is in flight
        wait for that fetch instead of starting their own; if it doesn't
        finish within ``timeout`` they get the last known payload.
        """
        with self._lock:
            snapshot = self._snapshot
            if not force and snapshot is not None and not snapshot.is_stale(self.cache_ttl):
                return snapshot.payload
            owner = self._inflight is None
            if owner:
                self._inflight = Future()
            inflight = self._inflight

        if not owner:
            try:
                return inflight.result(timeout)
            except FutureTimeoutError:
                logger.warning("Refresh still in flight for %s, serving cached payload", self.cache_key)
                return snapshot.payload if snapshot else None

        payload = snapshot.payload if snapshot else None
        try:
            payload = self._apply(self._fetch())
        finally:
            with self._lock:
                self._inflight = None
            inflight.set_result(payload)
        return payload

    def _fetch(self) -> Optional[TransportResponse]:
        last = self._snapshot
        try:
            return self.transport.fetch_payload(last.version if last else None)
        except ValueError:
            raise
        except Exception as e:
            logger.warning("Transport failed for %s: %s", self.cache_key, e)
            return None

    def _revalidate_in_background(self) -> None:
        with self._lock:
            if self._inflight is not None or not self._should_revalidate():
                return
        logger.debug("Payload for %s is stale, refreshing in the background", self.cache_key)
        threading.Thread(target=self._refresh_quietly, daemon=True).start()

    def _refresh_quietly(self) -> None:
        try:
            self.refresh(force=True)
        except Exception as e:
            logger.warning("Background refresh failed for %s: %s", self.cache_key, e)

    def handle_stream_event(self, event: Dict[str, str]) -> None:
        """Entry point for pushed updates (see ``transport.SSEClient``)."""
        if event.get("type") == "features-updated":
            self.refresh(force=True)
        elif event.get("type") == "features":
            payload = self.transport.decode(json.loads(event["data"]))
            if payload is not None:
                self.ingest(payload)

    def start_streaming(self, client) -> None:
        """Connects a streaming client whose ``on_event`` feeds this repository."""
        self._streaming = client
        client.connect()

    def stop_streaming(self) -> None:
        if self._streaming is not None:
            self._streaming.disconnect()
            self._streaming = None


class AsyncFeatureRepository(_BaseRepository):
    """Repository for cooperative (asyncio) hosts; all methods must run on one event loop."""

    def __init__(
        self,
        transport: AbstractAsyncPayloadTransport,
        cache_ttl: int = 60,
        persistent_cache: AbstractFeatureCache = None,
    ) -> None:
        super().__init__(transport, cache_ttl, persistent_cache)
        self._inflight: Optional[asyncio.Future] = None
        self._background: Optional[asyncio.Future] = None

    async def get_payload(self) -> Optional[Dict]:
        snapshot = self._snapshot or self._warm_up()
        if snapshot is None:
            return await self.refresh()
        if snapshot.is_stale(self.cache_ttl) and self._inflight_done() and self._should_revalidate():
            logger.debug("Payload for %s is stale, refreshing in the background", self.cache_key)
            self._background = asyncio.ensure_future(self.refresh(force=True))
        return snapshot.payload

    def _inflight_done(self) -> bool:
        return self._inflight is None or self._inflight.done()

    async def refresh(self, force: bool = False) -> Optional[Dict]:
        snapshot = self._snapshot
        if not force and snapshot is not None and not snapshot.is_stale(self.cache_ttl):
            return snapshot.payload
        if self._inflight_done():
            self._inflight = asyncio.ensure_future(self._fetch_and_apply())
        # Shielded so one cancelled caller doesn't cancel the shared fetch
        return await asyncio.shield(self._inflight)

    async def _fetch_and_apply(self) -> Optional[Dict]:
        last = self._snapshot
        try:
            response = await self.transport.fetch_payload(last.version if last else None)
        except ValueError:
            raise
        except Exception as e:
            logger.warning("Transport failed for %s: %s", self.cache_key, e)
            response = None
        return self._apply(response)

    async def close(self) -> None:
        for task in (self._background, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._background = None
        self._inflight = None


_repositories: Dict[str, FeatureRepository] = {}
_repositories_lock = threading.Lock()


def get_feature_repository(
    transport: AbstractPayloadTransport, cache_ttl: int = 60, persistent_cache: AbstractFeatureCache = None
) -> FeatureRepository:
    """Returns the process-wide repository for ``transport.cache_key``, creating it on first use."""
    with _repositories_lock:
        repo = _repositories.get(transport.cache_key)
        if repo is None:
            repo = FeatureRepository(transport, cache_ttl, persistent_cache)
            _repositories[transport.cache_key] = repo
        return repo


def clear_cache() -> None:
    with _repositories_lock:
        repos = list(_repositories.values())
        _repositories.clear()
    for repo in repos:
        repo.stop_streaming()
        repo.clear_cache()
