"""
Transports that fetch the remote payload, plus the SSE client that
receives pushed updates.

The repository only depends on ``AbstractPayloadTransport`` /
``AbstractAsyncPayloadTransport``; the HTTP implementations here talk to
a GrowthBook-compatible ``/api/features/<client_key>`` endpoint.
"""

import asyncio
import json
import logging
import threading

from abc import ABC, abstractmethod
from base64 import b64decode
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import aiohttp
from aiohttp.client_exceptions import ClientConnectorError, ClientPayloadError, ClientResponseError
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from urllib3 import PoolManager

logger = logging.getLogger("featurebook.transport")

DEFAULT_API_HOST = "https://cdn.growthbook.io"


def decrypt(encrypted_str: str, key_str: str) -> str:
    iv_str, ct_str = encrypted_str.split(".", 2)

    cipher = Cipher(algorithms.AES128(b64decode(key_str)), modes.CBC(b64decode(iv_str)))
    decryptor = cipher.decryptor()
    decrypted = decryptor.update(b64decode(ct_str)) + decryptor.finalize()

    unpadder = padding.PKCS7(128).unpadder()
    return (unpadder.update(decrypted) + unpadder.finalize()).decode("utf-8")


def decrypt_payload(data: Dict, decryption_key: Optional[str]) -> Optional[Dict]:
    """
    Replaces ``encryptedFeatures`` / ``encryptedSavedGroups`` with their
    decrypted values. Raises ValueError when the payload is encrypted but
    no key was configured; returns None when decryption fails.
    """
    for encrypted_field, plain_field in (
        ("encryptedFeatures", "features"),
        ("encryptedSavedGroups", "savedGroups"),
    ):
        if encrypted_field not in data:
            continue
        if not decryption_key:
            raise ValueError("Must specify decryption_key")
        try:
            data[plain_field] = json.loads(decrypt(data[encrypted_field], decryption_key))
        except Exception:
            logger.warning("Failed to decrypt %s from API response", plain_field)
            return None
        del data[encrypted_field]

    if "features" not in data:
        logger.warning("API response missing features")
    return data


@dataclass
class TransportResponse:
    payload: Optional[Dict] = None
    # Opaque version token (the HTTP ETag) sent back on the next fetch
    version: Optional[str] = None
    not_modified: bool = False


class AbstractPayloadTransport(ABC):
    @abstractmethod
    def fetch_payload(self, last_version: Optional[str] = None) -> Optional[TransportResponse]:
        """Returns the latest payload, a not-modified response, or None on failure."""
        pass

    @property
    def cache_key(self) -> str:
        return f"{type(self).__name__}::{id(self)}"

    def decode(self, data: Dict) -> Optional[Dict]:
        return data


class AbstractAsyncPayloadTransport(ABC):
    @abstractmethod
    async def fetch_payload(self, last_version: Optional[str] = None) -> Optional[TransportResponse]:
        pass

    @property
    def cache_key(self) -> str:
        return f"{type(self).__name__}::{id(self)}"

    def decode(self, data: Dict) -> Optional[Dict]:
        return data


class _HttpSettings(object):
    def __init__(self, api_host: str, client_key: str, decryption_key: Optional[str]) -> None:
        if not client_key:
            raise ValueError("Must specify `client_key` to fetch features")
        self.api_host = (api_host or DEFAULT_API_HOST).rstrip("/")
        self.client_key = client_key
        self.decryption_key = decryption_key

    @property
    def cache_key(self) -> str:
        return self.api_host + "::" + self.client_key

    @property
    def features_url(self) -> str:
        return self.api_host + "/api/features/" + self.client_key

    def decode(self, data: Dict) -> Optional[Dict]:
        return decrypt_payload(data, self.decryption_key)

    @staticmethod
    def request_headers(last_version: Optional[str]) -> Dict[str, str]:
        return {"If-None-Match": last_version} if last_version else {}


class HttpTransport(_HttpSettings, AbstractPayloadTransport):
    def __init__(
        self, api_host: str = DEFAULT_API_HOST, client_key: str = "", decryption_key: str = None, timeout: float = 10
    ) -> None:
        super().__init__(api_host, client_key, decryption_key)
        self.timeout = timeout
        self.http: Optional[PoolManager] = None

    # Separate method for easy mocking
    def _get(self, url: str, headers: Dict[str, str]):
        self.http = self.http or PoolManager()
        return self.http.request("GET", url, headers=headers, timeout=self.timeout)

    def fetch_payload(self, last_version: Optional[str] = None) -> Optional[TransportResponse]:
        try:
            r = self._get(self.features_url, self.request_headers(last_version))
        except Exception as e:
            logger.warning("Failed to fetch features: %s", e)
            return None

        if r.status == 304:
            return TransportResponse(version=last_version, not_modified=True)
        if r.status >= 400:
            logger.warning("Failed to fetch features, received status code %d", r.status)
            return None

        try:
            decoded = json.loads(r.data.decode("utf-8"))
        except ValueError:
            logger.warning("Failed to decode feature JSON from API")
            return None

        payload = self.decode(decoded)
        if payload is None:
            return None
        return TransportResponse(payload=payload, version=(r.headers or {}).get("ETag"))


class AsyncHttpTransport(_HttpSettings, AbstractAsyncPayloadTransport):
    def __init__(self, api_host: str = DEFAULT_API_HOST, client_key: str = "", decryption_key: str = None) -> None:
        super().__init__(api_host, client_key, decryption_key)

    async def _get(self, url: str, headers: Dict[str, str]):
        """Returns (status, decoded JSON or None, ETag)."""
        async with aiohttp.ClientSession() as session:
            async with session.get(url, headers=headers) as response:
                if response.status == 304 or response.status >= 400:
                    return response.status, None, None
                return response.status, await response.json(), response.headers.get("ETag")

    async def fetch_payload(self, last_version: Optional[str] = None) -> Optional[TransportResponse]:
        try:
            status, decoded, etag = await self._get(self.features_url, self.request_headers(last_version))
        except aiohttp.ClientError as e:
            logger.warning("HTTP request failed: %s", e)
            return None
        except ValueError as e:
            logger.warning("Failed to decode feature JSON from API: %s", e)
            return None

        if status == 304:
            return TransportResponse(version=last_version, not_modified=True)
        if status >= 400 or decoded is None:
            logger.warning("Failed to fetch features, received status code %d", status)
            return None

        payload = self.decode(decoded)
        if payload is None:
            return None
        return TransportResponse(payload=payload, version=etag)


class SSEClient:
    """
    Server-sent events listener running its own event loop on a daemon
    thread. ``on_event`` receives ``{"type": ..., "data": ...}`` dicts.
    """

    def __init__(
        self,
        api_host: str,
        client_key: str,
        on_event: Callable[[Dict[str, str]], None],
        reconnect_delay: float = 5,
        headers: Dict[str, str] = None,
    ) -> None:
        self.url = (api_host or DEFAULT_API_HOST).rstrip("/") + "/sub/" + client_key
        self.on_event = on_event
        self.reconnect_delay = reconnect_delay
        self.headers = {
            "Accept": "application/json; q=0.5, text/event-stream",
            "Cache-Control": "no-cache",
            **(headers or {}),
        }

        self.is_running = False
        self._session: Optional[aiohttp.ClientSession] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def connect(self) -> None:
        if self.is_running:
            logger.debug("Streaming session is already running")
            return
        self.is_running = True
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def disconnect(self) -> None:
        self.is_running = False
        if self._loop and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop(), self._loop)
            try:
                future.result(timeout=5)
            except Exception as e:
                logger.warning("Streaming disconnect error: %s", e)
        if self._thread:
            self._thread.join(timeout=5)
        logger.debug("Streaming session disconnected")

    def _run(self) -> None:
        self._loop = asyncio.new_event_loop()
        try:
            self._loop.run_until_complete(self._listen())
        except asyncio.CancelledError:
            pass
        finally:
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()

    async def _listen(self) -> None:
        while self.is_running:
            try:
                async with aiohttp.ClientSession(headers=self.headers) as session:
                    self._session = session
                    async with session.get(self.url) as response:
                        response.raise_for_status()
                        await self._read_events(response)
            except ClientResponseError as e:
                logger.warning("Streaming error, closing connection: %s %s", e.status, e.message)
                self.is_running = False
            except (ClientConnectorError, ClientPayloadError, asyncio.TimeoutError) as e:
                logger.warning("Streaming error: %s", e)
                if self.is_running:
                    logger.debug("Reconnecting streaming in %s seconds", self.reconnect_delay)
                    await asyncio.sleep(self.reconnect_delay)
            finally:
                self._session = None

    async def _read_events(self, response) -> None:
        event: Dict[str, str] = {}
        async for raw in response.content:
            line = raw.decode("utf-8").strip()
            if line.startswith("event:"):
                event["type"] = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data = line[len("data:"):].strip()
                event["data"] = event["data"] + "\n" + data if "data" in event else data
            elif not line:
                self._dispatch(event)
                event = {}
        self._dispatch(event)

    def _dispatch(self, event: Dict[str, str]) -> None:
        if "type" not in event or "data" not in event:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning("Error handling streaming event %s: %s", event["type"], e)

    async def _stop(self) -> None:
        if self._session:
            await self._session.close()
        current = asyncio.current_task()
        for task in asyncio.all_tasks(self._loop):
            if task is not current and not task.done():
                task.cancel()
