import json

import pytest

from featurebook.transport import (
    AsyncHttpTransport,
    HttpTransport,
    SSEClient,
    decrypt,
    decrypt_payload,
)

ENCRYPTED_FEATURES = "m5ylFM6ndyOJA2OPadubkw==.Uu7ViqgKEt/dWvCyhI46q088PkAEJbnXKf3KPZjf9IEQQ+A8fojNoxw4wIbPX3aj"
DECRYPTION_KEY = "Zvwv/+uhpFDznZ6SX28Yjg=="


def test_decrypt():
    assert json.loads(decrypt(ENCRYPTED_FEATURES, DECRYPTION_KEY)) == {"feature": {"defaultValue": True}}


def test_decrypt_payload():
    data = {"features": {}, "encryptedFeatures": ENCRYPTED_FEATURES}
    assert decrypt_payload(data, DECRYPTION_KEY) == {"features": {"feature": {"defaultValue": True}}}


def test_decrypt_payload_errors():
    with pytest.raises(ValueError):
        decrypt_payload({"encryptedFeatures": ENCRYPTED_FEATURES}, None)

    # Wrong key
    assert decrypt_payload({"encryptedFeatures": ENCRYPTED_FEATURES}, "dGhpc2lzYXdyb25na2V5IQ==") is None

    plain = {"features": {"a": {"defaultValue": 1}}}
    assert decrypt_payload(plain, None) == plain


def test_requires_client_key():
    with pytest.raises(ValueError):
        HttpTransport("https://cdn.example.com", "")


def test_cache_key_and_url():
    transport = HttpTransport("https://cdn.example.com/", "sdk-abc123")
    assert transport.cache_key == "https://cdn.example.com::sdk-abc123"
    assert transport.features_url == "https://cdn.example.com/api/features/sdk-abc123"


def test_fetch_payload(mocker, mock_http_resp):
    transport = HttpTransport("https://cdn.example.com", "sdk-abc123")
    m = mocker.patch.object(transport, "_get")
    payload = {"features": {"feature": {"defaultValue": 5}}}
    m.return_value = mock_http_resp(200, json.dumps(payload), {"ETag": '"v1"'})

    res = transport.fetch_payload()
    m.assert_called_once_with("https://cdn.example.com/api/features/sdk-abc123", {})
    assert res.payload == payload
    assert res.version == '"v1"'
    assert res.not_modified is False


def test_fetch_payload_not_modified(mocker, mock_http_resp):
    transport = HttpTransport("https://cdn.example.com", "sdk-abc123")
    m = mocker.patch.object(transport, "_get")
    m.return_value = mock_http_resp(304, "")

    res = transport.fetch_payload('"v1"')
    m.assert_called_once_with("https://cdn.example.com/api/features/sdk-abc123", {"If-None-Match": '"v1"'})
    assert res.not_modified is True
    assert res.version == '"v1"'
    assert res.payload is None


def test_fetch_payload_errors(mocker, mock_http_resp):
    transport = HttpTransport("https://cdn.example.com", "sdk-abc123")
    m = mocker.patch.object(transport, "_get")

    m.return_value = mock_http_resp(500, "Server Error")
    assert transport.fetch_payload() is None

    m.return_value = mock_http_resp(200, "{not json")
    assert transport.fetch_payload() is None

    m.side_effect = ConnectionError("boom")
    assert transport.fetch_payload() is None


def test_fetch_encrypted_payload(mocker, mock_http_resp):
    transport = HttpTransport("https://cdn.example.com", "sdk-abc123", DECRYPTION_KEY)
    m = mocker.patch.object(transport, "_get")
    m.return_value = mock_http_resp(200, json.dumps({"features": {}, "encryptedFeatures": ENCRYPTED_FEATURES}))

    assert transport.fetch_payload().payload == {"features": {"feature": {"defaultValue": True}}}

    missing_key = HttpTransport("https://cdn.example.com", "sdk-abc123")
    mocker.patch.object(missing_key, "_get", return_value=m.return_value)
    with pytest.raises(ValueError):
        missing_key.fetch_payload()


@pytest.mark.asyncio
async def test_async_fetch_payload(mocker):
    transport = AsyncHttpTransport("https://cdn.example.com", "sdk-abc123")
    payload = {"features": {"feature": {"defaultValue": 5}}}
    m = mocker.patch.object(transport, "_get", new=mocker.AsyncMock(return_value=(200, payload, '"v2"')))

    res = await transport.fetch_payload('"v1"')
    m.assert_awaited_once_with("https://cdn.example.com/api/features/sdk-abc123", {"If-None-Match": '"v1"'})
    assert res.payload == payload
    assert res.version == '"v2"'


@pytest.mark.asyncio
async def test_async_fetch_payload_errors(mocker):
    transport = AsyncHttpTransport("https://cdn.example.com", "sdk-abc123")

    mocker.patch.object(transport, "_get", new=mocker.AsyncMock(return_value=(304, None, None)))
    assert (await transport.fetch_payload('"v1"')).not_modified is True

    mocker.patch.object(transport, "_get", new=mocker.AsyncMock(return_value=(404, None, None)))
    assert await transport.fetch_payload() is None


class FakeStreamResponse:
    def __init__(self, lines):
        self.content = self._iterate(lines)

    @staticmethod
    async def _iterate(lines):
        for line in lines:
            yield line.encode("utf-8")


@pytest.mark.asyncio
async def test_sse_event_parsing():
    events = []
    client = SSEClient("https://cdn.example.com", "sdk-abc123", on_event=events.append)
    assert client.url == "https://cdn.example.com/sub/sdk-abc123"

    response = FakeStreamResponse([
        "event: features\n",
        'data: {"features": {}}\n',
        "\n",
        ": keep-alive comment\n",
        "\n",
        "event: features-updated\n",
        "data: line one\n",
        "data: line two\n",
    ])
    await client._read_events(response)

    assert events == [
        {"type": "features", "data": '{"features": {}}'},
        {"type": "features-updated", "data": "line one\nline two"},
    ]


def test_sse_dispatch_swallows_handler_errors():
    def handler(event):
        raise RuntimeError("handler failed")

    client = SSEClient("", "sdk-abc123", on_event=handler)
    assert client.url == "https://cdn.growthbook.io/sub/sdk-abc123"
    client._dispatch({"type": "features", "data": "{}"})
    # Incomplete events are dropped silently
    client._dispatch({"type": "features"})
