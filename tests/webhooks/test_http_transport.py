import httpx
import pytest

from application.ports.webhook_transport import WebhookTransport, WebhookTransportError
from core.settings import WebhookSettings
from infrastructure.external.webhooks.http_transport import HttpxWebhookTransport


def _transport(handler, **overrides) -> HttpxWebhookTransport:
    settings = WebhookSettings(connect_retry_backoff=0, **overrides)
    return HttpxWebhookTransport(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_posts_body_and_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = request.content
        seen["signature"] = request.headers.get("X-Signature")
        return httpx.Response(204)

    transport = _transport(handler)
    try:
        status = await transport.post("https://merchant.example/hooks", b'{"id":"evt_1"}', {"X-Signature": "t=1,v1=aa"})
    finally:
        await transport.aclose()

    assert status == 204
    assert seen == {"method": "POST", "body": b'{"id":"evt_1"}', "signature": "t=1,v1=aa"}
    assert isinstance(transport, WebhookTransport)


@pytest.mark.asyncio
async def test_error_status_is_returned_not_raised():
    transport = _transport(lambda request: httpx.Response(500))
    try:
        assert await transport.post("https://merchant.example/hooks", b"{}", {}) == 500
    finally:
        await transport.aclose()


@pytest.mark.asyncio
async def test_redirects_are_not_followed():
    transport = _transport(lambda request: httpx.Response(302, headers={"Location": "https://elsewhere.example/"}))
    try:
        assert await transport.post("https://merchant.example/hooks", b"{}", {}) == 302
    finally:
        await transport.aclose()


@pytest.mark.asyncio
async def test_connect_errors_are_retried_once():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200)

    transport = _transport(handler)
    try:
        assert await transport.post("https://merchant.example/hooks", b"{}", {}) == 200
    finally:
        await transport.aclose()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_persistent_connect_error_becomes_transport_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        raise httpx.ConnectError("connection refused", request=request)

    transport = _transport(handler)
    try:
        with pytest.raises(WebhookTransportError):
            await transport.post("https://merchant.example/hooks", b"{}", {})
    finally:
        await transport.aclose()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_read_timeout_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        raise httpx.ReadTimeout("too slow", request=request)

    transport = _transport(handler)
    try:
        with pytest.raises(WebhookTransportError) as exc:
            await transport.post("https://merchant.example/hooks", b"{}", {})
    finally:
        await transport.aclose()
    assert str(exc.value).startswith("timeout")
    assert len(calls) == 1
