import asyncio
import json

import httpx
import pytest

from casehub.clients.gateway_b import GatewayBClient
from casehub.clients.market import MarketPriceClient
from casehub.contracts.contracts import GatewayBCreateOrderRequest
from casehub.errors import ExternalServiceError
from casehub.helpers import GatewayHttpClient
from casehub.security import compute_signature


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    async def fake_sleep(_):
        return None

    monkeypatch.setattr("casehub.helpers.asyncio.sleep", fake_sleep)


# Retry/backoff (500 -> 500 -> 200 success)
def test_retry_on_server_errors(monkeypatch):
    client = GatewayHttpClient("http://gateway.test", max_retries=5, retry_backoff_seconds=1)
    statuses = [500, 500, 200]
    calls = {"invokes": 0}

    async def fake_request(method, url, **kwargs):
        status = statuses[calls["invokes"]]
        calls["invokes"] += 1
        return httpx.Response(status, json={"ok": True})

    monkeypatch.setattr(client.client, "request", fake_request)
    resp = asyncio.run(client._request_with_retry("POST", "payments", json={"foo": "bar"}))

    assert calls["invokes"] == 3
    assert resp.status_code == 200


def test_retries_exhausted_returns_last_error():
    client = GatewayHttpClient("http://gateway.test", max_retries=2, retry_backoff_seconds=1)
    calls = {"invokes": 0}

    async def always_503(method, url, **kwargs):
        calls["invokes"] += 1
        return httpx.Response(503)

    client.client.request = always_503
    resp = asyncio.run(client._request_with_retry("GET", "payments/1"))
    assert resp.status_code == 503
    assert calls["invokes"] == 3


# Rate limit (429 once the window is used up)
def test_rate_limit_returns_429_on_second_call(monkeypatch):
    client = GatewayHttpClient("http://gateway.test", rate_limit_per_minute=1, max_retries=0, retry_backoff_seconds=3600)

    async def first_only_request(method, url, **kwargs):
        return httpx.Response(200)

    monkeypatch.setattr(client.client, "request", first_only_request)

    async def scenario():
        first = await client._request_with_retry("POST", "payments", json={})
        second = await client._request_with_retry("POST", "payments", json={})
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status_code == 200
    assert second.status_code == 429


def test_timeout_is_flagged(monkeypatch):
    client = GatewayHttpClient("http://gateway.test")

    async def slow_request(method, url, **kwargs):
        raise httpx.ReadTimeout("read timed out")

    monkeypatch.setattr(client.client, "request", slow_request)
    with pytest.raises(ExternalServiceError) as excinfo:
        asyncio.run(client._request_with_retry("POST", "payments"))
    assert excinfo.value.timed_out is True


def test_client_error_surfaces_status():
    client = GatewayHttpClient("http://gateway.test")
    with pytest.raises(ExternalServiceError) as excinfo:
        client._json_or_raise(httpx.Response(400, text="bad amount"), "create payment")
    assert excinfo.value.context["status"] == 400
    assert excinfo.value.timed_out is False


def test_gateway_b_signs_exact_body(monkeypatch):
    from casehub.config import settings

    monkeypatch.setattr(settings, "gateway_b_private_key", "test-private")
    monkeypatch.setattr(settings, "gateway_b_public_key", "test-public")
    client = GatewayBClient()
    captured = {}

    async def fake_request(method, url, **kwargs):
        captured.update(kwargs, method=method, url=url)
        return httpx.Response(200, json={"tracker_id": "trk-1", "payment_url": "https://crypto.example/trk-1"})

    monkeypatch.setattr(client.client, "request", fake_request)
    request = GatewayBCreateOrderRequest(
        token="USDTTRC",
        amount=450.0,
        fiat_currency="RUB",
        client_transaction_id="dep-1",
        redirect_url="http://localhost/ok",
        call_back_url="http://localhost/hook",
    )
    order = asyncio.run(client.create_order(request))

    assert order.tracker_id == "trk-1"
    headers = captured["headers"]
    body = json.loads(captured["content"])
    assert headers["ApiPublic"] == "test-public"
    assert headers["Signature"] == compute_signature(body, headers["Timestamp"], "test-private")
    assert "merchant_uuid" not in body


def test_gateway_b_missing_payment_url_is_an_error(monkeypatch):
    client = GatewayBClient()

    async def fake_request(method, url, **kwargs):
        return httpx.Response(200, json={"tracker_id": "trk-1"})

    monkeypatch.setattr(client.client, "request", fake_request)
    request = GatewayBCreateOrderRequest(
        token="USDTTRC",
        amount=450.0,
        fiat_currency="RUB",
        client_transaction_id="dep-1",
        redirect_url="http://localhost/ok",
        call_back_url="http://localhost/hook",
    )
    with pytest.raises(ExternalServiceError):
        asyncio.run(client.create_order(request))


def test_market_prices_are_batched(monkeypatch):
    async def fake_sleep(_):
        return None

    monkeypatch.setattr("casehub.clients.market.asyncio.sleep", fake_sleep)
    client = MarketPriceClient(batch_size=2)
    chunks = []

    async def fake_request(method, url, **kwargs):
        names = [value for key, value in kwargs["params"] if key == "list_hash_name[]"]
        chunks.append(names)
        if "Broken" in names:
            return httpx.Response(500)
        data = {name: [{"price": 300}, {"price": 250}] for name in names if name != "Unlisted"}
        return httpx.Response(200, json={"success": True, "data": data})

    monkeypatch.setattr(client, "_request_with_retry", fake_request)
    results = asyncio.run(client.fetch_prices(["AK", "Unlisted", "Broken"]))

    assert chunks == [["AK", "Unlisted"], ["Broken"]]
    assert results["AK"].success and results["AK"].price == 250
    assert not results["Unlisted"].success
    assert not results["Broken"].success
    assert "500" in results["Broken"].error


def test_unexpected_body_is_a_gateway_error(monkeypatch):
    client = GatewayBClient()

    async def fake_request(method, url, **kwargs):
        return httpx.Response(200, json={"tracker_id": "trk-1"})

    monkeypatch.setattr(client.client, "request", fake_request)
    with pytest.raises(ExternalServiceError) as excinfo:
        asyncio.run(client.get_order("trk-1"))
    assert excinfo.value.context["status"] == 200
    assert excinfo.value.timed_out is False


def test_retry_after_header_sets_the_wait(monkeypatch):
    client = GatewayHttpClient("http://gateway.test", max_retries=1, retry_backoff_seconds=1)
    waits = []
    responses = [httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200)]

    async def record_sleep(seconds):
        waits.append(seconds)

    async def fake_request(method, url, **kwargs):
        return responses.pop(0)

    monkeypatch.setattr("casehub.helpers.asyncio.sleep", record_sleep)
    monkeypatch.setattr(client.client, "request", fake_request)
    resp = asyncio.run(client._request_with_retry("GET", "payments/1"))

    assert resp.status_code == 200
    assert waits == [7.0]
