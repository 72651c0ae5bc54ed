import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from skybook.duffel.client import DuffelClient
from skybook.errors import ProviderError, ProviderTimeoutError
from skybook.obs.metrics import get_metrics_snapshot


def client_with(handler):
    return DuffelClient(api_key="test_key", base_url="https://api.test", transport=httpx.MockTransport(handler))


async def test_create_search_request_sends_envelope_and_headers():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = request.url
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"data": {"id": "orq_1"}})

    client = client_with(handler)
    request_id = await client.create_search_request(
        [{"origin": "LHR", "destination": "AMS", "departure_date": "2030-05-01"}],
        [{"type": "adult"}],
        cabin_class="economy",
        max_connections=0,
        timeout_seconds=30,
    )
    await client.aclose()

    assert request_id == "orq_1"
    assert seen["url"].path == "/air/offer_requests"
    assert seen["url"].params["return_offers"] == "false"
    assert seen["url"].params["supplier_timeout"] == "30000"
    assert seen["headers"]["Authorization"] == "Bearer test_key"
    assert seen["headers"]["Duffel-Version"] == "v2"
    body = seen["body"]["data"]
    assert body["cabin_class"] == "economy"
    assert body["max_connections"] == 0
    assert body["passengers"] == [{"type": "adult"}]


async def test_list_offers_joins_list_filters_and_drops_none():
    seen = {}

    def handler(request):
        seen["params"] = request.url.params
        return httpx.Response(200, json={"data": [{"id": "off_1"}]})

    client = client_with(handler)
    offers = await client.list_offers("orq_1", limit=5, filters={"airlines": ["KL", "BA"], "max_price": None})
    await client.aclose()

    assert offers == [{"id": "off_1"}]
    assert seen["params"]["offer_request_id"] == "orq_1"
    assert seen["params"]["limit"] == "5"
    assert seen["params"]["airlines"] == "KL,BA"
    assert "max_price" not in seen["params"]


async def test_list_orders_filters_by_passenger_email():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["url"] = request.url
        return httpx.Response(200, json={"data": [{"id": "ord_1"}]})

    client = client_with(handler)
    orders = await client.list_orders("jan@example.com", limit=3)
    await client.aclose()

    assert orders == [{"id": "ord_1"}]
    assert seen["method"] == "GET"
    assert seen["url"].path == "/air/orders"
    assert seen["url"].params["passenger_email"] == "jan@example.com"
    assert seen["url"].params["limit"] == "3"


async def test_get_offer_requests_services_and_brand_attributes():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = request.url.params
        return httpx.Response(200, json={"data": {"id": "off_1"}})

    client = client_with(handler)
    await client.get_offer("off_1", services=True, brand_attributes=True)
    await client.aclose()

    assert seen["path"] == "/air/offers/off_1"
    assert seen["params"]["return_available_services"] == "true"
    assert seen["params"]["return_brand_attributes"] == "true"


async def test_error_envelope_becomes_provider_error():
    def handler(request):
        return httpx.Response(422, json={"errors": [{
            "code": "offer_no_longer_available",
            "type": "invalid_state_error",
            "title": "Offer no longer available",
            "message": "The offer is no longer available",
        }]})

    client = client_with(handler)
    with pytest.raises(ProviderError) as exc:
        await client.create_order({"selected_offers": ["off_1"]})
    await client.aclose()

    err = exc.value
    assert err.status == 422
    assert err.provider_code == "offer_no_longer_available"
    assert err.message == "The offer is no longer available"
    details = err.to_error_details()
    assert details[0].category == "provider"

    counters = get_metrics_snapshot()["counters"]
    assert any(c["name"] == "duffel_errors" and c["labels"].get("status") == "422" for c in counters)


async def test_non_json_error_body():
    client = client_with(lambda request: httpx.Response(502, text="Bad gateway"))
    with pytest.raises(ProviderError) as exc:
        await client.get_order("ord_1")
    await client.aclose()
    assert exc.value.status == 502
    assert "502" in exc.value.message


async def test_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = client_with(handler)
    with pytest.raises(ProviderTimeoutError):
        await client.get_offer("off_1")
    await client.aclose()


async def test_get_is_retried_once_on_connect_error():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"data": {"id": "ord_1"}})

    client = client_with(handler)
    with patch("skybook.duffel.client.asyncio.sleep", AsyncMock()):
        order = await client.get_order("ord_1")
    await client.aclose()

    assert order == {"id": "ord_1"}
    assert calls["n"] == 2


async def test_post_is_not_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        raise httpx.ConnectError("refused", request=request)

    client = client_with(handler)
    with pytest.raises(ProviderError):
        await client.create_payment("ord_1", "balance", "100.00", "GBP")
    await client.aclose()
    assert calls["n"] == 1


async def test_cancellation_confirm_path():
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path))
        return httpx.Response(200, json={"data": {"id": "ore_1", "order_id": "ord_1"}})

    client = client_with(handler)
    pending = await client.create_cancellation("ord_1")
    await client.confirm_cancellation(pending["id"])
    await client.aclose()

    assert paths == [
        ("POST", "/air/order_cancellations"),
        ("POST", "/air/order_cancellations/ore_1/actions/confirm"),
    ]
