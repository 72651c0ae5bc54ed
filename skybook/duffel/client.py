import asyncio
from typing import Any, Dict, List, Optional, Protocol

import httpx

from skybook.config import settings
from skybook.errors import ProviderError, ProviderTimeoutError
from skybook.obs.logger import log_event
from skybook.obs.metrics import inc_counter, timed


class InventoryProvider(Protocol):
    """What the orchestrator needs from a flight inventory provider. Payloads are provider-shaped dicts."""

    async def create_search_request(self, slices: List[Dict[str, Any]], passengers: List[Dict[str, Any]],
                                    cabin_class: Optional[str] = None, max_connections: Optional[int] = None,
                                    timeout_seconds: Optional[float] = None) -> str: ...

    async def list_offers(self, request_id: str, sort: str = "total_amount", limit: int = 10,
                          filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]: ...

    async def get_offer(self, offer_id: str, services: bool = True,
                        brand_attributes: bool = False) -> Dict[str, Any]: ...

    async def get_seat_maps(self, offer_id: str) -> List[Dict[str, Any]]: ...

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_order(self, order_id: str) -> Dict[str, Any]: ...

    async def list_orders(self, passenger_email: str, limit: int = 10) -> List[Dict[str, Any]]: ...

    async def create_payment(self, order_id: str, payment_type: str, amount: str, currency: str) -> Dict[str, Any]: ...

    async def create_cancellation(self, order_id: str) -> Dict[str, Any]: ...

    async def confirm_cancellation(self, cancellation_id: str) -> Dict[str, Any]: ...


class DuffelClient:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {
            "Authorization": f"Bearer {api_key or settings.DUFFEL_API_KEY}",
            "Duffel-Version": settings.DUFFEL_API_VERSION,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        # Persistent HTTP client with HTTP/2 and bounded timeouts
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.DUFFEL_BASE_URL,
            headers=headers,
            http2=transport is None,
            transport=transport,
            timeout=httpx.Timeout(settings.PROVIDER_TIMEOUT_SECONDS, connect=5.0),
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, op: str, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                       data: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        body = {"data": data} if data is not None else None
        request_timeout = httpx.Timeout(timeout, connect=5.0) if timeout else httpx.USE_CLIENT_DEFAULT

        # Single retry with short backoff, only for idempotent reads that never reached the server
        attempt = 0
        while True:
            try:
                with timed("duffel_request_ms", {"op": op}):
                    r = await self._http.request(method, path, params=params, json=body, timeout=request_timeout)
                break
            except httpx.ConnectError as e:
                if method == "GET" and attempt == 0:
                    attempt += 1
                    log_event("duffel_retry", level="WARN", op=op, error=type(e).__name__)
                    await asyncio.sleep(0.5)
                    continue
                inc_counter("duffel_errors", {"op": op, "kind": "connect"})
                raise ProviderError(f"Could not reach flight provider: {e}") from e
            except httpx.TimeoutException as e:
                inc_counter("duffel_errors", {"op": op, "kind": "timeout"})
                log_event("duffel_timeout", level="ERROR", op=op)
                raise ProviderTimeoutError(f"Flight provider timed out during {op}") from e
            except httpx.TransportError as e:
                inc_counter("duffel_errors", {"op": op, "kind": "transport"})
                raise ProviderError(f"Flight provider transport error: {e}") from e

        if r.status_code >= 400:
            raise self._to_error(op, r)

        inc_counter("duffel_requests", {"op": op, "status": str(r.status_code)})
        if r.status_code == 204 or not r.content:
            return None
        return r.json().get("data")

    @staticmethod
    def _to_error(op: str, r: httpx.Response) -> ProviderError:
        try:
            errors = r.json().get("errors") or []
        except ValueError:
            errors = []
        errors = [
            {k: e.get(k) for k in ("code", "type", "title", "message") if e.get(k) is not None}
            for e in errors if isinstance(e, dict)
        ]
        message = (errors[0].get("message") or errors[0].get("title")) if errors else None
        inc_counter("duffel_errors", {"op": op, "kind": "http", "status": str(r.status_code)})
        log_event("duffel_error", level="ERROR", op=op, status=r.status_code,
                  codes=[e.get("code") for e in errors])
        return ProviderError(message or f"Flight provider request failed with status {r.status_code}",
                             status=r.status_code, errors=errors)

    async def create_search_request(self, slices, passengers, cabin_class=None, max_connections=None,
                                    timeout_seconds=None) -> str:
        timeout_seconds = timeout_seconds or settings.SEARCH_TIMEOUT_SECONDS
        data: Dict[str, Any] = {"slices": slices, "passengers": passengers}
        if cabin_class:
            data["cabin_class"] = cabin_class
        if max_connections is not None:
            data["max_connections"] = max_connections
        params = {"return_offers": "false", "supplier_timeout": int(timeout_seconds * 1000)}
        # allow the HTTP call a little longer than the supplier window
        result = await self._request("create_search_request", "POST", "/air/offer_requests",
                                     params=params, data=data, timeout=timeout_seconds + 5)
        return result["id"]

    async def list_offers(self, request_id, sort="total_amount", limit=10, filters=None):
        params: Dict[str, Any] = {"offer_request_id": request_id, "sort": sort, "limit": limit}
        for k, v in (filters or {}).items():
            if v is None:
                continue
            params[k] = ",".join(v) if isinstance(v, (list, tuple)) else v
        return await self._request("list_offers", "GET", "/air/offers", params=params) or []

    async def get_offer(self, offer_id, services=True, brand_attributes=False):
        params = {"return_available_services": "true" if services else "false"}
        if brand_attributes:
            params["return_brand_attributes"] = "true"
        return await self._request("get_offer", "GET", f"/air/offers/{offer_id}", params=params)

    async def get_seat_maps(self, offer_id):
        return await self._request("get_seat_maps", "GET", "/air/seat_maps", params={"offer_id": offer_id}) or []

    async def create_order(self, payload):
        return await self._request("create_order", "POST", "/air/orders", data=payload)

    async def get_order(self, order_id):
        return await self._request("get_order", "GET", f"/air/orders/{order_id}")

    async def list_orders(self, passenger_email, limit=10):
        params = {"passenger_email": passenger_email, "limit": limit}
        return await self._request("list_orders", "GET", "/air/orders", params=params) or []

    async def create_payment(self, order_id, payment_type, amount, currency):
        data = {"order_id": order_id, "payment": {"type": payment_type, "amount": amount, "currency": currency}}
        return await self._request("create_payment", "POST", "/air/payments", data=data)

    async def create_cancellation(self, order_id):
        return await self._request("create_cancellation", "POST", "/air/order_cancellations",
                                   data={"order_id": order_id})

    async def confirm_cancellation(self, cancellation_id):
        return await self._request("confirm_cancellation", "POST",
                                   f"/air/order_cancellations/{cancellation_id}/actions/confirm")
