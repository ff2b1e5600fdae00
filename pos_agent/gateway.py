"""
Client side of the authoritative order service.

`RemoteOrderGateway` is the contract the sync engine depends on;
`HttpOrderGateway` implements it over plain HTTP/JSON. The server recomputes
totals from its own prices, so totals sent back are canonical and totals the
device computed are never submitted.

createOrder carries no idempotency key: a retry after a timeout whose outcome
is unknown can create a second remote order (at-least-once delivery).
"""

from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .errors import AuthError, NetworkError, NotFoundError, ValidationError
from .models import Product
from .money import OrderTotals


@dataclass(frozen=True)
class CreateOrderResult:
    remote_order_id: str
    totals: OrderTotals


class RemoteOrderGateway:
    def fetch_catalog(self) -> list[Product]:
        raise NotImplementedError

    def get_product(self, product_id: str) -> Product:
        raise NotImplementedError

    def create_order(
        self,
        payment_method: str,
        items: list[dict],
        client_created_at: Optional[str] = None,
        cashier_id: Optional[str] = None,
    ) -> CreateOrderResult:
        raise NotImplementedError

    def update_order_status(self, remote_order_id: str, status: str) -> dict:
        raise NotImplementedError

    def health(self) -> bool:
        raise NotImplementedError

    def set_credentials(self, device_token: str):
        raise NotImplementedError


def _error_from_http(code: int, detail: str) -> Exception:
    msg = f"http {code}: {detail}".strip().rstrip(":")
    if code in (401, 403):
        return AuthError(msg)
    if code == 404:
        return NotFoundError(msg)
    if code in (408, 425, 429) or code >= 500:
        return NetworkError(msg)
    return ValidationError(msg)


def _http_detail(ex: HTTPError) -> str:
    try:
        body = ex.read().decode("utf-8")
    except Exception:
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return body[:300]
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or "")[:300]
    return ""


def product_from_remote(raw: dict) -> Product:
    try:
        return Product(
            id=str(raw["id"]),
            name=str(raw.get("name") or ""),
            price_cents=int(raw["price_cents"]),
            stock=max(0, int(raw.get("stock") or 0)),
            tax_rate=float(raw["tax_rate"]) if raw.get("tax_rate") is not None else None,
            category=raw.get("category") or None,
            barcode=raw.get("barcode") or raw.get("sku") or None,
            image=raw.get("image_url") or raw.get("image") or None,
            last_updated=str(raw.get("updated_at") or "") or None,
        )
    except (KeyError, TypeError, ValueError) as ex:
        raise ValidationError(f"malformed product from server: {ex}") from ex


def _totals_from_remote(raw: dict) -> OrderTotals:
    raw = raw or {}

    def _pick(*keys) -> int:
        for k in keys:
            if raw.get(k) is not None:
                return int(raw[k])
        return 0

    subtotal = _pick("subtotal", "subtotal_cents")
    tax = _pick("tax", "tax_cents")
    total = _pick("total", "total_cents")
    return OrderTotals(subtotal_cents=subtotal, tax_cents=tax, total_cents=total or subtotal + tax)


class HttpOrderGateway(RemoteOrderGateway):
    def __init__(self, base_url: str, device_id: str = "", device_token: str = "", timeout_s: float = 10.0):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.device_id = (device_id or "").strip()
        self.device_token = (device_token or "").strip()
        self.timeout_s = max(0.2, float(timeout_s or 10.0))

    def set_credentials(self, device_token: str):
        self.device_token = (device_token or "").strip()

    def _headers(self) -> dict:
        return {
            "Accept": "application/json",
            "X-Device-Id": self.device_id,
            "X-Device-Token": self.device_token,
        }

    def _request(self, method: str, path: str, payload=None, timeout_s: Optional[float] = None, auth: bool = True):
        if not self.base_url:
            raise NetworkError("missing api_base_url")
        if auth and not (self.device_id and self.device_token):
            raise AuthError("device is not registered: missing device_id or device_token")
        data = None
        headers = self._headers()
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = Request(f"{self.base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=timeout_s or self.timeout_s) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as ex:
            raise _error_from_http(int(ex.code), _http_detail(ex)) from ex
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as ex:
            raise NetworkError(str(getattr(ex, "reason", None) or ex)) from ex
        except OSError as ex:
            raise NetworkError(str(ex)) from ex
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as ex:
            # Captive portals and proxies answer with HTML; treat as not reachable.
            raise NetworkError(f"non-JSON response from {path}") from ex

    def fetch_catalog(self) -> list[Product]:
        res = self._request("GET", "/products")
        rows = res.get("products") if isinstance(res, dict) else res
        return [product_from_remote(r) for r in (rows or [])]

    def get_product(self, product_id: str) -> Product:
        res = self._request("GET", f"/products/{quote(str(product_id), safe='')}")
        raw = res.get("product") if isinstance(res, dict) and "product" in res else res
        return product_from_remote(raw or {})

    def create_order(
        self,
        payment_method: str,
        items: list[dict],
        client_created_at: Optional[str] = None,
        cashier_id: Optional[str] = None,
    ) -> CreateOrderResult:
        body = {"paymentMethod": payment_method, "items": items}
        if client_created_at:
            body["clientCreatedAt"] = client_created_at
        if cashier_id:
            body["cashierId"] = str(cashier_id)
        res = self._request("POST", "/orders", body) or {}
        remote_id = res.get("orderId") or (res.get("order") or {}).get("id")
        if not remote_id:
            # Accepted but unacknowledged is indistinguishable from a lost reply.
            raise NetworkError("order response missing orderId")
        return CreateOrderResult(remote_order_id=str(remote_id), totals=_totals_from_remote(res.get("totals")))

    def update_order_status(self, remote_order_id: str, status: str) -> dict:
        path = f"/orders/{quote(str(remote_order_id), safe='')}/status"
        return self._request("PATCH", path, {"status": status}) or {}

    def health(self) -> bool:
        try:
            res = self._request("GET", "/health", timeout_s=min(self.timeout_s, 2.0), auth=False)
        except (NetworkError, AuthError, ValidationError, NotFoundError):
            return False
        return bool((res or {}).get("ok", True)) if isinstance(res, dict) else True
