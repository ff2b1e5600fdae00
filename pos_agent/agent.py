#!/usr/bin/env python3
"""
Local POS agent.

Owns the device's SQLite store and sync engine and serves a small JSON API on
loopback for the cashier UI. Every endpoint answers from local storage; only
POST /api/sync waits on the network.
"""

import argparse
import json
import os
import re
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Optional
from urllib.parse import urlparse, parse_qs, unquote

from .config import CONFIG_PATH, DB_PATH, cfg_float, load_config, save_config
from .errors import AuthError, NetworkError, NotFoundError, OfflineError, ValidationError
from .gateway import HttpOrderGateway
from .logs import json_log
from .money import format_cents
from .network import NetworkMonitor
from .store import LocalStore
from .sync_engine import RetryPolicy, SyncEngine

_ORDER_PATH = re.compile(r"^/api/orders/(\d+)(/retry|/status)?$")
_PRODUCT_REFRESH_PATH = re.compile(r"^/api/products/([^/]+)/refresh$")


def _is_loopback(ip: str) -> bool:
    ip = (ip or "").strip()
    return ip in {"127.0.0.1", "::1", "localhost"}


def _origin_is_trusted(origin: str, host_header: str) -> bool:
    """
    Browsers send Origin; accept it only for loopback or same-origin as Host
    (the agent-served UI). Non-browser clients usually omit it.
    """
    try:
        u = urlparse((origin or "").strip())
    except ValueError:
        return False
    if not u.hostname or u.scheme not in {"http", "https"}:
        return False
    if u.hostname in {"localhost", "127.0.0.1", "::1"}:
        return True
    host = (host_header or "").strip().rsplit(":", 1)[0].strip("[]")
    return bool(host) and u.hostname == host


def _error_status(ex: Exception) -> int:
    if isinstance(ex, ValidationError):
        return 422
    if isinstance(ex, NotFoundError):
        return 404
    if isinstance(ex, OfflineError):
        return 409
    if isinstance(ex, AuthError):
        return 401
    if isinstance(ex, NetworkError):
        return 503
    return 500


def order_view(order) -> dict:
    out = order.to_dict()
    out["display"] = {
        "subtotal": format_cents(order.subtotal_cents),
        "tax": format_cents(order.tax_cents),
        "total": format_cents(order.total_cents),
    }
    return out


def json_response(handler, payload, status=200):
    body = json.dumps(payload, default=str).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    origin = (handler.headers.get("Origin") or "").strip()
    if origin:
        handler.send_header("Access-Control-Allow-Origin", origin)
        handler.send_header("Vary", "Origin")
    handler.end_headers()
    handler.wfile.write(body)


def make_handler(engine: SyncEngine, config_path: Optional[str] = None):
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            json_log("debug", "agent.http", client_ip=self.client_address[0], message=format % args)

        def _reject_if_disallowed_origin(self) -> bool:
            origin = (self.headers.get("Origin") or "").strip()
            if not origin:
                return False
            if _origin_is_trusted(origin, self.headers.get("Host") or ""):
                return False
            json_response(self, {"error": "origin not allowed"}, status=403)
            return True

        def read_json(self):
            length = int(self.headers.get("Content-Length", 0) or 0)
            if length == 0:
                return {}
            raw = self.rfile.read(length).decode("utf-8")
            try:
                data = json.loads(raw)
            except ValueError:
                raise ValidationError("request body is not valid JSON")
            if not isinstance(data, dict):
                raise ValidationError("request body must be a JSON object")
            return data

        def do_GET(self):
            self._dispatch(self.handle_api_get)

        def do_POST(self):
            self._dispatch(self.handle_api_post)

        def _dispatch(self, fn):
            parsed = urlparse(self.path)
            if not parsed.path.startswith("/api/"):
                json_response(self, {"error": "not found"}, status=404)
                return
            if self._reject_if_disallowed_origin():
                return
            try:
                fn(parsed)
            except Exception as ex:
                status = _error_status(ex)
                if status >= 500:
                    json_log("error", "agent.request_failed", path=parsed.path, error=str(ex))
                json_response(self, {"error": str(ex), "error_type": type(ex).__name__}, status=status)

        def handle_api_get(self, parsed):
            qs = parse_qs(parsed.query)
            path = parsed.path
            if path == "/api/health":
                json_response(self, {"ok": True})
                return
            if path == "/api/status":
                json_response(self, {"ok": True, "status": engine.get_status().to_dict()})
                return
            if path == "/api/products":
                q = (qs.get("q") or [""])[0]
                rows = engine.search_products(q) if q else engine.get_products()
                json_response(self, {"products": [p.to_dict() for p in rows]})
                return
            if path.startswith("/api/products/barcode/"):
                code = unquote(path[len("/api/products/barcode/"):])
                product = engine.get_product_by_barcode(code)
                if product is None:
                    raise NotFoundError(f"no product with barcode {code}")
                json_response(self, {"product": product.to_dict()})
                return
            if path == "/api/orders":
                try:
                    limit = int((qs.get("limit") or ["20"])[0])
                except ValueError:
                    raise ValidationError("limit must be an integer")
                json_response(self, {"orders": [order_view(o) for o in engine.get_orders(limit)]})
                return
            if path == "/api/orders/unsynced":
                json_response(self, {"orders": [order_view(o) for o in engine.get_unsynced_orders()]})
                return
            if path == "/api/orders/rejected":
                json_response(self, {"orders": [order_view(o) for o in engine.get_rejected_orders()]})
                return
            m = _ORDER_PATH.match(path)
            if m and not m.group(2):
                order = engine.store.get_order(int(m.group(1)))
                if order is None:
                    raise NotFoundError(f"order {m.group(1)} not found")
                json_response(self, {"order": order_view(order)})
                return
            json_response(self, {"error": "not found"}, status=404)

        def handle_api_post(self, parsed):
            path = parsed.path
            if path == "/api/orders":
                data = self.read_json()
                local_id = engine.create_order(
                    data.get("items") or [],
                    data.get("payment_method") or data.get("paymentMethod") or "",
                    status=data.get("status") or "COMPLETED",
                    cashier_id=data.get("cashier_id"),
                )
                json_response(self, {"ok": True, "order_id": local_id}, status=201)
                return
            if path == "/api/sync":
                report = engine.force_sync()
                json_response(self, {"ok": not report.errors, "report": report.to_dict()})
                return
            if path == "/api/auth/token":
                data = self.read_json()
                token = (data.get("device_token") or "").strip()
                engine.update_credentials(token)
                if config_path:
                    cfg = load_config(config_path)
                    cfg["device_token"] = token
                    save_config(cfg, config_path)
                json_response(self, {"ok": True})
                return
            if path == "/api/network":
                data = self.read_json()
                changed = engine.network.set_online(bool(data.get("online")))
                json_response(self, {"ok": True, "changed": changed})
                return
            m = _PRODUCT_REFRESH_PATH.match(path)
            if m:
                item_id = engine.request_product_refresh(unquote(m.group(1)))
                json_response(self, {"ok": True, "queue_item_id": item_id}, status=202)
                return
            m = _ORDER_PATH.match(path)
            if m and m.group(2) == "/retry":
                if not engine.retry_rejected_order(int(m.group(1))):
                    raise NotFoundError(f"order {m.group(1)} is not a rejected order")
                json_response(self, {"ok": True})
                return
            if m and m.group(2) == "/status":
                data = self.read_json()
                item_id = engine.request_order_status(int(m.group(1)), data.get("status") or "")
                json_response(self, {"ok": True, "queue_item_id": item_id}, status=202)
                return
            json_response(self, {"error": "not found"}, status=404)

    return Handler


def build_engine(cfg: dict, db_path: str) -> SyncEngine:
    store = LocalStore(db_path)
    gateway = HttpOrderGateway(
        cfg.get("api_base_url") or "",
        device_id=cfg.get("device_id") or "",
        device_token=cfg.get("device_token") or "",
        timeout_s=cfg_float(cfg, "request_timeout_seconds"),
    )
    network = NetworkMonitor(probe=gateway.health, interval_s=cfg_float(cfg, "probe_interval_seconds"))
    return SyncEngine(
        store,
        gateway,
        network,
        cashier_id=cfg.get("cashier_id") or "",
        default_tax_rate=cfg_float(cfg, "tax_rate"),
        sync_interval_s=cfg_float(cfg, "sync_interval_seconds"),
        retry_policy=RetryPolicy(
            base_delay_s=cfg_float(cfg, "retry_base_delay_seconds"),
            max_delay_s=cfg_float(cfg, "retry_max_delay_seconds"),
        ),
    )


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument("--db", default=os.environ.get("POS_DB_PATH", DB_PATH), help="SQLite DB path")
    parser.add_argument("--config", default=os.environ.get("POS_CONFIG_PATH", CONFIG_PATH), help="Config JSON path")
    parser.add_argument(
        "--host",
        default=os.environ.get("POS_HOST", "127.0.0.1"),
        help="HTTP host to bind (default: 127.0.0.1). Use 0.0.0.0 only if you explicitly want LAN exposure.",
    )
    parser.add_argument("--port", type=int, default=int(os.environ.get("POS_PORT", "7070")), help="HTTP port (default: 7070)")
    args = parser.parse_args()

    config_path = os.path.abspath(args.config)
    db_path = os.path.abspath(args.db)
    cfg = load_config(config_path)
    engine = build_engine(cfg, db_path)

    if args.init_db:
        engine.store.init()
        print("ok")
        return

    engine.init()
    server = ThreadingHTTPServer((args.host, args.port), make_handler(engine, config_path))
    if not _is_loopback(args.host):
        json_log("warning", "agent.lan_exposed", host=args.host)
    public_host = "localhost" if args.host in {"127.0.0.1", "localhost"} else args.host
    print(f"POS Agent running on http://{public_host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        engine.shutdown()


if __name__ == "__main__":
    main()
