"""
Offline-first order synchronization for one cashier device.

A sync pass runs three phases in order, each isolated from the others:

1. catalog refresh  - fetch the remote snapshot and replace the local one;
                      on failure the last-known catalog stays in place
2. order flush      - push unsynced local orders oldest first; a failed order
                      is queued for retry and the batch moves on
3. queue drain      - replay retry items by kind; an item is dropped on the
                      failure that brings it to MAX_QUEUE_ATTEMPTS

Only one pass runs at a time; the `syncing` flag is the guard and a trigger
that arrives during a pass is a no-op. Checkout never waits on the network:
`create_order` writes locally and returns, then kicks a background pass.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .errors import (
    PERMANENT_REMOTE_ERRORS,
    AuthError,
    NotFoundError,
    OfflineError,
    StorageError,
    ValidationError,
)
from .gateway import RemoteOrderGateway
from .logs import json_log
from .models import (
    MAX_QUEUE_ATTEMPTS,
    ORDER_STATUSES,
    PAYMENT_METHODS,
    LocalOrder,
    OrderLine,
    Product,
    QueueItem,
    SyncReport,
    SyncStatus,
)
from .money import compute_order_totals
from .network import NetworkMonitor
from .payloads import (
    CreateOrderPayload,
    RemoteItem,
    UpdateOrderStatusPayload,
    UpdateProductPayload,
    dump_payload,
    parse_payload,
)
from .store import LocalStore

StatusListener = Callable[[SyncStatus], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _NotReady(Exception):
    """A queued operation depends on something that has not synced yet."""


class RetryPolicy:
    """
    Per-item retry schedule. `base_delay_s == 0` retries every item on every
    pass (a flat timer); otherwise the delay doubles per attempt up to
    `max_delay_s`.
    """

    def __init__(self, base_delay_s: float = 0.0, max_delay_s: float = 900.0, factor: float = 2.0):
        self.base_delay_s = max(0.0, float(base_delay_s or 0))
        self.max_delay_s = max(self.base_delay_s, float(max_delay_s or 0))
        self.factor = max(1.0, float(factor or 1))

    def next_attempt_at(self, attempts: int, now: datetime) -> Optional[str]:
        if self.base_delay_s <= 0:
            return None
        delay = min(self.max_delay_s, self.base_delay_s * (self.factor ** max(0, attempts - 1)))
        return (now + timedelta(seconds=delay)).isoformat()


class SyncEngine:
    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteOrderGateway,
        network: NetworkMonitor,
        cashier_id: str = "",
        default_tax_rate: float = 0.0,
        sync_interval_s: float = 180.0,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        background: bool = True,
    ):
        self.store = store
        self.gateway = gateway
        self.network = network
        self.cashier_id = str(cashier_id or "")
        self.default_tax_rate = float(default_tax_rate or 0)
        self.sync_interval_s = max(1.0, float(sync_interval_s or 180.0))
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or _utcnow
        self._background = background

        self._state_lock = threading.Lock()
        self._syncing = False
        self._auth_required = False
        self._last_sync: Optional[str] = None

        self._listeners_lock = threading.Lock()
        self._listeners: list[StatusListener] = []

        self._stop = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._pass_thread: Optional[threading.Thread] = None
        self._unsubscribe_network: Optional[Callable[[], None]] = None

    # -- lifecycle ------------------------------------------------------

    def init(self):
        self.store.init()
        self.network.check_now()
        self._unsubscribe_network = self.network.add_listener(self._on_network_change)
        self.network.start()
        self._stop.clear()
        self._timer_thread = threading.Thread(target=self._timer_loop, name="sync-timer", daemon=True)
        self._timer_thread.start()
        json_log("info", "sync.engine.started", online=self.network.is_online, interval_s=self.sync_interval_s)
        if self.network.is_online:
            self.trigger_sync("startup")

    def shutdown(self, timeout_s: float = 5.0):
        self._stop.set()
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        self.network.stop()
        for t in (self._timer_thread, self._pass_thread):
            if t is not None and t.is_alive() and t is not threading.current_thread():
                t.join(timeout=timeout_s)
        self._timer_thread = None
        self._pass_thread = None
        with self._listeners_lock:
            self._listeners = []
        self.store.close()
        json_log("info", "sync.engine.stopped")

    # -- state ----------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        with self._state_lock:
            return self._syncing

    @property
    def auth_required(self) -> bool:
        with self._state_lock:
            return self._auth_required

    @property
    def last_sync(self) -> Optional[str]:
        with self._state_lock:
            return self._last_sync

    def _begin_pass(self) -> bool:
        with self._state_lock:
            if self._syncing:
                return False
            self._syncing = True
            return True

    def _end_pass(self):
        with self._state_lock:
            self._syncing = False
            self._last_sync = self._clock().isoformat()

    def _set_auth_required(self, value: bool):
        with self._state_lock:
            changed = self._auth_required != value
            self._auth_required = value
        if changed:
            json_log("warning" if value else "info", "sync.auth_required", value=value)

    def get_status(self) -> SyncStatus:
        try:
            stats = self.store.get_storage_stats()
            pending = stats["unsynced_order_count"] + stats["sync_queue_count"]
        except StorageError as ex:
            json_log("error", "sync.status.stats_failed", error=str(ex))
            pending = 0
        with self._state_lock:
            return SyncStatus(
                is_online=self.network.is_online,
                is_syncing=self._syncing,
                last_sync=self._last_sync,
                pending_sync_count=pending,
                auth_required=self._auth_required,
            )

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def _remove():
            self.remove_status_listener(listener)

        return _remove

    def remove_status_listener(self, listener: StatusListener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self):
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        status = self.get_status()
        for fn in listeners:
            try:
                fn(status)
            except Exception as ex:
                json_log("error", "sync.listener_failed", error=str(ex))

    # -- triggers -------------------------------------------------------

    def _on_network_change(self, online: bool):
        self._notify()
        if online:
            self.trigger_sync("network_online")

    def _timer_loop(self):
        while not self._stop.wait(self.sync_interval_s):
            if self.network.is_online and not self.is_syncing:
                self.run_sync_pass("periodic")

    def trigger_sync(self, reason: str = "manual") -> bool:
        """Start an opportunistic pass. Returns False when offline or already syncing."""
        if not self.network.is_online or self.is_syncing:
            return False
        if not self._background:
            self.run_sync_pass(reason)
            return True
        t = threading.Thread(target=self.run_sync_pass, args=(reason,), name=f"sync-{reason}", daemon=True)
        self._pass_thread = t
        t.start()
        return True

    def force_sync(self) -> SyncReport:
        """User-initiated pass. Runs in the caller's thread and reports counts."""
        if not self.network.is_online:
            raise OfflineError("cannot sync while offline")
        return self.run_sync_pass("force")

    # -- the pass -------------------------------------------------------

    def run_sync_pass(self, trigger: str = "manual") -> SyncReport:
        """Never raises; every phase failure ends up in the log or the queue."""
        report = SyncReport()
        if not self.network.is_online:
            json_log("debug", "sync.pass.skipped", trigger=trigger, reason="offline")
            return report
        if not self._begin_pass():
            json_log("debug", "sync.pass.skipped", trigger=trigger, reason="already_syncing")
            return report
        report.ran = True
        started = time.time()
        self._notify()
        try:
            self._run_phase("catalog", self._refresh_catalog, report)
            if self.auth_required:
                json_log("warning", "sync.orders.paused", reason="auth_required")
            else:
                self._run_phase("orders", self._flush_orders, report)
                if not self.auth_required:
                    self._run_phase("queue", self._drain_queue, report)
        finally:
            report.auth_required = self.auth_required
            self._end_pass()
            json_log(
                "info",
                "sync.pass.completed",
                trigger=trigger,
                duration_ms=int((time.time() - started) * 1000),
                catalog_refreshed=report.catalog_refreshed,
                orders_synced=report.orders_synced,
                orders_failed=report.orders_failed,
                orders_rejected=report.orders_rejected,
                queue_succeeded=report.queue_succeeded,
                queue_failed=report.queue_failed,
                queue_dropped=report.queue_dropped,
                auth_required=report.auth_required,
            )
            self._notify()
        return report

    def _run_phase(self, name: str, fn, report: SyncReport):
        try:
            fn(report)
        except AuthError as ex:
            self._set_auth_required(True)
            report.errors.append(f"{name}: {ex}")
        except Exception as ex:
            json_log("warning", f"sync.{name}.failed", error=str(ex), error_type=type(ex).__name__)
            report.errors.append(f"{name}: {ex}")

    def _refresh_catalog(self, report: SyncReport):
        products = self.gateway.fetch_catalog()
        count = self.store.replace_catalog(products)
        report.catalog_refreshed = True
        json_log("info", "sync.catalog.refreshed", count=count)

    def _flush_orders(self, report: SyncReport):
        for order in self.store.list_unsynced_orders():
            try:
                self._push_order(
                    order.id,
                    order.payment_method,
                    order.remote_items(),
                    order.created_at,
                    order.cashier_id,
                    local_totals=(order.subtotal_cents, order.tax_cents, order.total_cents),
                )
                report.orders_synced += 1
            except AuthError:
                # Remaining orders stay unsynced; they are not lost, only paused.
                raise
            except PERMANENT_REMOTE_ERRORS as ex:
                self._reject_order(order.id, ex)
                report.orders_rejected += 1
            except Exception as ex:
                report.orders_failed += 1
                json_log("warning", "sync.order.failed", order_id=order.id, error=str(ex))
                self._enqueue_create(order)

    def _enqueue_create(self, order: LocalOrder):
        payload = CreateOrderPayload(
            local_order_id=order.id,
            payment_method=order.payment_method,
            items=[RemoteItem(product_id=ln.product_id, qty=ln.quantity) for ln in order.items],
            client_created_at=order.created_at,
            cashier_id=order.cashier_id or None,
        )
        try:
            self.store.enqueue("CREATE_ORDER", dump_payload(payload), order_id=order.id)
        except StorageError as ex:
            # The order row is still unsynced, so the next flush retries it anyway.
            json_log("error", "sync.order.enqueue_failed", order_id=order.id, error=str(ex))

    def _push_order(self, local_id, payment_method, items, created_at, cashier_id, local_totals=None):
        res = self.gateway.create_order(payment_method, items, created_at, cashier_id or None)
        self.store.mark_order_synced(local_id, res.remote_order_id)
        json_log("info", "sync.order.synced", order_id=local_id, remote_id=res.remote_order_id)
        if local_totals is not None:
            remote = (res.totals.subtotal_cents, res.totals.tax_cents, res.totals.total_cents)
            if remote != tuple(local_totals):
                # Stored totals are what the customer paid; never rewritten here.
                json_log(
                    "warning",
                    "sync.order.totals_mismatch",
                    order_id=local_id,
                    local=list(local_totals),
                    remote=list(remote),
                )
        for it in items:
            try:
                self.store.decrement_stock(it["productId"], it["qty"])
            except StorageError as ex:
                json_log("warning", "sync.stock.decrement_failed", product_id=it["productId"], error=str(ex))

    def _reject_order(self, local_id: int, ex: Exception):
        json_log("error", "sync.order.rejected", order_id=local_id, error=str(ex))
        try:
            self.store.mark_order_rejected(local_id, str(ex))
        except StorageError as sex:
            json_log("error", "sync.order.reject_failed", order_id=local_id, error=str(sex))

    def _drain_queue(self, report: SyncReport):
        now = self._clock()
        for item in self.store.dequeue_all(due_at=now.isoformat()):
            try:
                payload = parse_payload(item.kind, item.payload_json)
            except ValidationError as ex:
                json_log("error", "sync.queue.poison", item_id=item.id, kind=item.kind, error=str(ex))
                self.store.remove(item.id)
                report.queue_dropped += 1
                continue

            try:
                self._dispatch(payload)
            except AuthError:
                raise
            except PERMANENT_REMOTE_ERRORS as ex:
                if isinstance(payload, CreateOrderPayload):
                    self._reject_order(payload.local_order_id, ex)
                else:
                    json_log("error", "sync.queue.rejected", item_id=item.id, kind=item.kind, error=str(ex))
                self.store.remove(item.id)
                report.queue_dropped += 1
                continue
            except Exception as ex:
                self._record_failure(item, ex, now, report)
                continue

            self.store.remove(item.id)
            report.queue_succeeded += 1

    def _record_failure(self, item: QueueItem, ex: Exception, now: datetime, report: SyncReport):
        next_at = self.retry_policy.next_attempt_at(item.attempts + 1, now)
        attempts = self.store.record_attempt(item.id, next_at)
        if attempts >= MAX_QUEUE_ATTEMPTS:
            json_log(
                "error",
                "sync.queue.gave_up",
                item_id=item.id,
                kind=item.kind,
                attempts=attempts,
                error=str(ex),
            )
            self.store.remove(item.id)
            report.queue_dropped += 1
        else:
            json_log("warning", "sync.queue.retry_later", item_id=item.id, kind=item.kind, attempts=attempts, error=str(ex))
            report.queue_failed += 1

    def _dispatch(self, payload):
        if isinstance(payload, CreateOrderPayload):
            self._handle_create_order(payload)
        elif isinstance(payload, UpdateProductPayload):
            self._handle_update_product(payload)
        elif isinstance(payload, UpdateOrderStatusPayload):
            self._handle_update_order_status(payload)
        else:
            raise ValidationError(f"no handler for {type(payload).__name__}")

    def _handle_create_order(self, p: CreateOrderPayload):
        order = self.store.get_order(p.local_order_id)
        if order is None:
            raise NotFoundError(f"local order {p.local_order_id} no longer exists")
        if order.synced or order.rejected_at:
            # Already handled by an order flush; acknowledge without a remote call.
            return
        self._push_order(
            order.id,
            p.payment_method,
            [{"productId": it.product_id, "qty": it.qty} for it in p.items],
            p.client_created_at,
            p.cashier_id,
        )

    def _handle_update_product(self, p: UpdateProductPayload):
        product = self.gateway.get_product(p.product_id)
        self.store.upsert_product(product)

    def _handle_update_order_status(self, p: UpdateOrderStatusPayload):
        order = self.store.get_order(p.local_order_id)
        if order is None:
            raise NotFoundError(f"local order {p.local_order_id} no longer exists")
        if not order.remote_id:
            raise _NotReady(f"order {order.id} has no remote id yet")
        self.gateway.update_order_status(order.remote_id, p.status)
        self.store.update_order_status(order.id, p.status)

    # -- facade for the cashier UI --------------------------------------

    def get_products(self) -> list[Product]:
        return self.store.get_all_products()

    def search_products(self, query: str) -> list[Product]:
        return self.store.search_products(query)

    def get_product_by_barcode(self, code: str) -> Optional[Product]:
        return self.store.find_product_by_barcode(code)

    def get_orders(self, limit: int = 20) -> list[LocalOrder]:
        return self.store.list_orders(limit)

    def get_unsynced_orders(self) -> list[LocalOrder]:
        return self.store.list_unsynced_orders()

    def get_rejected_orders(self) -> list[LocalOrder]:
        return self.store.list_rejected_orders()

    def create_order(
        self,
        items: list[dict],
        payment_method: str,
        status: str = "COMPLETED",
        cashier_id: Optional[str] = None,
    ) -> int:
        """
        Record a sale locally and return its local id. The order is durable
        once this returns, whatever happens to the sync that follows.
        """
        method = str(payment_method or "").strip().upper()
        if method not in PAYMENT_METHODS:
            raise ValidationError("payment method must be CASH, CARD or QR")
        status = str(status or "").strip().upper()
        if status not in ("PENDING", "COMPLETED"):
            raise ValidationError("new orders must be PENDING or COMPLETED")
        if not items:
            raise ValidationError("order needs at least one item")

        lines: list[OrderLine] = []
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("each item must be an object")
            product_id = str(raw.get("product_id") or raw.get("productId") or "").strip()
            qty = raw.get("qty", raw.get("quantity"))
            if not product_id:
                raise ValidationError("item is missing product_id")
            if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
                raise ValidationError(f"item {product_id}: quantity must be a positive integer")
            product = self.store.get_product(product_id)
            if product is None:
                raise NotFoundError(f"product {product_id} not found")
            if product.price_cents <= 0:
                raise ValidationError(f"product {product_id} has no sellable price")
            tax_rate = product.tax_rate if product.tax_rate is not None else self.default_tax_rate
            lines.append(
                OrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=qty,
                    unit_price_cents=product.price_cents,
                    tax_rate=tax_rate,
                )
            )

        totals = compute_order_totals((ln.unit_price_cents, ln.quantity, ln.tax_rate) for ln in lines)
        order = LocalOrder(
            items=lines,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            payment_method=method,
            status=status,
            created_at=self._clock().isoformat(),
            cashier_id=str(cashier_id if cashier_id is not None else self.cashier_id),
        )
        local_id = self.store.insert_order(order)
        json_log("info", "order.created", order_id=local_id, total_cents=totals.total_cents, online=self.network.is_online)
        self._notify()
        if self.network.is_online:
            self.trigger_sync("order_created")
        return local_id

    def request_product_refresh(self, product_id: str) -> int:
        payload = UpdateProductPayload(product_id=str(product_id))
        item_id = self.store.enqueue("UPDATE_PRODUCT", dump_payload(payload))
        self._notify()
        self.trigger_sync("product_refresh")
        return item_id

    def request_order_status(self, local_id: int, status: str) -> int:
        status = str(status or "").strip().upper()
        if status not in ORDER_STATUSES:
            raise ValidationError(f"invalid order status: {status!r}")
        if self.store.get_order(local_id) is None:
            raise NotFoundError(f"order {local_id} not found")
        payload = UpdateOrderStatusPayload(local_order_id=int(local_id), status=status)
        item_id = self.store.enqueue("UPDATE_ORDER_STATUS", dump_payload(payload), order_id=int(local_id))
        self._notify()
        self.trigger_sync("order_status")
        return item_id

    def retry_rejected_order(self, local_id: int) -> bool:
        changed = self.store.clear_order_rejection(local_id)
        if changed:
            self._notify()
            self.trigger_sync("order_retry")
        return changed

    def update_credentials(self, device_token: str):
        token = (device_token or "").strip()
        if not token:
            raise ValidationError("device token is required")
        self.gateway.set_credentials(token)
        self._set_auth_required(False)
        self._notify()
        self.trigger_sync("credentials_updated")

