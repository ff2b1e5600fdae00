from datetime import datetime, timedelta, timezone

import pytest

from pos_agent.errors import AuthError, NetworkError, NotFoundError, OfflineError, ValidationError
from pos_agent.gateway import CreateOrderResult, HttpOrderGateway, RemoteOrderGateway
from pos_agent.models import MAX_QUEUE_ATTEMPTS, Product
from pos_agent.money import compute_order_totals
from pos_agent.network import NetworkMonitor
from pos_agent.payloads import CreateOrderPayload, RemoteItem, dump_payload
from pos_agent.store import LocalStore
from pos_agent.sync_engine import RetryPolicy, SyncEngine


CATALOG = [
    Product(id="p1", name="Coffee", price_cents=450, stock=10, tax_rate=8.25, barcode="111"),
    Product(id="p2", name="Bagel", price_cents=300, stock=5, tax_rate=0),
]


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class FakeGateway(RemoteOrderGateway):
    def __init__(self, catalog=None):
        self.catalog = list(catalog if catalog is not None else CATALOG)
        self.catalog_error = None
        # One entry per create_order call: an exception to raise, or None.
        self.create_errors = []
        self.product_error = None
        self.created = []
        self.status_calls = []
        self.token = "tok"

    def fetch_catalog(self):
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(self.catalog)

    def get_product(self, product_id):
        if self.product_error is not None:
            raise self.product_error
        for p in self.catalog:
            if p.id == product_id:
                return p
        raise NotFoundError(product_id)

    def create_order(self, payment_method, items, client_created_at=None, cashier_id=None):
        if self.create_errors:
            ex = self.create_errors.pop(0)
            if ex is not None:
                raise ex
        prices = {p.id: p for p in self.catalog}
        totals = compute_order_totals(
            (prices[it["productId"]].price_cents, it["qty"], prices[it["productId"]].tax_rate or 0) for it in items
        )
        self.created.append(
            {
                "payment_method": payment_method,
                "items": items,
                "client_created_at": client_created_at,
                "cashier_id": cashier_id,
            }
        )
        return CreateOrderResult(remote_order_id=f"r-{len(self.created)}", totals=totals)

    def update_order_status(self, remote_order_id, status):
        self.status_calls.append((remote_order_id, status))
        return {"ok": True}

    def health(self):
        return True

    def set_credentials(self, device_token):
        self.token = device_token


@pytest.fixture
def store(tmp_path):
    s = LocalStore(str(tmp_path / "pos.sqlite"))
    s.init()
    s.replace_catalog(CATALOG)
    return s


@pytest.fixture
def gateway():
    return FakeGateway()


def _engine(store, gateway, online=False, **kwargs):
    kwargs.setdefault("clock", _Clock())
    return SyncEngine(store, gateway, NetworkMonitor(initial=online), cashier_id="c1", background=False, **kwargs)


def _sell(engine, product_id="p1", qty=1, method="CASH"):
    return engine.create_order([{"product_id": product_id, "qty": qty}], method)


def test_checkout_offline_is_durable_and_uses_catalog_prices(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1", 2)
    order = store.get_order(oid)
    assert (order.subtotal_cents, order.tax_cents, order.total_cents) == (900, 74, 974)
    assert order.items[0].unit_price_cents == 450
    assert order.items[0].product_name == "Coffee"
    assert order.cashier_id == "c1"
    assert order.status == "COMPLETED"
    assert order.synced is False
    assert gateway.created == []
    status = engine.get_status()
    assert status.is_online is False
    assert status.pending_sync_count == 1


def test_checkout_falls_back_to_default_tax_rate(store, gateway):
    store.upsert_product(Product(id="p3", name="Sandwich", price_cents=1000))
    engine = _engine(store, gateway, default_tax_rate=10)
    order = store.get_order(_sell(engine, "p3"))
    assert order.tax_cents == 100
    assert order.items[0].tax_rate == 10


def test_checkout_rejects_bad_input_without_writing(store, gateway):
    engine = _engine(store, gateway)
    with pytest.raises(NotFoundError):
        _sell(engine, "nope")
    with pytest.raises(ValidationError):
        _sell(engine, "p1", 0)
    with pytest.raises(ValidationError):
        _sell(engine, "p1", 1, method="BITCOIN")
    with pytest.raises(ValidationError):
        engine.create_order([], "CASH")
    with pytest.raises(ValidationError):
        engine.create_order(["p1"], "CASH")
    with pytest.raises(ValidationError):
        engine.create_order("p1", "CASH")
    assert store.get_storage_stats()["order_count"] == 0


def test_checkout_online_syncs_right_away(store, gateway):
    engine = _engine(store, gateway, online=True)
    oid = _sell(engine, "p1", 2, method="card")
    order = store.get_order(oid)
    assert order.synced is True
    assert order.remote_id == "r-1"
    assert gateway.created[0]["payment_method"] == "CARD"
    assert gateway.created[0]["items"] == [{"productId": "p1", "qty": 2}]
    assert gateway.created[0]["cashier_id"] == "c1"
    # Catalog refresh reset stock to 10, then the sale took 2.
    assert store.get_product("p1").stock == 8


def test_force_sync_while_offline_raises(store, gateway):
    engine = _engine(store, gateway)
    with pytest.raises(OfflineError):
        engine.force_sync()


def test_trigger_is_a_noop_offline_or_while_syncing(store, gateway):
    engine = _engine(store, gateway)
    assert engine.trigger_sync() is False
    engine.network.set_online(True)
    assert engine._begin_pass() is True
    assert engine.trigger_sync() is False
    assert engine.run_sync_pass().ran is False
    engine._end_pass()
    assert engine.run_sync_pass().ran is True


def test_orders_flush_oldest_first(store, gateway):
    engine = _engine(store, gateway)
    ids = [_sell(engine, "p1"), _sell(engine, "p2"), _sell(engine, "p1", 3)]
    engine.network.set_online(True)
    report = engine.force_sync()
    assert report.orders_synced == 3
    assert [c["items"][0] for c in gateway.created] == [
        {"productId": "p1", "qty": 1},
        {"productId": "p2", "qty": 1},
        {"productId": "p1", "qty": 3},
    ]
    assert [store.get_order(i).remote_id for i in ids] == ["r-1", "r-2", "r-3"]
    assert engine.get_status().pending_sync_count == 0


def test_one_failed_order_does_not_block_the_batch(store, gateway):
    engine = _engine(store, gateway)
    a, b, c = _sell(engine, "p1"), _sell(engine, "p2"), _sell(engine, "p1", 2)
    engine.network.set_online(True)
    gateway.create_errors = [None, NetworkError("timeout"), None]
    report = engine.force_sync()
    assert report.orders_synced == 2
    assert report.orders_failed == 1
    # The failed order went to the queue and the same pass retried it.
    assert report.queue_succeeded == 1
    assert [store.get_order(i).remote_id for i in (a, c, b)] == ["r-1", "r-2", "r-3"]
    assert store.queue_depth() == 0


def test_failed_order_stays_queued_until_it_succeeds(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1")
    engine.network.set_online(True)
    gateway.create_errors = [NetworkError("down"), NetworkError("down")]
    report = engine.force_sync()
    assert report.orders_failed == 1
    assert report.queue_failed == 1
    assert store.queue_depth() == 1
    assert store.dequeue_all()[0].attempts == 1
    assert store.get_order(oid).synced is False

    report = engine.force_sync()
    assert report.orders_synced == 1
    # The queue item found the order already synced and acknowledged it.
    assert report.queue_succeeded == 1
    assert store.queue_depth() == 0
    assert len(gateway.created) == 1


def test_queue_item_dropped_on_fifth_failure(store, gateway):
    engine = _engine(store, gateway)
    engine.request_product_refresh("p1")
    engine.network.set_online(True)
    gateway.product_error = NetworkError("down")
    for attempt in range(1, MAX_QUEUE_ATTEMPTS):
        report = engine.force_sync()
        assert report.queue_failed == 1
        assert store.dequeue_all()[0].attempts == attempt
    report = engine.force_sync()
    assert report.queue_dropped == 1
    assert store.queue_depth() == 0


def test_dropped_create_leaves_the_order_for_the_next_flush(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1")
    engine.network.set_online(True)
    gateway.create_errors = [NetworkError("down")] * (2 * MAX_QUEUE_ATTEMPTS)
    for _ in range(MAX_QUEUE_ATTEMPTS):
        engine.force_sync()
    assert store.queue_depth() == 0
    assert store.get_order(oid).synced is False
    report = engine.force_sync()
    assert report.orders_synced == 1
    assert store.get_order(oid).synced is True


def test_backoff_delays_the_next_attempt(store, gateway):
    clock = _Clock()
    engine = _engine(store, gateway, clock=clock, retry_policy=RetryPolicy(base_delay_s=60))
    engine.request_product_refresh("p1")
    engine.network.set_online(True)
    gateway.product_error = NetworkError("down")
    engine.force_sync()
    item = store.dequeue_all()[0]
    assert item.attempts == 1
    assert item.next_attempt_at is not None
    report = engine.force_sync()
    # Not due yet, so no attempt was made.
    assert report.queue_failed == 0
    assert store.dequeue_all()[0].attempts == 1
    clock.now += timedelta(minutes=2)
    gateway.product_error = None
    report = engine.force_sync()
    assert report.queue_succeeded == 1


def test_validation_rejection_is_not_retried(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1")
    engine.network.set_online(True)
    gateway.create_errors = [ValidationError("http 422: product inactive")]
    report = engine.force_sync()
    assert report.orders_rejected == 1
    assert store.queue_depth() == 0
    assert [o.id for o in engine.get_rejected_orders()] == [oid]
    assert engine.get_unsynced_orders() == []

    engine.force_sync()
    assert gateway.created == []

    assert engine.retry_rejected_order(oid) is True
    assert store.get_order(oid).synced is True
    assert engine.get_rejected_orders() == []


def test_auth_error_pauses_order_sync_until_new_credentials(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1")
    engine.network.set_online(True)
    gateway.create_errors = [AuthError("http 401: invalid device token")]
    report = engine.force_sync()
    assert report.auth_required is True
    assert engine.get_status().auth_required is True
    assert store.queue_depth() == 0
    assert store.get_order(oid).synced is False

    engine.force_sync()
    assert gateway.created == []

    engine.update_credentials("tok-2")
    assert gateway.token == "tok-2"
    assert engine.auth_required is False
    assert store.get_order(oid).synced is True


def test_unregistered_device_pauses_sync_instead_of_rejecting(store):
    engine = SyncEngine(
        store, HttpOrderGateway("http://api.test", device_id="", device_token=""), NetworkMonitor(initial=True), background=False
    )
    oid = _sell(engine, "p1")
    report = engine.force_sync()
    assert report.auth_required is True
    assert report.orders_rejected == 0
    assert [o.id for o in engine.get_unsynced_orders()] == [oid]
    assert engine.get_rejected_orders() == []
    status = engine.get_status()
    assert status.auth_required is True
    assert status.pending_sync_count == 1


def test_catalog_failure_keeps_last_snapshot_and_still_flushes(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p2")
    engine.network.set_online(True)
    gateway.catalog_error = NetworkError("catalog timeout")
    report = engine.force_sync()
    assert report.catalog_refreshed is False
    assert report.errors
    assert report.orders_synced == 1
    assert store.get_order(oid).synced is True
    assert [p.id for p in store.get_all_products()] == ["p2", "p1"]


def test_catalog_refresh_replaces_snapshot(store, gateway):
    engine = _engine(store, gateway, online=True)
    gateway.catalog = [Product(id="p9", name="Muffin", price_cents=250)]
    report = engine.force_sync()
    assert report.catalog_refreshed is True
    assert [p.id for p in engine.get_products()] == ["p9"]


def test_already_synced_order_is_acknowledged_without_remote_call(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1")
    payload = CreateOrderPayload(local_order_id=oid, payment_method="CASH", items=[RemoteItem(product_id="p1", qty=1)])
    store.enqueue("CREATE_ORDER", dump_payload(payload), order_id=oid)
    store.mark_order_synced(oid, "r-0")
    engine.network.set_online(True)
    report = engine.force_sync()
    assert gateway.created == []
    assert report.queue_succeeded == 1
    assert store.get_order(oid).remote_id == "r-0"


def test_poison_queue_item_is_removed(store, gateway):
    engine = _engine(store, gateway, online=True)
    store.enqueue("UPDATE_PRODUCT", "{not json")
    store.enqueue("UPDATE_PRODUCT", '{"sku": "p1"}')
    report = engine.force_sync()
    assert report.queue_dropped == 2
    assert store.queue_depth() == 0


def test_product_refresh_updates_one_row(store, gateway):
    engine = _engine(store, gateway)
    engine.request_product_refresh("p2")
    gateway.catalog = [Product(id="p2", name="Bagel", price_cents=350, stock=1, tax_rate=0)]
    gateway.catalog_error = NetworkError("catalog down")
    engine.network.set_online(True)
    report = engine.force_sync()
    assert report.queue_succeeded == 1
    assert store.get_product("p2").price_cents == 350
    assert store.get_product("p1").price_cents == 450


def test_status_change_waits_for_the_order_to_sync(store, gateway):
    engine = _engine(store, gateway)
    oid = _sell(engine, "p1")
    engine.request_order_status(oid, "void")
    engine.network.set_online(True)
    gateway.create_errors = [NetworkError("down"), NetworkError("down")]
    engine.force_sync()
    assert gateway.status_calls == []
    assert store.get_order(oid).status == "COMPLETED"

    engine.force_sync()
    assert gateway.status_calls == [("r-1", "VOID")]
    assert store.get_order(oid).status == "VOID"
    assert store.queue_depth() == 0


def test_status_change_for_unknown_order(store, gateway):
    engine = _engine(store, gateway)
    with pytest.raises(NotFoundError):
        engine.request_order_status(99, "VOID")
    with pytest.raises(ValidationError):
        engine.request_order_status(99, "REFUNDED")


def test_status_listeners_see_the_pass(store, gateway):
    engine = _engine(store, gateway)
    _sell(engine, "p1")
    seen = []
    remove = engine.add_status_listener(seen.append)
    engine.network.set_online(True)
    engine.force_sync()
    assert any(s.is_syncing for s in seen)
    last = seen[-1]
    assert last.is_syncing is False
    assert last.is_online is True
    assert last.pending_sync_count == 0
    assert last.last_sync is not None

    remove()
    count = len(seen)
    engine.force_sync()
    assert len(seen) == count


def test_failing_status_listener_is_isolated(store, gateway):
    engine = _engine(store, gateway, online=True)
    seen = []

    def boom(_status):
        raise RuntimeError("ui went away")

    engine.add_status_listener(boom)
    engine.add_status_listener(seen.append)
    report = engine.force_sync()
    assert report.ran is True
    assert seen


def test_network_flip_triggers_a_pass_after_init(store, gateway):
    engine = _engine(store, gateway, sync_interval_s=3600)
    engine.init()
    try:
        oid = _sell(engine, "p1")
        assert store.get_order(oid).synced is False
        engine.network.set_online(True)
        assert store.get_order(oid).synced is True
    finally:
        engine.shutdown()


def test_retry_policy_schedule():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert RetryPolicy().next_attempt_at(1, now) is None
    p = RetryPolicy(base_delay_s=10, max_delay_s=25)
    assert p.next_attempt_at(1, now) == (now + timedelta(seconds=10)).isoformat()
    assert p.next_attempt_at(2, now) == (now + timedelta(seconds=20)).isoformat()
    assert p.next_attempt_at(3, now) == (now + timedelta(seconds=25)).isoformat()
