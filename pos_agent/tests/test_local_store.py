import pytest

from pos_agent.errors import NotFoundError, StorageError, ValidationError
from pos_agent.models import LocalOrder, OrderLine, Product
from pos_agent.store import LocalStore


@pytest.fixture
def store(tmp_path):
    s = LocalStore(str(tmp_path / "pos.sqlite"))
    s.init()
    return s


def _order(created_at: str, qty: int = 1, price: int = 450) -> LocalOrder:
    line = OrderLine(product_id="p1", product_name="Coffee", quantity=qty, unit_price_cents=price, tax_rate=0)
    return LocalOrder(
        items=[line],
        subtotal_cents=price * qty,
        tax_cents=0,
        total_cents=price * qty,
        payment_method="CASH",
        status="COMPLETED",
        created_at=created_at,
        cashier_id="c1",
    )


def test_init_is_idempotent(store):
    store.init()
    assert store.get_storage_stats()["order_count"] == 0


def test_unwritable_path_raises_storage_error(tmp_path):
    s = LocalStore(str(tmp_path / "missing" / "dir" / "pos.sqlite"))
    with pytest.raises(StorageError):
        s.init()


def test_replace_catalog_swaps_snapshot(store):
    store.replace_catalog([Product(id="a", name="Old", price_cents=100)])
    store.replace_catalog(
        [
            Product(id="p1", name="Coffee", price_cents=450, stock=3, tax_rate=8.25, barcode="111"),
            Product(id="p2", name="Bagel", price_cents=300, barcode="222"),
        ]
    )
    assert [p.id for p in store.get_all_products()] == ["p2", "p1"]
    assert store.get_product("a") is None
    assert store.find_product_by_barcode("111").tax_rate == 8.25
    assert store.get_product("p2").tax_rate is None


def test_replace_catalog_drops_duplicate_barcode(store):
    store.replace_catalog(
        [
            Product(id="p1", name="Coffee", price_cents=450, barcode="111"),
            Product(id="p2", name="Tea", price_cents=300, barcode="111"),
        ]
    )
    assert store.find_product_by_barcode("111").id == "p1"
    assert store.get_product("p2").barcode is None


def test_replace_catalog_rejects_negative_price_and_keeps_old(store):
    store.replace_catalog([Product(id="p1", name="Coffee", price_cents=450)])
    with pytest.raises(ValidationError):
        store.replace_catalog([Product(id="p9", name="Broken", price_cents=-1)])
    assert [p.id for p in store.get_all_products()] == ["p1"]


def test_upsert_moves_barcode(store):
    store.replace_catalog([Product(id="p1", name="Coffee", price_cents=450, barcode="111")])
    store.upsert_product(Product(id="p2", name="Tea", price_cents=300, barcode="111"))
    assert store.find_product_by_barcode("111").id == "p2"
    assert store.get_product("p1").barcode is None


def test_search_is_case_insensitive_beyond_ascii(store):
    store.replace_catalog(
        [
            Product(id="p1", name="Café Latte", price_cents=450, category="Drinks"),
            Product(id="p2", name="Bagel", price_cents=300, category="Bakery"),
        ]
    )
    assert [p.id for p in store.search_products("CAFÉ")] == ["p1"]
    assert [p.id for p in store.search_products("bakery")] == ["p2"]
    assert len(store.search_products("  ")) == 2


def test_decrement_stock_clamps_at_zero(store):
    store.replace_catalog([Product(id="p1", name="Coffee", price_cents=450, stock=2)])
    assert store.decrement_stock("p1", 5) is True
    assert store.get_product("p1").stock == 0
    assert store.decrement_stock("nope", 1) is False


def test_insert_order_enforces_total_invariant(store):
    bad = _order("2026-01-01T00:00:00+00:00")
    bad.total_cents += 1
    with pytest.raises(ValidationError):
        store.insert_order(bad)


def test_insert_order_rejects_unknown_payment_method(store):
    bad = _order("2026-01-01T00:00:00+00:00")
    bad.payment_method = "BITCOIN"
    with pytest.raises(ValidationError):
        store.insert_order(bad)


def test_unsynced_orders_come_back_oldest_first(store):
    late = store.insert_order(_order("2026-01-01T10:00:00+00:00"))
    early = store.insert_order(_order("2026-01-01T09:00:00+00:00"))
    assert [o.id for o in store.list_unsynced_orders()] == [early, late]
    assert [o.id for o in store.list_orders(10)] == [late, early]


def test_order_items_round_trip(store):
    oid = store.insert_order(_order("2026-01-01T00:00:00+00:00", qty=2))
    o = store.get_order(oid)
    assert o.items[0].product_name == "Coffee"
    assert o.items[0].quantity == 2
    assert o.remote_items() == [{"productId": "p1", "qty": 2}]
    assert o.synced is False


def test_mark_order_synced_is_idempotent(store):
    oid = store.insert_order(_order("2026-01-01T00:00:00+00:00"))
    assert store.mark_order_synced(oid, "r-1") is True
    assert store.mark_order_synced(oid, "r-1") is False
    # A second remote id never overwrites the first.
    assert store.mark_order_synced(oid, "r-2") is False
    o = store.get_order(oid)
    assert o.synced is True
    assert o.remote_id == "r-1"
    assert store.list_unsynced_orders() == []


def test_mark_order_synced_unknown_order(store):
    with pytest.raises(NotFoundError):
        store.mark_order_synced(404, "r-1")


def test_rejected_orders_leave_the_unsynced_list(store):
    oid = store.insert_order(_order("2026-01-01T00:00:00+00:00"))
    store.mark_order_rejected(oid, "http 422: bad item")
    assert store.list_unsynced_orders() == []
    rejected = store.list_rejected_orders()
    assert [o.id for o in rejected] == [oid]
    assert rejected[0].last_error == "http 422: bad item"
    assert store.clear_order_rejection(oid) is True
    assert [o.id for o in store.list_unsynced_orders()] == [oid]


def test_enqueue_dedupes_create_order_per_order(store):
    oid = store.insert_order(_order("2026-01-01T00:00:00+00:00"))
    first = store.enqueue("CREATE_ORDER", '{"local_order_id": %d}' % oid, order_id=oid)
    second = store.enqueue("CREATE_ORDER", '{"local_order_id": %d}' % oid, order_id=oid)
    assert first == second
    assert store.queue_depth() == 1
    store.enqueue("UPDATE_PRODUCT", '{"product_id": "p1"}')
    store.enqueue("UPDATE_PRODUCT", '{"product_id": "p1"}')
    assert store.queue_depth() == 3


def test_enqueue_rejects_unknown_kind(store):
    with pytest.raises(ValidationError):
        store.enqueue("DELETE_EVERYTHING", "{}")


def test_record_attempt_and_due_filter(store):
    item_id = store.enqueue("UPDATE_PRODUCT", '{"product_id": "p1"}')
    assert store.record_attempt(item_id, "2026-01-01T00:10:00+00:00") == 1
    assert store.record_attempt(item_id, "2026-01-01T00:20:00+00:00") == 2
    assert store.dequeue_all(due_at="2026-01-01T00:15:00+00:00") == []
    items = store.dequeue_all(due_at="2026-01-01T00:20:00+00:00")
    assert [i.id for i in items] == [item_id]
    assert items[0].attempts == 2
    # Reading never removes.
    assert store.queue_depth() == 1
    store.remove(item_id)
    assert store.queue_depth() == 0


def test_storage_stats_and_clear_all(store):
    store.replace_catalog([Product(id="p1", name="Coffee", price_cents=450)])
    a = store.insert_order(_order("2026-01-01T00:00:00+00:00"))
    b = store.insert_order(_order("2026-01-01T00:01:00+00:00"))
    store.mark_order_synced(a, "r-1")
    store.mark_order_rejected(b, "nope")
    store.enqueue("UPDATE_PRODUCT", '{"product_id": "p1"}')
    assert store.get_storage_stats() == {
        "product_count": 1,
        "order_count": 2,
        "unsynced_order_count": 0,
        "rejected_order_count": 1,
        "sync_queue_count": 1,
    }
    store.clear_all()
    assert store.get_storage_stats()["order_count"] == 0
