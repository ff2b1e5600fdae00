"""
Durable on-device storage for the catalog snapshot, local orders and the sync queue.

SQLite in WAL mode: readers (catalog browsing, barcode lookups) see the last
committed snapshot while a sync pass writes. Writes go through one lock so a
checkout insert and a catalog replace never fight over the database file.
Every `sqlite3.Error` surfaces as `StorageError`.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .errors import NotFoundError, StorageError, ValidationError
from .logs import json_log
from .models import (
    ORDER_STATUSES,
    PAYMENT_METHODS,
    QUEUE_KINDS,
    LocalOrder,
    OrderLine,
    Product,
    QueueItem,
)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "sqlite_schema.sql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalStore:
    def __init__(self, db_path: str, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = db_path
        self._clock = clock or _utcnow
        self._write_lock = threading.RLock()

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as ex:
            raise StorageError(f"cannot open local database: {ex}") from ex
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as ex:
            conn.rollback()
            raise StorageError(str(ex)) from ex
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _write(self):
        with self._write_lock:
            with self._connect() as conn:
                yield conn

    def init(self):
        with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
            schema = f.read()
        with self._write() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(schema)

    def close(self):
        # Connections are per-operation; nothing is held open between calls.
        pass

    # -- catalog --------------------------------------------------------

    def replace_catalog(self, products: Iterable[Product]) -> int:
        """Clear and rewrite the whole snapshot in one transaction."""
        now = self._now_iso()
        rows = []
        seen_barcodes = set()
        for p in products:
            _check_product(p)
            barcode = (p.barcode or "").strip() or None
            if barcode and barcode in seen_barcodes:
                json_log("warning", "catalog.duplicate_barcode", product_id=p.id, barcode=barcode)
                barcode = None
            if barcode:
                seen_barcodes.add(barcode)
            rows.append(_product_row(p, barcode, p.last_updated or now))
        with self._write() as conn:
            conn.execute("DELETE FROM products")
            conn.executemany(
                """
                INSERT INTO products (id, name, price_cents, stock, tax_rate, category, barcode, image, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def upsert_product(self, product: Product):
        _check_product(product)
        barcode = (product.barcode or "").strip() or None
        with self._write() as conn:
            if barcode:
                # A barcode moved to this product; release it from the old holder.
                conn.execute(
                    "UPDATE products SET barcode = NULL WHERE barcode = ? AND id <> ?",
                    (barcode, str(product.id)),
                )
            conn.execute(
                """
                INSERT INTO products (id, name, price_cents, stock, tax_rate, category, barcode, image, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  price_cents=excluded.price_cents,
                  stock=excluded.stock,
                  tax_rate=excluded.tax_rate,
                  category=excluded.category,
                  barcode=excluded.barcode,
                  image=excluded.image,
                  last_updated=excluded.last_updated
                """,
                _product_row(product, barcode, product.last_updated or self._now_iso()),
            )

    def get_all_products(self) -> list[Product]:
        with self._connect() as conn:
            cur = conn.execute("SELECT * FROM products ORDER BY name, id")
            return [_row_to_product(r) for r in cur.fetchall()]

    def get_product(self, product_id) -> Optional[Product]:
        with self._connect() as conn:
            cur = conn.execute("SELECT * FROM products WHERE id = ?", (str(product_id),))
            row = cur.fetchone()
            return _row_to_product(row) if row else None

    def find_product_by_barcode(self, code: str) -> Optional[Product]:
        code = (code or "").strip()
        if not code:
            return None
        with self._connect() as conn:
            cur = conn.execute("SELECT * FROM products WHERE barcode = ?", (code,))
            row = cur.fetchone()
            return _row_to_product(row) if row else None

    def search_products(self, query: str) -> list[Product]:
        # SQLite LIKE/lower() only fold ASCII; casefold in Python instead.
        needle = (query or "").strip().casefold()
        products = self.get_all_products()
        if not needle:
            return products
        return [
            p
            for p in products
            if needle in p.name.casefold() or (p.category and needle in p.category.casefold())
        ]

    def decrement_stock(self, product_id, qty: int) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "UPDATE products SET stock = MAX(0, stock - ?) WHERE id = ?",
                (int(qty), str(product_id)),
            )
            return cur.rowcount > 0

    # -- orders ---------------------------------------------------------

    def insert_order(self, order: LocalOrder) -> int:
        _check_order(order)
        created_at = order.created_at or self._now_iso()
        items_json = json.dumps([ln.to_dict() for ln in order.items])
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO orders
                  (remote_id, items_json, subtotal_cents, tax_cents, total_cents,
                   payment_method, status, created_at, synced, cashier_id)
                VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    items_json,
                    order.subtotal_cents,
                    order.tax_cents,
                    order.total_cents,
                    order.payment_method,
                    order.status,
                    created_at,
                    str(order.cashier_id or ""),
                ),
            )
            return int(cur.lastrowid)

    def get_order(self, local_id: int) -> Optional[LocalOrder]:
        with self._connect() as conn:
            cur = conn.execute("SELECT * FROM orders WHERE id = ?", (int(local_id),))
            row = cur.fetchone()
            return _row_to_order(row) if row else None

    def list_orders(self, limit: int = 20) -> list[LocalOrder]:
        """Most recent first."""
        limit = max(1, int(limit or 20))
        with self._connect() as conn:
            cur = conn.execute(
                "SELECT * FROM orders ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_order(r) for r in cur.fetchall()]

    def list_unsynced_orders(self) -> list[LocalOrder]:
        """Oldest first, so orders replay in the sequence customers were served."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                SELECT * FROM orders
                WHERE synced = 0 AND rejected_at IS NULL
                ORDER BY created_at ASC, id ASC
                """
            )
            return [_row_to_order(r) for r in cur.fetchall()]

    def list_rejected_orders(self) -> list[LocalOrder]:
        with self._connect() as conn:
            cur = conn.execute(
                "SELECT * FROM orders WHERE synced = 0 AND rejected_at IS NOT NULL ORDER BY created_at ASC, id ASC"
            )
            return [_row_to_order(r) for r in cur.fetchall()]

    def mark_order_synced(self, local_id: int, remote_id) -> bool:
        """
        One-way transition to synced. Returns True when the row changed.
        Repeating the call with the same remote id is a no-op.
        """
        remote_id = str(remote_id)
        with self._write() as conn:
            row = conn.execute(
                "SELECT synced, remote_id FROM orders WHERE id = ?", (int(local_id),)
            ).fetchone()
            if not row:
                raise NotFoundError(f"order {local_id} not found")
            if row["synced"]:
                if row["remote_id"] != remote_id:
                    json_log(
                        "warning",
                        "order.already_synced",
                        order_id=local_id,
                        remote_id=row["remote_id"],
                        ignored_remote_id=remote_id,
                    )
                return False
            conn.execute(
                """
                UPDATE orders
                SET synced = 1, remote_id = ?, rejected_at = NULL, last_error = NULL
                WHERE id = ? AND synced = 0
                """,
                (remote_id, int(local_id)),
            )
            return True

    def mark_order_rejected(self, local_id: int, error: str):
        with self._write() as conn:
            conn.execute(
                "UPDATE orders SET rejected_at = ?, last_error = ? WHERE id = ? AND synced = 0",
                (self._now_iso(), (error or "")[:1000], int(local_id)),
            )

    def clear_order_rejection(self, local_id: int) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "UPDATE orders SET rejected_at = NULL, last_error = NULL WHERE id = ? AND synced = 0",
                (int(local_id),),
            )
            return cur.rowcount > 0

    def update_order_status(self, local_id: int, status: str):
        if status not in ORDER_STATUSES:
            raise ValidationError(f"invalid order status: {status!r}")
        with self._write() as conn:
            cur = conn.execute("UPDATE orders SET status = ? WHERE id = ?", (status, int(local_id)))
            if cur.rowcount == 0:
                raise NotFoundError(f"order {local_id} not found")

    # -- sync queue -----------------------------------------------------

    def enqueue(self, kind: str, payload_json: str, order_id: Optional[int] = None) -> int:
        """
        Append a retry item. A CREATE_ORDER for an order that already has one
        returns the existing item id instead of adding a second.
        """
        if kind not in QUEUE_KINDS:
            raise ValidationError(f"invalid queue kind: {kind!r}")
        with self._write() as conn:
            if kind == "CREATE_ORDER" and order_id is not None:
                row = conn.execute(
                    "SELECT id FROM sync_queue WHERE kind = 'CREATE_ORDER' AND order_id = ?",
                    (int(order_id),),
                ).fetchone()
                if row:
                    return int(row["id"])
            cur = conn.execute(
                """
                INSERT INTO sync_queue (kind, payload_json, created_at, attempts, order_id)
                VALUES (?, ?, ?, 0, ?)
                """,
                (kind, payload_json, self._now_iso(), order_id),
            )
            return int(cur.lastrowid)

    def dequeue_all(self, due_at: Optional[str] = None) -> list[QueueItem]:
        """
        Read queue items oldest first without removing them. With `due_at`,
        only items whose next attempt is due by then are returned.
        """
        with self._connect() as conn:
            if due_at is None:
                cur = conn.execute("SELECT * FROM sync_queue ORDER BY created_at ASC, id ASC")
            else:
                cur = conn.execute(
                    """
                    SELECT * FROM sync_queue
                    WHERE next_attempt_at IS NULL OR next_attempt_at <= ?
                    ORDER BY created_at ASC, id ASC
                    """,
                    (due_at,),
                )
            return [_row_to_queue_item(r) for r in cur.fetchall()]

    def record_attempt(self, item_id: int, next_attempt_at: Optional[str] = None) -> int:
        """Bump the attempt counter; returns the new count."""
        with self._write() as conn:
            conn.execute(
                """
                UPDATE sync_queue
                SET attempts = attempts + 1, last_attempt = ?, next_attempt_at = ?
                WHERE id = ?
                """,
                (self._now_iso(), next_attempt_at, int(item_id)),
            )
            row = conn.execute("SELECT attempts FROM sync_queue WHERE id = ?", (int(item_id),)).fetchone()
            if not row:
                raise NotFoundError(f"queue item {item_id} not found")
            return int(row["attempts"])

    def remove(self, item_id: int):
        with self._write() as conn:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (int(item_id),))

    def queue_depth(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(1) FROM sync_queue").fetchone()[0])

    # -- utility --------------------------------------------------------

    def get_storage_stats(self) -> dict:
        with self._connect() as conn:
            def _count(sql: str) -> int:
                return int(conn.execute(sql).fetchone()[0])

            return {
                "product_count": _count("SELECT COUNT(1) FROM products"),
                "order_count": _count("SELECT COUNT(1) FROM orders"),
                "unsynced_order_count": _count(
                    "SELECT COUNT(1) FROM orders WHERE synced = 0 AND rejected_at IS NULL"
                ),
                "rejected_order_count": _count(
                    "SELECT COUNT(1) FROM orders WHERE synced = 0 AND rejected_at IS NOT NULL"
                ),
                "sync_queue_count": _count("SELECT COUNT(1) FROM sync_queue"),
            }

    def clear_all(self):
        with self._write() as conn:
            conn.execute("DELETE FROM products")
            conn.execute("DELETE FROM orders")
            conn.execute("DELETE FROM sync_queue")


def _check_product(p: Product):
    if not str(p.id or "").strip():
        raise ValidationError("product id is required")
    if int(p.price_cents) < 0:
        raise ValidationError(f"product {p.id}: price must be >= 0")
    if int(p.stock) < 0:
        raise ValidationError(f"product {p.id}: stock must be >= 0")


def _product_row(p: Product, barcode: Optional[str], last_updated: str) -> tuple:
    return (
        str(p.id),
        p.name,
        int(p.price_cents),
        int(p.stock),
        float(p.tax_rate) if p.tax_rate is not None else None,
        p.category or None,
        barcode,
        p.image or None,
        last_updated,
    )


def _check_order(order: LocalOrder):
    if order.payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"invalid payment method: {order.payment_method!r}")
    if order.status not in ORDER_STATUSES:
        raise ValidationError(f"invalid order status: {order.status!r}")
    if not order.items:
        raise ValidationError("order has no items")
    for ln in order.items:
        if int(ln.quantity) < 1:
            raise ValidationError("line item quantity must be >= 1")
    if order.total_cents != order.subtotal_cents + order.tax_cents:
        raise ValidationError("total must equal subtotal + tax")


def _row_to_product(r) -> Product:
    return Product(
        id=r["id"],
        name=r["name"],
        price_cents=int(r["price_cents"]),
        stock=int(r["stock"]),
        tax_rate=float(r["tax_rate"]) if r["tax_rate"] is not None else None,
        category=r["category"],
        barcode=r["barcode"],
        image=r["image"],
        last_updated=r["last_updated"],
    )


def _row_to_order(r) -> LocalOrder:
    try:
        raw_items = json.loads(r["items_json"])
        items = [OrderLine(**ln) for ln in raw_items]
    except (TypeError, ValueError) as ex:
        raise StorageError(f"corrupt items for order {r['id']}: {ex}") from ex
    return LocalOrder(
        id=int(r["id"]),
        remote_id=r["remote_id"],
        items=items,
        subtotal_cents=int(r["subtotal_cents"]),
        tax_cents=int(r["tax_cents"]),
        total_cents=int(r["total_cents"]),
        payment_method=r["payment_method"],
        status=r["status"],
        created_at=r["created_at"],
        synced=bool(r["synced"]),
        cashier_id=r["cashier_id"],
        rejected_at=r["rejected_at"],
        last_error=r["last_error"],
    )


def _row_to_queue_item(r) -> QueueItem:
    return QueueItem(
        id=int(r["id"]),
        kind=r["kind"],
        payload_json=r["payload_json"],
        created_at=r["created_at"],
        attempts=int(r["attempts"]),
        last_attempt=r["last_attempt"],
        next_attempt_at=r["next_attempt_at"],
        order_id=r["order_id"],
    )
