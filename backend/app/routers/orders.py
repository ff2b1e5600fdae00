from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime, timezone
import uuid

from pos_agent.errors import ValidationError as AmountError
from pos_agent.money import compute_line, compute_order_totals

from ..db import get_conn
from ..deps import require_device
from ..validation import PaymentMethod, OrderStatus
from .products import effective_tax_rate

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)
    qty: int = Field(ge=1, le=100000)


class OrderCreateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method: PaymentMethod = Field(alias="paymentMethod")
    items: List[OrderItemIn] = Field(min_length=1)
    client_created_at: Optional[datetime] = Field(default=None, alias="clientCreatedAt")
    cashier_id: Optional[str] = Field(default=None, alias="cashierId", max_length=128)


class OrderStatusIn(BaseModel):
    status: OrderStatus


def _load_products(cur, product_ids: list[str]) -> dict:
    cur.execute(
        """
        SELECT id, name, price_cents, stock, tax_rate
        FROM products
        WHERE id = ANY(%s) AND is_active = true
        FOR UPDATE
        """,
        (product_ids,),
    )
    return {r["id"]: r for r in (cur.fetchall() or [])}


def create_order_tx(cur, device_id, data: OrderCreateIn) -> dict:
    """
    Persist one order and its lines inside the caller's transaction.

    Prices and tax rates come from the products table, never from the client,
    and the totals are computed with the same calculator the devices use.
    Raises HTTPException 404 for unknown products and 422 for amounts the
    calculator refuses.
    """
    product_ids = list(dict.fromkeys(it.product_id for it in data.items))
    products = _load_products(cur, product_ids)
    missing = [pid for pid in product_ids if pid not in products]
    if missing:
        raise HTTPException(status_code=404, detail=f"product not found: {missing[0]}")
    unpriced = [pid for pid in product_ids if int(products[pid]["price_cents"] or 0) <= 0]
    if unpriced:
        raise HTTPException(status_code=422, detail=f"product has no sellable price: {unpriced[0]}")

    lines = []
    try:
        for it in data.items:
            p = products[it.product_id]
            rate = effective_tax_rate(p.get("tax_rate"))
            amounts = compute_line(int(p["price_cents"]), it.qty, rate)
            lines.append((it, p, rate, amounts))
        totals = compute_order_totals((int(p["price_cents"]), it.qty, rate) for it, p, rate, _a in lines)
    except AmountError as ex:
        raise HTTPException(status_code=422, detail=str(ex))

    created_at = data.client_created_at or datetime.now(timezone.utc)
    cur.execute(
        """
        INSERT INTO orders
          (id, device_id, cashier_id, payment_method, status,
           subtotal_cents, tax_cents, total_cents, created_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, 'COMPLETED', %s, %s, %s, %s)
        RETURNING id
        """,
        (
            device_id,
            (data.cashier_id or "").strip() or None,
            data.payment_method,
            totals.subtotal_cents,
            totals.tax_cents,
            totals.total_cents,
            created_at,
        ),
    )
    order_id = cur.fetchone()["id"]

    for it, p, rate, amounts in lines:
        cur.execute(
            """
            INSERT INTO order_items
              (order_id, product_id, product_name, qty, unit_price_cents,
               tax_rate, line_total_cents, line_tax_cents)
            VALUES
              (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                order_id,
                it.product_id,
                p["name"],
                it.qty,
                int(p["price_cents"]),
                rate,
                amounts.line_total_cents,
                amounts.line_tax_cents,
            ),
        )
        # Stock never goes negative; overselling while offline is accepted.
        cur.execute(
            """
            UPDATE products
            SET stock = GREATEST(stock - %s, 0), updated_at = now()
            WHERE id = %s
            """,
            (it.qty, it.product_id),
        )

    return {
        "orderId": str(order_id),
        "totals": {
            "subtotal": totals.subtotal_cents,
            "tax": totals.tax_cents,
            "total": totals.total_cents,
        },
    }


@router.post("", status_code=201)
def create_order(data: OrderCreateIn, device=Depends(require_device)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return create_order_tx(cur, device["device_id"], data)


@router.get("")
def list_orders(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status: Optional[OrderStatus] = None,
    device=Depends(require_device),
):
    sql = """
        SELECT id, cashier_id, payment_method, status,
               subtotal_cents, tax_cents, total_cents, created_at, received_at
        FROM orders
        WHERE device_id = %s
    """
    params: list = [device["device_id"]]
    if status:
        sql += " AND status = %s"
        params.append(status)
    sql += " ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s"
    params.extend([limit, offset])
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"orders": cur.fetchall() or [], "limit": limit, "offset": offset}


@router.get("/{order_id}")
def get_order(order_id: uuid.UUID, device=Depends(require_device)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, cashier_id, payment_method, status,
                       subtotal_cents, tax_cents, total_cents, created_at, received_at
                FROM orders
                WHERE id = %s AND device_id = %s
                """,
                (order_id, device["device_id"]),
            )
            order = cur.fetchone()
            if not order:
                raise HTTPException(status_code=404, detail="order not found")
            cur.execute(
                """
                SELECT product_id, product_name, qty, unit_price_cents,
                       tax_rate, line_total_cents, line_tax_cents
                FROM order_items
                WHERE order_id = %s
                ORDER BY id
                """,
                (order_id,),
            )
            return {"order": order, "items": cur.fetchall() or []}


@router.patch("/{order_id}/status")
def update_order_status(order_id: uuid.UUID, data: OrderStatusIn, device=Depends(require_device)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE orders
                SET status = %s, updated_at = now()
                WHERE id = %s AND device_id = %s
                RETURNING id, status
                """,
                (data.status, order_id, device["device_id"]),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="order not found")
            return {"ok": True, "orderId": str(row["id"]), "status": row["status"]}
