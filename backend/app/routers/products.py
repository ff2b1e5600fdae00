from fastapi import APIRouter, HTTPException, Depends
from datetime import datetime, timezone
from decimal import Decimal
from ..config import settings
from ..db import get_conn
from ..deps import require_device

router = APIRouter(prefix="/products", tags=["products"])

PRODUCT_COLUMNS = "id, name, price_cents, stock, tax_rate, category, barcode, image_url, updated_at"


def effective_tax_rate(raw) -> Decimal:
    if raw is None:
        return Decimal(str(settings.default_tax_rate))
    return Decimal(str(raw))


def product_out(row: dict) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "price_cents": int(row["price_cents"]),
        "stock": int(row["stock"] or 0),
        "tax_rate": float(effective_tax_rate(row.get("tax_rate"))),
        "category": row.get("category"),
        "barcode": row.get("barcode"),
        "image_url": row.get("image_url"),
        "updated_at": row.get("updated_at"),
    }


@router.get("")
def list_products(device=Depends(require_device)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS}
                FROM products
                WHERE is_active = true
                ORDER BY name, id
                """
            )
            rows = cur.fetchall() or []
    return {"products": [product_out(r) for r in rows], "server_time": datetime.now(timezone.utc).isoformat()}


@router.get("/{product_id}")
def get_product(product_id: str, device=Depends(require_device)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS}
                FROM products
                WHERE id = %s AND is_active = true
                """,
                (product_id,),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="product not found")
    return {"product": product_out(row)}
