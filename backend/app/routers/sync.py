from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing import List
import psycopg

from ..db import get_conn
from ..deps import require_device
from .orders import OrderCreateIn, create_order_tx

router = APIRouter(prefix="/sync", tags=["sync"])


class BulkOrderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temp_id: str = Field(alias="tempId", min_length=1)
    payload: dict


class BulkOrdersIn(BaseModel):
    orders: List[BulkOrderIn] = Field(default_factory=list, max_length=500)


def _validation_message(ex: ValidationError) -> str:
    errs = ex.errors()
    if not errs:
        return "validation failed"
    first = errs[0]
    loc = ".".join(str(p) for p in first.get("loc") or ())
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


@router.post("/orders")
def sync_orders(data: BulkOrdersIn, device=Depends(require_device)):
    """
    Accept a batch of offline orders. Each order commits or rolls back on its
    own savepoint, so one bad order never blocks the rest of the batch.
    """
    results = []
    if not data.orders:
        return {"results": results}

    with get_conn() as conn:
        with conn.cursor() as cur:
            for o in data.orders:
                try:
                    order_in = OrderCreateIn.model_validate(o.payload)
                except ValidationError as ex:
                    results.append({"tempId": o.temp_id, "status": "error", "error": _validation_message(ex)})
                    continue
                try:
                    with conn.transaction():
                        out = create_order_tx(cur, device["device_id"], order_in)
                except HTTPException as ex:
                    results.append({"tempId": o.temp_id, "status": "error", "error": str(ex.detail)})
                    continue
                except psycopg.Error as ex:
                    results.append({"tempId": o.temp_id, "status": "error", "error": str(ex)})
                    continue
                results.append({"tempId": o.temp_id, "status": "ok", "orderId": out["orderId"], "totals": out["totals"]})
    return {"results": results}
