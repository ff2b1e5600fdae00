from typing import Optional
from fastapi import Header, HTTPException
from .db import get_conn
from .security import verify_device_token
import uuid


def _parse_device_id(raw: Optional[str]) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw or "").strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid device id")


def require_device(
    device_id: Optional[str] = Header(None, alias="X-Device-Id"),
    device_token: Optional[str] = Header(None, alias="X-Device-Token"),
):
    # Every credential problem is a 401, never a 422.
    device_id = _parse_device_id(device_id)
    device_token = (device_token or "").strip()
    if not device_token:
        raise HTTPException(status_code=401, detail="missing device token")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, device_token_hash, is_active
                FROM pos_devices
                WHERE id = %s
                """,
                (device_id,),
            )
            row = cur.fetchone()
            if not row or not row["is_active"] or not verify_device_token(device_token, row["device_token_hash"]):
                raise HTTPException(status_code=401, detail="invalid device token")
            return {"device_id": device_id}
