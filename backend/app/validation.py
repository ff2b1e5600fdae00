from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror the CHECK constraints in `backend/db/schema.sql`.
PaymentMethod = Annotated[Literal["CASH", "CARD", "QR"], BeforeValidator(_to_upper_str)]
OrderStatus = Annotated[Literal["PENDING", "COMPLETED", "VOID"], BeforeValidator(_to_upper_str)]
