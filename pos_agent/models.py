from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Literal, Optional

PaymentMethod = Literal["CASH", "CARD", "QR"]
OrderStatus = Literal["PENDING", "COMPLETED", "VOID"]
QueueKind = Literal["CREATE_ORDER", "UPDATE_PRODUCT", "UPDATE_ORDER_STATUS"]

PAYMENT_METHODS = ("CASH", "CARD", "QR")
ORDER_STATUSES = ("PENDING", "COMPLETED", "VOID")
QUEUE_KINDS = ("CREATE_ORDER", "UPDATE_PRODUCT", "UPDATE_ORDER_STATUS")

# A queue item is dropped on the failure that brings it to this many attempts.
MAX_QUEUE_ATTEMPTS = 5


@dataclass
class Product:
    id: str
    name: str
    price_cents: int
    stock: int = 0
    tax_rate: Optional[float] = None
    category: Optional[str] = None
    barcode: Optional[str] = None
    image: Optional[str] = None
    last_updated: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OrderLine:
    product_id: str
    product_name: str
    quantity: int
    unit_price_cents: int
    tax_rate: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LocalOrder:
    items: list[OrderLine]
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    payment_method: str
    status: str
    created_at: str
    cashier_id: str = ""
    id: Optional[int] = None
    remote_id: Optional[str] = None
    synced: bool = False
    rejected_at: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["items"] = [ln.to_dict() for ln in self.items]
        return out

    def remote_items(self) -> list[dict]:
        return [{"productId": ln.product_id, "qty": ln.quantity} for ln in self.items]


@dataclass
class QueueItem:
    id: int
    kind: str
    payload_json: str
    created_at: str
    attempts: int = 0
    last_attempt: Optional[str] = None
    next_attempt_at: Optional[str] = None
    order_id: Optional[int] = None


@dataclass
class SyncStatus:
    is_online: bool
    is_syncing: bool
    last_sync: Optional[str]
    pending_sync_count: int
    auth_required: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncReport:
    ran: bool = False
    catalog_refreshed: bool = False
    orders_synced: int = 0
    orders_failed: int = 0
    orders_rejected: int = 0
    queue_succeeded: int = 0
    queue_failed: int = 0
    queue_dropped: int = 0
    auth_required: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
