"""
Strict per-kind schemas for sync queue payloads.

Storage keeps the payload as opaque JSON text; everything that comes back out
of the queue is parsed here first. A payload that does not parse is a poison
entry: the engine logs and removes it instead of retrying it forever.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_str_id(v):
    if v is None or isinstance(v, bool):
        return v
    if isinstance(v, (int, str)):
        return str(v).strip()
    return v


PaymentMethodIn = Annotated[Literal["CASH", "CARD", "QR"], BeforeValidator(_to_upper_str)]
OrderStatusIn = Annotated[Literal["PENDING", "COMPLETED", "VOID"], BeforeValidator(_to_upper_str)]
ProductId = Annotated[str, BeforeValidator(_to_str_id), Field(min_length=1)]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RemoteItem(_Strict):
    product_id: ProductId
    qty: int = Field(ge=1)


class CreateOrderPayload(_Strict):
    local_order_id: int
    payment_method: PaymentMethodIn
    items: list[RemoteItem] = Field(min_length=1)
    client_created_at: Optional[str] = None
    cashier_id: Optional[str] = None


class UpdateProductPayload(_Strict):
    product_id: ProductId


class UpdateOrderStatusPayload(_Strict):
    local_order_id: int
    status: OrderStatusIn


QueuePayload = Union[CreateOrderPayload, UpdateProductPayload, UpdateOrderStatusPayload]

PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "CREATE_ORDER": CreateOrderPayload,
    "UPDATE_PRODUCT": UpdateProductPayload,
    "UPDATE_ORDER_STATUS": UpdateOrderStatusPayload,
}


def dump_payload(payload: BaseModel) -> str:
    return json.dumps(payload.model_dump(mode="json"))


def parse_payload(kind: str, payload_json: str) -> QueuePayload:
    model = PAYLOAD_MODELS.get(kind)
    if model is None:
        raise ValidationError(f"unknown queue kind: {kind!r}")
    try:
        data = json.loads(payload_json or "")
    except (TypeError, ValueError) as ex:
        raise ValidationError(f"payload is not valid JSON: {ex}")
    if not isinstance(data, dict):
        raise ValidationError("payload must be a JSON object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as ex:
        raise ValidationError(f"invalid {kind} payload: {ex.error_count()} error(s)")
