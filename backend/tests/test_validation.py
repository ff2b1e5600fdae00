import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import OrderStatus, PaymentMethod


class _M(BaseModel):
    method: PaymentMethod
    status: OrderStatus


def test_validation_types_normalize_case():
    m = _M(method=" cash ", status="void")
    assert m.method == "CASH"
    assert m.status == "VOID"


@pytest.mark.parametrize("method,status", [("cheque", "VOID"), ("CARD", "SHIPPED"), ("", "COMPLETED")])
def test_validation_types_reject_unknown_codes(method, status):
    with pytest.raises(ValidationError):
        _M(method=method, status=status)


def test_order_status_accepts_every_status_the_schema_allows():
    assert [_M(method="QR", status=s).status for s in ("pending", "Completed", "VOID")] == ["PENDING", "COMPLETED", "VOID"]
