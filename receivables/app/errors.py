from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException


class LedgerError(HTTPException):
    """Base for ledger failures. All of them are raised before any write is issued."""

    status_code = 400
    kind = "LedgerError"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(status_code=self.status_code, detail=detail)
        self.extra = extra

    def to_dict(self) -> dict:
        return {"detail": self.detail, "kind": self.kind, **self.extra}


class InvalidRequest(LedgerError):
    kind = "InvalidRequest"


class InvalidAmount(InvalidRequest):
    kind = "InvalidAmount"


class InvalidItems(InvalidRequest):
    kind = "InvalidItems"


class CreditLimitExceeded(LedgerError):
    status_code = 409
    kind = "CreditLimitExceeded"

    def __init__(self, available_credit: Decimal, requested_total: Decimal, credit_limit: Optional[Decimal] = None):
        super().__init__(
            f"credit limit exceeded: available credit {available_credit}, requested {requested_total}",
            available_credit=available_credit,
            requested_total=requested_total,
            credit_limit=credit_limit,
        )
        self.available_credit = available_credit
        self.requested_total = requested_total


class CustomerNotFound(LedgerError):
    status_code = 404
    kind = "CustomerNotFound"

    def __init__(self, customer_id: Any):
        super().__init__("customer not found", customer_id=str(customer_id))


class SaleNotFound(LedgerError):
    status_code = 404
    kind = "SaleNotFound"

    def __init__(self, sale_id: Any):
        super().__init__("sale not found", sale_id=str(sale_id))


class PaymentNotFound(LedgerError):
    status_code = 404
    kind = "PaymentNotFound"

    def __init__(self, payment_id: Any, detail: str = "advance payment not found"):
        super().__init__(detail, payment_id=str(payment_id))
