"""
Payment DTOs (Pydantic v2) used at application boundaries.

Provider payloads keep Daraja's PascalCase field names through aliases;
Python code reads snake_case attributes.
"""
from __future__ import annotations

from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator

from shared.codes.payment_codes import MPESA_RECEIPT_ITEM


class StkPushRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=64)
    phone: str = Field(..., min_length=9, max_length=20)

    @field_validator("phone")
    @classmethod
    def _strip_phone(cls, v: str) -> str:
        return v.strip()


class StkPushResult(BaseModel):
    """Provider acknowledgement of an accepted STK push."""

    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    response_description: Optional[str] = None
    customer_message: Optional[str] = None
    phone: str
    amount: int


class StkPushResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = "Payment initiated. Please check your phone."
    checkout_request_id: str = Field(serialization_alias="checkoutRequestId")
    merchant_request_id: Optional[str] = Field(default=None, serialization_alias="merchantRequestId")


class StkQueryResult(BaseModel):
    """Normalised answer of the STK status query.

    ``status`` is ``pending`` while the provider has no result code yet.
    """

    checkout_request_id: str
    status: Literal["pending", "succeeded", "failed"]
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"

    @classmethod
    def pending(cls, checkout_request_id: str, raw: Optional[dict[str, Any]] = None) -> "StkQueryResult":
        return cls(checkout_request_id=checkout_request_id, status="pending", raw=raw or {})

    @classmethod
    def from_provider(cls, checkout_request_id: str, raw: dict[str, Any]) -> "StkQueryResult":
        code = raw.get("ResultCode")
        if code is None or str(code).strip() == "":
            return cls.pending(checkout_request_id, raw)
        code = str(code).strip()
        return cls(
            checkout_request_id=str(raw.get("CheckoutRequestID") or checkout_request_id),
            status="succeeded" if code == "0" else "failed",
            result_code=code,
            result_desc=raw.get("ResultDesc"),
            receipt=raw.get(MPESA_RECEIPT_ITEM),
            raw=raw,
        )


class QueryResponse(BaseModel):
    result: dict[str, Any]


# ---- Callback payload: {Body: {stkCallback: {...}}} ----

class CallbackItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: list[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    def metadata_value(self, name: str) -> Any:
        if not self.callback_metadata:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None

    @property
    def receipt(self) -> Optional[str]:
        value = self.metadata_value(MPESA_RECEIPT_ITEM)
        return str(value) if value not in (None, "") else None


class CallbackBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stk_callback: StkCallback = Field(alias="stkCallback")


class MpesaCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    body: CallbackBody = Field(alias="Body")

    @property
    def stk(self) -> StkCallback:
        return self.body.stk_callback
