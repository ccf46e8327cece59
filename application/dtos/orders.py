"""
订单数据传输对象（DTO）- 应用层与表现层之间的数据传输
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_serializer, ConfigDict


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                s = ts.astimezone(timezone.utc).isoformat()
                return s.replace("+00:00", "Z")
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


class DeliveryLocation(DTOBase):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class OrderItemIn(DTOBase):
    product_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class OrderCreateDTO(DTOBase):
    """下单DTO"""
    branch: str = Field(..., min_length=1, max_length=100, description="履约门店")
    items: list[OrderItemIn] = Field(..., min_length=1, description="订单明细")
    delivery_address: Optional[str] = Field(None, max_length=500, description="配送地址")
    delivery_location: Optional[DeliveryLocation] = Field(None, description="配送坐标")


class OrderItemOut(DTOBase):
    product_id: str
    quantity: int
    price: Decimal


class OrderResponseDTO(DTOBase):
    """订单响应DTO"""
    id: str
    user_id: str
    branch: str
    items: list[OrderItemOut]
    total: Decimal
    status: str
    delivery_address: Optional[str] = None
    delivery_location: Optional[dict] = None
    mpesa_checkout_request_id: Optional[str] = None
    mpesa_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
