"""
Order payment lifecycle events.

Dataclass events record important facts for downstream handling (logging
today, messaging later). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class OrderEvent:
    order_id: str
    checkout_request_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass
class PaymentInitiated(OrderEvent):
    merchant_request_id: Optional[str] = None


@dataclass
class OrderPaid(OrderEvent):
    receipt: Optional[str] = None


@dataclass
class OrderPaymentFailed(OrderEvent):
    reason: Optional[str] = None


@dataclass
class OrderCancelled(OrderEvent):
    by: str = "user"
