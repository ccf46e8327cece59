"""Order domain exports."""
from .entity import (
    ALLOWED_TRANSITIONS,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    ensure_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentAttempt",
    "ensure_transition",
]
