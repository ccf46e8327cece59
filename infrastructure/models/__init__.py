"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel, PaymentAttemptModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "PaymentAttemptModel",
]
