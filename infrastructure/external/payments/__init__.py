"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import MpesaGateway


def build_mpesa_gateway(settings: Optional[PaymentSettings] = None) -> MpesaGateway:
    """Build the process-wide gateway; raises PaymentConfigError when secrets are missing."""
    from .mpesa_client import MpesaClient

    return MpesaClient.from_settings(settings or payment_settings)
