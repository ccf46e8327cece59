"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, Union, runtime_checkable

from application.dtos.payments import StkPushResult, StkQueryResult


@runtime_checkable
class MpesaGateway(Protocol):
    """STK push gateway protocol.

    Implementations translate every transport/provider failure into the
    ``PaymentGatewayError`` family and never leak raw HTTP exceptions.
    """

    provider: str

    async def obtain_access_token(self, *, force_refresh: bool = False) -> str: ...

    async def initiate_push(
        self,
        *,
        phone: str,
        amount: Union[Decimal, int, float],
        order_id: str,
        reference: Optional[str] = None,
    ) -> StkPushResult: ...

    async def query_status(self, checkout_request_id: str) -> StkQueryResult: ...

    async def aclose(self) -> None: ...
