"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-storefront-payments")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REAPER__MODE", "disabled")
os.environ.setdefault("MPESA__CONSUMER_KEY", "test-consumer-key")
os.environ.setdefault("MPESA__CONSUMER_SECRET", "test-consumer-secret")
os.environ.setdefault("MPESA__SHORTCODE", "174379")
os.environ.setdefault("MPESA__PASSKEY", "test-passkey")
os.environ.setdefault("MPESA__CALLBACK_URL", "https://storefront.test/api/v1/payments/mpesa/callback")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from typing import Optional

import jwt
import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from application.dtos.payments import StkPushResult, StkQueryResult
from core.config import settings
from domain.order.entity import OrderItem
from domain.order.service import OrderDomainService
from infrastructure.models import Base, OrderModel
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


class FakeGateway:
    """In-memory MpesaGateway: accepts every push and answers queries from a script."""

    provider = "fake"

    def __init__(self):
        self._ids = count(1)
        self.pushes: list[dict] = []
        self.queries: list[str] = []
        self.query_results: dict[str, dict] = {}
        self.before_accept = None
        self.closed = False

    async def obtain_access_token(self, *, force_refresh: bool = False) -> str:
        return "fake-token"

    async def initiate_push(self, *, phone, amount, order_id, reference=None) -> StkPushResult:
        self.pushes.append({"phone": phone, "amount": amount, "order_id": order_id, "reference": reference})
        if self.before_accept is not None:
            await self.before_accept(order_id)
        n = next(self._ids)
        return StkPushResult(
            checkout_request_id=f"ws_CO_{n:04d}",
            merchant_request_id=f"mr-{n:04d}",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
            phone="254712345678",
            amount=int(Decimal(str(amount))),
        )

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        self.queries.append(checkout_request_id)
        raw = self.query_results.get(checkout_request_id, {})
        return StkQueryResult.from_provider(checkout_request_id, raw)

    async def aclose(self) -> None:
        self.closed = True


def callback_payload(checkout_request_id: str, *, result_code: int = 0, receipt: Optional[str] = "QGR7XYZ123",
                     result_desc: Optional[str] = None) -> dict:
    stk = {
        "MerchantRequestID": "mr-0001",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0 else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 149},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261019100512},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": stk}}


def make_token(user_id: str = "user-1", role: str = "customer", **claims) -> str:
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        **claims,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    def factory(readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)
    return factory


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_order(uow_factory):
    """Place an order, then force status/columns directly when a test needs a specific starting point."""

    async def _make(
        *,
        user_id: str = "user-1",
        price: str = "149.99",
        quantity: int = 1,
        **columns,
    ) -> str:
        async with uow_factory() as uow:
            domain_service = OrderDomainService(uow.order_repository)
            order = await domain_service.place_order(
                user_id=user_id,
                branch="Westlands",
                items=[OrderItem(product_id="latte-16oz", quantity=quantity, price=Decimal(price))],
            )
            if columns:
                await uow.session.execute(
                    update(OrderModel).where(OrderModel.id == order.id).values(**columns)
                )
        return order.id

    return _make


@pytest.fixture
def load_order(uow_factory):
    async def _load(order_id: str):
        async with uow_factory(readonly=True) as uow:
            return await uow.order_repository.get_by_id(order_id)
    return _load
