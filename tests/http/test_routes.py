from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import jwt
import pytest

from api.dependencies import decode_access_token, get_payment_gateway, get_uow_factory
from api.routes.payments import is_ip_allowed
from conftest import callback_payload, make_token
from core.config import settings
from core.exceptions import TokenExpiredException, UnauthorizedException
from core.settings import payment_settings
from main import app


@pytest.fixture
async def api(uow_factory, gateway):
    app.dependency_overrides[get_uow_factory] = lambda: uow_factory
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.state.mpesa_gateway = gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()
    app.state.mpesa_gateway = None


def auth(user_id: str = "user-1", role: str = "customer") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


ORDER = {
    "branch": "Westlands",
    "items": [{"product_id": "latte-16oz", "quantity": 1, "price": "149.99"}],
    "delivery_address": "Waiyaki Way, Nairobi",
    "delivery_location": {"lat": -1.2676, "lng": 36.8108},
}


async def _create_order(api, user_id="user-1") -> dict:
    resp = await api.post("/api/v1/orders", json=ORDER, headers=auth(user_id))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


@pytest.mark.asyncio
async def test_checkout_flow(api, gateway):
    order = await _create_order(api)
    assert order["status"] == "pending"
    assert Decimal(str(order["total"])) == Decimal("149.99")

    resp = await api.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"order_id": order["id"], "phone": "0712345678"},
        headers=auth(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Payment initiated. Please check your phone."
    checkout_request_id = body["checkoutRequestId"]

    resp = await api.get(f"/api/v1/orders/{order['id']}", headers=auth())
    assert resp.json()["data"]["status"] == "processing"

    resp = await api.post("/api/v1/payments/mpesa/callback", json=callback_payload(checkout_request_id))
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    resp = await api.get(f"/api/v1/orders/{order['id']}", headers=auth())
    data = resp.json()["data"]
    assert data["status"] == "paid"
    assert data["mpesa_code"] == "QGR7XYZ123"
    assert len(gateway.pushes) == 1


@pytest.mark.asyncio
async def test_stk_push_requires_authentication(api, gateway):
    resp = await api.post("/api/v1/payments/mpesa/stk-push", json={"order_id": "x", "phone": "0712345678"})
    assert resp.status_code == 401
    assert gateway.pushes == []


@pytest.mark.asyncio
async def test_stk_push_for_another_users_order(api, gateway):
    order = await _create_order(api, user_id="user-2")

    resp = await api.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"order_id": order["id"], "phone": "0712345678"},
        headers=auth("user-1"),
    )

    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "OrderNotFound"
    assert gateway.pushes == []


@pytest.mark.asyncio
async def test_stk_push_for_non_pending_order(api, gateway):
    order = await _create_order(api)
    payload = {"order_id": order["id"], "phone": "0712345678"}
    await api.post("/api/v1/payments/mpesa/stk-push", json=payload, headers=auth())

    resp = await api.post("/api/v1/payments/mpesa/stk-push", json=payload, headers=auth())

    assert resp.status_code == 409
    assert resp.json()["message"] == "Order is not pending payment"
    assert len(gateway.pushes) == 1


@pytest.mark.asyncio
async def test_stk_push_validates_body(api):
    resp = await api.post("/api/v1/payments/mpesa/stk-push", json={"phone": "0712345678"}, headers=auth())
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_callback_with_invalid_json(api):
    resp = await api.post(
        "/api/v1/payments/mpesa/callback",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 1, "ResultDesc": "Failed"}


class _BrokenUnitOfWork:
    def __init__(self, readonly: bool = False):
        self.readonly = readonly

    async def __aenter__(self):
        raise RuntimeError("database unavailable")

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.mark.asyncio
async def test_callback_processing_error_is_acknowledged_as_failed(api):
    app.dependency_overrides[get_uow_factory] = lambda: _BrokenUnitOfWork

    resp = await api.post("/api/v1/payments/mpesa/callback", json=callback_payload("ws_CO_0001"))

    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 1, "ResultDesc": "Failed"}


@pytest.mark.asyncio
async def test_duplicate_callback_gets_identical_acknowledgement(api):
    order = await _create_order(api)
    resp = await api.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"order_id": order["id"], "phone": "0712345678"},
        headers=auth(),
    )
    payload = callback_payload(resp.json()["checkoutRequestId"])

    first = await api.post("/api/v1/payments/mpesa/callback", json=payload)
    second = await api.post("/api/v1/payments/mpesa/callback", json=payload)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    data = (await api.get(f"/api/v1/orders/{order['id']}", headers=auth())).json()["data"]
    assert data["status"] == "paid"
    assert data["mpesa_code"] == "QGR7XYZ123"


@pytest.mark.asyncio
async def test_callback_token_mismatch_is_ignored(api, monkeypatch):
    order = await _create_order(api)
    resp = await api.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"order_id": order["id"], "phone": "0712345678"},
        headers=auth(),
    )
    checkout_request_id = resp.json()["checkoutRequestId"]
    monkeypatch.setattr(payment_settings.webhook, "callback_token", "s3cret")

    resp = await api.post(
        "/api/v1/payments/mpesa/callback?token=wrong",
        json=callback_payload(checkout_request_id),
    )
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    status = (await api.get(f"/api/v1/orders/{order['id']}", headers=auth())).json()["data"]["status"]
    assert status == "processing"

    resp = await api.post(
        "/api/v1/payments/mpesa/callback?token=s3cret",
        json=callback_payload(checkout_request_id),
    )
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    status = (await api.get(f"/api/v1/orders/{order['id']}", headers=auth())).json()["data"]["status"]
    assert status == "paid"


@pytest.mark.asyncio
async def test_callback_from_unlisted_ip_is_ignored(api, monkeypatch):
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["196.201.214.0/24"])

    resp = await api.post(
        "/api/v1/payments/mpesa/callback",
        json=callback_payload("ws_CO_0001"),
        headers={"X-Forwarded-For": "10.0.0.8"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}


@pytest.mark.asyncio
async def test_query_relays_provider_result(api, gateway):
    raw = {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_1", "ResultCode": "1032",
           "ResultDesc": "Request cancelled by user"}
    gateway.query_results["ws_CO_1"] = raw

    resp = await api.get("/api/v1/payments/mpesa/query/ws_CO_1", headers=auth())

    assert resp.status_code == 200
    assert resp.json() == {"result": raw}


@pytest.mark.asyncio
async def test_cancel_pending_order(api):
    order = await _create_order(api)

    resp = await api.post(f"/api/v1/orders/{order['id']}/cancel", headers=auth())
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"

    resp = await api.post(f"/api/v1/orders/{order['id']}/cancel", headers=auth())
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_list_orders_and_admin_lookup(api):
    mine = await _create_order(api, user_id="user-1")
    other = await _create_order(api, user_id="user-2")

    resp = await api.get("/api/v1/orders", headers=auth("user-1"))
    assert [o["id"] for o in resp.json()["data"]] == [mine["id"]]

    resp = await api.get(f"/api/v1/orders/{other['id']}", headers=auth("user-1"))
    assert resp.status_code == 404

    resp = await api.get(f"/api/v1/orders/{other['id']}", headers=auth("admin-1", role="admin"))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_health(api):
    resp = await api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}


def test_decode_access_token_accepts_legacy_id_claim():
    token = jwt.encode({"id": 42, "email": "a@b.test", "role": "admin"}, settings.SECRET_KEY, algorithm="HS256")
    user = decode_access_token(token)
    assert user.id == "42"
    assert user.is_admin


def test_decode_access_token_rejects_expired_and_forged_tokens():
    expired = jwt.encode(
        {"sub": "user-1", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.SECRET_KEY,
        algorithm="HS256",
    )
    with pytest.raises(TokenExpiredException):
        decode_access_token(expired)

    forged = jwt.encode({"sub": "user-1"}, "another-secret-key-of-sufficient-length", algorithm="HS256")
    with pytest.raises(UnauthorizedException):
        decode_access_token(forged)


@pytest.mark.parametrize(
    "ip,allowlist,expected",
    [
        ("196.201.214.200", ["196.201.214.0/24"], True),
        ("196.201.213.1", ["196.201.214.0/24"], False),
        ("10.0.0.8", ["10.0.0.8"], True),
        ("unknown", ["10.0.0.8"], False),
        ("10.0.0.8", ["not-an-ip", "10.0.0.0/8"], True),
    ],
)
def test_is_ip_allowed(ip, allowlist, expected):
    assert is_ip_allowed(ip, allowlist) is expected
