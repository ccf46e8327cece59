import base64
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from core.settings import MpesaSettings, PaymentSettings
from domain.common.exceptions import (
    DomainValidationException,
    PaymentConfigError,
    PaymentCredentialError,
    PaymentNetworkError,
    PaymentProviderError,
)
from infrastructure.external.payments import build_mpesa_gateway
from infrastructure.external.payments.mpesa_client import MpesaClient


NOW = datetime(2026, 10, 19, 10, 0, 0, tzinfo=timezone.utc)

PUSH_ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191020261000001234",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


def _config(**overrides) -> MpesaSettings:
    values = dict(
        consumer_key="ck",
        consumer_secret="cs",
        shortcode="174379",
        passkey="pk",
        callback_url="https://storefront.test/api/v1/payments/mpesa/callback",
    )
    values.update(overrides)
    return MpesaSettings(**values)


class FakeDaraja:
    """Scripted provider: per-path queues of responses (or exceptions)."""

    def __init__(self):
        self.calls: dict[str, list[httpx.Request]] = {}
        self.scripts: dict[str, list] = {}

    def script(self, path: str, *responses):
        self.scripts.setdefault(path, []).extend(responses)

    def count(self, path: str) -> int:
        return len(self.calls.get(path, []))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.setdefault(path, []).append(request)
        queue = self.scripts.get(path) or []
        if path == "/oauth/v1/generate" and not queue:
            n = self.count(path)
            return httpx.Response(200, json={"access_token": f"tok-{n}", "expires_in": "3599"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
def clock():
    state = {"now": NOW}

    def _now():
        return state["now"]

    _now.state = state
    return _now


@pytest.fixture
async def client(daraja, clock):
    c = MpesaClient(
        _config(),
        retry={"max": 0, "base": 0},
        transport=httpx.MockTransport(daraja.handler),
        clock=clock,
    )
    yield c
    await c.aclose()


def test_missing_credentials_fail_fast():
    with pytest.raises(PaymentConfigError) as exc_info:
        MpesaClient(_config(passkey=None, callback_url=""))
    assert exc_info.value.details["missing"] == ["passkey", "callback_url"]


def test_build_gateway_reads_payment_settings():
    gateway = build_mpesa_gateway(PaymentSettings(mpesa=_config(environment="production")))
    assert isinstance(gateway, MpesaClient)
    assert gateway.provider == "mpesa"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0712345678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254712345678", "254712345678"),
        ("0712 345-678", "254712345678"),
    ],
)
def test_normalize_phone(client, raw, expected):
    assert client.normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "07123", "07abc45678", "+2547123456789012345"])
def test_normalize_phone_rejects_invalid(client, raw):
    with pytest.raises(DomainValidationException):
        client.normalize_phone(raw)


def test_whole_units_floors_fractional_amounts():
    assert MpesaClient.whole_units(Decimal("149.99")) == 149
    assert MpesaClient.whole_units(1) == 1
    with pytest.raises(DomainValidationException):
        MpesaClient.whole_units(Decimal("0.99"))


def test_timestamp_and_password(client):
    assert client.timestamp() == "20261019100000"
    expected = base64.b64encode(b"174379pk20261019100000").decode()
    assert client.password("20261019100000") == expected


async def test_timestamp_uses_configured_timezone(clock):
    c = MpesaClient(_config(timestamp_timezone="Africa/Nairobi"), clock=clock)
    assert c.timestamp() == "20261019130000"


async def test_initiate_push_sends_daraja_payload(client, daraja):
    daraja.script("/mpesa/stkpush/v1/processrequest", (200, PUSH_ACCEPTED))

    result = await client.initiate_push(
        phone="0712345678",
        amount=Decimal("149.99"),
        order_id="8f14e45f-ceea-467a-9575-0c6ea2a5d1b0",
    )

    assert result.checkout_request_id == "ws_CO_191020261000001234"
    assert result.merchant_request_id == "29115-34620561-1"
    assert result.amount == 149
    assert result.phone == "254712345678"

    token_request = daraja.calls["/oauth/v1/generate"][0]
    assert token_request.url.params["grant_type"] == "client_credentials"
    assert token_request.headers["Authorization"] == "Basic " + base64.b64encode(b"ck:cs").decode()

    push_request = daraja.calls["/mpesa/stkpush/v1/processrequest"][0]
    assert push_request.headers["Authorization"] == "Bearer tok-1"
    body = json.loads(push_request.content)
    assert body == {
        "BusinessShortCode": "174379",
        "Password": base64.b64encode(b"174379pk20261019100000").decode(),
        "Timestamp": "20261019100000",
        "TransactionType": "CustomerPayBillOnline",
        "Amount": 149,
        "PartyA": "254712345678",
        "PartyB": "174379",
        "PhoneNumber": "254712345678",
        "CallBackURL": "https://storefront.test/api/v1/payments/mpesa/callback",
        "AccountReference": "ORDER-8f14e45f",
        "TransactionDesc": "Payment for Order 8f14e45f-ceea-467a-9575-0c6ea2a5d1b0",
    }


async def test_token_is_cached_until_close_to_expiry(client, daraja, clock):
    daraja.script("/mpesa/stkpush/v1/processrequest", (200, PUSH_ACCEPTED))

    await client.initiate_push(phone="0712345678", amount=100, order_id="order-1")
    await client.initiate_push(phone="0712345678", amount=100, order_id="order-2")
    assert daraja.count("/oauth/v1/generate") == 1

    clock.state["now"] = NOW + timedelta(seconds=3599 - 30)
    await client.initiate_push(phone="0712345678", amount=100, order_id="order-3")
    assert daraja.count("/oauth/v1/generate") == 2
    assert daraja.calls["/mpesa/stkpush/v1/processrequest"][-1].headers["Authorization"] == "Bearer tok-2"


async def test_rejected_credentials(client, daraja):
    daraja.script("/oauth/v1/generate", (400, {"errorCode": "400.008.01", "errorMessage": "Invalid Authentication passed"}))

    with pytest.raises(PaymentCredentialError):
        await client.obtain_access_token()
    assert daraja.count("/mpesa/stkpush/v1/processrequest") == 0


async def test_push_without_response_is_network_error(client, daraja):
    daraja.script("/mpesa/stkpush/v1/processrequest", httpx.ConnectError("connection refused"))

    with pytest.raises(PaymentNetworkError) as exc_info:
        await client.initiate_push(phone="0712345678", amount=100, order_id="order-1")
    assert exc_info.value.details["operation"] == "push"


async def test_push_connect_errors_are_retried(daraja, clock):
    daraja.script(
        "/mpesa/stkpush/v1/processrequest",
        httpx.ConnectError("connection refused"),
        (200, PUSH_ACCEPTED),
    )
    c = MpesaClient(
        _config(),
        retry={"max": 2, "base": 0},
        transport=httpx.MockTransport(daraja.handler),
        clock=clock,
    )
    try:
        result = await c.initiate_push(phone="0712345678", amount=100, order_id="order-1")
    finally:
        await c.aclose()
    assert result.checkout_request_id == PUSH_ACCEPTED["CheckoutRequestID"]
    assert daraja.count("/mpesa/stkpush/v1/processrequest") == 2


async def test_push_read_timeout_is_not_retried(daraja, clock):
    daraja.script("/mpesa/stkpush/v1/processrequest", httpx.ReadTimeout("read timed out"))
    c = MpesaClient(
        _config(),
        retry={"max": 2, "base": 0},
        transport=httpx.MockTransport(daraja.handler),
        clock=clock,
    )
    try:
        with pytest.raises(PaymentNetworkError):
            await c.initiate_push(phone="0712345678", amount=100, order_id="order-1")
    finally:
        await c.aclose()
    assert daraja.count("/mpesa/stkpush/v1/processrequest") == 1


async def test_push_rejected_by_provider(client, daraja):
    daraja.script(
        "/mpesa/stkpush/v1/processrequest",
        (400, {"requestId": "1234", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}),
    )

    with pytest.raises(PaymentProviderError) as exc_info:
        await client.initiate_push(phone="0712345678", amount=100, order_id="order-1")
    assert exc_info.value.provider_code == "400.002.02"
    assert exc_info.value.message == "Bad Request - Invalid PhoneNumber"


async def test_push_with_nonzero_response_code(client, daraja):
    daraja.script(
        "/mpesa/stkpush/v1/processrequest",
        (200, {"ResponseCode": "1", "ResponseDescription": "Rejected"}),
    )

    with pytest.raises(PaymentProviderError) as exc_info:
        await client.initiate_push(phone="0712345678", amount=100, order_id="order-1")
    assert exc_info.value.provider_code == "1"


async def test_expired_token_is_refreshed_once(client, daraja):
    daraja.script(
        "/mpesa/stkpush/v1/processrequest",
        (401, {"errorCode": "404.001.04", "errorMessage": "Invalid Access Token"}),
        (200, PUSH_ACCEPTED),
    )

    result = await client.initiate_push(phone="0712345678", amount=100, order_id="order-1")

    assert result.checkout_request_id == PUSH_ACCEPTED["CheckoutRequestID"]
    assert daraja.count("/oauth/v1/generate") == 2
    pushes = daraja.calls["/mpesa/stkpush/v1/processrequest"]
    assert [r.headers["Authorization"] for r in pushes] == ["Bearer tok-1", "Bearer tok-2"]


async def test_query_in_progress_is_pending(client, daraja):
    daraja.script(
        "/mpesa/stkpushquery/v1/query",
        (500, {"requestId": "1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}),
    )

    result = await client.query_status("ws_CO_1")

    assert result.status == "pending"
    assert not result.is_terminal
    body = json.loads(daraja.calls["/mpesa/stkpushquery/v1/query"][0].content)
    assert body["CheckoutRequestID"] == "ws_CO_1"
    assert body["Password"] == base64.b64encode(b"174379pk20261019100000").decode()


async def test_query_results(client, daraja):
    daraja.script(
        "/mpesa/stkpushquery/v1/query",
        (200, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_1", "ResultCode": "1032",
               "ResultDesc": "Request cancelled by user"}),
        (200, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_1", "ResultCode": "0",
               "ResultDesc": "The service request is processed successfully."}),
    )

    declined = await client.query_status("ws_CO_1")
    assert declined.status == "failed"
    assert declined.result_code == "1032"
    assert declined.result_desc == "Request cancelled by user"

    paid = await client.query_status("ws_CO_1")
    assert paid.status == "succeeded"
    assert paid.raw["ResultDesc"] == "The service request is processed successfully."


async def test_query_other_provider_error(client, daraja):
    daraja.script(
        "/mpesa/stkpushquery/v1/query",
        (500, {"errorCode": "500.003.02", "errorMessage": "System is busy"}),
    )

    with pytest.raises(PaymentProviderError):
        await client.query_status("ws_CO_1")
