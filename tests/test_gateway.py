import asyncio
import base64
import hashlib
import hmac
import json

import httpx
import pytest

from luckylot.errors import GatewayError
from luckylot.gateway import Cashfree, InvalidSignature, MockPay, new_gateway


def _cashfree(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Cashfree(http, client_id="cid", client_secret="csecret",
                    env="test", timeout=1.0)


def test_cashfree_create_order():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"payment_session_id": "sess_123"})

    gw = _cashfree(handler)
    out = asyncio.run(gw.create_order(
        order_id="ORD_1", amount=202,
        customer={"customer_id": "7", "customer_name": "Asha",
                  "customer_phone": "9876543210"},
        return_url="http://front/payment-status?order_id=ORD_1",
        notify_url="http://api/api/cashfree/webhook",
    ))
    assert out == {"payment_session_id": "sess_123",
                   "redirect_url": "sess_123"}
    assert seen["url"] == "https://sandbox.cashfree.com/pg/orders"
    assert seen["headers"]["x-client-id"] == "cid"
    assert seen["headers"]["x-api-version"] == "2023-08-01"
    assert seen["body"]["order_amount"] == 202
    assert seen["body"]["order_currency"] == "INR"
    assert "ORD_1" in seen["body"]["order_meta"]["return_url"]


@pytest.mark.parametrize("status_code,expected", [(400, 400), (503, 502)])
def test_cashfree_errors_map_to_gateway_error(status_code, expected):
    def handler(request):
        return httpx.Response(status_code, json={"message": "nope"})

    gw = _cashfree(handler)
    with pytest.raises(GatewayError) as exc:
        asyncio.run(gw.order_status("ORD_1"))
    assert exc.value.status_code == expected
    assert exc.value.message == "nope"


def test_cashfree_timeout_is_gateway_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    gw = _cashfree(handler)
    with pytest.raises(GatewayError) as exc:
        asyncio.run(gw.order_status("ORD_1"))
    assert exc.value.status_code == 502


def test_cashfree_order_status():
    def handler(request):
        assert request.url.path == "/pg/orders/ORD_9"
        return httpx.Response(200, json={"order_status": "PAID"})

    gw = _cashfree(handler)
    status = asyncio.run(gw.order_status("ORD_9"))
    assert gw.is_paid(status)
    assert not gw.is_paid("ACTIVE")


def test_cashfree_webhook_signature():
    gw = _cashfree(lambda r: httpx.Response(200))
    event = {"type": "PAYMENT_SUCCESS_WEBHOOK",
             "data": {"order": {"order_id": "ORD_5"}}}
    body = json.dumps(event).encode()
    ts = "1700000000"
    sig = base64.b64encode(hmac.new(
        b"csecret", ts.encode() + body, hashlib.sha256
    ).digest()).decode()

    parsed = gw.verify_webhook(body, {"x-webhook-timestamp": ts,
                                      "x-webhook-signature": sig})
    assert gw.is_success_event(parsed)
    assert gw.event_order_id(parsed) == "ORD_5"
    assert not gw.is_success_event({"type": "PAYMENT_FAILED_WEBHOOK"})
    assert gw.event_order_id({"data": []}) is None

    with pytest.raises(InvalidSignature):
        gw.verify_webhook(body, {"x-webhook-timestamp": "1",
                                 "x-webhook-signature": sig})


def test_mockpay_settle_and_status():
    gw = MockPay(secret="s")
    asyncio.run(gw.create_order(order_id="ORD_2", amount=101, customer={},
                                return_url="", notify_url=""))
    assert asyncio.run(gw.order_status("ORD_2")) == "ACTIVE"
    event = gw.settle("ORD_2", "succeeded")
    assert asyncio.run(gw.order_status("ORD_2")) == "PAID"
    assert gw.is_success_event(event)
    assert not gw.is_success_event({"type": None})
    with pytest.raises(GatewayError):
        asyncio.run(gw.order_status("ORD_unknown"))


def test_new_gateway():
    assert isinstance(new_gateway(kind="mock"), MockPay)
    with pytest.raises(RuntimeError):
        new_gateway(kind="cashfree")
    with pytest.raises(RuntimeError):
        new_gateway(kind="stripe")
