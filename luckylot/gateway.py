from abc import ABC, abstractmethod
from typing import Dict, Optional, TypedDict
import base64
import hashlib
import hmac
import json
import logging

import httpx

from . import config
from .errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)


class CreateOrderResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class Customer(TypedDict):
    customer_id: str
    customer_name: str
    customer_phone: str


class InvalidSignature(ValidationError):
    pass


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    name: str

    @abstractmethod
    async def create_order(
        self, *, order_id: str, amount: int, customer: Customer,
        return_url: str, notify_url: str,
    ) -> CreateOrderResult: ...

    # raw provider status string, e.g. "PAID" / "ACTIVE"
    @abstractmethod
    async def order_status(self, order_id: str) -> str: ...

    @abstractmethod
    def is_paid(self, status: str) -> bool: ...

    # raises InvalidSignature; returns the parsed event or None when the
    # body isn't JSON at all
    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Dict[str, str]) -> Optional[dict]:
        ...

    @abstractmethod
    def is_success_event(self, event: dict) -> bool: ...

    @abstractmethod
    def event_order_id(self, event: dict) -> Optional[str]: ...


def _parse_json(body: bytes) -> Optional[dict]:
    try:
        event = json.loads(body.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return event if isinstance(event, dict) else None


# ----------------------------
# Cashfree PG implementation
# ----------------------------
class Cashfree(PaymentGateway):
    name = "cashfree"
    SUCCESS_EVENTS = {"PAYMENT_SUCCESS", "PAYMENT_SUCCESS_WEBHOOK"}

    def __init__(self, http: httpx.AsyncClient, *,
                 client_id: str = config.CASHFREE_CLIENT_ID,
                 client_secret: str = config.CASHFREE_CLIENT_SECRET,
                 env: str = config.CASHFREE_ENV,
                 api_version: str = config.CASHFREE_API_VERSION,
                 timeout: float = config.GATEWAY_TIMEOUT_SECONDS):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_version = api_version
        self.timeout = timeout
        self.base_url = (
            "https://sandbox.cashfree.com" if env == "test"
            else "https://api.cashfree.com"
        )

    async def _request(self, method: str, path: str,
                       body: Optional[dict] = None) -> dict:
        headers = {
            "content-type": "application/json",
            "x-client-id": self.client_id,
            "x-client-secret": self.client_secret,
            "x-api-version": self.api_version,
        }
        try:
            r = await self.http.request(
                method, self.base_url + path, json=body, headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if r.is_error:
            message = data.get("message") or "Cashfree API error"
            # 4xx: the gateway rejected what we sent
            status = 400 if r.status_code < 500 else 502
            logger.warning("cashfree %s %s -> %d: %s", method, path,
                           r.status_code, message)
            raise GatewayError(message, status_code=status)
        return data

    async def create_order(self, *, order_id, amount, customer,
                           return_url, notify_url) -> CreateOrderResult:
        data = await self._request("POST", "/pg/orders", {
            "order_id": order_id,
            "order_amount": amount,
            "order_currency": "INR",
            "customer_details": dict(customer),
            "order_meta": {
                "return_url": return_url,
                "notify_url": notify_url,
            },
        })
        psid = data.get("payment_session_id")
        if not psid:
            raise GatewayError("Cashfree returned no payment session",
                               status_code=502)
        return {"payment_session_id": psid, "redirect_url": psid}

    async def order_status(self, order_id: str) -> str:
        data = await self._request("GET", f"/pg/orders/{order_id}")
        return data.get("order_status", "")

    def is_paid(self, status: str) -> bool:
        return status == "PAID"

    def verify_webhook(self, body, headers):
        ts = headers.get("x-webhook-timestamp", "")
        sig = headers.get("x-webhook-signature")
        mac = hmac.new(self.client_secret.encode(), ts.encode() + body,
                       hashlib.sha256).digest()
        expected = base64.b64encode(mac).decode()
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature("Invalid signature")
        return _parse_json(body)

    def is_success_event(self, event: dict) -> bool:
        return event.get("type") in self.SUCCESS_EVENTS

    def event_order_id(self, event: dict) -> Optional[str]:
        data = event.get("data")
        order = data.get("order") if isinstance(data, dict) else None
        return order.get("order_id") if isinstance(order, dict) else None


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentGateway):
    """
    In-process stand-in for a real provider. Orders start ACTIVE; `settle`
    moves them to PAID / FAILED / CANCELED and builds the signed webhook
    event the provider would have sent.
    """
    name = "mock"
    KINDS = {"succeeded": "PAID", "failed": "FAILED", "canceled": "CANCELED"}

    def __init__(self, secret: str = config.MOCK_SECRET):
        self.secret = secret
        self.orders: Dict[str, str] = {}

    async def create_order(self, *, order_id, amount, customer,
                           return_url, notify_url) -> CreateOrderResult:
        self.orders[order_id] = "ACTIVE"
        return {
            "payment_session_id": f"mock_{order_id}",
            "redirect_url": f"/mockpay/{order_id}",
        }

    async def order_status(self, order_id: str) -> str:
        status = self.orders.get(order_id)
        if status is None:
            raise GatewayError("order not found", status_code=400)
        return status

    def is_paid(self, status: str) -> bool:
        return status == "PAID"

    def settle(self, order_id: str, kind: str) -> dict:
        if kind not in self.KINDS:
            raise ValidationError("invalid kind")
        self.orders[order_id] = self.KINDS[kind]
        return {"type": f"payment.{kind}", "order_id": order_id}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, body, headers):
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(body), sig):
            raise InvalidSignature("Invalid signature")
        return _parse_json(body)

    def is_success_event(self, event: dict) -> bool:
        return str(event.get("type") or "").split(".")[-1] == "succeeded"

    def event_order_id(self, event: dict) -> Optional[str]:
        return event.get("order_id")


def new_gateway(http: Optional[httpx.AsyncClient] = None,
                kind: str = config.PAYMENT_GATEWAY) -> PaymentGateway:
    if kind == "cashfree":
        if http is None:
            raise RuntimeError("Cashfree gateway requires an httpx client")
        return Cashfree(http)
    if kind == "mock":
        return MockPay()
    raise RuntimeError(f"unknown PAYMENT_GATEWAY: {kind}")
