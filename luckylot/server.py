from __future__ import annotations

import json
import logging
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .confirmation import handle_webhook, verify_payment
from .errors import (
    LotteryError, NotFound, Unauthorized, ValidationError,
    lottery_error_handler, store_error_handler,
)
from .gateway import MockPay, PaymentGateway, new_gateway
from .helpers import ct_equal
from .infra.sql import GatedSession, make_async_engine
from .model import inventory
from .model.db import create_schema
from .model.settings import get_active_settings, save_settings
from .orders import create_order, expire_stale_payments, pending_payments
from .winners import (
    check_result, draw_winners, list_users_with_tickets, recent_winners,
    set_winners,
)

logger = logging.getLogger(__name__)

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)


async def get_db() -> GatedSession:
    async with SessionAsync() as session:
        yield GatedSession(session=session, gated=gated)


def get_gateway(request: Request) -> PaymentGateway:
    gw = getattr(request.app.state, "gateway", None)
    if gw is None:
        raise RuntimeError("payment gateway not initialized")
    return gw


app = FastAPI(
    title="LuckyLot",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)
app.add_exception_handler(LotteryError, lottery_error_handler)
app.add_exception_handler(SQLAlchemyError, store_error_handler)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _logging_start():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("LuckyLot is starting up (gateway=%s, db=%s)",
                config.PAYMENT_GATEWAY, engine.url.get_backend_name())


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )
    app.state.gateway = new_gateway(app.state.http)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise Unauthorized("Admin login required")


def _int_or_none(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("expected an integer")


# ----------------------------
# Public API
# ----------------------------
@app.get("/api/tickets/remaining")
async def tickets_remaining(db: GatedSession = Depends(get_db)):
    settings = await get_active_settings(db)
    return {"remaining": await inventory.remaining(db, settings)}


@app.post("/api/create-order")
async def api_create_order(
    payload: dict,
    db: GatedSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return await create_order(
        db, gateway,
        name=payload.get("name"),
        phone=payload.get("phone") or payload.get("mobile"),
        quantity=payload.get("quantity"),
    )


@app.post("/api/verify-payment")
async def api_verify_payment(
    payload: dict,
    db: GatedSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    user_id = payload.get("user_id", payload.get("userId"))
    codes = await verify_payment(
        db, gateway,
        payload.get("order_id"),
        user_id=user_id,
        quantity=payload.get("quantity"),
    )
    return {"success": True, "tickets": codes}


@app.post("/api/{gateway_name}/webhook")
async def payments_webhook(
    gateway_name: str,
    request: Request,
    db: GatedSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    if gateway_name != gateway.name:
        raise NotFound("unknown gateway")
    body = await request.body()
    return await handle_webhook(db, gateway, body, dict(request.headers))


@app.get("/api/result/{ticket_code}")
async def api_result(ticket_code: str, db: GatedSession = Depends(get_db)):
    return await check_result(db, ticket_code)


@app.get("/api/recent-winners")
async def api_recent_winners(db: GatedSession = Depends(get_db)):
    return {"success": True, "winners": await recent_winners(db)}


# ----------------------------
# Admin API
# ----------------------------
@app.post("/api/admin/login")
async def admin_login(request: Request, payload: dict):
    password = payload.get("password")
    if isinstance(password, str) and ct_equal(password, config.ADMIN_PASSWORD):
        request.session["admin"] = True
        return {"success": True}
    raise Unauthorized("Invalid password")


@app.post("/api/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


@app.get("/api/admin/settings", dependencies=[Depends(require_admin)])
async def admin_get_settings(db: GatedSession = Depends(get_db)):
    settings = await get_active_settings(db)
    out = settings.to_dict()
    out.pop("id")
    return out


@app.post("/api/admin/settings", dependencies=[Depends(require_admin)])
async def admin_save_settings(payload: dict,
                              db: GatedSession = Depends(get_db)):
    settings = await save_settings(db, payload)
    return {"success": True, "settings": settings.to_dict()}


@app.get("/api/admin/stats", dependencies=[Depends(require_admin)])
async def admin_stats(db: GatedSession = Depends(get_db)):
    settings = await get_active_settings(db)
    return await inventory.inventory_stats(db, settings)


@app.get("/api/admin/pending", dependencies=[Depends(require_admin)])
async def admin_pending(limit: int = 100, db: GatedSession = Depends(get_db)):
    total, items = await pending_payments(db, limit=limit)
    return {"items": items, "limit": limit, "total": total}


@app.post("/api/admin/expire-pending", dependencies=[Depends(require_admin)])
async def admin_expire_pending(payload: Optional[dict] = None,
                               db: GatedSession = Depends(get_db)):
    max_age = _int_or_none((payload or {}).get("max_age_seconds"))
    if max_age is None:
        max_age = config.PENDING_TTL_SECONDS
    expired = await expire_stale_payments(db, max_age)
    return {"success": True, "expired": expired}


@app.post("/api/admin/auto-generate-winners",
          dependencies=[Depends(require_admin)])
async def admin_auto_generate_winners(payload: dict,
                                      db: GatedSession = Depends(get_db)):
    winners = await draw_winners(
        db, payload.get("count"),
        lottery_round=_int_or_none(payload.get("lottery_round")),
    )
    return {"success": True, "winners": winners}


@app.post("/api/admin/winners", dependencies=[Depends(require_admin)])
async def admin_set_winners(payload: dict,
                            db: GatedSession = Depends(get_db)):
    winners = await set_winners(db, payload.get("winners"))
    return {"success": True, "winners": winners}


@app.get("/api/admin/users", dependencies=[Depends(require_admin)])
async def admin_users(db: GatedSession = Depends(get_db)):
    return {"success": True, "users": await list_users_with_tickets(db)}


# ----------------------------
# MockPay: settle an order and deliver the webhook
# ----------------------------
@app.post("/mockpay/{order_id}/emit")
async def mockpay_emit(
    order_id: str,
    payload: dict,
    gateway: PaymentGateway = Depends(get_gateway),
):
    if not isinstance(gateway, MockPay):
        raise NotFound("mock gateway not enabled")
    kind = payload.get("t")  # succeeded|failed|canceled
    event = gateway.settle(order_id, kind)

    body = json.dumps(event).encode()
    client_http: httpx.AsyncClient = app.state.http
    delivered = True
    try:
        r = await client_http.post(
            config.MOCK_WEBHOOK_URL,
            content=body,
            headers={
                "x-mockpay-signature": gateway.sign(body),
                "content-type": "application/json",
            },
        )
        r.raise_for_status()
    except httpx.HTTPError as e:
        # the client can still confirm through /api/verify-payment
        logger.warning("mock webhook delivery for %s failed: %s", order_id, e)
        delivered = False

    return {"order_id": order_id, "status": kind, "delivered": delivered}
