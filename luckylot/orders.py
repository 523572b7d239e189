from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import InventoryExhausted, ValidationError
from .gateway import PaymentGateway
from .helpers import is_valid_phone, new_order_id, now_ts
from .infra.sql import GatedSession
from .model import inventory
from .model.db import P_CREATED, P_EXPIRED
from .model.settings import get_active_settings

logger = logging.getLogger(__name__)


def validate_quantity(quantity: Any, max_quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be a whole number")
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    if quantity > max_quantity:
        raise ValidationError(
            f"At most {max_quantity} tickets per order"
        )
    return quantity


# UN-GATED internal function
async def _upsert_user(db: AsyncSession, name: str, phone: str) -> int:
    row = (await db.execute(text("""
        INSERT INTO users(name, phone, created_at)
        VALUES(:n, :p, :t)
        ON CONFLICT (phone) DO UPDATE SET name=EXCLUDED.name
        RETURNING id
    """), {"n": name, "p": phone, "t": now_ts()})).first()
    return int(row[0])


async def upsert_user(db: GatedSession, name: str, phone: str) -> int:
    async with db.gated():
        async with db.session.begin():
            return await _upsert_user(db.session, name, phone)


async def _delete_payment(db: GatedSession, order_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                DELETE FROM payments WHERE order_id=:o AND status=:s
            """), {"o": order_id, "s": P_CREATED})


async def create_order(
    db: GatedSession,
    gateway: PaymentGateway,
    name: Optional[str],
    phone: Optional[str],
    quantity: Any,
    *,
    max_quantity: int = config.MAX_TICKETS_PER_ORDER,
    frontend_url: str = config.FRONTEND_URL,
    public_base_url: str = config.PUBLIC_BASE_URL,
) -> Dict[str, Any]:
    name = (name or "").strip() if isinstance(name, str) else ""
    if not name:
        raise ValidationError("Name is required")
    if not is_valid_phone(phone):
        raise ValidationError("Mobile must be 10 digits")
    quantity = validate_quantity(quantity, max_quantity)

    settings = await get_active_settings(db)
    lottery_round = settings.lottery_round

    # the reservation is the inventory check: nothing is written before it
    if not await inventory.reserve(db, lottery_round, quantity,
                                   settings.total_tickets):
        raise InventoryExhausted("Not enough tickets left")

    amount = quantity * settings.ticket_price
    order_id = new_order_id()
    try:
        async with db.gated():
            async with db.session.begin():
                user_id = await _upsert_user(db.session, name, phone)
                await db.session.execute(text("""
                    INSERT INTO payments(
                        order_id, user_id, phone, amount, quantity,
                        ticket_price, lottery_round, status, created_at)
                    VALUES(:o, :u, :p, :a, :q, :price, :r, :s, :t)
                """), {
                    "o": order_id,
                    "u": user_id,
                    "p": phone,
                    "a": amount,
                    "q": quantity,
                    "price": settings.ticket_price,
                    "r": lottery_round,
                    "s": P_CREATED,
                    "t": now_ts(),
                })
    except Exception:
        await inventory.release(db, lottery_round, quantity)
        raise

    try:
        session = await gateway.create_order(
            order_id=order_id,
            amount=amount,
            customer={
                "customer_id": str(user_id),
                "customer_name": name,
                "customer_phone": phone,
            },
            return_url=f"{frontend_url}/payment-status?order_id={order_id}",
            notify_url=f"{public_base_url}/api/{gateway.name}/webhook",
        )
    except Exception:
        logger.warning("gateway refused order %s, rolling it back", order_id)
        await _delete_payment(db, order_id)
        await inventory.release(db, lottery_round, quantity)
        raise

    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE payments SET payment_session_id=:ps WHERE order_id=:o
            """), {"ps": session["payment_session_id"], "o": order_id})

    logger.info("order %s created: user=%s qty=%d amount=%d round=%d",
                order_id, user_id, quantity, amount, lottery_round)
    return {
        "order_id": order_id,
        "payment_session_id": session["payment_session_id"],
        "payment_redirect": session["redirect_url"],
        "user_id": user_id,
        "quantity": quantity,
        "amount": amount,
        "lottery_round": lottery_round,
    }


async def expire_stale_payments(
    db: GatedSession, max_age_seconds: int = config.PENDING_TTL_SECONDS
) -> List[str]:
    """
    Housekeeping: flip `created` payments older than `max_age_seconds` to
    `expired` and hand their units back to the round inventory. A late
    success still confirms an expired payment.
    """
    cutoff = now_ts() - max_age_seconds
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                UPDATE payments SET status=:expired
                WHERE status=:created AND created_at < :cutoff
                RETURNING order_id, lottery_round, quantity
            """), {
                "expired": P_EXPIRED, "created": P_CREATED, "cutoff": cutoff
            })).all()
            for order_id, lottery_round, qty in rows:
                await inventory._release(db.session, lottery_round, qty or 0)

    expired = [r[0] for r in rows]
    if expired:
        logger.info("expired %d stale payments: %s", len(expired), expired)
    return expired


async def pending_payments(
    db: GatedSession, limit: int = 100
) -> tuple[int, List[Dict[str, Any]]]:
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            total = (await db.session.execute(text("""
                SELECT COUNT(*) FROM payments WHERE status=:s
            """), {"s": P_CREATED})).scalar_one()
            rows = (await db.session.execute(text("""
                SELECT p.order_id, p.amount, p.quantity, p.phone,
                       p.lottery_round, p.created_at, u.name
                FROM payments AS p
                LEFT JOIN users AS u ON u.id = p.user_id
                WHERE p.status=:s
                ORDER BY p.created_at DESC
                LIMIT :lim
            """), {"s": P_CREATED, "lim": max(1, min(limit, 500))})
            ).mappings().all()

    items = [
        {
            "order_id": r["order_id"],
            "name": r["name"] or "",
            "phone": r["phone"],
            "amount": int(r["amount"]),
            "quantity": int(r["quantity"] or 0),
            "lottery_round": int(r["lottery_round"]),
            "age_ms": int(max(0.0, now - float(r["created_at"])) * 1000),
        }
        for r in rows
    ]
    return int(total), items
