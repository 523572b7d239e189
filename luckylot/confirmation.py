"""
Payment confirmation.

Both entry points, the synchronous `verify_payment` poll and the gateway
webhook, end in `confirm_payment`. That function flips the payment to
`success` with a conditional UPDATE and issues the order's tickets in the
same transaction, so:
- a duplicate confirmation finds the payment already `success` and gets
  the codes linked to the order back instead of minting new ones
- a failed issuance rolls the status flip back and the payment stays
  confirmable
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from . import config
from .errors import GatewayError, NotConfirmed, NotFound, ValidationError
from .gateway import PaymentGateway
from .helpers import now_ts
from .infra.sql import GatedSession
from .issuance import _issue_for_order, tickets_for_order
from .model import inventory
from .model.db import P_CREATED, P_EXPIRED, P_SUCCESS
from .model.settings import _active_settings

logger = logging.getLogger(__name__)


@dataclass
class ConfirmResult:
    order_id: str
    tickets: List[str] = field(default_factory=list)
    # False when an earlier confirmation already issued the tickets
    newly_issued: bool = False


def quantity_for(payment: Dict[str, Any], ticket_price: int) -> int:
    if payment.get("quantity"):
        return int(payment["quantity"])
    price = payment.get("ticket_price") or ticket_price
    return round(payment["amount"] / price)


def _same_quantity(given: Any, stored: int) -> bool:
    # JSON clients may send 2, "2" or 2.0 for the same order
    if isinstance(given, bool):
        return False
    try:
        return float(given) == stored
    except (TypeError, ValueError):
        return False


async def get_payment(
    db: GatedSession, order_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT * FROM payments WHERE order_id=:o
            """), {"o": order_id})).mappings().first()
    return dict(row) if row else None


async def confirm_payment(
    db: GatedSession, order_id: str
) -> Optional[ConfirmResult]:
    """
    Mark the payment successful and issue its tickets, exactly once.
    Returns None for an unknown order.
    """
    async with db.gated():
        async with db.session.begin():
            s = db.session
            payment = (await s.execute(text("""
                SELECT * FROM payments WHERE order_id=:o
            """), {"o": order_id})).mappings().first()
            if payment is None:
                return None

            flipped = (await s.execute(text("""
                UPDATE payments SET status=:success, paid_at=:now
                WHERE order_id=:o AND status IN (:created, :expired)
                RETURNING order_id
            """), {
                "o": order_id, "now": now_ts(), "success": P_SUCCESS,
                "created": P_CREATED, "expired": P_EXPIRED,
            })).first()

            if flipped is None:
                # someone confirmed it before us
                rows = (await s.execute(text("""
                    SELECT ticket_code FROM tickets
                    WHERE order_id=:o ORDER BY id
                """), {"o": order_id})).all()
                return ConfirmResult(order_id, [r[0] for r in rows], False)

            settings = await _active_settings(s)
            quantity = quantity_for(payment, settings.ticket_price)
            lottery_round = payment["lottery_round"] or settings.lottery_round

            if payment["status"] == P_EXPIRED:
                # its units went back to the pool when it expired
                logger.warning("late payment for expired order %s", order_id)
                await inventory._force_reserve(
                    s, lottery_round, quantity, settings.total_tickets
                )

            codes = await _issue_for_order(
                s, order_id, payment["user_id"], quantity, lottery_round
            )

    logger.info("payment %s confirmed, %d tickets", order_id, len(codes))
    return ConfirmResult(order_id, codes, True)


async def verify_payment(
    db: GatedSession,
    gateway: PaymentGateway,
    order_id: Optional[str],
    user_id: Any = None,
    quantity: Any = None,
    *,
    attempts: int = config.VERIFY_ATTEMPTS,
    delay: float = config.VERIFY_DELAY_SECONDS,
) -> List[str]:
    if not order_id or not isinstance(order_id, str):
        raise ValidationError("order_id is required")

    payment = await get_payment(db, order_id)
    if payment is None:
        raise NotFound("Order not found")
    if user_id is not None and str(user_id) != str(payment["user_id"]):
        raise ValidationError("Order does not belong to this user")
    if quantity is not None and payment["quantity"] is not None \
            and not _same_quantity(quantity, payment["quantity"]):
        raise ValidationError("Quantity does not match the order")

    if payment["status"] == P_SUCCESS:
        return await tickets_for_order(db, order_id)

    status = ""
    last_error: Optional[GatewayError] = None
    for attempt in range(1, attempts + 1):
        try:
            status = await gateway.order_status(order_id)
            last_error = None
        except GatewayError as e:
            logger.warning("status check %d/%d for %s failed: %s",
                           attempt, attempts, order_id, e.message)
            last_error = e
        else:
            logger.debug("status check %d/%d for %s: %s",
                         attempt, attempts, order_id, status)
            if gateway.is_paid(status):
                break
        if attempt < attempts:
            await asyncio.sleep(delay)

    if last_error is not None:
        raise last_error
    if not gateway.is_paid(status):
        logger.info("payment %s not confirmed after %d checks (%s)",
                    order_id, attempts, status or "no status")
        raise NotConfirmed("Payment not confirmed yet")

    result = await confirm_payment(db, order_id)
    if result is None:
        # deleted between the lookup and now
        raise NotFound("Order not found")
    return result.tickets


async def handle_webhook(
    db: GatedSession,
    gateway: PaymentGateway,
    body: bytes,
    headers: Dict[str, str],
) -> Dict[str, Any]:
    # InvalidSignature propagates: an unsigned body isn't a gateway delivery
    event = gateway.verify_webhook(body, headers)
    if event is None:
        logger.warning("webhook with unparseable body ignored")
        return {"status": "ignored"}
    if not gateway.is_success_event(event):
        logger.info("webhook event %r ignored", event.get("type"))
        return {"status": "ignored"}

    order_id = gateway.event_order_id(event)
    if not order_id:
        logger.warning("success webhook without order id ignored")
        return {"status": "ignored"}

    result = await confirm_payment(db, order_id)
    if result is None:
        logger.warning("webhook for unknown order %s", order_id)
        return {"status": "unknown_order"}
    if not result.newly_issued:
        return {"status": "already_processed"}
    return {"status": "processed", "tickets": result.tickets}
