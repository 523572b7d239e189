# model/inventory.py
"""
Per-round ticket inventory.

`round_inventory.reserved` counts the units held by pending payments plus
the units already issued for a round. Reserving is one conditional UPDATE,
so two concurrent orders can never both take the last units:
- reserve: check-and-increment in a single statement
- release: give units back when an order can't go through
- force_reserve: late successes of expired payments (may overshoot)
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import GatedSession
from .db import P_CREATED
from .settings import LotterySettings

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Core logic
# ------------------------------------------------------------------------------

# UN-GATED internal function
async def _ensure_row(db: AsyncSession, lottery_round: int) -> None:
    await db.execute(text("""
        INSERT INTO round_inventory(lottery_round, reserved)
        VALUES(:r, 0)
        ON CONFLICT (lottery_round) DO NOTHING
    """), {"r": lottery_round})


# UN-GATED internal function
async def _reserve(
    db: AsyncSession, lottery_round: int, qty: int, total_tickets: int
) -> bool:
    await _ensure_row(db, lottery_round)
    row = (await db.execute(text("""
        UPDATE round_inventory
        SET reserved = reserved + :q
        WHERE lottery_round=:r AND reserved + :q <= :total
        RETURNING reserved
    """), {"r": lottery_round, "q": qty, "total": total_tickets})).first()
    return row is not None


# UN-GATED internal function
async def _release(db: AsyncSession, lottery_round: int, qty: int) -> None:
    await db.execute(text("""
        UPDATE round_inventory
        SET reserved = CASE WHEN reserved >= :q THEN reserved - :q ELSE 0 END
        WHERE lottery_round=:r
    """), {"r": lottery_round, "q": qty})


# UN-GATED internal function
async def _force_reserve(
    db: AsyncSession, lottery_round: int, qty: int, total_tickets: int
) -> int:
    await _ensure_row(db, lottery_round)
    reserved = (await db.execute(text("""
        UPDATE round_inventory
        SET reserved = reserved + :q
        WHERE lottery_round=:r
        RETURNING reserved
    """), {"r": lottery_round, "q": qty})).scalar_one()
    if reserved > total_tickets:
        logger.warning(
            "round %d oversold by a late payment: %d reserved of %d",
            lottery_round, reserved, total_tickets,
        )
    return int(reserved)


# UN-GATED internal function
async def _reserved(db: AsyncSession, lottery_round: int) -> int:
    reserved = (await db.execute(text("""
        SELECT reserved FROM round_inventory WHERE lottery_round=:r
    """), {"r": lottery_round})).scalar_one_or_none()
    return int(reserved or 0)


# UN-GATED internal function
async def _sold(db: AsyncSession, lottery_round: Optional[int]) -> int:
    if lottery_round is None:
        sold = (await db.execute(
            text("SELECT COUNT(*) FROM tickets")
        )).scalar_one()
    else:
        sold = (await db.execute(text("""
            SELECT COUNT(*) FROM tickets WHERE lottery_round=:r
        """), {"r": lottery_round})).scalar_one()
    return int(sold)


# Public API

async def reserve(
    db: GatedSession, lottery_round: int, qty: int, total_tickets: int
) -> bool:
    """
    Atomically hold `qty` units of `lottery_round` if that stays within
    `total_tickets`. Returns False (and changes nothing) otherwise.
    """
    async with db.gated():
        async with db.session.begin():
            ok = await _reserve(db.session, lottery_round, qty, total_tickets)
    if ok:
        logger.debug("reserved %d units of round %d", qty, lottery_round)
    return ok


async def release(db: GatedSession, lottery_round: int, qty: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await _release(db.session, lottery_round, qty)
    logger.info("released %d units of round %d", qty, lottery_round)


async def sold_count(
    db: GatedSession, lottery_round: Optional[int] = None
) -> int:
    async with db.gated():
        async with db.session.begin():
            return await _sold(db.session, lottery_round)


async def remaining(db: GatedSession, settings: LotterySettings) -> int:
    async with db.gated():
        async with db.session.begin():
            reserved = await _reserved(db.session, settings.lottery_round)
            sold = await _sold(db.session, settings.lottery_round)
    return max(0, settings.total_tickets - max(reserved, sold))


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def inventory_stats(
    db: GatedSession, settings: LotterySettings
) -> Dict[str, Any]:
    """
    Returns:
      { "total": ..., "sold": ..., "reserved": ..., "remaining": ...,
        "pending_payments": ..., "lottery_round": ... }
    """
    async with db.gated():
        async with db.session.begin():
            reserved = await _reserved(db.session, settings.lottery_round)
            sold = await _sold(db.session, settings.lottery_round)
            pending = (await db.session.execute(text("""
                SELECT COUNT(*) FROM payments WHERE status=:s
            """), {"s": P_CREATED})).scalar_one()
    return {
        "lottery_round": settings.lottery_round,
        "total": settings.total_tickets,
        "sold": sold,
        "reserved": reserved,
        "remaining": max(0, settings.total_tickets - max(reserved, sold)),
        "pending_payments": int(pending),
    }
