# model/settings.py
"""
Lottery round configuration.

At most one `lottery_settings` row is active. Callers fetch the active
settings at the start of every operation that needs them; nothing is cached
in-process. Without an active row the hardcoded defaults apply.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..helpers import now_ts
from ..infra.sql import GatedSession

logger = logging.getLogger(__name__)

DEFAULT_ROUND = 1
DEFAULT_TICKET_PRICE = 101
DEFAULT_TOTAL_TICKETS = 1000


@dataclass(frozen=True)
class LotterySettings:
    lottery_round: int
    ticket_price: int
    total_tickets: int
    lottery_date: Optional[str] = None
    banner_image: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_settings() -> LotterySettings:
    return LotterySettings(
        lottery_round=DEFAULT_ROUND,
        ticket_price=DEFAULT_TICKET_PRICE,
        total_tickets=DEFAULT_TOTAL_TICKETS,
    )


# UN-GATED internal function
async def _active_settings(db: AsyncSession) -> LotterySettings:
    row = (await db.execute(text("""
        SELECT id, lottery_round, ticket_price, total_tickets, lottery_date,
               banner_image
        FROM lottery_settings
        WHERE is_active
        ORDER BY id DESC
        LIMIT 1
    """))).mappings().first()
    if not row:
        return default_settings()
    return LotterySettings(
        id=row["id"],
        lottery_round=int(row["lottery_round"] or DEFAULT_ROUND),
        ticket_price=int(row["ticket_price"] or DEFAULT_TICKET_PRICE),
        total_tickets=int(row["total_tickets"] or DEFAULT_TOTAL_TICKETS),
        lottery_date=row["lottery_date"],
        banner_image=row["banner_image"],
    )


async def get_active_settings(db: GatedSession) -> LotterySettings:
    async with db.gated():
        async with db.session.begin():
            return await _active_settings(db.session)


def _positive_int(changes: Dict[str, Any], key: str) -> Optional[int]:
    value = changes.get(key)
    # empty / zero values keep the current setting
    if value in (None, "", 0):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a positive integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a positive integer")
    if n <= 0 or n != float(value):
        raise ValidationError(f"{key} must be a positive integer")
    return n


async def save_settings(
    db: GatedSession, changes: Dict[str, Any]
) -> LotterySettings:
    """
    Partial update of the active settings row. Missing or falsy fields keep
    their current value; an active row is inserted when none exists yet.
    """
    lottery_round = _positive_int(changes, "lottery_round")
    ticket_price = _positive_int(changes, "ticket_price")
    total_tickets = _positive_int(changes, "total_tickets")
    lottery_date = changes.get("lottery_date") or None
    banner_image = changes.get("banner_image") or None

    async with db.gated():
        async with db.session.begin():
            current = await _active_settings(db.session)
            merged = LotterySettings(
                id=current.id,
                lottery_round=lottery_round or current.lottery_round,
                ticket_price=ticket_price or current.ticket_price,
                total_tickets=total_tickets or current.total_tickets,
                lottery_date=lottery_date or current.lottery_date,
                banner_image=banner_image or current.banner_image,
            )
            params = {
                "r": merged.lottery_round,
                "p": merged.ticket_price,
                "t": merged.total_tickets,
                "d": merged.lottery_date,
                "b": merged.banner_image,
                "now": now_ts(),
            }
            if current.id is not None:
                await db.session.execute(text("""
                    UPDATE lottery_settings
                    SET lottery_round=:r, ticket_price=:p, total_tickets=:t,
                        lottery_date=:d, banner_image=:b, updated_at=:now
                    WHERE id=:id
                """), {**params, "id": current.id})
            else:
                row = (await db.session.execute(text("""
                    INSERT INTO lottery_settings(
                        lottery_round, ticket_price, total_tickets,
                        lottery_date, banner_image, is_active, created_at,
                        updated_at)
                    VALUES(:r, :p, :t, :d, :b, :active, :now, :now)
                    RETURNING id
                """), {**params, "active": True})).first()
                merged = LotterySettings(**{**merged.to_dict(), "id": row[0]})

    logger.info("lottery settings saved: round=%d price=%d inventory=%d",
                merged.lottery_round, merged.ticket_price,
                merged.total_tickets)
    return merged
