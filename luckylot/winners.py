from __future__ import annotations
import logging
import random
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ValidationError
from .helpers import mask_phone, now_ts, to_iso
from .infra.sql import GatedSession
from .model.db import T_CONFIRMED

logger = logging.getLogger(__name__)

PRIZE_LADDER = (25000, 10000, 5000, 2000, 1000, 500)
CONSOLATION_PRIZE = 500
MAX_DRAW = 50


def prize_for(rank: int) -> int:
    if rank < len(PRIZE_LADDER):
        return PRIZE_LADDER[rank]
    return CONSOLATION_PRIZE


def fisher_yates(items: Sequence[str], rng: random.Random) -> List[str]:
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


# UN-GATED internal function
async def _upsert_winners(
    db: AsyncSession, winners: List[Dict[str, Any]]
) -> None:
    if not winners:
        return
    now = now_ts()
    await db.execute(text("""
        INSERT INTO winners(ticket_code, prize_amount, created_at)
        VALUES(:c, :p, :t)
        ON CONFLICT (ticket_code) DO UPDATE
        SET prize_amount=EXCLUDED.prize_amount
    """), [
        {"c": w["ticket_code"], "p": w["prize_amount"], "t": now}
        for w in winners
    ])


async def check_result(db: GatedSession, ticket_code: str) -> Dict[str, Any]:
    code = (ticket_code or "").strip().upper()
    async with db.gated():
        async with db.session.begin():
            prize = (await db.session.execute(text("""
                SELECT prize_amount FROM winners WHERE ticket_code=:c
            """), {"c": code})).scalar_one_or_none()
    if prize is None:
        return {"won": False}
    return {"won": True, "prize": int(prize)}


async def recent_winners(
    db: GatedSession, limit: int = 10
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT w.ticket_code, w.prize_amount, u.name, u.phone
                FROM winners AS w
                LEFT JOIN tickets AS t ON t.ticket_code = w.ticket_code
                LEFT JOIN users AS u ON u.id = t.user_id
                ORDER BY w.prize_amount DESC, w.ticket_code
                LIMIT :lim
            """), {"lim": limit})).mappings().all()
    return [
        {
            "ticket_code": r["ticket_code"],
            "prize_amount": int(r["prize_amount"]),
            "name": r["name"] or "Anonymous",
            "mobile": mask_phone(r["phone"]),
        }
        for r in rows
    ]


async def draw_winners(
    db: GatedSession,
    count: Any,
    lottery_round: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[Dict[str, Any]]:
    """
    Pick `count` distinct confirmed tickets uniformly at random and assign
    the prize ladder in draw order.
    """
    if isinstance(count, bool) or not isinstance(count, int) \
            or not 1 <= count <= MAX_DRAW:
        raise ValidationError(f"Count must be between 1 and {MAX_DRAW}")
    rng = rng or random.SystemRandom()

    async with db.gated():
        async with db.session.begin():
            if lottery_round is None:
                rows = (await db.session.execute(text("""
                    SELECT ticket_code FROM tickets WHERE status=:s
                    ORDER BY id
                """), {"s": T_CONFIRMED})).all()
            else:
                rows = (await db.session.execute(text("""
                    SELECT ticket_code FROM tickets
                    WHERE status=:s AND lottery_round=:r
                    ORDER BY id
                """), {"s": T_CONFIRMED, "r": lottery_round})).all()

            codes = [r[0] for r in rows]
            if not codes:
                raise ValidationError("No tickets sold yet")
            if count > len(codes):
                raise ValidationError(
                    f"Cannot generate {count} winners. "
                    f"Only {len(codes)} tickets sold."
                )

            picked = fisher_yates(codes, rng)[:count]
            winners = [
                {"ticket_code": code, "prize_amount": prize_for(i)}
                for i, code in enumerate(picked)
            ]
            await _upsert_winners(db.session, winners)

    logger.info("drew %d winners from %d tickets", count, len(codes))
    return winners


async def set_winners(
    db: GatedSession, winners: Any
) -> List[Dict[str, Any]]:
    if not isinstance(winners, list):
        raise ValidationError("winners must be a list")
    cleaned = []
    for w in winners:
        if not isinstance(w, dict):
            raise ValidationError("each winner needs ticket_code and prize_amount")
        code = w.get("ticket_code")
        prize = w.get("prize_amount")
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("ticket_code is required")
        if isinstance(prize, bool) or not isinstance(prize, int) or prize < 0:
            raise ValidationError("prize_amount must be a non-negative integer")
        cleaned.append({
            "ticket_code": code.strip().upper(),
            "prize_amount": prize,
        })

    async with db.gated():
        async with db.session.begin():
            await _upsert_winners(db.session, cleaned)
    logger.info("stored %d manual winners", len(cleaned))
    return cleaned


async def list_users_with_tickets(db: GatedSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            users = (await db.session.execute(text("""
                SELECT id, name, phone, created_at FROM users
                ORDER BY created_at DESC, id DESC
            """))).mappings().all()
            ids = [u["id"] for u in users]
            tickets = []
            if ids:
                stmt = text("""
                    SELECT t.user_id, t.ticket_code, t.lottery_round,
                           w.prize_amount
                    FROM tickets AS t
                    LEFT JOIN winners AS w ON w.ticket_code = t.ticket_code
                    WHERE t.user_id IN :ids
                    ORDER BY t.id
                """).bindparams(bindparam("ids", expanding=True))
                tickets = (await db.session.execute(
                    stmt, {"ids": ids}
                )).mappings().all()

    by_user: Dict[int, List[Dict[str, Any]]] = {}
    for t in tickets:
        by_user.setdefault(t["user_id"], []).append({
            "ticket_code": t["ticket_code"],
            "lottery_round": t["lottery_round"],
            "is_winner": t["prize_amount"] is not None,
            "prize_amount": int(t["prize_amount"] or 0),
        })
    return [
        {
            "id": u["id"],
            "name": u["name"],
            "mobile": u["phone"],
            "created_at": to_iso(u["created_at"]),
            "tickets": by_user.get(u["id"], []),
        }
        for u in users
    ]
