"""
Ticket code generation and issuance.

Codes look like `1LOT-7K2QZ`: the lottery round, the fixed `LOT` prefix and
five symbols drawn uniformly from A-Z0-9. The generator is not meant to be
unguessable; uniqueness is checked against the store and, at insert time,
enforced by the unique constraint on `tickets.ticket_code`.
"""
from __future__ import annotations
import logging
import random
import string
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import IssuanceExhausted, StoreError, ValidationError
from .helpers import now_ts
from .infra.sql import GatedSession
from .model.db import T_CONFIRMED

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_PREFIX = "LOT"
CODE_LENGTH = 5
ATTEMPTS_PER_TICKET = 10


def generate_code(lottery_round: int, rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    suffix = "".join(rng.choices(CODE_ALPHABET, k=CODE_LENGTH))
    return f"{lottery_round}{CODE_PREFIX}-{suffix}"


# UN-GATED internal function
async def _code_exists(db: AsyncSession, code: str) -> bool:
    row = (await db.execute(text("""
        SELECT 1 FROM tickets WHERE ticket_code=:c
    """), {"c": code})).first()
    return row is not None


# UN-GATED internal function
async def _issue_tickets(
    db: AsyncSession,
    user_id: int,
    quantity: int,
    lottery_round: int,
    order_id: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """
    Mint `quantity` unique codes and insert them in one batch. Must run
    inside the caller's transaction: on any failure nothing is kept.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) \
            or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    codes: List[str] = []
    seen = set()
    budget = quantity * ATTEMPTS_PER_TICKET
    attempts = 0
    while len(codes) < quantity and attempts < budget:
        attempts += 1
        candidate = generate_code(lottery_round, rng)
        if candidate in seen:
            continue
        seen.add(candidate)
        if await _code_exists(db, candidate):
            continue
        codes.append(candidate)

    if len(codes) < quantity:
        logger.error(
            "only %d of %d unique codes for round %d after %d attempts",
            len(codes), quantity, lottery_round, attempts,
        )
        raise IssuanceExhausted("Failed to generate unique ticket codes")

    created_at = now_ts()
    rows = [
        {
            "c": code,
            "u": user_id,
            "o": order_id,
            "r": lottery_round,
            "s": T_CONFIRMED,
            "t": created_at,
        }
        for code in codes
    ]
    try:
        await db.execute(text("""
            INSERT INTO tickets(
                ticket_code, user_id, order_id, lottery_round, status,
                created_at)
            VALUES(:c, :u, :o, :r, :s, :t)
        """), rows)
    except IntegrityError as e:
        # a concurrent issuance took one of our candidates in between
        logger.warning("ticket code collision at insert for user %s: %s",
                       user_id, e.orig)
        raise StoreError("Ticket code collision, please retry") from e

    logger.info("issued %d tickets for user %s (order %s): %s",
                quantity, user_id, order_id, codes)
    return codes


# UN-GATED internal function
async def _tickets_for_order(db: AsyncSession, order_id: str) -> List[str]:
    rows = (await db.execute(text("""
        SELECT ticket_code FROM tickets WHERE order_id=:o ORDER BY id
    """), {"o": order_id})).all()
    return [r[0] for r in rows]


# UN-GATED internal function
async def _issue_for_order(
    db: AsyncSession,
    order_id: str,
    user_id: int,
    quantity: int,
    lottery_round: int,
    rng: Optional[random.Random] = None,
) -> List[str]:
    existing = await _tickets_for_order(db, order_id)
    if len(existing) >= quantity:
        logger.info("order %s already has its %d tickets", order_id,
                    len(existing))
        return existing
    fresh = await _issue_tickets(
        db, user_id, quantity - len(existing), lottery_round,
        order_id=order_id, rng=rng,
    )
    return existing + fresh


# Public API

async def issue_tickets(
    db: GatedSession,
    user_id: int,
    quantity: int,
    lottery_round: int,
    order_id: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> List[str]:
    async with db.gated():
        async with db.session.begin():
            return await _issue_tickets(
                db.session, user_id, quantity, lottery_round,
                order_id=order_id, rng=rng,
            )


async def issue_for_order(
    db: GatedSession,
    order_id: str,
    user_id: int,
    quantity: int,
    lottery_round: int,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """Idempotent issuance: a second call returns the first call's codes."""
    async with db.gated():
        async with db.session.begin():
            return await _issue_for_order(
                db.session, order_id, user_id, quantity, lottery_round,
                rng=rng,
            )


async def tickets_for_order(db: GatedSession, order_id: str) -> List[str]:
    async with db.gated():
        async with db.session.begin():
            return await _tickets_for_order(db.session, order_id)
