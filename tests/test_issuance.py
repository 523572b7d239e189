import random
import re

import pytest

from luckylot import issuance
from luckylot.errors import IssuanceExhausted, StoreError, ValidationError
from luckylot.issuance import (
    generate_code, issue_for_order, issue_tickets, tickets_for_order,
)

from conftest import ConstRng, scalar


@pytest.mark.parametrize("lottery_round", [1, 7, 12, 250])
def test_generate_code_format(lottery_round):
    rng = random.Random(lottery_round)
    pattern = re.compile(rf"^{lottery_round}LOT-[A-Z0-9]{{5}}$")
    for _ in range(200):
        assert pattern.match(generate_code(lottery_round, rng))


def test_generate_code_uses_whole_alphabet():
    rng = random.Random(42)
    seen = set()
    for _ in range(2000):
        seen.update(generate_code(1, rng).split("-")[1])
    assert len(seen) == 36


def test_issue_tickets_stores_exactly_quantity(run_db):
    async def go(db):
        codes = await issue_tickets(db, user_id=1, quantity=5,
                                    lottery_round=1)
        count = await scalar(db, "SELECT COUNT(*) FROM tickets")
        statuses = await scalar(
            db, "SELECT COUNT(*) FROM tickets WHERE status='confirmed'"
        )
        return codes, count, statuses

    codes, count, statuses = run_db(go)
    assert len(codes) == 5
    assert len(set(codes)) == 5
    assert count == 5
    assert statuses == 5


def test_issue_for_order_is_idempotent(run_db):
    async def go(db):
        first = await issue_for_order(db, "ORD_1", user_id=3, quantity=3,
                                      lottery_round=2)
        second = await issue_for_order(db, "ORD_1", user_id=3, quantity=3,
                                       lottery_round=2)
        linked = await tickets_for_order(db, "ORD_1")
        count = await scalar(db, "SELECT COUNT(*) FROM tickets")
        return first, second, linked, count

    first, second, linked, count = run_db(go)
    assert first == second == linked
    assert count == 3
    assert all(c.startswith("2LOT-") for c in first)


def test_issue_exhausted_when_every_candidate_is_taken(run_db):
    async def go(db):
        await issue_tickets(db, 1, 1, 1, rng=ConstRng())
        with pytest.raises(IssuanceExhausted):
            await issue_tickets(db, 2, 1, 1, rng=ConstRng())
        return await scalar(db, "SELECT COUNT(*) FROM tickets")

    assert run_db(go) == 1


def test_issue_exhausted_inserts_nothing(run_db):
    # only one distinct code can ever come out of ConstRng
    async def go(db):
        with pytest.raises(IssuanceExhausted):
            await issue_tickets(db, 1, 2, 1, rng=ConstRng())
        return await scalar(db, "SELECT COUNT(*) FROM tickets")

    assert run_db(go) == 0


@pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True])
def test_issue_rejects_bad_quantity(run_db, quantity):
    async def go(db):
        with pytest.raises(ValidationError):
            await issue_tickets(db, 1, quantity, 1)

    run_db(go)


class ScriptedRng:
    """Hands out the given code suffixes in order."""

    def __init__(self, *suffixes):
        self.suffixes = list(suffixes)

    def choices(self, population, weights=None, *, cum_weights=None, k=1):
        return list(self.suffixes.pop(0))


def test_insert_collision_keeps_nothing_from_the_batch(run_db, monkeypatch):
    async def never_taken(db, code):
        return False

    async def go(db):
        taken = await issue_tickets(db, 1, 1, 1, rng=ConstRng())
        # a concurrent issuer took AAAAA after our existence check
        monkeypatch.setattr(issuance, "_code_exists", never_taken)
        with pytest.raises(StoreError):
            await issue_tickets(db, 2, 2, 1,
                                rng=ScriptedRng("BBBBB", "AAAAA"))
        count = await scalar(db, "SELECT COUNT(*) FROM tickets")
        kept = await scalar(db, "SELECT ticket_code FROM tickets")
        return taken, count, kept

    taken, count, kept = run_db(go)
    assert taken == ["1LOT-AAAAA"]
    assert (count, kept) == (1, "1LOT-AAAAA")
