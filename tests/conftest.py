import asyncio
import os
import random
import tempfile

# the server module builds its engine at import time
_TMP = tempfile.mkdtemp(prefix="luckylot-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("PAYMENT_GATEWAY", "mock")
os.environ.setdefault("VERIFY_ATTEMPTS", "2")
os.environ.setdefault("VERIFY_DELAY_SECONDS", "0")
os.environ.setdefault("ADMIN_PASSWORD", "letmein")
os.environ.setdefault("MOCK_WEBHOOK_URL", "http://127.0.0.1:9/api/mock/webhook")

import pytest  # noqa: E402
from sqlalchemy import text  # noqa: E402

from luckylot.errors import GatewayError  # noqa: E402
from luckylot.gateway import MockPay  # noqa: E402
from luckylot.infra.sql import GatedSession, make_async_engine  # noqa: E402
from luckylot.model.db import create_schema  # noqa: E402


@pytest.fixture
def run_db(tmp_path):
    """
    run_db(fn) runs `await fn(db)` against a fresh SQLite file that lives
    for the whole test, so consecutive calls see each other's writes.
    """
    url = f"sqlite:///{tmp_path}/test.db"

    def run(fn):
        async def main():
            engine, SessionAsync, gated = make_async_engine(url)
            try:
                async with engine.begin() as conn:
                    await create_schema(conn)
                async with SessionAsync() as session:
                    return await fn(GatedSession(session=session, gated=gated))
            finally:
                await engine.dispose()
        return asyncio.run(main())
    return run


async def scalar(db, sql, **params):
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(text(sql), params)).scalar()


class ConstRng(random.Random):
    """Always draws the first symbol, so every code is `<round>LOT-AAAAA`."""

    def choices(self, population, weights=None, *, cum_weights=None, k=1):
        return [population[0]] * k


class ScriptedGateway(MockPay):
    """MockPay whose status answers follow a script, one per poll."""

    def __init__(self, statuses):
        super().__init__(secret="test-secret")
        self.statuses = list(statuses)
        self.calls = 0

    async def order_status(self, order_id):
        self.calls += 1
        status = self.statuses[min(self.calls, len(self.statuses)) - 1]
        if isinstance(status, Exception):
            raise status
        return status


class RejectingGateway(MockPay):
    async def create_order(self, **kw):
        raise GatewayError("order_amount invalid", status_code=400)


@pytest.fixture
def mockpay():
    return MockPay(secret="test-secret")
