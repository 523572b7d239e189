import argparse
import asyncio
import logging

from luckylot import config
from luckylot.infra.sql import GatedSession, make_async_engine
from luckylot.model.db import create_schema
from luckylot.model.settings import get_active_settings
from luckylot.orders import expire_stale_payments

logger = logging.getLogger("init_db")


async def run(database_url: str, expire_pending: bool, max_age: int) -> None:
    engine, SessionAsync, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        logger.info("schema present / created")

        async with SessionAsync() as session:
            db = GatedSession(session=session, gated=gated)
            settings = await get_active_settings(db)
            logger.info("active round %d: price=%d inventory=%d",
                        settings.lottery_round, settings.ticket_price,
                        settings.total_tickets)
            if expire_pending:
                expired = await expire_stale_payments(db, max_age)
                logger.info("expired %d pending payments", len(expired))
    finally:
        await engine.dispose()


def main():
    ap = argparse.ArgumentParser(
        description="Create the LuckyLot schema and run housekeeping"
    )
    ap.add_argument(
        "--database-url", default=config.DATABASE_URL,
        help="Database URL (default: $DATABASE_URL)"
    )
    ap.add_argument(
        "--expire-pending", action="store_true",
        help="expire unpaid orders older than --max-age and free their tickets"
    )
    ap.add_argument(
        "--max-age", type=int, default=config.PENDING_TTL_SECONDS,
        help="age in seconds after which a pending payment expires"
    )
    args = ap.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run(args.database_url, args.expire_pending, args.max_age))


if __name__ == "__main__":
    main()
