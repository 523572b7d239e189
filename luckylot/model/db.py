from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# payment statuses
P_CREATED = "created"
P_SUCCESS = "success"
P_EXPIRED = "expired"

# ticket statuses
T_CONFIRMED = "confirmed"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)


class LotterySettingsRow(Base):
    __tablename__ = "lottery_settings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    lottery_round = Column(Integer, nullable=False, default=1)
    ticket_price = Column(Integer, nullable=False, default=101)
    total_tickets = Column(Integer, nullable=False, default=1000)
    lottery_date = Column(String, nullable=True)
    banner_image = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    order_id = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    phone = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    # recorded at order time so a later price change can't alter the count
    quantity = Column(Integer, nullable=True)
    ticket_price = Column(Integer, nullable=False)
    lottery_round = Column(Integer, nullable=False)

    # created | success | expired
    status = Column(String, nullable=False, default=P_CREATED)
    payment_session_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_code = Column(String, nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # batch association: which order minted this ticket
    order_id = Column(String, ForeignKey("payments.order_id"), nullable=True)
    lottery_round = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=T_CONFIRMED)
    created_at = Column(Float, nullable=False)


class Winner(Base):
    __tablename__ = "winners"
    ticket_code = Column(String, primary_key=True)
    prize_amount = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class RoundInventory(Base):
    __tablename__ = "round_inventory"
    lottery_round = Column(Integer, primary_key=True)
    # units held by pending payments plus units already issued
    reserved = Column(Integer, nullable=False, default=0)


Index("tickets_order_idx", Ticket.order_id)
Index("tickets_user_idx", Ticket.user_id)
Index("payments_status_created_idx", Payment.status, Payment.created_at)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
