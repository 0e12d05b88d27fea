from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# Transaction status
PENDING = "PENDING"
SUCCESSFUL = "SUCCESSFUL"
CANCELLED = "CANCELLED"
FAILED = "FAILED"
EXPIRED = "EXPIRED"

STATUSES = (PENDING, SUCCESSFUL, CANCELLED, FAILED, EXPIRED)
NEGATIVE = frozenset({CANCELLED, FAILED, EXPIRED})
TERMINAL = frozenset({SUCCESSFUL}) | NEGATIVE

# Transaction.note when payment succeeded but no voucher was left
NOTE_NO_INVENTORY = "NO_INVENTORY"


# ----------------------------
# ORM models
# ----------------------------
class Voucher(Base):
    __tablename__ = "vouchers"
    # creation order; candidate selection takes the lowest id
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, nullable=False, unique=True)
    product_name = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    discounted_amount = Column(Integer, nullable=True)
    image = Column(String, nullable=True)

    used = Column(Boolean, nullable=False, default=False)
    used_by = Column(String, nullable=True)
    used_at = Column(Float, nullable=True)
    expiry_date = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_vouchers_product_used", "product_name", "used", "id"),
    )


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    temp_id = Column(String, nullable=True, unique=True)
    transaction_id = Column(String, nullable=True, unique=True)
    bill_link_id = Column(BigInteger, nullable=True, index=True)

    email = Column(String, nullable=False)
    name = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    discounted_amount = Column(Integer, nullable=True)
    product_name = Column(String, nullable=True)
    voucher_code = Column(String, nullable=True)

    # PENDING | SUCCESSFUL | CANCELLED | FAILED | EXPIRED
    status = Column(String, nullable=False, default=PENDING)
    note = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    used_at = Column(Float, nullable=True)
    expiry_date = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_transactions_match", "email", "amount", "status"),
        Index("idx_transactions_status_created", "status", "created_at"),
    )


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
