
import enum
import uuid
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    func
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_id() -> str:
    return str(uuid.uuid4())


class Direction(str, enum.Enum):
    """
    Polarity of an account or a posting.
    A posting increases an account of the same direction and decreases one of the other.
    """
    DEBIT = "debit"
    CREDIT = "credit"


class Account(Base):
    """
    A ledger account. Its current balance is never stored directly: it is the
    closed_balance snapshot plus every posting not yet reconciled.
    """
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True, default=generate_id)
    name = Column(String, nullable=True)
    direction = Column(Enum(Direction), nullable=False)
    closed_balance = Column(BigInteger, nullable=False, default=0)  # cents
    # Optimistic lock; bumped together with closed_balance only
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Posting(Base):
    """
    One leg of a double-entry transaction. Postings sharing a transaction_id form
    a transaction group whose debits and credits must be equal.

    Rows are append-only. reconciled_at moves from NULL to a timestamp exactly once,
    for the whole group at the same time.
    """
    __tablename__ = "postings"
    __table_args__ = (
        Index("ix_postings_account_reconciled", "account_id", "reconciled_at"),
    )

    id = Column(String(64), primary_key=True, default=generate_id)
    transaction_id = Column(String(64), nullable=False, index=True)
    transaction_name = Column(String, nullable=True)
    # Lookup only, no foreign key
    account_id = Column(String(64), nullable=False, index=True)
    direction = Column(Enum(Direction), nullable=False)
    amount = Column(BigInteger, nullable=False)  # cents, always positive
    created_at = Column(DateTime(timezone=True), nullable=False)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)


class TransactionGroup(Base):
    """
    One row per transaction id. Its primary key rejects a second batch of postings
    for an id that is already taken, even when both batches are written at once.
    """
    __tablename__ = "transaction_groups"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
