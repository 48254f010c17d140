"""SQLAlchemy models for persistent storage.

This module defines the database schema for the indexed projection:
the raw event audit trail, current stream records, the withdrawal ledger,
the per-(chain, contract) indexer cursor, and per-event processing errors.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 fits in 78 decimal digits.
UINT256_DIGITS = 78


class Uint256(TypeDecorator[Any]):
    """Exact unsigned 256-bit integer column.

    PostgreSQL stores it as NUMERIC(78, 0). SQLite has nothing exact wider than
    64 bits and binds Numeric through float, so there the value is kept as a
    zero-padded 78-digit string. Padding keeps SQL comparisons and ordering
    numeric; sums over these columns must be done in Python on SQLite.

    Args:
        as_int: Load values as int instead of Decimal.
    """

    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def __init__(self, as_int: bool = False) -> None:
        super().__init__()
        self.as_int = as_int

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(UINT256_DIGITS))
        return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        if int(value) < 0:
            raise ValueError(f"uint256 value must be non-negative, got {value}")
        if dialect.name == "sqlite":
            return format(int(value), f"0{UINT256_DIGITS}d")
        return Decimal(int(value))

    def process_result_value(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        return int(value) if self.as_int else Decimal(int(value))


UINT256 = Uint256()
# Timestamps carried as uint256 on chain.
UINT256_INT = Uint256(as_int=True)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EventModel(Base):
    """Raw decoded contract events (immutable audit trail)."""

    __tablename__ = "events"

    # "{chain_id}:{contract_address}:{transaction_hash}:{log_index}"
    id: Mapped[str] = mapped_column(String(200), primary_key=True)

    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    stream_id: Mapped[str | None] = mapped_column(String(78), nullable=True)

    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    transaction_index: Mapped[int] = mapped_column(Integer, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)

    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    args_json: Mapped[str] = mapped_column(Text, nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "chain_id",
            "contract_address",
            "transaction_hash",
            "log_index",
            name="uq_events_log",
        ),
        Index("idx_events_tx_hash", "transaction_hash"),
        Index("idx_events_stream", "chain_id", "contract_address", "stream_id"),
        Index("idx_events_block_timestamp", "block_timestamp"),
    )


class StreamModel(Base):
    """Current state of a payment stream (mutable projection)."""

    __tablename__ = "streams"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    id: Mapped[str] = mapped_column(String(78), primary_key=True)  # on-chain stream id

    sender: Mapped[str] = mapped_column(String(42), nullable=False)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    token: Mapped[str] = mapped_column(String(42), nullable=False)

    start: Mapped[int] = mapped_column(UINT256_INT, nullable=False)
    end: Mapped[int] = mapped_column(UINT256_INT, nullable=False)
    cliff: Mapped[int] = mapped_column(UINT256_INT, nullable=False)

    amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    withdrawn: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=Decimal(0))
    canceled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refundable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_streams_sender", "sender"),
        Index("idx_streams_recipient", "recipient"),
        Index("idx_streams_created_at", "created_at"),
    )


class WithdrawalModel(Base):
    """Append-only withdrawal ledger."""

    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(200), nullable=False)

    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    stream_id: Mapped[str] = mapped_column(String(78), nullable=False)

    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_withdrawals_event"),
        ForeignKeyConstraint(
            ["chain_id", "contract_address", "stream_id"],
            ["streams.chain_id", "streams.contract_address", "streams.id"],
            name="fk_withdrawals_stream",
        ),
        Index("idx_withdrawals_stream", "chain_id", "contract_address", "stream_id"),
        Index("idx_withdrawals_recipient", "recipient"),
    )


class IndexerStateModel(Base):
    """Per-(chain, contract) cursor: last fully processed block."""

    __tablename__ = "indexer_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("chain_id", "contract_address", name="uq_indexer_state_contract"),
    )


class EventProcessingErrorModel(Base):
    """Per-event processing errors (dropped events are never silent)."""

    __tablename__ = "event_processing_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stage: Mapped[str] = mapped_column(String(40), nullable=False)
    error_type: Mapped[str] = mapped_column(String(80), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_event_processing_errors_event", "event_id"),)
