"""Repository pattern implementations for data access.

This module provides clean data access abstractions for the audit trail,
streams, the withdrawal ledger, the indexer cursor and processing errors.
All write paths are idempotent: they are keyed by stable on-chain identities
so that replaying a block range never duplicates or corrupts rows.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from streampay_indexer.storage.models import (
    EventModel,
    EventProcessingErrorModel,
    IndexerStateModel,
    StreamModel,
    WithdrawalModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""


class CursorError(StorageError):
    """Raised when the indexer cursor would move backward or is missing."""


def make_event_id(chain_id: int, contract_address: str, transaction_hash: str, log_index: int) -> str:
    """Build the globally unique identity of a contract log."""
    return f"{chain_id}:{contract_address.lower()}:{transaction_hash.lower()}:{log_index}"


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def sums_in_python(session: AsyncSession) -> bool:
    """Whether uint256 sums must be computed client-side.

    SQLite SUM() goes through REAL and loses precision above 2**53.
    """
    return session.get_bind().dialect.name == "sqlite"


@dataclass
class EventDTO:
    """Data transfer object for audit trail events."""

    id: str
    chain_id: int
    contract_address: str
    stream_id: str | None
    block_number: int
    block_hash: str
    transaction_hash: str
    transaction_index: int
    log_index: int
    event_type: str
    args_json: str
    block_timestamp: datetime
    created_at: datetime | None = None

    @property
    def args(self) -> dict[str, Any]:
        return json.loads(self.args_json)

    @classmethod
    def from_model(cls, model: EventModel) -> EventDTO:
        return cls(
            id=model.id,
            chain_id=model.chain_id,
            contract_address=model.contract_address,
            stream_id=model.stream_id,
            block_number=model.block_number,
            block_hash=model.block_hash,
            transaction_hash=model.transaction_hash,
            transaction_index=model.transaction_index,
            log_index=model.log_index,
            event_type=model.event_type,
            args_json=model.args_json,
            block_timestamp=model.block_timestamp,
            created_at=model.created_at,
        )


@dataclass
class StreamDTO:
    """Data transfer object for streams."""

    chain_id: int
    contract_address: str
    id: str
    sender: str
    recipient: str
    token: str
    start: int
    end: int
    cliff: int
    amount: Decimal
    withdrawn: Decimal = Decimal(0)
    canceled: bool = False
    refundable: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: StreamModel) -> StreamDTO:
        return cls(
            chain_id=model.chain_id,
            contract_address=model.contract_address,
            id=model.id,
            sender=model.sender,
            recipient=model.recipient,
            token=model.token,
            start=model.start,
            end=model.end,
            cliff=model.cliff,
            amount=model.amount,
            withdrawn=model.withdrawn,
            canceled=model.canceled,
            refundable=model.refundable,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class WithdrawalDTO:
    """Data transfer object for withdrawal ledger rows."""

    event_id: str
    chain_id: int
    contract_address: str
    stream_id: str
    recipient: str
    amount: Decimal
    block_number: int
    block_timestamp: datetime
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WithdrawalModel) -> WithdrawalDTO:
        return cls(
            event_id=model.event_id,
            chain_id=model.chain_id,
            contract_address=model.contract_address,
            stream_id=model.stream_id,
            recipient=model.recipient,
            amount=model.amount,
            block_number=model.block_number,
            block_timestamp=model.block_timestamp,
            created_at=model.created_at,
        )


@dataclass
class IndexerStateDTO:
    """Data transfer object for the indexer cursor."""

    id: int
    chain_id: int
    contract_address: str
    last_processed_block: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IndexerStateModel) -> IndexerStateDTO:
        return cls(
            id=model.id,
            chain_id=model.chain_id,
            contract_address=model.contract_address,
            last_processed_block=model.last_processed_block,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class EventProcessingErrorDTO:
    event_id: str
    event_type: str
    block_number: int
    stage: str
    error_type: str
    message: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EventProcessingErrorModel) -> EventProcessingErrorDTO:
        return cls(
            event_id=model.event_id,
            event_type=model.event_type,
            block_number=model.block_number,
            stage=model.stage,
            error_type=model.error_type,
            message=model.message,
            created_at=model.created_at,
        )


class EventRepository:
    """Repository for the raw event audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_if_absent(self, dto: EventDTO) -> bool:
        """Insert an event unless one with the same log identity exists.

        The conflict branch is empty: a second delivery of the same log
        changes nothing.

        Returns:
            True if a new row was written.
        """
        values = {
            "id": dto.id,
            "chain_id": dto.chain_id,
            "contract_address": dto.contract_address.lower(),
            "stream_id": dto.stream_id,
            "block_number": dto.block_number,
            "block_hash": dto.block_hash.lower(),
            "transaction_hash": dto.transaction_hash.lower(),
            "transaction_index": dto.transaction_index,
            "log_index": dto.log_index,
            "event_type": dto.event_type,
            "args_json": dto.args_json,
            "block_timestamp": dto.block_timestamp,
            "created_at": datetime.now(UTC),
        }
        stmt = _insert(self.session, EventModel).values(**values).on_conflict_do_nothing()
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def get(self, event_id: str) -> EventDTO | None:
        result = await self.session.execute(select(EventModel).where(EventModel.id == event_id))
        model = result.scalar_one_or_none()
        return EventDTO.from_model(model) if model else None

    async def find_by_transaction_hash(
        self,
        transaction_hash: str,
        *,
        event_type: str | None = None,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> EventDTO | None:
        """Get the first event (by log index) emitted in a transaction.

        Args:
            transaction_hash: Transaction hash.
            event_type: Restrict to one event type.
            chain_id: Restrict to one chain.
            contract_address: Restrict to one contract.

        Returns:
            The matching event, or None.
        """
        stmt = select(EventModel).where(EventModel.transaction_hash == transaction_hash.lower())
        if event_type is not None:
            stmt = stmt.where(EventModel.event_type == event_type)
        if chain_id is not None:
            stmt = stmt.where(EventModel.chain_id == chain_id)
        if contract_address is not None:
            stmt = stmt.where(EventModel.contract_address == contract_address.lower())
        stmt = stmt.order_by(EventModel.log_index.asc()).limit(1)
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return EventDTO.from_model(model) if model else None

    async def list_for_stream(
        self, chain_id: int, contract_address: str, stream_id: str
    ) -> list[EventDTO]:
        result = await self.session.execute(
            select(EventModel)
            .where(
                EventModel.chain_id == chain_id,
                EventModel.contract_address == contract_address.lower(),
                EventModel.stream_id == stream_id,
            )
            .order_by(
                EventModel.block_number.asc(),
                EventModel.transaction_index.asc(),
                EventModel.log_index.asc(),
            )
        )
        return [EventDTO.from_model(m) for m in result.scalars().all()]


class StreamRepository:
    """Repository for stream projection rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _key(self, chain_id: int, contract_address: str, stream_id: str) -> tuple[Any, ...]:
        return (
            StreamModel.chain_id == chain_id,
            StreamModel.contract_address == contract_address.lower(),
            StreamModel.id == stream_id,
        )

    async def get(self, chain_id: int, contract_address: str, stream_id: str) -> StreamDTO | None:
        result = await self.session.execute(
            select(StreamModel).where(*self._key(chain_id, contract_address, stream_id))
        )
        model = result.scalar_one_or_none()
        return StreamDTO.from_model(model) if model else None

    async def upsert_created(self, dto: StreamDTO) -> None:
        """Upsert a stream from its creation event.

        The create path initializes the derived fields and the recipient; the
        update path only rewrites the immutable fields with the same values, so
        a replayed creation leaves the row untouched and never undoes a later
        transfer.
        """
        immutable = {
            "sender": dto.sender.lower(),
            "token": dto.token.lower(),
            "start": dto.start,
            "end": dto.end,
            "cliff": dto.cliff,
            "amount": dto.amount,
        }
        now = datetime.now(UTC)
        stmt = _insert(self.session, StreamModel).values(
            chain_id=dto.chain_id,
            contract_address=dto.contract_address.lower(),
            id=dto.id,
            recipient=dto.recipient.lower(),
            withdrawn=Decimal(0),
            canceled=False,
            refundable=False,
            created_at=now,
            updated_at=now,
            **immutable,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id", "contract_address", "id"],
            set_={name: getattr(stmt.excluded, name) for name in immutable},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def mark_canceled(self, chain_id: int, contract_address: str, stream_id: str) -> bool:
        """Set canceled=true. Never reverts; a no-op when already canceled."""
        result = await self.session.execute(
            update(StreamModel)
            .where(*self._key(chain_id, contract_address, stream_id))
            .where(StreamModel.canceled.is_(False))
            .values(canceled=True, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def update_recipient(
        self, chain_id: int, contract_address: str, stream_id: str, recipient: str
    ) -> bool:
        recipient = recipient.lower()
        result = await self.session.execute(
            update(StreamModel)
            .where(*self._key(chain_id, contract_address, stream_id))
            .where(StreamModel.recipient != recipient)
            .values(recipient=recipient, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def update_withdrawn(
        self, chain_id: int, contract_address: str, stream_id: str, withdrawn: Decimal
    ) -> bool:
        result = await self.session.execute(
            update(StreamModel)
            .where(*self._key(chain_id, contract_address, stream_id))
            .where(StreamModel.withdrawn != withdrawn)
            .values(withdrawn=withdrawn, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)


class WithdrawalRepository:
    """Repository for the append-only withdrawal ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_event_id(self, event_id: str) -> WithdrawalDTO | None:
        result = await self.session.execute(
            select(WithdrawalModel).where(WithdrawalModel.event_id == event_id)
        )
        model = result.scalar_one_or_none()
        return WithdrawalDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: WithdrawalDTO) -> bool:
        """Record a withdrawal at most once per owning event.

        Returns:
            True if a new row was written.
        """
        stmt = (
            _insert(self.session, WithdrawalModel)
            .values(
                event_id=dto.event_id,
                chain_id=dto.chain_id,
                contract_address=dto.contract_address.lower(),
                stream_id=dto.stream_id,
                recipient=dto.recipient.lower(),
                amount=dto.amount,
                block_number=dto.block_number,
                block_timestamp=dto.block_timestamp,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def sum_for_stream(self, chain_id: int, contract_address: str, stream_id: str) -> Decimal:
        """Total withdrawn from a stream, summed exactly over the whole ledger."""
        scope = (
            WithdrawalModel.chain_id == chain_id,
            WithdrawalModel.contract_address == contract_address.lower(),
            WithdrawalModel.stream_id == stream_id,
        )
        if sums_in_python(self.session):
            amounts = await self.session.execute(select(WithdrawalModel.amount).where(*scope))
            # Summed as int: Decimal arithmetic rounds to 28 digits by default.
            return Decimal(sum(int(amount) for amount in amounts.scalars().all()))

        result = await self.session.execute(
            select(func.coalesce(func.sum(WithdrawalModel.amount), 0)).where(*scope)
        )
        return Decimal(result.scalar_one())

    async def list_for_stream(
        self, chain_id: int, contract_address: str, stream_id: str
    ) -> list[WithdrawalDTO]:
        result = await self.session.execute(
            select(WithdrawalModel)
            .where(
                WithdrawalModel.chain_id == chain_id,
                WithdrawalModel.contract_address == contract_address.lower(),
                WithdrawalModel.stream_id == stream_id,
            )
            .order_by(WithdrawalModel.block_number.asc(), WithdrawalModel.id.asc())
        )
        return [WithdrawalDTO.from_model(m) for m in result.scalars().all()]


class IndexerStateRepository:
    """Durable cursor store, one row per (chain, contract).

    `advance` is the only mutation path for an existing cursor and never
    moves it backward.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain_id: int, contract_address: str) -> IndexerStateDTO | None:
        result = await self.session.execute(
            select(IndexerStateModel).where(
                IndexerStateModel.chain_id == chain_id,
                IndexerStateModel.contract_address == contract_address.lower(),
            )
        )
        model = result.scalar_one_or_none()
        return IndexerStateDTO.from_model(model) if model else None

    async def create_if_absent(
        self, chain_id: int, contract_address: str, start_block: int
    ) -> IndexerStateDTO:
        """Get the cursor, creating it just before `start_block` if missing.

        Args:
            chain_id: Chain ID.
            contract_address: Indexed contract.
            start_block: First block to index on a fresh start.

        Returns:
            The existing or newly created cursor.
        """
        now = datetime.now(UTC)
        stmt = (
            _insert(self.session, IndexerStateModel)
            .values(
                chain_id=chain_id,
                contract_address=contract_address.lower(),
                last_processed_block=max(start_block - 1, 0),
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["chain_id", "contract_address"])
        )
        result = await self.session.execute(stmt)
        await self.session.flush()

        cursor = await self.get(chain_id, contract_address)
        if cursor is None:
            raise CursorError(f"Cursor for chain {chain_id} / {contract_address} vanished after create")
        if result.rowcount:
            logger.info(
                "Created indexer cursor for chain %d / %s at block %d",
                chain_id,
                contract_address,
                cursor.last_processed_block,
            )
        return cursor

    async def advance(self, cursor: IndexerStateDTO, to_block: int) -> IndexerStateDTO:
        """Move the cursor forward to `to_block`.

        Raises:
            CursorError: If `to_block` is behind the cursor, or the stored row
                is missing or already ahead of `to_block`.
        """
        if to_block < cursor.last_processed_block:
            raise CursorError(
                f"Refusing to move cursor backward from {cursor.last_processed_block} to {to_block}"
            )
        if to_block == cursor.last_processed_block:
            return cursor

        now = datetime.now(UTC)
        result = await self.session.execute(
            update(IndexerStateModel)
            .where(IndexerStateModel.id == cursor.id)
            .where(IndexerStateModel.last_processed_block <= to_block)
            .values(last_processed_block=to_block, updated_at=now)
        )
        await self.session.flush()
        if not result.rowcount:
            raise CursorError(f"Cursor {cursor.id} is missing or ahead of block {to_block}")
        return dataclasses.replace(cursor, last_processed_block=to_block, updated_at=now)

    async def delete(self, chain_id: int, contract_address: str) -> int:
        """Delete the cursor so the next start re-indexes from the start block.

        Returns:
            Number of rows deleted.
        """
        result = await self.session.execute(
            delete(IndexerStateModel).where(
                IndexerStateModel.chain_id == chain_id,
                IndexerStateModel.contract_address == contract_address.lower(),
            )
        )
        await self.session.flush()
        return int(result.rowcount or 0)


class EventProcessingErrorRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, errors: list[EventProcessingErrorDTO]) -> None:
        if not errors:
            return
        rows = [
            {
                "event_id": e.event_id,
                "event_type": e.event_type,
                "block_number": e.block_number,
                "stage": e.stage,
                "error_type": e.error_type,
                "message": e.message,
                "created_at": e.created_at or datetime.now(UTC),
            }
            for e in errors
        ]
        await self.session.execute(sa.insert(EventProcessingErrorModel), rows)
        await self.session.flush()

    async def list_recent(self, limit: int = 100) -> list[EventProcessingErrorDTO]:
        result = await self.session.execute(
            select(EventProcessingErrorModel)
            .order_by(EventProcessingErrorModel.id.desc())
            .limit(limit)
        )
        return [EventProcessingErrorDTO.from_model(m) for m in result.scalars().all()]
