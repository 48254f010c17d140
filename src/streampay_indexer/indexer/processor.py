"""Applies decoded contract events to the relational projection.

Every event is first written to the audit trail, then its effect is applied
to the stream and withdrawal tables. Each step commits on its own, and every
write is keyed by on-chain identity, so re-applying any event (after a crash
or a replayed block range) converges to the same rows.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import InterfaceError, OperationalError

from streampay_indexer.chain.decoder import (
    Canceled,
    DecodedEvent,
    StreamCreated,
    Transferred,
    Withdrawn,
)
from streampay_indexer.storage.repos import (
    EventDTO,
    EventProcessingErrorDTO,
    EventProcessingErrorRepository,
    EventRepository,
    StreamDTO,
    StreamRepository,
    WithdrawalDTO,
    WithdrawalRepository,
    make_event_id,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from streampay_indexer.chain.models import RawLog
    from streampay_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# Store faults that mean "the database is unreachable", not "this event is bad".
CONNECTIVITY_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
)


class EventProcessingError(Exception):
    """Base exception for per-event processing errors."""


class StreamNotFoundError(EventProcessingError):
    """Raised when an event refers to a stream that was never created."""

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream {stream_id} not found")
        self.stream_id = stream_id


class ProcessOutcome(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class ProcessResult:
    """Outcome of applying one event."""

    event_id: str
    event_type: str
    outcome: ProcessOutcome
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is ProcessOutcome.APPLIED


class EventProcessor:
    """Idempotent event application for one (chain, contract).

    Example:
        ```python
        processor = EventProcessor(db, chain_id=1, contract_address=contract)
        event = decode_log(log)
        if event is not None:
            result = await processor.apply(event, log, block_timestamp=ts)
        ```
    """

    def __init__(self, db: DatabaseManager, *, chain_id: int, contract_address: str) -> None:
        """Initialize the processor.

        Args:
            db: Database manager providing sessions.
            chain_id: Chain the events come from.
            contract_address: Contract that emitted the events.
        """
        self._db = db
        self._chain_id = chain_id
        self._contract_address = contract_address.lower()
        self._handlers: dict[type, Callable[[AsyncSession, Any, str, datetime], Awaitable[None]]] = {
            StreamCreated: self._on_stream_created,
            Withdrawn: self._on_withdrawn,
            Canceled: self._on_canceled,
            Transferred: self._on_transferred,
        }

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def contract_address(self) -> str:
        return self._contract_address

    def _event_dto(
        self, event: DecodedEvent, log: RawLog, event_id: str, block_time: datetime
    ) -> EventDTO:
        return EventDTO(
            id=event_id,
            chain_id=self._chain_id,
            contract_address=self._contract_address,
            stream_id=event.stream_key,
            block_number=log.block_number,
            block_hash=log.block_hash,
            transaction_hash=log.transaction_hash,
            transaction_index=log.transaction_index,
            log_index=log.log_index,
            event_type=event.event_type,
            args_json=json.dumps(event.to_args(), sort_keys=True, separators=(",", ":")),
            block_timestamp=block_time,
        )

    async def apply(self, event: DecodedEvent, log: RawLog, *, block_timestamp: int) -> ProcessResult:
        """Apply one decoded event.

        Per-event faults are logged, persisted to the processing error table,
        and reported as a failed result.

        Args:
            event: Decoded event.
            log: The raw log the event was decoded from.
            block_timestamp: Unix timestamp of the log's block.

        Returns:
            The per-event result.

        Raises:
            OperationalError, InterfaceError, ConnectionError: The store is
                unreachable; the caller must not advance past this event.
        """
        event_id = make_event_id(
            self._chain_id, self._contract_address, log.transaction_hash, log.log_index
        )
        block_time = datetime.fromtimestamp(block_timestamp, UTC)
        stage = "audit"
        try:
            async with self._db.get_async_session() as session:
                await EventRepository(session).insert_if_absent(
                    self._event_dto(event, log, event_id, block_time)
                )

            handler = self._handlers.get(type(event))
            if handler is not None:
                stage = "apply"
                async with self._db.get_async_session() as session:
                    await handler(session, event, event_id, block_time)
        except CONNECTIVITY_ERRORS:
            raise
        except Exception as e:
            logger.error(
                "Failed to process %s event %s at stage %s: %s",
                event.event_type,
                event_id,
                stage,
                e,
            )
            await self._record_error(event, event_id, log.block_number, stage, e)
            return ProcessResult(
                event_id=event_id,
                event_type=event.event_type,
                outcome=ProcessOutcome.FAILED,
                error=f"{e.__class__.__name__}: {e}",
            )

        logger.debug("Applied %s event %s", event.event_type, event_id)
        return ProcessResult(event_id=event_id, event_type=event.event_type, outcome=ProcessOutcome.APPLIED)

    async def _record_error(
        self,
        event: DecodedEvent,
        event_id: str,
        block_number: int,
        stage: str,
        error: Exception,
    ) -> None:
        try:
            async with self._db.get_async_session() as session:
                await EventProcessingErrorRepository(session).insert_many(
                    [
                        EventProcessingErrorDTO(
                            event_id=event_id,
                            event_type=event.event_type,
                            block_number=block_number,
                            stage=stage,
                            error_type=error.__class__.__name__,
                            message=str(error),
                            created_at=datetime.now(UTC),
                        )
                    ]
                )
        except CONNECTIVITY_ERRORS:
            raise
        except Exception as e:
            logger.warning("Failed to persist processing error for %s: %s", event_id, e)

    async def _require_stream(self, repo: StreamRepository, stream_id: str) -> StreamDTO:
        stream = await repo.get(self._chain_id, self._contract_address, stream_id)
        if stream is None:
            raise StreamNotFoundError(stream_id)
        return stream

    async def _on_stream_created(
        self, session: AsyncSession, event: StreamCreated, event_id: str, block_time: datetime
    ) -> None:
        await StreamRepository(session).upsert_created(
            StreamDTO(
                chain_id=self._chain_id,
                contract_address=self._contract_address,
                id=str(event.stream_id),
                sender=event.sender,
                recipient=event.recipient,
                token=event.token,
                start=event.start,
                end=event.end,
                cliff=event.cliff,
                amount=Decimal(event.amount),
            )
        )

    async def _on_withdrawn(
        self, session: AsyncSession, event: Withdrawn, event_id: str, block_time: datetime
    ) -> None:
        stream_id = str(event.stream_id)
        streams = StreamRepository(session)
        stream = await self._require_stream(streams, stream_id)

        withdrawals = WithdrawalRepository(session)
        await withdrawals.insert_if_absent(
            WithdrawalDTO(
                event_id=event_id,
                chain_id=self._chain_id,
                contract_address=self._contract_address,
                stream_id=stream_id,
                recipient=event.recipient,
                amount=Decimal(event.amount),
                block_number=event.block_number,
                block_timestamp=block_time,
            )
        )

        # Recomputed from the ledger so the total holds under replay and reordering.
        total = await withdrawals.sum_for_stream(self._chain_id, self._contract_address, stream_id)
        if total != stream.withdrawn:
            await streams.update_withdrawn(self._chain_id, self._contract_address, stream_id, total)

    async def _on_canceled(
        self, session: AsyncSession, event: Canceled, event_id: str, block_time: datetime
    ) -> None:
        streams = StreamRepository(session)
        stream = await self._require_stream(streams, str(event.stream_id))
        if not stream.canceled:
            await streams.mark_canceled(self._chain_id, self._contract_address, stream.id)

    async def _on_transferred(
        self, session: AsyncSession, event: Transferred, event_id: str, block_time: datetime
    ) -> None:
        streams = StreamRepository(session)
        stream = await self._require_stream(streams, str(event.stream_id))
        if stream.recipient != event.new_recipient:
            await streams.update_recipient(
                self._chain_id, self._contract_address, stream.id, event.new_recipient
            )
