"""Indexer worker loop.

Polls the chain head, stays `confirmations` blocks behind it, and walks the
contract's log history in bounded chunks. A chunk is fetched, decoded and
applied in canonical order before the cursor moves past it; any failure at
this level leaves the cursor untouched and the same range is retried after
the poll interval.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from streampay_indexer.chain.decoder import EVENT_TOPICS, decode_log
from streampay_indexer.storage.repos import IndexerStateDTO, IndexerStateRepository

if TYPE_CHECKING:
    from streampay_indexer.chain.client import ChainReader
    from streampay_indexer.indexer.processor import EventProcessor
    from streampay_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATIONS = 12
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_POLL_INTERVAL_MS = 5000


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WorkerStats:
    """Statistics for the worker loop."""

    started_at: datetime | None = None
    iterations: int = 0
    chunks_processed: int = 0
    logs_fetched: int = 0
    events_applied: int = 0
    events_failed: int = 0
    errors: int = 0
    last_processed_block: int | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range."""

    from_block: int
    to_block: int

    def __len__(self) -> int:
        return self.to_block - self.from_block + 1


@dataclass
class IterationResult:
    """What a single worker iteration did."""

    head: int
    block_range: BlockRange | None = None
    logs_fetched: int = 0
    events_applied: int = 0
    events_failed: int = 0
    events_skipped: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def up_to_date(self) -> bool:
        return self.block_range is None


def plan_chunk(
    last_processed: int,
    head: int,
    *,
    confirmations: int,
    chunk_size: int,
) -> BlockRange | None:
    """Pick the next block range to index, or None when caught up.

    Only blocks at least `confirmations` deep are eligible, and at most
    `chunk_size` of them are taken.
    """
    target = head - confirmations
    if last_processed >= target:
        return None
    from_block = last_processed + 1
    to_block = min(from_block + chunk_size - 1, target)
    return BlockRange(from_block=from_block, to_block=to_block)


class IndexerWorker:
    """Single-task indexer for one (chain, contract).

    Example:
        ```python
        worker = IndexerWorker(
            chain=client,
            db=db,
            processor=EventProcessor(db, chain_id=1, contract_address=contract),
            start_block=18_000_000,
        )
        await worker.run()  # until worker.stop()
        ```
    """

    def __init__(
        self,
        *,
        chain: ChainReader,
        db: DatabaseManager,
        processor: EventProcessor,
        start_block: int = 0,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        audit_unknown_events: bool = False,
    ) -> None:
        """Initialize the worker.

        Args:
            chain: Chain reader (head, logs, block timestamps).
            db: Database manager for the cursor.
            processor: Event processor bound to the same chain and contract.
            start_block: First block to index when no cursor exists.
            confirmations: Blocks to stay behind the head.
            chunk_size: Maximum blocks per log query.
            poll_interval_ms: Sleep when caught up and after failures.
            audit_unknown_events: Also fetch and record logs with unknown signatures.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if confirmations < 0:
            raise ValueError("confirmations must be >= 0")

        self._chain = chain
        self._db = db
        self._processor = processor
        self._chain_id = processor.chain_id
        self._contract_address = processor.contract_address
        self._start_block = start_block
        self._confirmations = confirmations
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval_ms / 1000
        self._audit_unknown_events = audit_unknown_events

        self._state = WorkerState.STOPPED
        self._stats = WorkerStats()
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> WorkerState:
        """Current worker state."""
        return self._state

    @property
    def stats(self) -> WorkerStats:
        """Current worker statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    async def ensure_cursor(self) -> IndexerStateDTO:
        """Load the cursor, creating it just before the start block if missing."""
        async with self._db.get_async_session() as session:
            repo = IndexerStateRepository(session)
            cursor = await repo.get(self._chain_id, self._contract_address)
            if cursor is not None:
                return cursor
            return await repo.create_if_absent(
                self._chain_id, self._contract_address, self._start_block
            )

    async def run_once(self) -> IterationResult:
        """Run one iteration: index the next confirmed chunk, if any.

        Returns:
            The iteration result; `up_to_date` is set when nothing was eligible.

        Raises:
            Exception: Any chain or store failure. The cursor is not advanced.
        """
        cursor = await self.ensure_cursor()
        head = await self._chain.get_head_block_number()

        block_range = plan_chunk(
            cursor.last_processed_block,
            head,
            confirmations=self._confirmations,
            chunk_size=self._chunk_size,
        )
        result = IterationResult(head=head, block_range=block_range)
        if block_range is None:
            logger.debug(
                "Up to date at block %d (head=%d, confirmations=%d)",
                cursor.last_processed_block,
                head,
                self._confirmations,
            )
            return result

        topics = None if self._audit_unknown_events else EVENT_TOPICS
        logs = await self._chain.get_logs(
            self._contract_address,
            block_range.from_block,
            block_range.to_block,
            topics=topics,
        )
        logs.sort(key=lambda log: log.sort_key)
        result.logs_fetched = len(logs)

        timestamps = await self._chain.get_block_timestamps(log.block_number for log in logs)

        for log in logs:
            event = decode_log(log, keep_unknown=self._audit_unknown_events)
            if event is None:
                result.events_skipped += 1
                continue

            outcome = await self._processor.apply(
                event, log, block_timestamp=timestamps[log.block_number]
            )
            if outcome.ok:
                result.events_applied += 1
            else:
                result.events_failed += 1
                result.failures.append(outcome.event_id)

        async with self._db.get_async_session() as session:
            await IndexerStateRepository(session).advance(cursor, block_range.to_block)

        logger.info(
            "Indexed blocks %d-%d: %d logs, %d applied, %d failed, %d skipped",
            block_range.from_block,
            block_range.to_block,
            result.logs_fetched,
            result.events_applied,
            result.events_failed,
            result.events_skipped,
        )
        return result

    def _record(self, result: IterationResult) -> None:
        self._stats.iterations += 1
        if result.block_range is None:
            return
        self._stats.chunks_processed += 1
        self._stats.logs_fetched += result.logs_fetched
        self._stats.events_applied += result.events_applied
        self._stats.events_failed += result.events_failed
        self._stats.last_processed_block = result.block_range.to_block

    async def _sleep(self, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def run(self) -> None:
        """Run until `stop()` is called.

        Iterations never overlap. When caught up, or after a failure, the
        loop sleeps for the poll interval; a full chunk is followed
        immediately by the next one.

        Raises:
            RuntimeError: If the worker is already running.
        """
        if self._state != WorkerState.STOPPED:
            raise RuntimeError(f"Cannot start worker in state {self._state}")

        self._state = WorkerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info(
            "Starting indexer for chain %d contract %s (confirmations=%d, chunk_size=%d)",
            self._chain_id,
            self._contract_address,
            self._confirmations,
            self._chunk_size,
        )

        try:
            cursor = await self.ensure_cursor()
        except Exception as e:
            self._state = WorkerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to initialize indexer cursor: %s", e)
            raise

        logger.info("Resuming after block %d", cursor.last_processed_block)
        self._stats.started_at = datetime.now(UTC)
        self._state = WorkerState.RUNNING

        try:
            while not self._stop_event.is_set():
                try:
                    result = await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._stats.iterations += 1
                    self._stats.errors += 1
                    self._stats.last_error = str(e)
                    logger.exception("Indexer iteration failed; retrying in %.1fs", self._poll_interval)
                    await self._sleep(self._poll_interval)
                    continue

                self._record(result)
                if result.up_to_date:
                    await self._sleep(self._poll_interval)
        finally:
            self._state = WorkerState.STOPPED
            logger.info("Indexer stopped")

    def stop(self) -> None:
        """Ask the loop to stop at its next sleep or iteration boundary."""
        if self._stop_event is None or self._state == WorkerState.STOPPED:
            return
        self._state = WorkerState.STOPPING
        self._stop_event.set()
