"""Wait for a transaction to show up in the indexed projection.

Used after submitting a stream-creating transaction: poll the audit trail
until the indexer has written the transaction's `StreamCreated` event, a
different event is found for it, or the deadline passes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from streampay_indexer.storage.repos import EventDTO, EventRepository

if TYPE_CHECKING:
    from streampay_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

STREAM_CREATED = "StreamCreated"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0


class WaitOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"


@dataclass
class WaitResult:
    """Result of waiting for a transaction.

    `stream_id`, `indexed_at_block` and `indexed_at` are set only when the
    outcome is FOUND.
    """

    outcome: WaitOutcome
    transaction_hash: str
    stream_id: str | None = None
    indexed_at_block: int | None = None
    indexed_at: datetime | None = None
    event_type: str | None = None

    @property
    def found(self) -> bool:
        return self.outcome is WaitOutcome.FOUND

    def to_dict(self) -> dict[str, object]:
        return {
            "outcome": self.outcome.value,
            "transaction_hash": self.transaction_hash,
            "stream_id": self.stream_id,
            "indexed_at_block": self.indexed_at_block,
            "indexed_at": self.indexed_at.isoformat() if self.indexed_at else None,
            "event_type": self.event_type,
        }


def _found(tx_hash: str, event: EventDTO) -> WaitResult:
    return WaitResult(
        outcome=WaitOutcome.FOUND,
        transaction_hash=tx_hash,
        stream_id=event.stream_id,
        indexed_at_block=event.block_number,
        indexed_at=event.block_timestamp,
        event_type=event.event_type,
    )


class WaitGateway:
    """Polls the projection for indexed transactions.

    Example:
        ```python
        gateway = WaitGateway(db)
        result = await gateway.wait_for_indexed(tx_hash, timeout_s=60, poll_interval_s=2)
        if result.found:
            print(result.stream_id)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            db: Database manager.
            chain_id: Only match events from this chain.
            contract_address: Only match events from this contract.
        """
        self._db = db
        self._chain_id = chain_id
        self._contract_address = contract_address.lower() if contract_address else None

    async def _poll(self, tx_hash: str) -> WaitResult | None:
        async with self._db.get_async_session() as session:
            repo = EventRepository(session)
            created = await repo.find_by_transaction_hash(
                tx_hash,
                event_type=STREAM_CREATED,
                chain_id=self._chain_id,
                contract_address=self._contract_address,
            )
            if created is not None:
                return _found(tx_hash, created)

            other = await repo.find_by_transaction_hash(
                tx_hash,
                chain_id=self._chain_id,
                contract_address=self._contract_address,
            )
            if other is not None:
                return WaitResult(
                    outcome=WaitOutcome.NOT_FOUND,
                    transaction_hash=tx_hash,
                    event_type=other.event_type,
                )
        return None

    async def check_indexed(self, tx_hash: str) -> WaitResult | None:
        """Look up a transaction once.

        Returns:
            FOUND or NOT_FOUND if the transaction has been indexed, else None.
        """
        return await self._poll(tx_hash.lower())

    async def wait_for_indexed(
        self,
        tx_hash: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> WaitResult:
        """Poll until the transaction's stream creation is indexed.

        Store errors during a poll are logged and polling continues.

        Args:
            tx_hash: Transaction hash.
            timeout_s: Give up after this many seconds.
            poll_interval_s: Delay between polls.

        Returns:
            FOUND with the stream id, NOT_FOUND if the transaction produced a
            different event, or TIMEOUT.
        """
        tx_hash = tx_hash.lower()
        deadline = time.monotonic() + timeout_s
        attempts = 0

        while True:
            attempts += 1
            try:
                result = await self._poll(tx_hash)
            except Exception as e:
                logger.warning("Wait poll %d for %s failed: %s", attempts, tx_hash, e)
                result = None

            if result is not None:
                logger.info("Transaction %s indexed (%s) after %d polls", tx_hash, result.outcome.value, attempts)
                return result

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval_s, remaining))

        logger.info("Timed out waiting for %s after %d polls", tx_hash, attempts)
        return WaitResult(outcome=WaitOutcome.TIMEOUT, transaction_hash=tx_hash)
