"""Tests for the indexer worker loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from unittest.mock import patch

import pytest
from sqlalchemy import select

from streampay_indexer.chain.client import RPCError
from streampay_indexer.chain.decoder import EVENT_TOPICS
from streampay_indexer.chain.models import RawLog
from streampay_indexer.indexer.processor import EventProcessor
from streampay_indexer.indexer.worker import (
    BlockRange,
    IndexerWorker,
    WorkerState,
    plan_chunk,
)
from streampay_indexer.storage.database import DatabaseManager
from streampay_indexer.storage.models import EventModel, WithdrawalModel
from streampay_indexer.storage.repos import (
    IndexerStateRepository,
    StreamDTO,
    StreamRepository,
)

CHAIN_ID = 1
CONTRACT = "0x" + "c0" * 20
SENDER = "0x" + "11" * 20
RECIPIENT_A = "0x" + "aa" * 20
RECIPIENT_B = "0x" + "bb" * 20
TOKEN = "0x" + "70" * 20

MakeLog = Callable[..., RawLog]


def _worker(db: DatabaseManager, chain, **kwargs) -> IndexerWorker:
    params = {"start_block": 100, "confirmations": 12, "chunk_size": 1000, "poll_interval_ms": 10}
    params.update(kwargs)
    return IndexerWorker(
        chain=chain,
        db=db,
        processor=EventProcessor(db, chain_id=CHAIN_ID, contract_address=CONTRACT),
        **params,
    )


def _lifecycle_logs(make_log: MakeLog) -> list[RawLog]:
    """Create, withdraw 100 then 50, transfer A->B, cancel."""
    return [
        make_log(
            "StreamCreated",
            block_number=100,
            log_index=0,
            stream_id=1,
            sender=SENDER,
            recipient=RECIPIENT_A,
            token=TOKEN,
            amount=1000,
            start=1_700_000_000,
            end=1_700_086_400,
            cliff=1_700_000_000,
        ),
        make_log("Withdrawn", block_number=100, log_index=1, stream_id=1, recipient=RECIPIENT_A, amount=100),
        make_log("Withdrawn", block_number=105, log_index=0, stream_id=1, recipient=RECIPIENT_A, amount=50),
        make_log(
            "Transferred",
            block_number=110,
            log_index=3,
            transaction_index=2,
            stream_id=1,
            previous_recipient=RECIPIENT_A,
            new_recipient=RECIPIENT_B,
        ),
        make_log("Canceled", block_number=110, log_index=5, transaction_index=4, stream_id=1, sender=SENDER, refunded=True),
        make_log("FeeUpdated", block_number=150, fee_recipient=SENDER, fee_rate=10),
    ]


async def _cursor_block(db: DatabaseManager) -> int | None:
    async with db.get_async_session() as session:
        cursor = await IndexerStateRepository(session).get(CHAIN_ID, CONTRACT)
    return cursor.last_processed_block if cursor else None


async def _stream(db: DatabaseManager) -> StreamDTO | None:
    async with db.get_async_session() as session:
        return await StreamRepository(session).get(CHAIN_ID, CONTRACT, "1")


async def _snapshot(db: DatabaseManager) -> tuple:
    async with db.get_async_session() as session:
        stream = await StreamRepository(session).get(CHAIN_ID, CONTRACT, "1")
        events = (await session.execute(select(EventModel.id, EventModel.created_at).order_by(EventModel.id))).all()
        withdrawals = (
            await session.execute(
                select(WithdrawalModel.event_id, WithdrawalModel.amount).order_by(WithdrawalModel.event_id)
            )
        ).all()
    return stream, list(events), list(withdrawals)


class TestPlanChunk:
    def test_chunk_arithmetic(self) -> None:
        assert plan_chunk(100, 50_000, confirmations=12, chunk_size=1000) == BlockRange(101, 1100)

    def test_clamped_to_confirmed_head(self) -> None:
        assert plan_chunk(100, 150, confirmations=12, chunk_size=1000) == BlockRange(101, 138)

    def test_up_to_date(self) -> None:
        assert plan_chunk(138, 150, confirmations=12, chunk_size=1000) is None
        assert plan_chunk(140, 150, confirmations=12, chunk_size=1000) is None

    def test_cold_start(self) -> None:
        # start_block=100 -> cursor 99
        assert plan_chunk(99, 111, confirmations=12, chunk_size=1000) is None
        assert plan_chunk(99, 112, confirmations=12, chunk_size=1000) == BlockRange(100, 100)

    def test_zero_confirmations(self) -> None:
        assert plan_chunk(9, 10, confirmations=0, chunk_size=5) == BlockRange(10, 10)

    def test_range_length(self) -> None:
        assert len(BlockRange(101, 1100)) == 1000


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_cold_start_waits_for_confirmations(self, db: DatabaseManager, fake_chain) -> None:
        fake_chain.head = 111
        worker = _worker(db, fake_chain)

        result = await worker.run_once()

        assert result.up_to_date is True
        assert fake_chain.get_logs_calls == []
        assert await _cursor_block(db) == 99

        fake_chain.head = 112
        result = await worker.run_once()

        assert result.block_range == BlockRange(100, 100)
        assert fake_chain.get_logs_calls == [(100, 100, EVENT_TOPICS)]
        assert await _cursor_block(db) == 100

    @pytest.mark.asyncio
    async def test_existing_cursor_is_read_without_insert(self, db: DatabaseManager, fake_chain) -> None:
        fake_chain.head = 50
        worker = _worker(db, fake_chain)
        creates: list[tuple] = []
        create_if_absent = IndexerStateRepository.create_if_absent

        async def counting_create(self, *args):
            creates.append(args)
            return await create_if_absent(self, *args)

        with patch.object(IndexerStateRepository, "create_if_absent", counting_create):
            await worker.run_once()
            await worker.run_once()
            await worker.run_once()
            assert len(creates) == 1

            async with db.get_async_session() as session:
                await IndexerStateRepository(session).delete(CHAIN_ID, CONTRACT)
            await worker.run_once()

        assert len(creates) == 2
        assert await _cursor_block(db) == 99

    @pytest.mark.asyncio
    async def test_processes_chunk_in_chain_order(
        self, db: DatabaseManager, fake_chain, make_log: MakeLog
    ) -> None:
        fake_chain.add(*_lifecycle_logs(make_log))
        fake_chain.head = 200
        worker = _worker(db, fake_chain)

        result = await worker.run_once()

        assert result.block_range == BlockRange(100, 188)
        assert result.logs_fetched == 6
        assert result.events_applied == 6
        assert result.events_failed == 0
        assert await _cursor_block(db) == 188

        stream = await _stream(db)
        assert stream is not None
        assert stream.withdrawn == 150
        assert stream.recipient == RECIPIENT_B
        assert stream.canceled is True

    @pytest.mark.asyncio
    async def test_chunks_walk_forward(self, db: DatabaseManager, fake_chain, make_log: MakeLog) -> None:
        fake_chain.add(*_lifecycle_logs(make_log))
        fake_chain.head = 200
        worker = _worker(db, fake_chain, chunk_size=10)

        ranges = []
        while True:
            result = await worker.run_once()
            if result.up_to_date:
                break
            ranges.append(result.block_range)

        assert ranges[0] == BlockRange(100, 109)
        assert ranges[1] == BlockRange(110, 119)
        assert ranges[-1] == BlockRange(180, 188)
        assert await _cursor_block(db) == 188
        stream = await _stream(db)
        assert stream is not None
        assert stream.withdrawn == 150

    @pytest.mark.asyncio
    async def test_failed_event_does_not_block_cursor(
        self, db: DatabaseManager, fake_chain, make_log: MakeLog
    ) -> None:
        fake_chain.add(
            make_log("Withdrawn", block_number=100, stream_id=404, recipient=RECIPIENT_A, amount=1)
        )
        fake_chain.head = 200
        worker = _worker(db, fake_chain)

        result = await worker.run_once()

        assert result.events_failed == 1
        assert len(result.failures) == 1
        assert await _cursor_block(db) == 188

    @pytest.mark.asyncio
    async def test_undecodable_log_is_skipped(
        self, db: DatabaseManager, fake_chain, make_log: MakeLog
    ) -> None:
        log = make_log("Withdrawn", block_number=100, stream_id=1, recipient=RECIPIENT_A, amount=1)
        fake_chain.add(replace(log, data="0x"))
        fake_chain.head = 200
        worker = _worker(db, fake_chain)

        result = await worker.run_once()

        assert result.events_skipped == 1
        assert result.events_applied == 0
        assert await _cursor_block(db) == 188

    @pytest.mark.asyncio
    async def test_rpc_failure_keeps_cursor(self, db: DatabaseManager, fake_chain, make_log: MakeLog) -> None:
        fake_chain.add(*_lifecycle_logs(make_log))
        fake_chain.head = 200
        fake_chain.fail_get_logs = RPCError("eth_getLogs failed")
        worker = _worker(db, fake_chain)

        with pytest.raises(RPCError):
            await worker.run_once()

        assert await _cursor_block(db) == 99

        fake_chain.fail_get_logs = None
        result = await worker.run_once()

        assert result.block_range == BlockRange(100, 188)
        assert fake_chain.get_logs_calls[0][:2] == fake_chain.get_logs_calls[1][:2]

    @pytest.mark.asyncio
    async def test_crash_before_advance_replays_identically(
        self, db: DatabaseManager, fake_chain, make_log: MakeLog
    ) -> None:
        fake_chain.add(*_lifecycle_logs(make_log))
        fake_chain.head = 200
        worker = _worker(db, fake_chain)

        with patch.object(IndexerStateRepository, "advance", side_effect=RuntimeError("crash")):
            with pytest.raises(RuntimeError):
                await worker.run_once()
        assert await _cursor_block(db) == 99
        first = await _snapshot(db)

        await worker.run_once()

        assert await _cursor_block(db) == 188
        assert await _snapshot(db) == first

    @pytest.mark.asyncio
    async def test_reindex_after_reset_converges(
        self, db: DatabaseManager, fake_chain, make_log: MakeLog
    ) -> None:
        fake_chain.add(*_lifecycle_logs(make_log))
        fake_chain.head = 200
        worker = _worker(db, fake_chain)
        await worker.run_once()
        first = await _snapshot(db)

        async with db.get_async_session() as session:
            await IndexerStateRepository(session).delete(CHAIN_ID, CONTRACT)
        await worker.run_once()

        assert await _cursor_block(db) == 188
        assert await _snapshot(db) == first

    @pytest.mark.asyncio
    async def test_audit_unknown_events_fetches_everything(
        self, db: DatabaseManager, fake_chain, make_log: MakeLog
    ) -> None:
        log = make_log("FeeUpdated", block_number=100, fee_recipient=SENDER, fee_rate=10)
        fake_chain.add(replace(log, topics=("0x" + "ee" * 32,), data="0x"))
        fake_chain.head = 200
        worker = _worker(db, fake_chain, audit_unknown_events=True)

        result = await worker.run_once()

        assert fake_chain.get_logs_calls == [(100, 188, None)]
        assert result.events_applied == 1


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_retries_and_stops(self, db: DatabaseManager, fake_chain, make_log: MakeLog) -> None:
        fake_chain.add(*_lifecycle_logs(make_log))
        fake_chain.head = 200
        fake_chain.fail_get_logs = RPCError("temporarily down")
        worker = _worker(db, fake_chain)

        task = asyncio.create_task(worker.run())
        for _ in range(200):
            if worker.stats.errors >= 1:
                break
            await asyncio.sleep(0.01)
        assert worker.state is WorkerState.RUNNING
        assert await _cursor_block(db) == 99

        fake_chain.fail_get_logs = None
        for _ in range(200):
            if worker.stats.chunks_processed >= 1:
                break
            await asyncio.sleep(0.01)

        worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert worker.state is WorkerState.STOPPED
        assert worker.stats.errors >= 1
        assert worker.stats.last_error == "temporarily down"
        assert worker.stats.chunks_processed == 1
        assert worker.stats.events_applied == 6
        assert worker.stats.last_processed_block == 188
        assert await _cursor_block(db) == 188

    @pytest.mark.asyncio
    async def test_run_twice_rejected(self, db: DatabaseManager, fake_chain) -> None:
        worker = _worker(db, fake_chain)
        task = asyncio.create_task(worker.run())
        for _ in range(200):
            if worker.is_running:
                break
            await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError):
            await worker.run()

        worker.stop()
        await asyncio.wait_for(task, timeout=5)


class TestConstruction:
    def test_rejects_bad_chunk_size(self, db: DatabaseManager, fake_chain) -> None:
        with pytest.raises(ValueError):
            _worker(db, fake_chain, chunk_size=0)
