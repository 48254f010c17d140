"""Command implementations.

Each function builds its dependencies from settings, runs one command, and
releases every connection it opened.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from streampay_indexer.chain.client import ChainClient
from streampay_indexer.config import Settings
from streampay_indexer.gateway.wait import WaitGateway, WaitResult
from streampay_indexer.indexer.processor import EventProcessor
from streampay_indexer.indexer.worker import IndexerWorker
from streampay_indexer.storage.database import DatabaseManager
from streampay_indexer.storage.queries import LeaderboardKind, ProjectionQueries
from streampay_indexer.storage.repos import IndexerStateRepository

logger = logging.getLogger(__name__)


def _json_default(x: object) -> str:
    if isinstance(x, datetime):
        return x.isoformat()
    if isinstance(x, Enum):
        return str(x.value)
    if isinstance(x, Decimal):
        return format(x, "f")
    return str(x)


def to_json(payload: Any) -> str:
    return json.dumps(payload, default=_json_default, sort_keys=True)


def _required(value: str | None, name: str) -> str:
    if not value:
        raise ValueError(f"{name} is required")
    return value


async def run_indexer(*, settings: Settings) -> None:
    """Run the worker loop until SIGINT/SIGTERM."""
    settings.validate_requirements(command="run")
    contract_address = _required(settings.chain.contract_address, "CONTRACT_ADDRESS")
    rpc_url = _required(settings.chain.rpc_url, "RPC_URL")

    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    db = DatabaseManager(settings.database.url)
    chain = ChainClient(
        rpc_url,
        chain_id=settings.chain.chain_id,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        redis=redis,
        max_requests_per_second=settings.chain.max_requests_per_second,
        max_retries=settings.chain.max_retries,
    )
    try:
        processor = EventProcessor(
            db,
            chain_id=settings.chain.chain_id,
            contract_address=contract_address,
        )
        worker = IndexerWorker(
            chain=chain,
            db=db,
            processor=processor,
            start_block=settings.indexer.start_block,
            confirmations=settings.indexer.confirmations,
            chunk_size=settings.indexer.chunk_size,
            poll_interval_ms=settings.indexer.poll_interval_ms,
            audit_unknown_events=settings.indexer.audit_unknown_events,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, worker.stop)

        await worker.run()
        logger.info("Worker stats: %s", asdict(worker.stats))
    finally:
        await chain.aclose()
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


async def init_database(*, settings: Settings) -> None:
    """Create all tables (for local runs; deployments use Alembic)."""
    settings.validate_requirements(command="init-db")
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def reset_cursor(*, settings: Settings) -> int:
    """Delete the cursor so the next run re-indexes from START_BLOCK.

    Projection rows are kept; re-indexing converges on the same rows.

    Returns:
        Number of cursor rows deleted.
    """
    settings.validate_requirements(command="reset-cursor")
    contract_address = _required(settings.chain.contract_address, "CONTRACT_ADDRESS")
    db = DatabaseManager(settings.database.url)
    try:
        async with db.get_async_session() as session:
            deleted = await IndexerStateRepository(session).delete(
                settings.chain.chain_id, contract_address
            )
        logger.info(
            "Reset cursor for chain %d / %s (%d row(s) deleted)",
            settings.chain.chain_id,
            contract_address,
            deleted,
        )
        return deleted
    finally:
        await db.dispose_async()


async def wait_for_transaction(
    *,
    settings: Settings,
    tx_hash: str,
    timeout_ms: int | None = None,
    poll_interval_ms: int | None = None,
) -> WaitResult:
    settings.validate_requirements(command="wait")
    db = DatabaseManager(settings.database.url)
    try:
        gateway = WaitGateway(
            db,
            chain_id=settings.chain.chain_id,
            contract_address=settings.chain.contract_address,
        )
        return await gateway.wait_for_indexed(
            tx_hash,
            timeout_s=(timeout_ms if timeout_ms is not None else settings.wait.timeout_ms) / 1000,
            poll_interval_s=(
                poll_interval_ms if poll_interval_ms is not None else settings.wait.poll_interval_ms
            )
            / 1000,
        )
    finally:
        await db.dispose_async()


async def indexer_status(*, settings: Settings) -> dict[str, Any]:
    """Cursor position plus protocol metrics for the configured contract."""
    settings.validate_requirements(command="status")
    contract_address = settings.chain.contract_address
    db = DatabaseManager(settings.database.url)
    try:
        async with db.get_async_session() as session:
            cursor = None
            if contract_address:
                cursor = await IndexerStateRepository(session).get(
                    settings.chain.chain_id, contract_address
                )
            metrics = await ProjectionQueries(session).get_metrics(
                chain_id=settings.chain.chain_id,
                contract_address=contract_address,
            )
        return {
            "chain_id": settings.chain.chain_id,
            "contract_address": contract_address,
            "last_processed_block": cursor.last_processed_block if cursor else None,
            "cursor_updated_at": cursor.updated_at if cursor else None,
            "metrics": asdict(metrics),
        }
    finally:
        await db.dispose_async()


async def leaderboard(
    *,
    settings: Settings,
    kind: LeaderboardKind,
    limit: int,
) -> list[dict[str, Any]]:
    settings.validate_requirements(command="leaderboard")
    db = DatabaseManager(settings.database.url)
    try:
        async with db.get_async_session() as session:
            entries = await ProjectionQueries(session).leaderboard(
                kind,
                limit=limit,
                chain_id=settings.chain.chain_id,
                contract_address=settings.chain.contract_address,
            )
        return [asdict(e) for e in entries]
    finally:
        await db.dispose_async()
