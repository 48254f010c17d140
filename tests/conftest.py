"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest
from eth_abi import encode as abi_encode

from streampay_indexer.chain.decoder import EVENT_SPECS
from streampay_indexer.chain.models import RawLog, to_hex
from streampay_indexer.storage.database import DatabaseManager

CHAIN_ID = 1
CONTRACT = "0x" + "c0" * 20


def encode_log(
    name: str,
    *,
    block_number: int,
    log_index: int = 0,
    transaction_index: int = 0,
    tx_hash: str | None = None,
    address: str = CONTRACT,
    **fields: Any,
) -> RawLog:
    """Build a RawLog for one of the contract's events, ABI-encoded."""
    spec = next(s for s in EVENT_SPECS if s.name == name)
    topics = [spec.topic0]
    data_types: list[str] = []
    data_values: list[Any] = []
    for field_name, abi_type, indexed in spec.inputs:
        value = fields[field_name]
        if indexed:
            topics.append(to_hex(abi_encode([abi_type], [value])))
        else:
            data_types.append(abi_type)
            data_values.append(value)

    return RawLog(
        address=address,
        block_number=block_number,
        block_hash="0x" + f"{block_number:064x}",
        transaction_hash=tx_hash or "0x" + f"{block_number:032x}{log_index:032x}",
        log_index=log_index,
        transaction_index=transaction_index,
        topics=tuple(topics),
        data=to_hex(abi_encode(data_types, data_values)),
    )


class FakeChain:
    """In-memory chain reader."""

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.logs: list[RawLog] = []
        self.timestamps: dict[int, int] = {}
        self.get_logs_calls: list[tuple[int, int, tuple[str, ...] | None]] = []
        self.fail_get_logs: Exception | None = None

    def add(self, *logs: RawLog) -> None:
        self.logs.extend(logs)

    async def get_head_block_number(self) -> int:
        return self.head

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Sequence[str] | None = None,
    ) -> list[RawLog]:
        self.get_logs_calls.append((from_block, to_block, tuple(topics) if topics else None))
        if self.fail_get_logs is not None:
            raise self.fail_get_logs
        # Reverse to make sure callers sort.
        return [
            log
            for log in reversed(self.logs)
            if log.address == address.lower()
            and from_block <= log.block_number <= to_block
            and (not topics or log.topic0 in topics)
        ]

    async def get_block_timestamps(self, block_numbers: Iterable[int]) -> dict[int, int]:
        return {n: self.timestamps.get(n, 1_700_000_000 + n * 12) for n in set(block_numbers)}


@pytest.fixture
def make_log() -> Callable[..., RawLog]:
    """Factory for ABI-encoded contract logs."""
    return encode_log


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
async def db(tmp_path: Path) -> DatabaseManager:
    """Database manager on a fresh SQLite file with all tables created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
