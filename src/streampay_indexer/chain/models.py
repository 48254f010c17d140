"""Data models for raw chain logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def to_hex(value: Any) -> str:
    """Normalize bytes-like or hex-string values to lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    s = str(value).lower()
    return s if s.startswith("0x") else "0x" + s


def hex_to_bytes(value: str) -> bytes:
    h = value[2:] if value[:2].lower() == "0x" else value
    if len(h) % 2:
        h = "0" + h
    return bytes.fromhex(h)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    s = str(value)
    return int(s, 16) if s.lower().startswith("0x") else int(s)


@dataclass(frozen=True)
class RawLog:
    """A single log as returned by `eth_getLogs`.

    All hex values are lowercase and 0x-prefixed.
    """

    address: str
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    transaction_index: int
    topics: tuple[str, ...]
    data: str

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None

    @property
    def sort_key(self) -> tuple[int, int, int]:
        """Canonical chain order within a block range."""
        return (self.block_number, self.transaction_index, self.log_index)

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> RawLog:
        """Create a RawLog from a web3 log entry (AttributeDict or plain dict)."""
        return cls(
            address=to_hex(data["address"]),
            block_number=_to_int(data["blockNumber"]),
            block_hash=to_hex(data["blockHash"]),
            transaction_hash=to_hex(data["transactionHash"]),
            log_index=_to_int(data["logIndex"]),
            transaction_index=_to_int(data["transactionIndex"]),
            topics=tuple(to_hex(t) for t in data.get("topics", ())),
            data=to_hex(data.get("data") or b""),
        )
