"""Streaming-payments event decoding.

Maps one raw log to a typed event. Logs that match no known event signature,
or that fail to decode, yield ``None``: unrelated logs emitted by the same
contract (or event types added later) must never abort indexing.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from streampay_indexer.chain.models import RawLog, hex_to_bytes, to_hex

logger = logging.getLogger(__name__)


class _EventArgs:
    """Shared helpers for decoded event variants."""

    event_type: ClassVar[str]

    @property
    def stream_key(self) -> str | None:
        """Decimal-string stream id, when the event concerns a stream."""
        stream_id = getattr(self, "stream_id", None)
        return str(stream_id) if stream_id is not None else None

    def to_args(self) -> dict[str, Any]:
        """Decoded arguments, JSON-safe (uint256 values as decimal strings)."""
        args: dict[str, Any] = {}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            if f.name == "block_number":
                continue
            value = getattr(self, f.name)
            if isinstance(value, bool):
                args[f.name] = value
            elif isinstance(value, int):
                args[f.name] = str(value)
            elif isinstance(value, tuple):
                args[f.name] = list(value)
            else:
                args[f.name] = value
        return args


@dataclass(frozen=True)
class StreamCreated(_EventArgs):
    event_type: ClassVar[str] = "StreamCreated"

    block_number: int
    stream_id: int
    sender: str
    recipient: str
    token: str
    amount: int
    start: int
    end: int
    cliff: int


@dataclass(frozen=True)
class Withdrawn(_EventArgs):
    event_type: ClassVar[str] = "Withdrawn"

    block_number: int
    stream_id: int
    recipient: str
    amount: int


@dataclass(frozen=True)
class Canceled(_EventArgs):
    event_type: ClassVar[str] = "Canceled"

    block_number: int
    stream_id: int
    sender: str
    refunded: bool


@dataclass(frozen=True)
class Transferred(_EventArgs):
    event_type: ClassVar[str] = "Transferred"

    block_number: int
    stream_id: int
    previous_recipient: str
    new_recipient: str


@dataclass(frozen=True)
class FeeUpdated(_EventArgs):
    event_type: ClassVar[str] = "FeeUpdated"

    block_number: int
    fee_recipient: str
    fee_rate: int


@dataclass(frozen=True)
class UnknownEvent(_EventArgs):
    """A log from the contract whose signature is not recognized.

    Kept only so the raw payload can be written to the audit trail.
    """

    event_type: ClassVar[str] = "Unknown"

    block_number: int
    topics: tuple[str, ...]
    data: str


DecodedEvent = StreamCreated | Withdrawn | Canceled | Transferred | FeeUpdated | UnknownEvent


@dataclass(frozen=True)
class EventSpec:
    """ABI description of one contract event."""

    name: str
    # (field name, ABI type, indexed)
    inputs: tuple[tuple[str, str, bool], ...]
    factory: Callable[..., DecodedEvent]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(abi_type for _, abi_type, _ in self.inputs)})"

    @property
    def topic0(self) -> str:
        return to_hex(Web3.keccak(text=self.signature))

    @property
    def indexed_count(self) -> int:
        return sum(1 for _, _, indexed in self.inputs if indexed)


EVENT_SPECS: tuple[EventSpec, ...] = (
    EventSpec(
        name="StreamCreated",
        inputs=(
            ("stream_id", "uint256", True),
            ("sender", "address", True),
            ("recipient", "address", True),
            ("token", "address", False),
            ("amount", "uint256", False),
            ("start", "uint256", False),
            ("end", "uint256", False),
            ("cliff", "uint256", False),
        ),
        factory=StreamCreated,
    ),
    EventSpec(
        name="Withdrawn",
        inputs=(
            ("stream_id", "uint256", True),
            ("recipient", "address", True),
            ("amount", "uint256", False),
        ),
        factory=Withdrawn,
    ),
    EventSpec(
        name="Canceled",
        inputs=(
            ("stream_id", "uint256", True),
            ("sender", "address", True),
            ("refunded", "bool", False),
        ),
        factory=Canceled,
    ),
    EventSpec(
        name="Transferred",
        inputs=(
            ("stream_id", "uint256", True),
            ("previous_recipient", "address", True),
            ("new_recipient", "address", True),
        ),
        factory=Transferred,
    ),
    EventSpec(
        name="FeeUpdated",
        inputs=(
            ("fee_recipient", "address", True),
            ("fee_rate", "uint256", False),
        ),
        factory=FeeUpdated,
    ),
)

SPECS_BY_TOPIC0: dict[str, EventSpec] = {spec.topic0: spec for spec in EVENT_SPECS}

# topic0 filter for eth_getLogs (OR across the known events).
EVENT_TOPICS: tuple[str, ...] = tuple(SPECS_BY_TOPIC0)


def _normalize(value: Any) -> Any:
    # eth_abi returns checksummed addresses.
    if isinstance(value, str):
        return value.lower()
    return value


def _decode_with_spec(spec: EventSpec, log: RawLog) -> DecodedEvent:
    if len(log.topics) != 1 + spec.indexed_count:
        raise DecodingError(
            f"{spec.name} expects {1 + spec.indexed_count} topics, got {len(log.topics)}"
        )

    values: dict[str, Any] = {}
    topics = iter(log.topics[1:])
    data_fields: list[tuple[str, str]] = []
    for name, abi_type, indexed in spec.inputs:
        if indexed:
            (values[name],) = abi_decode([abi_type], hex_to_bytes(next(topics)))
        else:
            data_fields.append((name, abi_type))

    if data_fields:
        decoded = abi_decode([t for _, t in data_fields], hex_to_bytes(log.data))
        for (name, _), value in zip(data_fields, decoded, strict=True):
            values[name] = value

    return spec.factory(
        block_number=log.block_number,
        **{name: _normalize(value) for name, value in values.items()},
    )


def decode_log(log: RawLog, *, keep_unknown: bool = False) -> DecodedEvent | None:
    """Decode a raw log into a typed event.

    Args:
        log: Raw log from the contract.
        keep_unknown: Return an ``UnknownEvent`` instead of ``None`` for logs
            whose signature is not recognized.

    Returns:
        The decoded event, or None when the log is not a known event or its
        payload cannot be decoded.
    """
    topic0 = log.topic0
    spec = SPECS_BY_TOPIC0.get(topic0) if topic0 else None
    if spec is None:
        if keep_unknown:
            return UnknownEvent(block_number=log.block_number, topics=log.topics, data=log.data)
        return None

    try:
        return _decode_with_spec(spec, log)
    except (DecodingError, ValueError, TypeError) as e:
        logger.warning(
            "Failed to decode %s log %s:%d: %s",
            spec.name,
            log.transaction_hash,
            log.log_index,
            e,
        )
        return None
