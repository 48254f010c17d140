"""Chain access layer - RPC client, raw logs and event decoding."""

from streampay_indexer.chain.client import ChainClient, ChainClientError, ChainReader, RPCError
from streampay_indexer.chain.decoder import (
    EVENT_TOPICS,
    Canceled,
    DecodedEvent,
    FeeUpdated,
    StreamCreated,
    Transferred,
    UnknownEvent,
    Withdrawn,
    decode_log,
)
from streampay_indexer.chain.models import RawLog

__all__ = [
    "EVENT_TOPICS",
    "Canceled",
    "ChainClient",
    "ChainClientError",
    "ChainReader",
    "DecodedEvent",
    "FeeUpdated",
    "RPCError",
    "RawLog",
    "StreamCreated",
    "Transferred",
    "UnknownEvent",
    "Withdrawn",
    "decode_log",
]
