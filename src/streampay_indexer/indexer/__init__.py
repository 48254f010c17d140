"""Indexing layer - event processor and worker loop."""

from streampay_indexer.indexer.processor import (
    EventProcessingError,
    EventProcessor,
    ProcessOutcome,
    ProcessResult,
    StreamNotFoundError,
)
from streampay_indexer.indexer.worker import (
    BlockRange,
    IndexerWorker,
    IterationResult,
    WorkerState,
    WorkerStats,
    plan_chunk,
)

__all__ = [
    "BlockRange",
    "EventProcessingError",
    "EventProcessor",
    "IndexerWorker",
    "IterationResult",
    "ProcessOutcome",
    "ProcessResult",
    "StreamNotFoundError",
    "WorkerState",
    "WorkerStats",
    "plan_chunk",
]
