"""Consumer-side helpers that read the indexed projection."""

from streampay_indexer.gateway.wait import WaitGateway, WaitOutcome, WaitResult

__all__ = ["WaitGateway", "WaitOutcome", "WaitResult"]
