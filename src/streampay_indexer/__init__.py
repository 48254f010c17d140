"""Streaming-payments event indexer.

Folds a streaming-payments contract's on-chain event log into a relational
projection (streams, withdrawals, raw event audit trail).
"""

__version__ = "0.1.0"
