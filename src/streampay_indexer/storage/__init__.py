"""Storage layer - Database schemas, repositories and read-only queries."""

from streampay_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from streampay_indexer.storage.models import (
    Base,
    EventModel,
    EventProcessingErrorModel,
    IndexerStateModel,
    StreamModel,
    WithdrawalModel,
)
from streampay_indexer.storage.queries import (
    LeaderboardKind,
    ProjectionQueries,
    StreamStatus,
)
from streampay_indexer.storage.repos import (
    CursorError,
    EventDTO,
    EventProcessingErrorDTO,
    EventProcessingErrorRepository,
    EventRepository,
    IndexerStateDTO,
    IndexerStateRepository,
    StorageError,
    StreamDTO,
    StreamRepository,
    WithdrawalDTO,
    WithdrawalRepository,
    make_event_id,
)

__all__ = [
    "Base",
    "CursorError",
    "DatabaseManager",
    "EventDTO",
    "EventModel",
    "EventProcessingErrorDTO",
    "EventProcessingErrorModel",
    "EventProcessingErrorRepository",
    "EventRepository",
    "IndexerStateDTO",
    "IndexerStateModel",
    "IndexerStateRepository",
    "LeaderboardKind",
    "ProjectionQueries",
    "StorageError",
    "StreamDTO",
    "StreamModel",
    "StreamRepository",
    "StreamStatus",
    "WithdrawalDTO",
    "WithdrawalModel",
    "WithdrawalRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "make_event_id",
]
