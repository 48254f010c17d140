"""Read-only queries over the indexed projection.

These back dashboards and operator tooling (stream listings, protocol
metrics, leaderboards). Nothing here writes.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, select

from streampay_indexer.storage.models import EventModel, StreamModel, WithdrawalModel
from streampay_indexer.storage.repos import StreamDTO, WithdrawalDTO, sums_in_python

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
DEFAULT_LEADERBOARD_LIMIT = 100


class StreamStatus(Enum):
    """Stream lifecycle as seen at a given time."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class LeaderboardKind(Enum):
    SENDERS = "senders"
    RECIPIENTS = "recipients"


def stream_status(stream: StreamDTO, now: int) -> StreamStatus:
    if stream.canceled:
        return StreamStatus.CANCELED
    if stream.end > now:
        return StreamStatus.ACTIVE
    return StreamStatus.COMPLETED


@dataclass
class StreamListItem:
    stream: StreamDTO
    status: StreamStatus
    withdrawal_count: int


@dataclass
class StreamPage:
    """One page of a stream listing."""

    items: list[StreamListItem]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class StreamDetail:
    stream: StreamDTO
    status: StreamStatus
    withdrawals: list[WithdrawalDTO] = field(default_factory=list)


@dataclass
class ProtocolMetrics:
    """Aggregate figures over the projection."""

    total_streams: int
    active_streams: int
    total_volume: Decimal
    total_withdrawn: Decimal
    unique_senders: int
    unique_recipients: int
    events_last_24h: int


@dataclass
class LeaderboardEntry:
    address: str
    total_amount: Decimal
    count: int


def _to_decimal(value: Any) -> Decimal:
    return Decimal(value) if value is not None else Decimal(0)


class ProjectionQueries:
    """Query helpers bound to one session.

    Example:
        ```python
        async with db.get_async_session() as session:
            queries = ProjectionQueries(session)
            page = await queries.list_streams(sender=addr, status=StreamStatus.ACTIVE)
            board = await queries.leaderboard(LeaderboardKind.SENDERS, limit=10)
        ```
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _scope(model: Any, chain_id: int | None, contract_address: str | None) -> list[Any]:
        clauses = []
        if chain_id is not None:
            clauses.append(model.chain_id == chain_id)
        if contract_address is not None:
            clauses.append(model.contract_address == contract_address.lower())
        return clauses

    async def list_streams(
        self,
        *,
        chain_id: int | None = None,
        contract_address: str | None = None,
        sender: str | None = None,
        recipient: str | None = None,
        status: StreamStatus | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        now: int | None = None,
    ) -> StreamPage:
        """List streams, newest first.

        Args:
            chain_id: Restrict to one chain.
            contract_address: Restrict to one contract.
            sender: Restrict to streams created by this address.
            recipient: Restrict to streams currently paying this address.
            status: Restrict to one lifecycle status.
            page: 1-based page number.
            limit: Page size, capped at MAX_PAGE_SIZE.
            now: Unix time used to tell active from completed streams.

        Returns:
            The requested page with pagination metadata.
        """
        now = int(time.time()) if now is None else now
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        clauses = self._scope(StreamModel, chain_id, contract_address)
        if sender is not None:
            clauses.append(StreamModel.sender == sender.lower())
        if recipient is not None:
            clauses.append(StreamModel.recipient == recipient.lower())
        if status is StreamStatus.CANCELED:
            clauses.append(StreamModel.canceled.is_(True))
        elif status is StreamStatus.ACTIVE:
            clauses.extend([StreamModel.canceled.is_(False), StreamModel.end > now])
        elif status is StreamStatus.COMPLETED:
            clauses.extend([StreamModel.canceled.is_(False), StreamModel.end <= now])

        total_result = await self.session.execute(
            select(func.count()).select_from(StreamModel).where(*clauses)
        )
        total = int(total_result.scalar_one())

        withdrawal_counts = (
            select(
                WithdrawalModel.chain_id,
                WithdrawalModel.contract_address,
                WithdrawalModel.stream_id,
                func.count(WithdrawalModel.id).label("withdrawal_count"),
            )
            .group_by(
                WithdrawalModel.chain_id,
                WithdrawalModel.contract_address,
                WithdrawalModel.stream_id,
            )
            .subquery()
        )
        stmt = (
            select(StreamModel, func.coalesce(withdrawal_counts.c.withdrawal_count, 0))
            .outerjoin(
                withdrawal_counts,
                and_(
                    withdrawal_counts.c.chain_id == StreamModel.chain_id,
                    withdrawal_counts.c.contract_address == StreamModel.contract_address,
                    withdrawal_counts.c.stream_id == StreamModel.id,
                ),
            )
            .where(*clauses)
            .order_by(StreamModel.created_at.desc(), StreamModel.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.session.execute(stmt)

        items = []
        for model, count in result.all():
            dto = StreamDTO.from_model(model)
            items.append(
                StreamListItem(stream=dto, status=stream_status(dto, now), withdrawal_count=int(count))
            )
        return StreamPage(items=items, page=page, limit=limit, total=total)

    async def get_stream(
        self,
        chain_id: int,
        contract_address: str,
        stream_id: str,
        *,
        now: int | None = None,
    ) -> StreamDetail | None:
        """Get one stream with its withdrawal history, or None."""
        now = int(time.time()) if now is None else now
        result = await self.session.execute(
            select(StreamModel).where(
                StreamModel.chain_id == chain_id,
                StreamModel.contract_address == contract_address.lower(),
                StreamModel.id == stream_id,
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None

        withdrawals = await self.session.execute(
            select(WithdrawalModel)
            .where(
                WithdrawalModel.chain_id == chain_id,
                WithdrawalModel.contract_address == contract_address.lower(),
                WithdrawalModel.stream_id == stream_id,
            )
            .order_by(WithdrawalModel.block_number.desc(), WithdrawalModel.id.desc())
        )
        dto = StreamDTO.from_model(model)
        return StreamDetail(
            stream=dto,
            status=stream_status(dto, now),
            withdrawals=[WithdrawalDTO.from_model(w) for w in withdrawals.scalars().all()],
        )

    async def get_metrics(
        self,
        *,
        chain_id: int | None = None,
        contract_address: str | None = None,
        now: int | None = None,
    ) -> ProtocolMetrics:
        """Compute protocol-wide metrics."""
        now = int(time.time()) if now is None else now
        stream_scope = self._scope(StreamModel, chain_id, contract_address)

        totals = await self.session.execute(
            select(
                func.count(),
                func.count(StreamModel.sender.distinct()),
                func.count(StreamModel.recipient.distinct()),
            )
            .select_from(StreamModel)
            .where(*stream_scope)
        )
        total_streams, senders, recipients = totals.one()

        if sums_in_python(self.session):
            amounts = await self.session.execute(
                select(StreamModel.amount, StreamModel.withdrawn).where(*stream_scope)
            )
            rows = amounts.all()
            total_volume = sum(int(amount) for amount, _ in rows)
            total_withdrawn = sum(int(withdrawn) for _, withdrawn in rows)
        else:
            sums = await self.session.execute(
                select(
                    func.coalesce(func.sum(StreamModel.amount), 0),
                    func.coalesce(func.sum(StreamModel.withdrawn), 0),
                ).where(*stream_scope)
            )
            total_volume, total_withdrawn = sums.one()

        active = await self.session.execute(
            select(func.count())
            .select_from(StreamModel)
            .where(*stream_scope, StreamModel.canceled.is_(False), StreamModel.end > now)
        )

        since = datetime.fromtimestamp(now, UTC) - timedelta(hours=24)
        recent = await self.session.execute(
            select(func.count())
            .select_from(EventModel)
            .where(
                *self._scope(EventModel, chain_id, contract_address),
                EventModel.block_timestamp >= since,
            )
        )

        return ProtocolMetrics(
            total_streams=int(total_streams),
            active_streams=int(active.scalar_one()),
            total_volume=_to_decimal(total_volume),
            total_withdrawn=_to_decimal(total_withdrawn),
            unique_senders=int(senders),
            unique_recipients=int(recipients),
            events_last_24h=int(recent.scalar_one()),
        )

    async def leaderboard(
        self,
        kind: LeaderboardKind,
        *,
        limit: int = DEFAULT_LEADERBOARD_LIMIT,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> list[LeaderboardEntry]:
        """Rank senders by total streamed, or recipients by total withdrawn.

        Args:
            kind: Which side of the streams to rank.
            limit: Maximum number of entries.
            chain_id: Restrict to one chain.
            contract_address: Restrict to one contract.

        Returns:
            Entries ordered by total amount, largest first.
        """
        if kind is LeaderboardKind.SENDERS:
            address_col = StreamModel.sender
            amount_col = StreamModel.amount
            count_col = func.count()
            scope = self._scope(StreamModel, chain_id, contract_address)
        else:
            address_col = WithdrawalModel.recipient
            amount_col = WithdrawalModel.amount
            count_col = func.count(WithdrawalModel.id)
            scope = self._scope(WithdrawalModel, chain_id, contract_address)

        if sums_in_python(self.session):
            rows = await self.session.execute(select(address_col, amount_col).where(*scope))
            totals: dict[str, list[int]] = {}
            for address, amount in rows.all():
                entry = totals.setdefault(address, [0, 0])
                entry[0] += int(amount)
                entry[1] += 1
            ranked = sorted(totals.items(), key=lambda item: (-item[1][0], item[0]))
            return [
                LeaderboardEntry(address=address, total_amount=Decimal(amount), count=count)
                for address, (amount, count) in ranked[:limit]
            ]

        total = func.sum(amount_col).label("total_amount")
        result = await self.session.execute(
            select(address_col, total, count_col)
            .where(*scope)
            .group_by(address_col)
            .order_by(total.desc(), address_col.asc())
            .limit(limit)
        )
        return [
            LeaderboardEntry(address=address, total_amount=_to_decimal(amount), count=int(count))
            for address, amount, count in result.all()
        ]
