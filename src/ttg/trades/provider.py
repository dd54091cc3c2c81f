"""Read-only access to the trading journal's trade and behavioral data.

Everything in this module reads tables owned by the journal backend. The
gamification engine never writes them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal, Protocol

from sqlalchemy import distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import BehavioralAnalyticsAggregate, BehavioralPattern, RevengeTradingEvent, Trade

# Only these aggregate columns may be used as a community metric.
CommunityMetric = Literal["discipline_score", "risk_adherence", "win_rate"]


@dataclass(frozen=True)
class TradeRecord:
    """Immutable view of one journal trade."""

    id: uuid.UUID
    user_id: uuid.UUID
    symbol: str
    side: str
    quantity: float | None
    entry_price: float | None
    exit_price: float | None
    entry_time: datetime
    exit_time: datetime | None
    pnl: float | None
    strategy: str | None = None
    notes: str | None = None

    @property
    def is_closed(self) -> bool:
        """A trade counts for P&L only once it has an exit."""
        return self.exit_time is not None and self.pnl is not None

    @property
    def position_value(self) -> float | None:
        if self.quantity is None or self.entry_price is None:
            return None
        return abs(self.quantity * self.entry_price)

    @property
    def hold_minutes(self) -> float | None:
        if self.exit_time is None:
            return None
        return (self.exit_time - self.entry_time).total_seconds() / 60

    @classmethod
    def from_row(cls, row: Trade) -> TradeRecord:
        return cls(
            id=row.id,
            user_id=row.user_id,
            symbol=row.symbol,
            side=row.side,
            quantity=row.quantity,
            entry_price=row.entry_price,
            exit_price=row.exit_price,
            entry_time=row.entry_time,
            exit_time=row.exit_time,
            pnl=row.pnl,
            strategy=row.strategy,
            notes=row.notes,
        )


class TradeHistoryProvider(Protocol):
    """Source of trade history and behavioral signals."""

    async def get_trades(
        self,
        user_id: uuid.UUID,
        since: datetime | None = None,
        closed_only: bool = False,
    ) -> list[TradeRecord]:
        """Trades of one user entered or exited at/after ``since``, oldest first."""
        ...

    async def get_all_trades(
        self,
        since: datetime | None = None,
        closed_only: bool = False,
    ) -> list[TradeRecord]:
        """Trades of every user entered or exited at/after ``since``."""
        ...

    async def count_revenge_events(self, user_id: uuid.UUID, since: datetime) -> int: ...

    async def count_pattern_types(self, user_id: uuid.UUID) -> int: ...

    async def get_community_metric(self, metric: CommunityMetric, on_date: date) -> float | None: ...

    async def get_last_trade_times(self) -> dict[uuid.UUID, datetime]:
        """Most recent entry time per user."""
        ...


class SqlTradeHistoryProvider:
    """TradeHistoryProvider over the journal's PostgreSQL tables."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def _trade_query(self, since: datetime | None, closed_only: bool):  # noqa: ANN202
        query = select(Trade)
        if since is not None:
            query = query.where(or_(Trade.entry_time >= since, Trade.exit_time >= since))
        if closed_only:
            query = query.where(Trade.exit_time.isnot(None), Trade.pnl.isnot(None))
        return query.order_by(Trade.entry_time.asc())

    async def get_trades(
        self,
        user_id: uuid.UUID,
        since: datetime | None = None,
        closed_only: bool = False,
    ) -> list[TradeRecord]:
        query = self._trade_query(since, closed_only).where(Trade.user_id == user_id)
        result = await self.db.execute(query)
        return [TradeRecord.from_row(row) for row in result.scalars()]

    async def get_all_trades(
        self,
        since: datetime | None = None,
        closed_only: bool = False,
    ) -> list[TradeRecord]:
        result = await self.db.execute(self._trade_query(since, closed_only))
        return [TradeRecord.from_row(row) for row in result.scalars()]

    async def count_revenge_events(self, user_id: uuid.UUID, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(RevengeTradingEvent.id)).where(
                RevengeTradingEvent.user_id == user_id,
                RevengeTradingEvent.created_at >= since,
            )
        )
        return int(result.scalar() or 0)

    async def count_pattern_types(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(distinct(BehavioralPattern.pattern_type))).where(
                BehavioralPattern.user_id == user_id
            )
        )
        return int(result.scalar() or 0)

    async def get_community_metric(self, metric: CommunityMetric, on_date: date) -> float | None:
        column = {
            "discipline_score": BehavioralAnalyticsAggregate.discipline_score,
            "risk_adherence": BehavioralAnalyticsAggregate.risk_adherence,
            "win_rate": BehavioralAnalyticsAggregate.win_rate,
        }[metric]
        result = await self.db.execute(
            select(func.avg(column)).where(BehavioralAnalyticsAggregate.day == on_date)
        )
        value = result.scalar()
        return float(value) if value is not None else None

    async def get_last_trade_times(self) -> dict[uuid.UUID, datetime]:
        result = await self.db.execute(
            select(Trade.user_id, func.max(Trade.entry_time).label("last_entry")).group_by(Trade.user_id)
        )
        return {row.user_id: row.last_entry for row in result}
