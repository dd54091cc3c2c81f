"""Trading streak counters on the stats row.

A trading day is a calendar day (UTC) with at least one trade entry. The
current streak is the run of consecutive trading days ending today or
yesterday; the longest streak never decreases.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from ttg.gamification.xp_service import get_or_create_stats
from ttg.trades import metrics
from ttg.trades.provider import TradeHistoryProvider

logger = logging.getLogger(__name__)


async def update_trading_streak(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Recompute current/longest streak from trade history. Returns (current, longest)."""
    now = now or datetime.now(timezone.utc)
    history = await trades.get_trades(user_id)
    days = [t.entry_time.date() for t in history]

    current = metrics.trailing_consecutive_days(days, now.date())
    longest = metrics.longest_consecutive_days(days)

    stats = await get_or_create_stats(db, user_id)
    stats.current_streak_days = current
    stats.longest_streak_days = max(stats.longest_streak_days, longest)
    stats.last_trade_date = max(days) if days else None
    stats.updated_at = now
    await db.commit()

    logger.debug("Streak for %s: current=%d longest=%d", user_id, current, stats.longest_streak_days)
    return current, stats.longest_streak_days
