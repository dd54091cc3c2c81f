"""Leaderboard metrics: period windows, per-user scorers and ranking.

Scores are always recomputed from the journal's trades (or the XP ledger),
never carried over from a previous snapshot.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import LeaderboardDefinition, UserGamificationStats, XPLedger
from ttg.trades import metrics
from ttg.trades.provider import TradeHistoryProvider, TradeRecord

METRIC_KEYS = (
    "total_pnl",
    "weekly_pnl",
    "monthly_pnl",
    "best_trade",
    "worst_trade",
    "consistency_score",
    "risk_adherence",
    "achievement_points",
)
PERIOD_TYPES = ("daily", "weekly", "monthly", "all_time", "custom")

# Metrics where a lower score ranks higher.
ASCENDING_METRICS = frozenset({"worst_trade"})


@dataclass
class MemberScore:
    user_id: uuid.UUID
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RankedScore:
    user_id: uuid.UUID
    score: float
    rank: int
    metadata: dict[str, Any]


def period_bounds(
    period_type: str,
    today: date,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> tuple[datetime | None, datetime | None]:
    """Exit-time window for a period, in UTC. ``None`` means unbounded."""

    def midnight(day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=timezone.utc)

    if period_type == "daily":
        return midnight(today), None
    if period_type == "weekly":
        return midnight(today - timedelta(days=today.weekday())), None
    if period_type == "monthly":
        return midnight(today.replace(day=1)), None
    if period_type == "custom":
        return period_start, period_end
    return None, None


# ---------------------------------------------------------------------------
# Per-user scorers over closed trades in the window
# ---------------------------------------------------------------------------


def _pnl_score(trades: list[TradeRecord], **_: Any) -> tuple[float, dict] | None:
    pnl = metrics.total_pnl(trades)
    rate = metrics.win_rate(trades) or 0.0
    return round(pnl, 2), {
        "total_pnl": round(pnl, 2),
        "trade_count": len(trades),
        "win_rate": round(rate, 2),
        "avg_trade": round(pnl / len(trades), 2),
    }


def _best_trade(trades: list[TradeRecord], **_: Any) -> tuple[float, dict] | None:
    winners = [t for t in trades if t.pnl > 0]  # type: ignore[operator]
    if not winners:
        return None
    best = max(winners, key=lambda t: t.pnl)  # type: ignore[arg-type,return-value]
    return best.pnl, {  # type: ignore[return-value]
        "best_trade_pnl": best.pnl,
        "best_trade_symbol": best.symbol,
        "best_trade_date": best.exit_time.isoformat(),  # type: ignore[union-attr]
    }


def _worst_trade(trades: list[TradeRecord], **_: Any) -> tuple[float, dict] | None:
    losers = [t for t in trades if t.pnl < 0]  # type: ignore[operator]
    if not losers:
        return None
    worst = min(losers, key=lambda t: t.pnl)  # type: ignore[arg-type,return-value]
    return worst.pnl, {  # type: ignore[return-value]
        "worst_trade_pnl": worst.pnl,
        "worst_trade_symbol": worst.symbol,
        "worst_trade_date": worst.exit_time.isoformat(),  # type: ignore[union-attr]
    }


def _consistency(trades: list[TradeRecord], min_trades: int = 10, **_: Any) -> tuple[float, dict] | None:
    result = metrics.consistency_score(trades, min_trades)
    if result is None:
        return None
    score, metadata = result
    return score, {**metadata, "consistency_score": score}


def _risk_adherence(trades: list[TradeRecord], **_: Any) -> tuple[float, dict] | None:
    sized = [t for t in trades if t.position_value is not None]
    if not sized:
        return None
    average = metrics.average_position_value(sized)
    within = metrics.risk_compliant_count(sized, average)
    pct = within / len(sized) * 100
    return round(pct, 2), {
        "total_trades": len(sized),
        "within_risk_trades": within,
        "avg_position_size": round(average or 0.0, 2),
        "risk_adherence_pct": round(pct, 2),
    }


TRADE_SCORERS: dict[str, Callable[..., tuple[float, dict] | None]] = {
    "total_pnl": _pnl_score,
    "weekly_pnl": _pnl_score,
    "monthly_pnl": _pnl_score,
    "best_trade": _best_trade,
    "worst_trade": _worst_trade,
    "consistency_score": _consistency,
    "risk_adherence": _risk_adherence,
}


async def _achievement_points(
    db: AsyncSession,
    excluded: set[uuid.UUID],
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[MemberScore]:
    """XP per user, summed from the ledger credits made within [start, end)."""
    query = (
        select(
            XPLedger.user_id,
            func.sum(XPLedger.amount).label("points"),
            UserGamificationStats.achievement_count,
            UserGamificationStats.challenge_count,
            UserGamificationStats.level,
        )
        .outerjoin(UserGamificationStats, UserGamificationStats.user_id == XPLedger.user_id)
        .group_by(
            XPLedger.user_id,
            UserGamificationStats.achievement_count,
            UserGamificationStats.challenge_count,
            UserGamificationStats.level,
        )
    )
    if start is not None:
        query = query.where(XPLedger.created_at >= start)
    if end is not None:
        query = query.where(XPLedger.created_at < end)
    result = await db.execute(query)
    scores = []
    for row in result:
        if row.user_id in excluded or not row.points or row.points <= 0:
            continue
        scores.append(MemberScore(
            user_id=row.user_id,
            score=float(row.points),
            metadata={
                "achievement_count": row.achievement_count or 0,
                "challenge_count": row.challenge_count or 0,
                "level": row.level or 1,
            },
        ))
    return scores


async def compute_scores(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    definition: LeaderboardDefinition,
    today: date,
    excluded: set[uuid.UUID],
    min_consistency_trades: int = 10,
) -> list[MemberScore]:
    """Score every eligible user for one leaderboard. ``excluded`` users are skipped."""
    start, end = period_bounds(definition.period_type, today, definition.period_start, definition.period_end)
    if definition.metric_key == "achievement_points":
        return await _achievement_points(db, excluded, start, end)

    scorer = TRADE_SCORERS.get(definition.metric_key)
    if scorer is None:
        raise ValueError(f"Unknown leaderboard metric: {definition.metric_key}")

    window = metrics.exited_between(await trades.get_all_trades(since=start, closed_only=True), start, end)

    by_user: dict[uuid.UUID, list[TradeRecord]] = defaultdict(list)
    for trade in window:
        if trade.user_id not in excluded:
            by_user[trade.user_id].append(trade)

    scores = []
    for user_id, user_trades in by_user.items():
        scored = scorer(user_trades, min_trades=min_consistency_trades)
        if scored is not None:
            scores.append(MemberScore(user_id=user_id, score=scored[0], metadata=scored[1]))
    return scores


def rank_scores(metric_key: str, scores: list[MemberScore]) -> list[RankedScore]:
    """Ranks 1..n with no gaps; ties are broken by user id so reruns are identical."""
    ascending = metric_key in ASCENDING_METRICS
    ordered = sorted(
        scores,
        key=lambda s: (s.score if ascending else -s.score, str(s.user_id)),
    )
    return [
        RankedScore(user_id=s.user_id, score=s.score, rank=position, metadata=s.metadata)
        for position, s in enumerate(ordered, start=1)
    ]
