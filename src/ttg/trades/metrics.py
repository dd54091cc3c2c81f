"""Pure aggregations over trade records.

Every function here is side-effect free and guards its denominators: an
empty sample yields ``None`` (or 0 for counts), never a ZeroDivisionError.
"""

from __future__ import annotations

import math
import statistics
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime

from ttg.trades.provider import TradeRecord

# Minimum favorable move (1.5%) for a winning trade to count as disciplined.
DISCIPLINED_MOVE_PCT = 1.5


def closed(trades: Iterable[TradeRecord]) -> list[TradeRecord]:
    return [t for t in trades if t.is_closed]


def entered_between(
    trades: Iterable[TradeRecord], start: datetime | None, end: datetime | None = None
) -> list[TradeRecord]:
    return [
        t for t in trades
        if (start is None or t.entry_time >= start) and (end is None or t.entry_time <= end)
    ]


def exited_between(
    trades: Iterable[TradeRecord], start: datetime | None, end: datetime | None = None
) -> list[TradeRecord]:
    return [
        t for t in trades
        if t.is_closed
        and (start is None or t.exit_time >= start)  # type: ignore[operator]
        and (end is None or t.exit_time <= end)  # type: ignore[operator]
    ]


def total_pnl(trades: Iterable[TradeRecord]) -> float:
    return sum(t.pnl for t in trades if t.is_closed)  # type: ignore[misc]


def win_rate(trades: Iterable[TradeRecord]) -> float | None:
    """Percentage of closed trades with positive P&L."""
    sample = closed(trades)
    if not sample:
        return None
    wins = sum(1 for t in sample if t.pnl > 0)  # type: ignore[operator]
    return wins / len(sample) * 100


def favorable_move_pct(trade: TradeRecord) -> float | None:
    """Price move in the trade's direction, as a percentage of entry."""
    if trade.exit_price is None or not trade.entry_price:
        return None
    move = trade.exit_price - trade.entry_price
    if trade.side == "short":
        move = -move
    return move / trade.entry_price * 100


def is_disciplined_win(trade: TradeRecord) -> bool:
    if not trade.is_closed or trade.pnl <= 0:  # type: ignore[operator]
        return False
    move = favorable_move_pct(trade)
    return move is not None and move >= DISCIPLINED_MOVE_PCT


def daily_discipline_scores(trades: Iterable[TradeRecord]) -> dict[date, float]:
    """Discipline score per entry day over closed trades.

    A day's score is the share of its closed trades that were winners with
    at least a 1.5% favorable move.
    """
    by_day: dict[date, list[TradeRecord]] = defaultdict(list)
    for trade in closed(trades):
        by_day[trade.entry_time.date()].append(trade)
    return {
        day: sum(1 for t in day_trades if is_disciplined_win(t)) / len(day_trades) * 100
        for day, day_trades in by_day.items()
    }


def daily_pnl(trades: Iterable[TradeRecord]) -> dict[date, float]:
    """Closed P&L summed per exit day."""
    totals: dict[date, float] = defaultdict(float)
    for trade in closed(trades):
        totals[trade.exit_time.date()] += trade.pnl  # type: ignore[union-attr,operator]
    return dict(totals)


def current_profitable_run(pnl_by_day: dict[date, float]) -> int:
    """Profitable days counted back from the most recent day until a losing day."""
    run = 0
    for day in sorted(pnl_by_day, reverse=True):
        value = pnl_by_day[day]
        if value < 0:
            break
        if value > 0:
            run += 1
    return run


def longest_consecutive_days(days: Iterable[date]) -> int:
    ordered = sorted(set(days))
    longest = current = 0
    previous: date | None = None
    for day in ordered:
        if previous is not None and (day - previous).days == 1:
            current += 1
        else:
            current = 1
        longest = max(longest, current)
        previous = day
    return longest


def trailing_consecutive_days(days: Iterable[date], today: date) -> int:
    """Length of the run of consecutive days ending today or yesterday."""
    day_set = set(days)
    cursor = today if today in day_set else date.fromordinal(today.toordinal() - 1)
    run = 0
    while cursor in day_set:
        run += 1
        cursor = date.fromordinal(cursor.toordinal() - 1)
    return run


def average_position_value(trades: Iterable[TradeRecord]) -> float | None:
    values = [t.position_value for t in trades if t.position_value is not None]
    if not values:
        return None
    return sum(values) / len(values)


def risk_compliant_count(trades: Iterable[TradeRecord], avg_position: float | None) -> int:
    """Closed trades whose absolute P&L stays within 2% of the average position size."""
    if not avg_position:
        return 0
    limit = avg_position * 0.02
    return sum(
        1 for t in closed(trades)
        if t.position_value is not None and abs(t.pnl) <= limit  # type: ignore[arg-type]
    )


def pnl_stddev(trades: Iterable[TradeRecord]) -> float | None:
    """Sample standard deviation of closed P&L."""
    values = [t.pnl for t in closed(trades)]
    if len(values) < 2:
        return None
    return statistics.stdev(values)  # type: ignore[type-var]


def consistency_score(trades: Iterable[TradeRecord], min_trades: int = 10) -> tuple[float, dict] | None:
    """Risk-adjusted consistency composite.

    Returns ``None`` when fewer than ``min_trades`` qualifying trades exist.
    The score is 0 when P&L has no variance or the win rate is 0.
    """
    sample = [t for t in closed(trades) if t.position_value is not None]
    if len(sample) < min_trades:
        return None

    pnls = [t.pnl for t in sample]
    avg_pnl = sum(pnls) / len(pnls)  # type: ignore[arg-type]
    stddev = statistics.stdev(pnls)  # type: ignore[type-var]
    rate = win_rate(sample) or 0.0
    avg_volume = sum(t.position_value for t in sample) / len(sample)  # type: ignore[misc]

    if stddev == 0:
        score = 0.0
    else:
        volume_factor = 1 + math.log10(max(1.0, avg_volume / 1000))
        score = max(0.0, (avg_pnl / stddev) * (rate / 100) * volume_factor)

    metadata = {
        "total_trades": len(sample),
        "avg_pnl": round(avg_pnl, 2),
        "avg_volume": round(avg_volume, 2),
        "win_rate": round(rate, 2),
        "volatility": round(stddev, 2),
    }
    return round(score, 2), metadata
