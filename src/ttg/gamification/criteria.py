"""Achievement criteria as a closed set of typed rule variants.

Definitions store their rule as JSON (``{"type": "win_rate", "threshold":
60, "trades": 20}``). ``parse_criteria`` validates it once, when the
definition is loaded, into one of the models below; each model knows how to
evaluate itself against a user's trade history.

Evaluation is read-only. ``evaluate`` returns a ``CriteriaResult`` when the
rule is satisfied and ``None`` otherwise.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import ChallengeDefinition, UserChallenge, UserGamificationStats, UserPeerGroup
from ttg.trades import metrics
from ttg.trades.provider import TradeHistoryProvider, TradeRecord

# Starting balance assumed for portfolio-percentage rules.
NOMINAL_ACCOUNT_BALANCE = 10_000.0
# Per-trade P&L ceiling for the simple risk-adherence rule.
RISK_ADHERENCE_MAX_ABS_PNL = 1000.0
COOLING_PERIOD_MINUTES = 30
COOLING_WINDOW_DAYS = 30
COOLING_MIN_LOSSES = 10
WEEKLY_PNL_MIN_TRADES = 5
MARKET_OPEN = time(9, 30)


class InvalidCriteriaError(ValueError):
    """A stored rule descriptor does not match any known rule kind."""


class CriteriaResult(BaseModel):
    earned: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class EvaluationContext:
    """Everything a rule may read while evaluating one user."""

    db: AsyncSession
    trades: TradeHistoryProvider
    user_id: uuid.UUID
    now: datetime
    _trade_cache: list[TradeRecord] | None = field(default=None, repr=False)

    @property
    def today(self) -> date:
        return self.now.date()

    def days_ago(self, days: int) -> datetime:
        return self.now - timedelta(days=days)

    def week_start(self) -> datetime:
        monday = self.today - timedelta(days=self.today.weekday())
        return datetime.combine(monday, time.min, tzinfo=self.now.tzinfo)

    async def user_trades(self) -> list[TradeRecord]:
        """All of the user's trades, loaded once per evaluation pass."""
        if self._trade_cache is None:
            self._trade_cache = await self.trades.get_trades(self.user_id)
        return self._trade_cache

    async def closed_trades(self) -> list[TradeRecord]:
        return metrics.closed(await self.user_trades())

    async def recent_closed(self, limit: int) -> list[TradeRecord]:
        """The ``limit`` most recently exited trades."""
        trades = sorted(await self.closed_trades(), key=lambda t: t.exit_time, reverse=True)  # type: ignore[arg-type,return-value]
        return trades[:limit]


def notes_mention(trade: TradeRecord, keywords: tuple[str, ...]) -> bool:
    """Case-insensitive whole-word match against free-text notes."""
    if not trade.notes:
        return False
    text = trade.notes.lower()
    return any(re.search(rf"\b{re.escape(word)}\b", text) for word in keywords)


def _earned(**metadata: Any) -> CriteriaResult:
    return CriteriaResult(metadata=metadata)


class _Criterion(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Immediate / onboarding
# ---------------------------------------------------------------------------


class ImmediateCriterion(_Criterion):
    """Satisfied as soon as it is evaluated (registration, first visits)."""

    type: Literal["registration", "dashboard_visit", "achievement_page_visit"]

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        return _earned(trigger=self.type, earned_at=ctx.now.isoformat())


class TradeCountCriterion(_Criterion):
    type: Literal["trade_count"]
    count: int = 1

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        total = len(await ctx.user_trades())
        if total >= self.count:
            return _earned(trade_count=total, required_count=self.count)
        return None


class FirstProfitableTradeCriterion(_Criterion):
    type: Literal["first_profitable_trade"]

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        winners = [t for t in await ctx.closed_trades() if t.pnl > 0]  # type: ignore[operator]
        if winners:
            first = min(winners, key=lambda t: t.exit_time)  # type: ignore[arg-type,return-value]
            return _earned(first_profit=first.pnl, symbol=first.symbol)
        return None


# ---------------------------------------------------------------------------
# Legacy note heuristics (best effort, no structured backing field)
# ---------------------------------------------------------------------------


class _NotesHeuristic(_Criterion):
    keywords: tuple[str, ...] = ()
    winners: bool = True

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        matches = [
            t for t in await ctx.closed_trades()
            if ((t.pnl > 0) if self.winners else (t.pnl < 0)) and notes_mention(t, self.keywords)  # type: ignore[operator]
        ]
        if matches:
            return _earned(matching_trades=len(matches), heuristic="notes")
        return None


class FirstStopLossCriterion(_NotesHeuristic):
    type: Literal["first_stop_loss"]
    keywords: tuple[str, ...] = ("stop", "stopped", "stop loss", "stop-loss")
    winners: bool = False


class FirstTakeProfitCriterion(_NotesHeuristic):
    type: Literal["first_take_profit"]
    keywords: tuple[str, ...] = ("profit", "target", "take profit")


class TrendFollowingProfitCriterion(_NotesHeuristic):
    type: Literal["trend_following_profit"]
    keywords: tuple[str, ...] = ("trend", "moving average", "ma", "crossover")


class NewsBasedProfitCriterion(_NotesHeuristic):
    type: Literal["news_based_profit"]
    keywords: tuple[str, ...] = ("news", "earnings", "catalyst", "announcement")


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


class WeekendTradeCriterion(_Criterion):
    type: Literal["weekend_trade"]

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        weekend = [t for t in await ctx.user_trades() if t.entry_time.weekday() >= 5]
        if weekend:
            return _earned(weekend_trades=len(weekend))
        return None


class EarlyTradeCriterion(_Criterion):
    type: Literal["early_trade"]
    before_hour: int = 6

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        early = [t for t in await ctx.user_trades() if t.entry_time.hour < self.before_hour]
        if early:
            return _earned(early_trades=len(early), before_hour=self.before_hour)
        return None


class LateTradeCriterion(_Criterion):
    type: Literal["late_trade"]
    after_hour: int = 20

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        late = [t for t in await ctx.user_trades() if t.entry_time.hour >= self.after_hour]
        if late:
            return _earned(late_trades=len(late), after_hour=self.after_hour)
        return None


class EarlyMarketTradeCriterion(_Criterion):
    type: Literal["early_market_trade"]
    minutes_from_open: int = 5

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        open_minute = MARKET_OPEN.hour * 60 + MARKET_OPEN.minute
        hits = [
            t for t in await ctx.user_trades()
            if 0 <= (t.entry_time.hour * 60 + t.entry_time.minute) - open_minute <= self.minutes_from_open
        ]
        if hits:
            return _earned(minutes_from_open=self.minutes_from_open, early_trades=len(hits))
        return None


class FirstTradeDailyCriterion(_Criterion):
    type: Literal["first_trade_daily"]

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        if any(t.entry_time.date() == ctx.today for t in await ctx.user_trades()):
            return _earned(trade_date=ctx.today.isoformat())
        return None


class QuickFlipCriterion(_Criterion):
    type: Literal["quick_flip"]
    max_duration_minutes: int = 5

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        flips = [
            t for t in await ctx.closed_trades()
            if t.pnl > 0 and t.hold_minutes is not None and t.hold_minutes <= self.max_duration_minutes  # type: ignore[operator]
        ]
        if flips:
            return _earned(max_duration_minutes=self.max_duration_minutes, quick_flips=len(flips))
        return None


# ---------------------------------------------------------------------------
# Activity and streaks
# ---------------------------------------------------------------------------


class TradingStreakCriterion(_Criterion):
    type: Literal["trading_streak"]
    days: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        streak = metrics.longest_consecutive_days(t.entry_time.date() for t in await ctx.user_trades())
        if streak >= self.days:
            return _earned(streak_length=streak, required_days=self.days)
        return None


class DifferentSymbolsCriterion(_Criterion):
    type: Literal["different_symbols"]
    count: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        symbols = {t.symbol.upper() for t in await ctx.user_trades() if t.symbol}
        if len(symbols) >= self.count:
            return _earned(unique_symbols=len(symbols), required_count=self.count)
        return None


class GreenDayCriterion(_Criterion):
    type: Literal["green_day"]

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        today = [t for t in await ctx.closed_trades() if t.entry_time.date() == ctx.today]
        pnl = metrics.total_pnl(today)
        if today and pnl > 0:
            return _earned(daily_pnl=round(pnl, 2), trade_date=ctx.today.isoformat())
        return None


class ProfitableStreakCriterion(_Criterion):
    """Most recent run of profitable trading days within the last 30 trading days."""

    type: Literal["profitable_streak"]
    days: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        by_day: dict[date, float] = {}
        for trade in await ctx.closed_trades():
            day = trade.entry_time.date()
            by_day[day] = by_day.get(day, 0.0) + trade.pnl  # type: ignore[operator]

        streak = 0
        for day in sorted(by_day, reverse=True)[:30]:
            if by_day[day] <= 0:
                break
            streak += 1
        if streak >= self.days:
            return _earned(streak_length=streak, required_days=self.days)
        return None


class NoRevengeTradesCriterion(_Criterion):
    type: Literal["no_revenge_trades"]
    days: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        since = ctx.days_ago(self.days)
        if await ctx.trades.count_revenge_events(ctx.user_id, since) > 0:
            return None
        traded = metrics.entered_between(await ctx.user_trades(), since)
        if traded:
            return _earned(days_clean=self.days, trades_during_period=len(traded))
        return None


# ---------------------------------------------------------------------------
# Statistical behavior
# ---------------------------------------------------------------------------


class DisciplineScoreCriterion(_Criterion):
    """Sustained discipline: qualifying days must average >= threshold and
    cover at least 70% of the window."""

    type: Literal["discipline_score"]
    threshold: float = 80
    days: int = 14

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        window = metrics.entered_between(await ctx.closed_trades(), ctx.days_ago(self.days))
        scores = metrics.daily_discipline_scores(window)
        qualifying = [score for score in scores.values() if score >= self.threshold]
        if not qualifying:
            return None
        average = sum(qualifying) / len(qualifying)
        if average >= self.threshold and len(qualifying) >= self.days * 0.7:
            return _earned(average_discipline=round(average, 2), days_maintained=len(qualifying))
        return None


class RiskAdherenceCriterion(_Criterion):
    type: Literal["risk_adherence"]
    trades: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        recent = await ctx.recent_closed(self.trades)
        if len(recent) < self.trades:
            return None
        if all(abs(t.pnl) <= RISK_ADHERENCE_MAX_ABS_PNL for t in recent):  # type: ignore[arg-type]
            return _earned(consecutive_risk_adherent_trades=len(recent))
        return None


class CoolingPeriodUsageCriterion(_Criterion):
    """Share of recent losses followed by a pause of at least 30 minutes."""

    type: Literal["cooling_period_usage"]
    percentage: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        trades = await ctx.user_trades()
        losses = [
            t for t in metrics.exited_between(trades, ctx.days_ago(COOLING_WINDOW_DAYS))
            if t.pnl < 0  # type: ignore[operator]
        ]
        if len(losses) < COOLING_MIN_LOSSES:
            return None

        entries = sorted(t.entry_time for t in trades)
        cooled = 0
        for loss in losses:
            next_entry = next((e for e in entries if e > loss.exit_time), None)  # type: ignore[operator]
            if next_entry is None or next_entry - loss.exit_time >= timedelta(minutes=COOLING_PERIOD_MINUTES):  # type: ignore[operator]
                cooled += 1

        usage = cooled / len(losses) * 100
        if usage >= self.percentage:
            return _earned(usage_percentage=round(usage, 2), losses_with_cooling=cooled, total_losses=len(losses))
        return None


class WeeklyPnlCriterion(_Criterion):
    type: Literal["weekly_pnl"]
    positive: bool = True

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        week = metrics.exited_between(await ctx.user_trades(), ctx.week_start())
        pnl = metrics.total_pnl(week)
        if len(week) < WEEKLY_PNL_MIN_TRADES:
            return None
        if (pnl > 0) if self.positive else (pnl <= 0):
            return _earned(weekly_pnl=round(pnl, 2), trade_count=len(week))
        return None


class WeeklyPortfolioGainCriterion(_Criterion):
    type: Literal["weekly_portfolio_gain"]
    min_percentage: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        week = metrics.exited_between(await ctx.user_trades(), ctx.week_start())
        if not week:
            return None
        pnl = metrics.total_pnl(week)
        gain = pnl / NOMINAL_ACCOUNT_BALANCE * 100
        if gain >= self.min_percentage:
            return _earned(weekly_pnl=round(pnl, 2), percentage_gain=round(gain, 2))
        return None


class WinRateCriterion(_Criterion):
    type: Literal["win_rate"]
    threshold: float
    trades: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        recent = await ctx.recent_closed(self.trades)
        if len(recent) < self.trades:
            return None
        rate = metrics.win_rate(recent)
        if rate is not None and rate >= self.threshold:
            return _earned(win_rate=round(rate, 2), trades_analyzed=len(recent))
        return None


class RiskRewardCriterion(_Criterion):
    """Among the last N closed trades, N winners moved at least ``ratio`` percent."""

    type: Literal["risk_reward"]
    ratio: float
    trades: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        recent = await ctx.recent_closed(self.trades)
        good = [
            t for t in recent
            if t.pnl > 0 and (metrics.favorable_move_pct(t) or 0) >= self.ratio  # type: ignore[operator]
        ]
        if len(good) >= self.trades:
            return _earned(trades_with_good_rr=len(good), target_ratio=self.ratio)
        return None


class RiskRewardRatioCriterion(_Criterion):
    type: Literal["risk_reward_ratio"]
    min_ratio: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        moves = [
            metrics.favorable_move_pct(t) for t in await ctx.closed_trades()
            if t.pnl > 0  # type: ignore[operator]
        ]
        best = max((m for m in moves if m is not None), default=None)
        if best is not None and best >= self.min_ratio:
            return _earned(best_move_pct=round(best, 2), min_ratio=self.min_ratio)
        return None


# ---------------------------------------------------------------------------
# Size and volume
# ---------------------------------------------------------------------------


class SingleTradeProfitCriterion(_Criterion):
    type: Literal["single_trade_profit"]
    min_profit: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        best = max((t.pnl for t in await ctx.closed_trades()), default=None)
        if best is not None and best >= self.min_profit:
            return _earned(max_profit=best, min_profit=self.min_profit)
        return None


class PositionSizeCriterion(_Criterion):
    type: Literal["position_size"]
    min_size: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        largest = max(
            (t.position_value for t in await ctx.user_trades() if t.position_value is not None),
            default=None,
        )
        if largest is not None and largest >= self.min_size:
            return _earned(max_position_size=round(largest, 2), min_size=self.min_size)
        return None


class DailyVolumeCriterion(_Criterion):
    type: Literal["daily_volume"]
    shares: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        volume: dict[date, float] = {}
        for trade in await ctx.user_trades():
            if trade.quantity is not None:
                day = trade.entry_time.date()
                volume[day] = volume.get(day, 0.0) + abs(trade.quantity)
        if not volume:
            return None
        best_day = max(volume, key=volume.__getitem__)
        if volume[best_day] >= self.shares:
            return _earned(daily_volume=volume[best_day], target_shares=self.shares, trade_date=best_day.isoformat())
        return None


class DailySectorDiversityCriterion(_Criterion):
    """Distinct symbol prefixes traded today, a rough stand-in for sectors."""

    type: Literal["daily_sector_diversity"]
    min_sectors: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        prefixes = {
            t.symbol[:2].upper() for t in await ctx.user_trades()
            if t.symbol and t.entry_time.date() == ctx.today
        }
        if len(prefixes) >= self.min_sectors:
            return _earned(sectors_traded=len(prefixes), min_sectors=self.min_sectors, trade_date=ctx.today.isoformat())
        return None


# ---------------------------------------------------------------------------
# Gamification-derived
# ---------------------------------------------------------------------------


class PatternsIdentifiedCriterion(_Criterion):
    type: Literal["patterns_identified"]
    count: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        patterns = await ctx.trades.count_pattern_types(ctx.user_id)
        if patterns >= self.count:
            return _earned(patterns_identified=patterns)
        return None


class ChallengesCompletedCriterion(_Criterion):
    type: Literal["challenges_completed"]
    count: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        result = await ctx.db.execute(
            select(func.count(UserChallenge.id)).where(
                UserChallenge.user_id == ctx.user_id,
                UserChallenge.status == "completed",
            )
        )
        completed = int(result.scalar() or 0)
        if completed >= self.count:
            return _earned(challenges_completed=completed)
        return None


class CommunityChallengesCriterion(_Criterion):
    type: Literal["community_challenges"]
    count: int

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        result = await ctx.db.execute(
            select(func.count(UserChallenge.id))
            .join(ChallengeDefinition, ChallengeDefinition.id == UserChallenge.challenge_id)
            .where(
                UserChallenge.user_id == ctx.user_id,
                ChallengeDefinition.is_community.is_(True),
                UserChallenge.status.in_(("active", "completed")),
            )
        )
        participated = int(result.scalar() or 0)
        if participated >= self.count:
            return _earned(community_challenges=participated)
        return None


class PeerRankCriterion(_Criterion):
    """Percent rank by XP among everyone sharing an active peer group with the user."""

    type: Literal["peer_rank"]
    percentile: float

    async def evaluate(self, ctx: EvaluationContext) -> CriteriaResult | None:
        own_groups = select(UserPeerGroup.peer_group_id).where(
            UserPeerGroup.user_id == ctx.user_id,
            UserPeerGroup.is_active.is_(True),
        )
        result = await ctx.db.execute(
            select(UserPeerGroup.user_id, func.coalesce(UserGamificationStats.total_points, 0))
            .outerjoin(UserGamificationStats, UserGamificationStats.user_id == UserPeerGroup.user_id)
            .where(UserPeerGroup.peer_group_id.in_(own_groups), UserPeerGroup.is_active.is_(True))
            .distinct()
        )
        scores = {user_id: int(points) for user_id, points in result.all()}
        if ctx.user_id not in scores:
            return None

        rank = percent_rank(scores[ctx.user_id], list(scores.values()))
        if rank >= self.percentile:
            return _earned(percentile_rank=round(rank, 2), peers=len(scores))
        return None


def percent_rank(value: float, population: list[float]) -> float:
    """PERCENT_RANK semantics: share of others strictly below ``value``, 0-100."""
    if len(population) <= 1:
        return 0.0
    below = sum(1 for other in population if other < value)
    return below / (len(population) - 1) * 100


Criteria = Annotated[
    Union[
        ImmediateCriterion,
        TradeCountCriterion,
        FirstProfitableTradeCriterion,
        FirstStopLossCriterion,
        FirstTakeProfitCriterion,
        TrendFollowingProfitCriterion,
        NewsBasedProfitCriterion,
        WeekendTradeCriterion,
        EarlyTradeCriterion,
        LateTradeCriterion,
        EarlyMarketTradeCriterion,
        FirstTradeDailyCriterion,
        QuickFlipCriterion,
        TradingStreakCriterion,
        DifferentSymbolsCriterion,
        GreenDayCriterion,
        ProfitableStreakCriterion,
        NoRevengeTradesCriterion,
        DisciplineScoreCriterion,
        RiskAdherenceCriterion,
        CoolingPeriodUsageCriterion,
        WeeklyPnlCriterion,
        WeeklyPortfolioGainCriterion,
        WinRateCriterion,
        RiskRewardCriterion,
        RiskRewardRatioCriterion,
        SingleTradeProfitCriterion,
        PositionSizeCriterion,
        DailyVolumeCriterion,
        DailySectorDiversityCriterion,
        PatternsIdentifiedCriterion,
        ChallengesCompletedCriterion,
        CommunityChallengesCriterion,
        PeerRankCriterion,
    ],
    Field(discriminator="type"),
]

_criteria_adapter: TypeAdapter[Criteria] = TypeAdapter(Criteria)

IMMEDIATE_TYPES = frozenset({"registration", "dashboard_visit", "achievement_page_visit"})


def parse_criteria(raw: dict[str, Any]) -> Criteria:
    """Validate a stored rule descriptor into its typed variant."""
    try:
        return _criteria_adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidCriteriaError(f"Invalid achievement criteria {raw!r}: {exc}") from exc


async def evaluate(ctx: EvaluationContext, criteria: Criteria) -> CriteriaResult | None:
    return await criteria.evaluate(ctx)
