"""Challenge progress rules.

Each challenge stores a JSON rule; ``parse_challenge_criteria`` turns it into
one of the typed variants below. ``progress(ctx)`` recomputes the user's
progress from source data over the challenge window, so running it twice
gives the same answer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ttg.gamification.criteria import InvalidCriteriaError
from ttg.trades import metrics
from ttg.trades.provider import CommunityMetric, TradeHistoryProvider


@dataclass
class ChallengeContext:
    trades: TradeHistoryProvider
    user_id: uuid.UUID
    window_start: datetime
    now: datetime


class _ChallengeCriterion(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    async def progress(self, ctx: ChallengeContext) -> float:
        raise NotImplementedError


class TradesWithoutRevengeCriterion(_ChallengeCriterion):
    """Trades entered in the window; any revenge event resets it to 0."""

    type: Literal["trades_without_revenge"]

    async def progress(self, ctx: ChallengeContext) -> float:
        if await ctx.trades.count_revenge_events(ctx.user_id, ctx.window_start) > 0:
            return 0
        trades = await ctx.trades.get_trades(ctx.user_id, since=ctx.window_start)
        return len(metrics.entered_between(trades, ctx.window_start))


class MaintainDisciplineCriterion(_ChallengeCriterion):
    """Days in the window whose discipline score reached the threshold."""

    type: Literal["maintain_discipline"]
    threshold: float = 80

    async def progress(self, ctx: ChallengeContext) -> float:
        trades = await ctx.trades.get_trades(ctx.user_id, since=ctx.window_start, closed_only=True)
        scores = metrics.daily_discipline_scores(metrics.entered_between(trades, ctx.window_start))
        return sum(1 for score in scores.values() if score >= self.threshold)


class RiskManagementCriterion(_ChallengeCriterion):
    """Closed trades in the window that lost or made at most 2% of the average position."""

    type: Literal["risk_management"]

    async def progress(self, ctx: ChallengeContext) -> float:
        history = await ctx.trades.get_trades(ctx.user_id)
        average = metrics.average_position_value(history)
        return metrics.risk_compliant_count(metrics.entered_between(history, ctx.window_start), average)


class ConsecutiveProfitsCriterion(_ChallengeCriterion):
    type: Literal["consecutive_profits"]

    async def progress(self, ctx: ChallengeContext) -> float:
        trades = await ctx.trades.get_trades(ctx.user_id, since=ctx.window_start, closed_only=True)
        return metrics.current_profitable_run(
            metrics.daily_pnl(metrics.exited_between(trades, ctx.window_start))
        )


class CommunityImprovementCriterion(_ChallengeCriterion):
    """Percent change of a community-wide metric against a baseline day, floored at 0."""

    type: Literal["community_improvement"]
    metric: CommunityMetric = "discipline_score"
    baseline_date: date | None = None

    async def progress(self, ctx: ChallengeContext) -> float:
        baseline_day = self.baseline_date or ctx.window_start.date()
        baseline = await ctx.trades.get_community_metric(self.metric, baseline_day)
        current = await ctx.trades.get_community_metric(self.metric, ctx.now.date())
        if not baseline or current is None:
            return 0
        return max(0.0, round((current - baseline) / baseline * 100, 2))


ChallengeCriteria = Annotated[
    Union[
        TradesWithoutRevengeCriterion,
        MaintainDisciplineCriterion,
        RiskManagementCriterion,
        ConsecutiveProfitsCriterion,
        CommunityImprovementCriterion,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[ChallengeCriteria] = TypeAdapter(ChallengeCriteria)


def parse_challenge_criteria(raw: dict[str, Any]) -> ChallengeCriteria:
    try:
        return _adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidCriteriaError(f"Invalid challenge criteria {raw!r}: {exc}") from exc
