"""Achievement engine: evaluate rules, award what is newly satisfied, notify."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import AchievementDefinition
from ttg.gamification.award_ledger import Award, AwardCandidate, award_batch, get_unearned_definitions
from ttg.gamification.criteria import (
    IMMEDIATE_TYPES,
    Criteria,
    EvaluationContext,
    InvalidCriteriaError,
    parse_criteria,
)
from ttg.gamification.streak_service import update_trading_streak
from ttg.gamification.xp_service import build_xp_update
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.trades.provider import TradeHistoryProvider

logger = logging.getLogger(__name__)


class AchievementEngine:
    """Evaluates achievement rules for one user at a time."""

    def __init__(
        self,
        db: AsyncSession,
        trades: TradeHistoryProvider,
        dispatcher: NotificationDispatcher,
        max_retries: int = 3,
    ) -> None:
        self.db = db
        self.trades = trades
        self.dispatcher = dispatcher
        self.max_retries = max_retries
        self._criteria_cache: dict[int, Criteria | None] = {}

    def _criteria_for(self, definition: AchievementDefinition) -> Criteria | None:
        """Parse a definition's rule once; unparseable rules are skipped."""
        if definition.id not in self._criteria_cache:
            try:
                self._criteria_cache[definition.id] = parse_criteria(definition.criteria)
            except InvalidCriteriaError:
                logger.warning("Skipping achievement %s with invalid criteria", definition.key, exc_info=True)
                self._criteria_cache[definition.id] = None
        return self._criteria_cache[definition.id]

    async def evaluate(
        self,
        user_id: uuid.UUID,
        definitions: list[AchievementDefinition],
        now: datetime,
    ) -> list[AwardCandidate]:
        """Evaluate each rule in isolation. A failing rule counts as not earned."""
        ctx = EvaluationContext(db=self.db, trades=self.trades, user_id=user_id, now=now)
        candidates: list[AwardCandidate] = []
        for definition in definitions:
            criteria = self._criteria_for(definition)
            if criteria is None:
                continue
            try:
                result = await criteria.evaluate(ctx)
            except Exception:
                logger.exception("Criteria evaluation failed for %s (user %s)", definition.key, user_id)
                continue
            if result is not None and result.earned:
                candidates.append(AwardCandidate(definition=definition, metadata=result.metadata))
        return candidates

    async def check_and_award(self, user_id: uuid.UUID, now: datetime | None = None) -> list[Award]:
        """Run every earnable rule, persist new awards in one transaction, then notify.

        Returns the awards made by this call (empty if another evaluation won).
        """
        now = now or datetime.now(timezone.utc)
        definitions = await get_unearned_definitions(self.db, user_id, now)
        candidates = await self.evaluate(user_id, definitions, now)
        result = await award_batch(self.db, user_id, candidates, now, self.max_retries)

        try:
            await update_trading_streak(self.db, self.trades, user_id, now)
        except Exception:
            logger.exception("Failed to update trading streak for %s", user_id)
            await self.db.rollback()

        await self._notify(user_id, result.awards, result.xp_before, result.xp_after)
        return result.awards

    async def check_immediate_achievements(
        self, user_id: uuid.UUID, trigger: str, now: datetime | None = None
    ) -> list[Award]:
        """Award registration/visit achievements whose trigger matches."""
        if trigger not in IMMEDIATE_TYPES:
            raise ValueError(f"Unknown immediate trigger: {trigger}")
        now = now or datetime.now(timezone.utc)
        definitions = [
            d for d in await get_unearned_definitions(self.db, user_id, now)
            if d.criteria.get("type") == trigger
        ]
        candidates = await self.evaluate(user_id, definitions, now)
        result = await award_batch(self.db, user_id, candidates, now, self.max_retries)
        await self._notify(user_id, result.awards, result.xp_before, result.xp_after)
        return result.awards

    async def _notify(self, user_id: uuid.UUID, awards: list[Award], xp_before: int, xp_after: int) -> None:
        """Emit events after commit. Delivery failures are swallowed by the dispatcher."""
        if not awards:
            return
        update = build_xp_update(xp_before, xp_after)
        await self.dispatcher.xp_update(user_id, update)
        if update["new_level"] > update["old_level"]:
            await self.dispatcher.level_up(user_id, update["old_level"], update["new_level"])
        for award in awards:
            await self.dispatcher.achievement_earned(user_id, award.definition)
