"""Achievement engine tests: evaluation, awards, levels and notifications."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from ttg.db.models import AchievementDefinition, UserAchievement, UserGamificationStats, XPLedger
from ttg.gamification.achievement_engine import AchievementEngine
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.trades.provider import SqlTradeHistoryProvider

NOW = datetime(2026, 3, 15, 18, 0, tzinfo=timezone.utc)


async def _add_definitions(db, *specs):
    for key, criteria, points in specs:
        db.add(AchievementDefinition(
            key=key,
            name=key.title(),
            description="",
            category="trading",
            difficulty="bronze",
            points=points,
            criteria=criteria,
        ))
    await db.commit()


async def _stats(db, user_id):
    result = await db.execute(
        select(UserGamificationStats)
        .where(UserGamificationStats.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestCheckAndAward:
    @pytest.mark.asyncio
    async def test_levels_follow_accumulated_xp(self, db_session, trades, dispatcher, fake_redis, make_trade):
        """80, then +50 crosses 100 (level 2), then +500 lands in level 4."""
        user_id = uuid.uuid4()
        await _add_definitions(
            db_session,
            ("one_trade", {"type": "trade_count", "count": 1}, 80),
            ("two_trades", {"type": "trade_count", "count": 2}, 50),
            ("three_trades", {"type": "trade_count", "count": 3}, 500),
        )
        engine = AchievementEngine(db_session, trades, dispatcher)

        await make_trade(user_id, NOW - timedelta(days=3))
        awards = await engine.check_and_award(user_id, NOW)
        assert [a.definition.key for a in awards] == ["one_trade"]
        assert (await _stats(db_session, user_id)).level == 1
        assert "level_up" not in fake_redis.event_types()

        await make_trade(user_id, NOW - timedelta(days=2))
        awards = await engine.check_and_award(user_id, NOW)
        assert [a.definition.key for a in awards] == ["two_trades"]
        stats = await _stats(db_session, user_id)
        assert stats.total_points == 130
        assert stats.level == 2
        assert fake_redis.event_types().count("level_up") == 1

        await make_trade(user_id, NOW - timedelta(days=1))
        awards = await engine.check_and_award(user_id, NOW)
        assert [a.definition.key for a in awards] == ["three_trades"]
        stats = await _stats(db_session, user_id)
        assert stats.total_points == 630
        assert stats.level == 4
        assert stats.achievement_count == 3

        level_ups = [p["data"] for _, p in fake_redis.published if p["type"] == "level_up"]
        assert [(e["old_level"], e["new_level"]) for e in level_ups] == [(1, 2), (2, 4)]

    @pytest.mark.asyncio
    async def test_events_go_to_user_channel(self, db_session, trades, dispatcher, fake_redis, make_trade):
        user_id = uuid.uuid4()
        await _add_definitions(db_session, ("one_trade", {"type": "trade_count", "count": 1}, 10))
        await make_trade(user_id, NOW - timedelta(hours=2))

        await AchievementEngine(db_session, trades, dispatcher).check_and_award(user_id, NOW)

        assert fake_redis.event_types() == ["xp_update", "achievement_earned"]
        channel, payload = fake_redis.published[1]
        assert channel == f"notifications:user:{user_id}"
        assert payload["data"]["achievement"]["key"] == "one_trade"
        xp = fake_redis.published[0][1]["data"]
        assert (xp["old_xp"], xp["new_xp"], xp["delta_xp"]) == (0, 10, 10)

    @pytest.mark.asyncio
    async def test_rerun_awards_nothing(self, db_session, trades, dispatcher, fake_redis, make_trade):
        user_id = uuid.uuid4()
        await _add_definitions(db_session, ("one_trade", {"type": "trade_count", "count": 1}, 10))
        await make_trade(user_id, NOW - timedelta(hours=2))
        engine = AchievementEngine(db_session, trades, dispatcher)

        assert len(await engine.check_and_award(user_id, NOW)) == 1
        published = len(fake_redis.published)
        assert await engine.check_and_award(user_id, NOW) == []
        assert len(fake_redis.published) == published

    @pytest.mark.asyncio
    async def test_invalid_rule_is_skipped(self, db_session, trades, dispatcher, make_trade):
        user_id = uuid.uuid4()
        await _add_definitions(
            db_session,
            ("broken", {"type": "no_such_rule"}, 10),
            ("one_trade", {"type": "trade_count", "count": 1}, 10),
        )
        await make_trade(user_id, NOW - timedelta(hours=2))

        awards = await AchievementEngine(db_session, trades, dispatcher).check_and_award(user_id, NOW)

        assert [a.definition.key for a in awards] == ["one_trade"]

    @pytest.mark.asyncio
    async def test_streak_updated(self, db_session, trades, dispatcher, make_trade):
        user_id = uuid.uuid4()
        for days_back in (1, 2, 3):
            await make_trade(user_id, NOW - timedelta(days=days_back))

        await AchievementEngine(db_session, trades, dispatcher).check_and_award(user_id, NOW)

        stats = await _stats(db_session, user_id)
        assert stats.current_streak_days == 3
        assert stats.longest_streak_days == 3

    @pytest.mark.asyncio
    async def test_works_without_redis(self, db_session, trades, make_trade):
        user_id = uuid.uuid4()
        await _add_definitions(db_session, ("one_trade", {"type": "trade_count", "count": 1}, 10))
        await make_trade(user_id, NOW - timedelta(hours=2))

        awards = await AchievementEngine(db_session, trades, NotificationDispatcher(None)).check_and_award(user_id, NOW)

        assert len(awards) == 1


class TestConcurrentEvaluation:
    @pytest.mark.asyncio
    async def test_parallel_evaluations_award_once(self, db_session, session_factory, dispatcher, make_trade):
        """Six evaluations racing on separate sessions: one award, one XP credit."""
        user_id = uuid.uuid4()
        await _add_definitions(db_session, ("first_trade", {"type": "trade_count", "count": 1}, 40))
        await make_trade(user_id, NOW - timedelta(days=1))

        async def evaluate() -> int:
            async with session_factory() as session:
                engine = AchievementEngine(session, SqlTradeHistoryProvider(session), dispatcher)
                return len(await engine.check_and_award(user_id, NOW))

        awarded = await asyncio.gather(*(evaluate() for _ in range(6)))

        assert sum(awarded) == 1
        earned = await db_session.execute(
            select(func.count(UserAchievement.id)).where(UserAchievement.user_id == user_id)
        )
        credits = await db_session.execute(
            select(func.count(XPLedger.id)).where(XPLedger.user_id == user_id)
        )
        assert earned.scalar() == 1
        assert credits.scalar() == 1
        assert (await _stats(db_session, user_id)).total_points == 40


class TestImmediateAchievements:
    @pytest.mark.asyncio
    async def test_registration_awarded_once(self, db_session, trades, dispatcher):
        user_id = uuid.uuid4()
        await _add_definitions(
            db_session,
            ("welcome", {"type": "registration"}, 10),
            ("explorer", {"type": "dashboard_visit"}, 10),
        )
        engine = AchievementEngine(db_session, trades, dispatcher)

        first = await engine.check_immediate_achievements(user_id, "registration", NOW)
        second = await engine.check_immediate_achievements(user_id, "registration", NOW)

        assert [a.definition.key for a in first] == ["welcome"]
        assert second == []

    @pytest.mark.asyncio
    async def test_unknown_trigger(self, db_session, trades, dispatcher):
        engine = AchievementEngine(db_session, trades, dispatcher)
        with pytest.raises(ValueError):
            await engine.check_immediate_achievements(uuid.uuid4(), "logout", NOW)
