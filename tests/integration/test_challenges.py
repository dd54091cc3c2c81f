"""Challenge lifecycle tests: joining, monotonic progress, completion rewards, expiry."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from ttg.challenges.service import (
    ChallengeNotActiveError,
    ChallengeNotFoundError,
    ChallengeParticipationDisabledError,
    DuplicateChallengeError,
    InvalidChallengeError,
    check_and_update_challenges,
    create_challenge,
    expire_challenges,
    get_active_challenges,
    get_challenge_leaderboard,
    get_user_challenges,
    join_challenge,
    update_progress,
)
from ttg.db.models import AchievementDefinition, UserAchievement, XPLedger
from ttg.gamification.criteria import InvalidCriteriaError

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


async def _challenge(db, key="no_revenge_week", target=3, reward_points=100, **overrides):
    data = {
        "key": key,
        "name": key.replace("_", " ").title(),
        "description": "",
        "category": "behavioral",
        "criteria": {"type": "trades_without_revenge"},
        "start_date": NOW - timedelta(days=5),
        "end_date": NOW + timedelta(days=5),
        "target_value": target,
        "reward_points": reward_points,
        **overrides,
    }
    return await create_challenge(db, data)


async def _xp_total(db, user_id):
    result = await db.execute(
        select(func.coalesce(func.sum(XPLedger.amount), 0)).where(XPLedger.user_id == user_id)
    )
    return result.scalar()


class TestCreateChallenge:
    @pytest.mark.asyncio
    async def test_rejects_bad_window(self, db_session):
        with pytest.raises(InvalidChallengeError):
            await _challenge(db_session, start_date=NOW, end_date=NOW - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_rejects_unknown_rule(self, db_session):
        with pytest.raises(InvalidCriteriaError):
            await _challenge(db_session, criteria={"type": "make_money_fast"})

    @pytest.mark.asyncio
    async def test_rejects_unknown_reward(self, db_session):
        with pytest.raises(InvalidChallengeError):
            await _challenge(db_session, reward_achievement_id=999)

    @pytest.mark.asyncio
    async def test_duplicate_key(self, db_session):
        await _challenge(db_session)
        with pytest.raises(DuplicateChallengeError):
            await _challenge(db_session)


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_is_idempotent(self, db_session, privacy, dispatcher, fake_redis):
        user_id = uuid.uuid4()
        challenge = await _challenge(db_session)

        row, created = await join_challenge(db_session, privacy, user_id, challenge.id, NOW, dispatcher)
        again, created_again = await join_challenge(db_session, privacy, user_id, challenge.id, NOW, dispatcher)

        assert created is True
        assert created_again is False
        assert again.id == row.id
        assert row.status == "active"
        assert row.progress == 0
        assert fake_redis.event_types() == ["challenge_joined"]

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, db_session, privacy):
        with pytest.raises(ChallengeNotFoundError):
            await join_challenge(db_session, privacy, uuid.uuid4(), 12345, NOW)

    @pytest.mark.asyncio
    async def test_outside_window(self, db_session, privacy):
        challenge = await _challenge(db_session)
        with pytest.raises(ChallengeNotActiveError):
            await join_challenge(db_session, privacy, uuid.uuid4(), challenge.id, NOW + timedelta(days=6))
        with pytest.raises(ChallengeNotActiveError):
            await join_challenge(db_session, privacy, uuid.uuid4(), challenge.id, NOW - timedelta(days=6))

    @pytest.mark.asyncio
    async def test_privacy_opt_out(self, db_session, privacy, set_privacy):
        user_id = uuid.uuid4()
        await set_privacy(user_id, participate_in_challenges=False)
        challenge = await _challenge(db_session)

        with pytest.raises(ChallengeParticipationDisabledError):
            await join_challenge(db_session, privacy, user_id, challenge.id, NOW)
        assert await get_user_challenges(db_session, user_id) == []


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, db_session, privacy):
        user_id = uuid.uuid4()
        challenge = await _challenge(db_session, target=5)
        await join_challenge(db_session, privacy, user_id, challenge.id, NOW)

        row = await update_progress(db_session, user_id, challenge.id, 3, NOW)
        assert row.progress == 3
        row = await update_progress(db_session, user_id, challenge.id, 1, NOW)
        assert row.progress == 3
        assert row.status == "active"

    @pytest.mark.asyncio
    async def test_exact_target_completes(self, db_session, privacy, dispatcher, fake_redis):
        user_id = uuid.uuid4()
        challenge = await _challenge(db_session, target=3, reward_points=100)
        await join_challenge(db_session, privacy, user_id, challenge.id, NOW)

        row = await update_progress(db_session, user_id, challenge.id, 3, NOW, dispatcher)

        assert row.status == "completed"
        assert row.progress == 3
        assert row.completed_at == NOW
        assert await _xp_total(db_session, user_id) == 100
        assert fake_redis.event_types() == ["challenge_completed", "xp_update", "level_up"]

    @pytest.mark.asyncio
    async def test_overshoot_is_clamped_and_reward_paid_once(self, db_session, privacy):
        user_id = uuid.uuid4()
        challenge = await _challenge(db_session, target=3, reward_points=40)
        await join_challenge(db_session, privacy, user_id, challenge.id, NOW)

        first = await update_progress(db_session, user_id, challenge.id, 7, NOW)
        second = await update_progress(db_session, user_id, challenge.id, 9, NOW + timedelta(hours=1))

        assert first.progress == 3
        assert second.status == "completed"
        assert second.progress == 3
        assert await _xp_total(db_session, user_id) == 40

    @pytest.mark.asyncio
    async def test_reward_achievement(self, db_session, privacy, dispatcher, fake_redis):
        user_id = uuid.uuid4()
        badge = AchievementDefinition(
            key="challenger_badge", name="Challenger", description="", category="social",
            difficulty="silver", points=25, criteria={"type": "challenges_completed", "count": 1},
        )
        db_session.add(badge)
        await db_session.commit()
        challenge = await _challenge(db_session, reward_achievement_id=badge.id)
        assert challenge.reward_achievement.key == "challenger_badge"
        await join_challenge(db_session, privacy, user_id, challenge.id, NOW)

        await update_progress(db_session, user_id, challenge.id, 3, NOW, dispatcher)

        earned = (await db_session.execute(
            select(UserAchievement).where(UserAchievement.user_id == user_id)
        )).unique().scalars().all()
        assert [e.achievement_id for e in earned] == [badge.id]
        assert await _xp_total(db_session, user_id) == 125
        assert "achievement_earned" in fake_redis.event_types()

    @pytest.mark.asyncio
    async def test_reading_after_end_expires(self, db_session, privacy):
        user_id = uuid.uuid4()
        challenge = await _challenge(db_session, target=5)
        await join_challenge(db_session, privacy, user_id, challenge.id, NOW)

        row = await update_progress(db_session, user_id, challenge.id, 2, NOW + timedelta(days=6))

        assert row.status == "expired"
        assert row.progress == 2
        assert await _xp_total(db_session, user_id) == 0

        # Terminal: later readings change nothing.
        row = await update_progress(db_session, user_id, challenge.id, 5, NOW + timedelta(days=7))
        assert row.status == "expired"
        assert row.progress == 2


class TestBatchPass:
    @pytest.mark.asyncio
    async def test_recomputes_from_trades(
        self, db_session, privacy, trades, dispatcher, make_trade, add_revenge_event
    ):
        clean, revenge = uuid.uuid4(), uuid.uuid4()
        challenge = await _challenge(db_session, target=3)
        for user_id in (clean, revenge):
            await join_challenge(db_session, privacy, user_id, challenge.id, NOW - timedelta(days=4))
            for hours_back in (70, 50, 30):
                await make_trade(user_id, NOW - timedelta(hours=hours_back))
        # Trades before the window do not count.
        await make_trade(clean, NOW - timedelta(days=10))
        await add_revenge_event(revenge, NOW - timedelta(days=1))

        counts = await check_and_update_challenges(db_session, trades, NOW, dispatcher)

        assert counts["checked"] == 2
        assert counts["completed"] == 1
        assert counts["failed"] == 0
        rows = {r.user_id: r for r in await get_user_challenges(db_session, clean)}
        assert rows[clean].status == "completed"
        revenge_rows = await get_user_challenges(db_session, revenge)
        assert revenge_rows[0].progress == 0
        assert revenge_rows[0].status == "active"

    @pytest.mark.asyncio
    async def test_sweeps_ended_challenges(self, db_session, privacy, trades):
        user_id = uuid.uuid4()
        challenge = await _challenge(db_session)
        await join_challenge(db_session, privacy, user_id, challenge.id, NOW)

        counts = await check_and_update_challenges(db_session, trades, NOW + timedelta(days=10))

        assert counts["expired"] == 1
        db_session.expire_all()
        assert (await get_user_challenges(db_session, user_id))[0].status == "expired"
        assert await expire_challenges(db_session, NOW + timedelta(days=11)) == 0


class TestQueries:
    @pytest.mark.asyncio
    async def test_active_challenges_with_participation(self, db_session, privacy):
        challenge = await _challenge(db_session)
        await _challenge(db_session, key="future", start_date=NOW + timedelta(days=1), end_date=NOW + timedelta(days=9))
        for _ in range(2):
            await join_challenge(db_session, privacy, uuid.uuid4(), challenge.id, NOW)

        active = await get_active_challenges(db_session, NOW)

        assert [a["challenge"].key for a in active] == ["no_revenge_week"]
        assert active[0]["participant_count"] == 2
        assert active[0]["avg_progress"] == 0.0

    @pytest.mark.asyncio
    async def test_leaderboard_hides_opted_out_users(self, db_session, privacy, set_privacy):
        leader, hidden, viewer = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        await set_privacy(hidden, show_on_leaderboards=False)
        challenge = await _challenge(db_session, target=10)
        for user_id, progress in ((leader, 6), (hidden, 9), (viewer, 2)):
            await join_challenge(db_session, privacy, user_id, challenge.id, NOW)
            await update_progress(db_session, user_id, challenge.id, progress, NOW)

        board = await get_challenge_leaderboard(db_session, privacy, challenge.id, salt="s", viewer_id=viewer)

        assert [e["progress"] for e in board] == [6, 2]
        assert [e["rank"] for e in board] == [1, 2]
        assert board[1]["is_current_user"] is True
