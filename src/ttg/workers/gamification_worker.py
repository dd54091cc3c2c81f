"""Gamification batch jobs — arq cron worker.

Schedule:
- Leaderboard compilation: every hour
- Achievement pass for recently active traders: every hour, offset by 30 minutes
- Challenge progress and expiry: every 15 minutes
- Peer group maintenance (cleanup, rebalance, assignment): daily at 03:00 UTC

Every job is idempotent, so a crashed or overlapping run is safe to repeat.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from arq import cron
from arq.connections import RedisSettings

from ttg.challenges.service import check_and_update_challenges
from ttg.competition.leaderboard_service import compile_all_leaderboards
from ttg.config import get_settings
from ttg.database import close_db, get_session_factory, init_db
from ttg.gamification.achievement_engine import AchievementEngine
from ttg.middleware.logging import setup_logging
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.peers.service import assign_user_to_peer_groups, cleanup_inactive_members, rebalance_peer_groups
from ttg.privacy.service import SqlPrivacySettingsProvider
from ttg.redis_client import close_redis, get_optional_redis, init_redis
from ttg.trades.provider import SqlTradeHistoryProvider

logger = logging.getLogger(__name__)

ACHIEVEMENT_PASS_LOOKBACK = timedelta(days=1)


def _dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(get_optional_redis(), get_settings().notification_channel_prefix)


async def compile_leaderboards(ctx: dict) -> dict[str, int | None]:
    """Rebuild today's snapshot of every active leaderboard."""
    settings = get_settings()
    async with get_session_factory()() as db:
        results = await compile_all_leaderboards(
            db,
            SqlTradeHistoryProvider(db),
            SqlPrivacySettingsProvider(db),
            salt=settings.anonymous_name_salt,
            max_entries=settings.leaderboard_max_entries,
            min_consistency_trades=settings.consistency_min_trades,
        )
    failed = [key for key, count in results.items() if count is None]
    logger.info("Leaderboards compiled: %d ok, %d failed %s", len(results) - len(failed), len(failed), failed)
    return results


async def run_achievement_pass(ctx: dict) -> int:
    """Evaluate achievements for everyone who traded since the last pass."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - ACHIEVEMENT_PASS_LOOKBACK
    awarded = 0
    async with get_session_factory()() as db:
        trades = SqlTradeHistoryProvider(db)
        last_trades = await trades.get_last_trade_times()
        engine = AchievementEngine(db, trades, _dispatcher(), max_retries=settings.award_max_retries)
        for user_id, last_entry in sorted(last_trades.items(), key=lambda item: str(item[0])):
            if last_entry < cutoff:
                continue
            try:
                awarded += len(await engine.check_and_award(user_id))
            except Exception:
                logger.exception("Achievement pass failed for %s", user_id)
                await db.rollback()
    logger.info("Achievement pass: %d awards", awarded)
    return awarded


async def run_challenge_pass(ctx: dict) -> dict[str, int]:
    """Recompute progress of every active participation and expire ended ones."""
    async with get_session_factory()() as db:
        return await check_and_update_challenges(db, SqlTradeHistoryProvider(db), dispatcher=_dispatcher())


async def maintain_peer_groups(ctx: dict) -> dict[str, int]:
    """Drop inactive members, spread overcrowded groups, then place active traders."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    counts = {"removed": 0, "moved": 0, "assigned": 0, "failed": 0}
    async with get_session_factory()() as db:
        trades = SqlTradeHistoryProvider(db)
        privacy = SqlPrivacySettingsProvider(db)
        try:
            counts["removed"] = await cleanup_inactive_members(db, trades, now, settings.peer_inactivity_days)
        except Exception:
            logger.exception("Peer group cleanup failed")
            await db.rollback()
            counts["failed"] += 1
        try:
            counts["moved"] = await rebalance_peer_groups(db, now)
        except Exception:
            logger.exception("Peer group rebalance failed")
            await db.rollback()
            counts["failed"] += 1

        window_start = now - timedelta(days=settings.peer_profile_window_days)
        last_trades = await trades.get_last_trade_times()
        for user_id, last_entry in sorted(last_trades.items(), key=lambda item: str(item[0])):
            if last_entry < window_start:
                continue
            try:
                groups = await assign_user_to_peer_groups(
                    db,
                    trades,
                    privacy,
                    user_id,
                    now,
                    min_trades=settings.peer_group_min_trades,
                    max_assignments=settings.peer_group_max_assignments,
                    window_days=settings.peer_profile_window_days,
                )
            except Exception:
                logger.exception("Peer group assignment failed for %s", user_id)
                await db.rollback()
                counts["failed"] += 1
                continue
            if groups:
                counts["assigned"] += 1
    logger.info("Peer group maintenance: %s", counts)
    return counts


async def startup(ctx: dict) -> None:
    """Initialize DB and notification Redis on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    logger.info("Gamification worker started")


async def shutdown(ctx: dict) -> None:
    """Clean up on worker shutdown."""
    await close_redis()
    await close_db()
    logger.info("Gamification worker shut down")


class WorkerSettings:
    """arq worker settings for the gamification batch jobs."""

    functions = [compile_leaderboards, run_achievement_pass, run_challenge_pass, maintain_peer_groups]
    cron_jobs = [
        cron(compile_leaderboards, minute={0}),
        cron(run_achievement_pass, minute={30}),
        cron(run_challenge_pass, minute={0, 15, 30, 45}),
        cron(maintain_peer_groups, hour={3}, minute={0}),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = get_settings().worker_max_jobs
    job_timeout = get_settings().worker_job_timeout_seconds
