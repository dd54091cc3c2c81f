"""Seed data: default achievements, leaderboards and peer groups."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import AchievementDefinition, LeaderboardDefinition, PeerGroup
from ttg.gamification.criteria import parse_criteria

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict[str, Any]] = [
    # Onboarding
    {
        "key": "welcome_aboard",
        "name": "Welcome Aboard",
        "description": "Create your trading journal account",
        "category": "onboarding",
        "difficulty": "bronze",
        "points": 10,
        "criteria": {"type": "registration"},
    },
    {
        "key": "dashboard_explorer",
        "name": "Dashboard Explorer",
        "description": "Open your dashboard for the first time",
        "category": "onboarding",
        "difficulty": "bronze",
        "points": 5,
        "criteria": {"type": "dashboard_visit"},
    },
    {
        "key": "trophy_hunter",
        "name": "Trophy Hunter",
        "description": "Visit the achievements page",
        "category": "onboarding",
        "difficulty": "bronze",
        "points": 5,
        "criteria": {"type": "achievement_page_visit"},
    },
    # Milestones
    {
        "key": "first_trade",
        "name": "First Trade",
        "description": "Log your first trade",
        "category": "milestone",
        "difficulty": "bronze",
        "points": 20,
        "criteria": {"type": "trade_count", "count": 1},
    },
    {
        "key": "century_trader",
        "name": "Century Trader",
        "description": "Log 100 trades",
        "category": "milestone",
        "difficulty": "silver",
        "points": 100,
        "criteria": {"type": "trade_count", "count": 100},
        "max_progress": 100,
    },
    {
        "key": "first_green",
        "name": "In the Green",
        "description": "Close your first profitable trade",
        "category": "milestone",
        "difficulty": "bronze",
        "points": 25,
        "criteria": {"type": "first_profitable_trade"},
    },
    {
        "key": "diversified",
        "name": "Diversified",
        "description": "Trade 10 different symbols",
        "category": "milestone",
        "difficulty": "silver",
        "points": 50,
        "criteria": {"type": "different_symbols", "count": 10},
    },
    {
        "key": "big_winner",
        "name": "Big Winner",
        "description": "Close a single trade with at least $1,000 profit",
        "category": "milestone",
        "difficulty": "gold",
        "points": 150,
        "criteria": {"type": "single_trade_profit", "min_profit": 1000},
    },
    {
        "key": "heavy_hitter",
        "name": "Heavy Hitter",
        "description": "Open a position worth $50,000 or more",
        "category": "milestone",
        "difficulty": "silver",
        "points": 50,
        "criteria": {"type": "position_size", "min_size": 50000},
    },
    {
        "key": "volume_day",
        "name": "Volume Day",
        "description": "Trade 10,000 shares in a single day",
        "category": "milestone",
        "difficulty": "silver",
        "points": 75,
        "criteria": {"type": "daily_volume", "shares": 10000},
    },
    # Timing
    {
        "key": "weekend_warrior",
        "name": "Weekend Warrior",
        "description": "Enter a trade on a weekend",
        "category": "timing",
        "difficulty": "bronze",
        "points": 15,
        "criteria": {"type": "weekend_trade"},
    },
    {
        "key": "early_bird",
        "name": "Early Bird",
        "description": "Enter a trade before 6 AM",
        "category": "timing",
        "difficulty": "bronze",
        "points": 15,
        "criteria": {"type": "early_trade", "before_hour": 6},
    },
    {
        "key": "night_owl",
        "name": "Night Owl",
        "description": "Enter a trade after 8 PM",
        "category": "timing",
        "difficulty": "bronze",
        "points": 15,
        "criteria": {"type": "late_trade", "after_hour": 20},
    },
    {
        "key": "opening_bell",
        "name": "Opening Bell",
        "description": "Enter a trade within 5 minutes of the market open",
        "category": "timing",
        "difficulty": "bronze",
        "points": 20,
        "criteria": {"type": "early_market_trade", "minutes_from_open": 5},
    },
    {
        "key": "quick_flip",
        "name": "Quick Flip",
        "description": "Close a winning trade within 5 minutes",
        "category": "timing",
        "difficulty": "silver",
        "points": 30,
        "criteria": {"type": "quick_flip", "max_duration_minutes": 5},
    },
    # Daily (repeatable)
    {
        "key": "daily_trader",
        "name": "Daily Trader",
        "description": "Log a trade today",
        "category": "daily",
        "difficulty": "bronze",
        "points": 5,
        "criteria": {"type": "first_trade_daily"},
        "is_repeatable": True,
    },
    {
        "key": "green_day",
        "name": "Green Day",
        "description": "Finish the day with positive P&L",
        "category": "daily",
        "difficulty": "bronze",
        "points": 10,
        "criteria": {"type": "green_day"},
        "is_repeatable": True,
    },
    {
        "key": "sector_hopper",
        "name": "Sector Hopper",
        "description": "Trade 3 different sectors in one day",
        "category": "daily",
        "difficulty": "bronze",
        "points": 10,
        "criteria": {"type": "daily_sector_diversity", "min_sectors": 3},
        "is_repeatable": True,
    },
    # Consistency
    {
        "key": "week_streak",
        "name": "Week Streak",
        "description": "Trade 5 days in a row",
        "category": "consistency",
        "difficulty": "silver",
        "points": 50,
        "criteria": {"type": "trading_streak", "days": 5},
    },
    {
        "key": "profit_streak",
        "name": "Hot Hand",
        "description": "Five profitable trading days in a row",
        "category": "consistency",
        "difficulty": "gold",
        "points": 100,
        "criteria": {"type": "profitable_streak", "days": 5},
    },
    {
        "key": "green_week",
        "name": "Green Week",
        "description": "Positive P&L this week with at least 5 trades",
        "category": "consistency",
        "difficulty": "silver",
        "points": 50,
        "criteria": {"type": "weekly_pnl", "positive": True},
    },
    {
        "key": "portfolio_grower",
        "name": "Portfolio Grower",
        "description": "Gain 5% in a single week",
        "category": "consistency",
        "difficulty": "gold",
        "points": 100,
        "criteria": {"type": "weekly_portfolio_gain", "min_percentage": 5},
    },
    # Behavioral
    {
        "key": "cool_head",
        "name": "Cool Head",
        "description": "No revenge trading for 30 days",
        "category": "behavioral",
        "difficulty": "gold",
        "points": 100,
        "criteria": {"type": "no_revenge_trades", "days": 30},
    },
    {
        "key": "disciplined_trader",
        "name": "Disciplined Trader",
        "description": "Keep an 80% discipline score for two weeks",
        "category": "behavioral",
        "difficulty": "gold",
        "points": 150,
        "criteria": {"type": "discipline_score", "threshold": 80, "days": 14},
    },
    {
        "key": "risk_manager",
        "name": "Risk Manager",
        "description": "Keep 20 consecutive trades within your risk limit",
        "category": "behavioral",
        "difficulty": "silver",
        "points": 75,
        "criteria": {"type": "risk_adherence", "trades": 20},
    },
    {
        "key": "cooling_off",
        "name": "Cooling Off",
        "description": "Take a 30 minute break after 80% of your losses",
        "category": "behavioral",
        "difficulty": "silver",
        "points": 75,
        "criteria": {"type": "cooling_period_usage", "percentage": 80},
    },
    {
        "key": "sharp_shooter",
        "name": "Sharp Shooter",
        "description": "Win 60% of your last 20 trades",
        "category": "behavioral",
        "difficulty": "gold",
        "points": 100,
        "criteria": {"type": "win_rate", "threshold": 60, "trades": 20},
    },
    {
        "key": "reward_seeker",
        "name": "Reward Seeker",
        "description": "Ten winners with a 2% favorable move among your last ten trades",
        "category": "behavioral",
        "difficulty": "platinum",
        "points": 200,
        "criteria": {"type": "risk_reward", "ratio": 2, "trades": 10},
    },
    {
        "key": "big_move",
        "name": "Big Move",
        "description": "Catch a 5% favorable move on a winning trade",
        "category": "behavioral",
        "difficulty": "silver",
        "points": 40,
        "criteria": {"type": "risk_reward_ratio", "min_ratio": 5},
    },
    {
        "key": "self_aware",
        "name": "Self Aware",
        "description": "Have 3 different behavioral patterns identified",
        "category": "behavioral",
        "difficulty": "silver",
        "points": 50,
        "criteria": {"type": "patterns_identified", "count": 3},
    },
    # Legacy note heuristics
    {
        "key": "stop_respecter",
        "name": "Stop Respecter",
        "description": "Take a loss at your stop",
        "category": "risk",
        "difficulty": "bronze",
        "points": 20,
        "criteria": {"type": "first_stop_loss"},
    },
    {
        "key": "target_hit",
        "name": "Target Hit",
        "description": "Take profit at your target",
        "category": "risk",
        "difficulty": "bronze",
        "points": 20,
        "criteria": {"type": "first_take_profit"},
    },
    {
        "key": "trend_rider",
        "name": "Trend Rider",
        "description": "Profit from a trend-following trade",
        "category": "strategy",
        "difficulty": "bronze",
        "points": 25,
        "criteria": {"type": "trend_following_profit"},
    },
    {
        "key": "news_hound",
        "name": "News Hound",
        "description": "Profit from a news-driven trade",
        "category": "strategy",
        "difficulty": "bronze",
        "points": 25,
        "criteria": {"type": "news_based_profit"},
    },
    # Community
    {
        "key": "challenger",
        "name": "Challenger",
        "description": "Complete 3 challenges",
        "category": "community",
        "difficulty": "silver",
        "points": 75,
        "criteria": {"type": "challenges_completed", "count": 3},
    },
    {
        "key": "team_player",
        "name": "Team Player",
        "description": "Take part in a community challenge",
        "category": "community",
        "difficulty": "bronze",
        "points": 25,
        "criteria": {"type": "community_challenges", "count": 1},
    },
    {
        "key": "top_of_the_pack",
        "name": "Top of the Pack",
        "description": "Reach the top 10% of your peer group",
        "category": "community",
        "difficulty": "platinum",
        "points": 200,
        "criteria": {"type": "peer_rank", "percentile": 90},
    },
]

LEADERBOARD_SEED_DATA: list[dict[str, Any]] = [
    {"key": "monthly_pnl", "name": "Monthly P&L", "description": "Total closed P&L this month",
     "metric_key": "monthly_pnl", "period_type": "monthly"},
    {"key": "weekly_pnl", "name": "Weekly P&L", "description": "Total closed P&L this week",
     "metric_key": "weekly_pnl", "period_type": "weekly"},
    {"key": "all_time_pnl", "name": "All-Time P&L", "description": "Total closed P&L",
     "metric_key": "total_pnl", "period_type": "all_time"},
    {"key": "best_trade_monthly", "name": "Best Trade of the Month", "description": "Largest winning trade",
     "metric_key": "best_trade", "period_type": "monthly"},
    {"key": "worst_trade_monthly", "name": "Smallest Loss of the Month", "description": "Most contained losing trade",
     "metric_key": "worst_trade", "period_type": "monthly"},
    {"key": "consistency_monthly", "name": "Most Consistent", "description": "Risk-adjusted consistency score",
     "metric_key": "consistency_score", "period_type": "monthly"},
    {"key": "risk_adherence_monthly", "name": "Risk Masters", "description": "Share of trades within risk limits",
     "metric_key": "risk_adherence", "period_type": "monthly"},
    {"key": "achievement_points", "name": "Achievement Hunters", "description": "Total achievement points",
     "metric_key": "achievement_points", "period_type": "all_time"},
]

PEER_GROUP_SEED_DATA: list[dict[str, Any]] = [
    {"name": "Day Traders - Small Accounts",
     "criteria": {"trading_style": "day_trader", "account_size_tier": "small"}, "min_members": 10, "max_members": 50},
    {"name": "Day Traders - Medium Accounts",
     "criteria": {"trading_style": "day_trader", "account_size_tier": "medium"}, "min_members": 10, "max_members": 50},
    {"name": "Swing Traders - Conservative",
     "criteria": {"trading_style": "swing_trader", "risk_profile": "conservative"}, "min_members": 10, "max_members": 50},
    {"name": "Swing Traders - Aggressive",
     "criteria": {"trading_style": "swing_trader", "risk_profile": "aggressive"}, "min_members": 10, "max_members": 50},
    {"name": "Scalpers", "criteria": {"trading_style": "scalper"}, "min_members": 10, "max_members": 30},
    {"name": "Position Traders", "criteria": {"trading_style": "position_trader"}, "min_members": 5, "max_members": 25},
    {"name": "High Volume Traders", "criteria": {"account_size_tier": "large"}, "min_members": 5, "max_members": 20},
    {"name": "Conservative Traders", "criteria": {"risk_profile": "conservative"}, "min_members": 15, "max_members": 60},
]


async def seed_achievements(db: AsyncSession) -> int:
    """Insert or refresh achievement definitions by key. Returns number seeded."""
    existing = {
        d.key: d for d in (await db.execute(select(AchievementDefinition))).scalars()
    }
    seeded = 0
    for data in ACHIEVEMENT_SEED_DATA:
        parse_criteria(data["criteria"])  # fail loudly on a bad seed
        definition = existing.get(data["key"])
        if definition is None:
            db.add(AchievementDefinition(**data))
        else:
            for field_name, value in data.items():
                setattr(definition, field_name, value)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded


async def seed_leaderboards(db: AsyncSession, min_participants: int = 10) -> int:
    """Create missing default leaderboards. Existing ones are left untouched."""
    existing = set((await db.execute(select(LeaderboardDefinition.key))).scalars())
    created = 0
    for data in LEADERBOARD_SEED_DATA:
        if data["key"] in existing:
            continue
        db.add(LeaderboardDefinition(min_participants=min_participants, **data))
        created += 1

    await db.commit()
    logger.info("Seeded %d leaderboards", created)
    return created


async def seed_peer_groups(db: AsyncSession) -> int:
    """Create missing default peer groups (by name)."""
    existing = set((await db.execute(select(PeerGroup.name))).scalars())
    created = 0
    for data in PEER_GROUP_SEED_DATA:
        if data["name"] in existing:
            continue
        db.add(PeerGroup(description=f"Traders matching {data['criteria']}", **data))
        created += 1

    await db.commit()
    logger.info("Seeded %d peer groups", created)
    return created


async def seed_all(db: AsyncSession) -> dict[str, int]:
    return {
        "achievements": await seed_achievements(db),
        "leaderboards": await seed_leaderboards(db),
        "peer_groups": await seed_peer_groups(db),
    }
