"""Gamification tables.

Creates achievements, user_achievements, xp_ledger, user_gamification_stats,
challenges, user_challenges, leaderboards, leaderboard_entries, peer_groups
and user_peer_groups. Journal tables (trades, behavioral analytics, privacy
settings) are owned by the journal backend and are not touched here.

Revision ID: 001_gamification_tables
Revises:
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_gamification_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Achievements ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id SERIAL PRIMARY KEY,
            key VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            category VARCHAR(32) NOT NULL,
            difficulty VARCHAR(16) NOT NULL DEFAULT 'bronze',
            points INTEGER NOT NULL DEFAULT 0,
            criteria JSONB NOT NULL DEFAULT '{}',
            is_repeatable BOOLEAN NOT NULL DEFAULT false,
            max_progress INTEGER,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_achievements_category
        ON achievements(category)
    """)

    # --- User Achievements ---
    # award_seq is 0 for one-time achievements and the UTC day ordinal for
    # repeatable ones, so the unique key caps repeatables at one per day.
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id BIGSERIAL PRIMARY KEY,
            user_id UUID NOT NULL,
            achievement_id INTEGER NOT NULL REFERENCES achievements(id),
            award_seq INTEGER NOT NULL DEFAULT 0,
            progress INTEGER,
            earned_at TIMESTAMPTZ,
            points INTEGER NOT NULL DEFAULT 0,
            metadata JSONB DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_achievements_user_achievement_seq_key
                UNIQUE(user_id, achievement_id, award_seq)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_achievements_user
        ON user_achievements(user_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_achievements_earned
        ON user_achievements(earned_at)
    """)

    # --- XP Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_ledger (
            id BIGSERIAL PRIMARY KEY,
            user_id UUID NOT NULL,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128),
            description VARCHAR(256),
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_ledger_user
        ON xp_ledger(user_id, created_at)
    """)

    # --- User Gamification Stats ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_gamification_stats (
            user_id UUID PRIMARY KEY,
            total_points INTEGER NOT NULL DEFAULT 0,
            achievement_count INTEGER NOT NULL DEFAULT 0,
            challenge_count INTEGER NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            current_streak_days INTEGER NOT NULL DEFAULT 0,
            longest_streak_days INTEGER NOT NULL DEFAULT 0,
            last_trade_date DATE,
            last_achievement_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenges (
            id SERIAL PRIMARY KEY,
            key VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            category VARCHAR(32) NOT NULL DEFAULT 'behavioral',
            criteria JSONB NOT NULL DEFAULT '{}',
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ NOT NULL,
            target_value DOUBLE PRECISION NOT NULL,
            reward_points INTEGER NOT NULL DEFAULT 0,
            reward_achievement_id INTEGER REFERENCES achievements(id),
            is_community BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CHECK (end_date > start_date),
            CHECK (target_value > 0)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_challenges_window
        ON challenges(start_date, end_date)
    """)

    # --- User Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_challenges (
            id BIGSERIAL PRIMARY KEY,
            user_id UUID NOT NULL,
            challenge_id INTEGER NOT NULL REFERENCES challenges(id),
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            progress DOUBLE PRECISION NOT NULL DEFAULT 0,
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMPTZ,
            metadata JSONB DEFAULT '{}',
            CONSTRAINT user_challenges_user_challenge_key UNIQUE(user_id, challenge_id),
            CHECK (status IN ('active', 'completed', 'expired'))
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_challenges_user
        ON user_challenges(user_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_challenges_active
        ON user_challenges(challenge_id) WHERE status = 'active'
    """)

    # --- Leaderboards ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboards (
            id SERIAL PRIMARY KEY,
            key VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            metric_key VARCHAR(32) NOT NULL,
            period_type VARCHAR(16) NOT NULL,
            period_start TIMESTAMPTZ,
            period_end TIMESTAMPTZ,
            min_participants INTEGER NOT NULL DEFAULT 10,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CHECK (period_type IN ('daily', 'weekly', 'monthly', 'all_time', 'custom'))
        )
    """)

    # --- Leaderboard Entries ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            id BIGSERIAL PRIMARY KEY,
            leaderboard_id INTEGER NOT NULL REFERENCES leaderboards(id) ON DELETE CASCADE,
            snapshot_date DATE NOT NULL,
            user_id UUID NOT NULL,
            anonymous_name VARCHAR(64) NOT NULL,
            score DOUBLE PRECISION NOT NULL,
            rank INTEGER NOT NULL,
            metadata JSONB DEFAULT '{}',
            recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT leaderboard_entries_board_date_user_key
                UNIQUE(leaderboard_id, snapshot_date, user_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_leaderboard_entries_board_rank
        ON leaderboard_entries(leaderboard_id, snapshot_date, rank)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_leaderboard_entries_user
        ON leaderboard_entries(user_id)
    """)

    # --- Peer Groups ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS peer_groups (
            id SERIAL PRIMARY KEY,
            name VARCHAR(128) UNIQUE NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            criteria JSONB NOT NULL DEFAULT '{}',
            min_members INTEGER NOT NULL DEFAULT 5,
            max_members INTEGER NOT NULL DEFAULT 50,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- User Peer Groups ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_peer_groups (
            id BIGSERIAL PRIMARY KEY,
            user_id UUID NOT NULL,
            peer_group_id INTEGER NOT NULL REFERENCES peer_groups(id) ON DELETE CASCADE,
            is_active BOOLEAN NOT NULL DEFAULT true,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_peer_groups_user_group_key UNIQUE(user_id, peer_group_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_peer_groups_group
        ON user_peer_groups(peer_group_id) WHERE is_active
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_peer_groups CASCADE")
    op.execute("DROP TABLE IF EXISTS peer_groups CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboard_entries CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboards CASCADE")
    op.execute("DROP TABLE IF EXISTS user_challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS user_gamification_stats CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS user_achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS achievements CASCADE")
