"""ORM models for the gamification schema.

Tables in the "Gamification", "Challenges", "Leaderboards" and "Peer Groups"
sections are owned by this service and created by Alembic migration 001.
Tables in the "Trading journal" section belong to the journal backend and
are mapped read-only: nothing in this package inserts or updates them.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ttg.db.base import Base, BigIntPK, JSONType, UTCDateTime, utcnow


# ---------------------------------------------------------------------------
# Trading journal (external, read-only)
# ---------------------------------------------------------------------------


class Trade(Base):
    """Maps to the journal's 'trades' table."""

    __tablename__ = "trades"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False, default="long")
    quantity: Mapped[float | None] = mapped_column(Float, nullable=True)
    entry_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    exit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    entry_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    exit_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    pnl: Mapped[float | None] = mapped_column(Float, nullable=True)
    strategy: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class RevengeTradingEvent(Base):
    """Revenge-trading detections written by the behavioral analytics job."""

    __tablename__ = "revenge_trading_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class BehavioralPattern(Base):
    """Behavioral patterns identified for a user."""

    __tablename__ = "behavioral_patterns"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    pattern_type: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class BehavioralAnalyticsAggregate(Base):
    """Community-wide daily behavioral averages."""

    __tablename__ = "behavioral_analytics_aggregate"

    day: Mapped[date] = mapped_column("date", Date, primary_key=True)
    discipline_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    risk_adherence: Mapped[float | None] = mapped_column(Float, nullable=True)
    win_rate: Mapped[float | None] = mapped_column(Float, nullable=True)


class GamificationPrivacy(Base):
    """Per-user visibility preferences. A missing row means defaults."""

    __tablename__ = "gamification_privacy"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    show_on_leaderboards: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    anonymous_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    share_achievements: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    participate_in_challenges: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    share_with_peer_group: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    visible_metrics: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)


# ---------------------------------------------------------------------------
# Gamification
# ---------------------------------------------------------------------------


class AchievementDefinition(Base):
    """A rule-driven achievement. ``criteria`` is validated on load."""

    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    difficulty: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze")
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_repeatable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_progress: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class UserAchievement(Base):
    """Earned (or in-progress) achievements.

    UNIQUE(user_id, achievement_id, award_seq) enforces at most one row per
    non-repeatable achievement (award_seq = 0) and one per UTC day for
    repeatable ones (award_seq = day ordinal).
    """

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "achievement_id", "award_seq",
            name="user_achievements_user_achievement_seq_key",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    achievement_id: Mapped[int] = mapped_column(Integer, ForeignKey("achievements.id"), nullable=False)
    award_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[int | None] = mapped_column(Integer, nullable=True)
    earned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    achievement_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    achievement: Mapped[AchievementDefinition] = relationship("AchievementDefinition", lazy="joined")


class XPLedger(Base):
    """Immutable XP transaction log with idempotency key."""

    __tablename__ = "xp_ledger"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class UserGamificationStats(Base):
    """Denormalized per-user summary, recomputed from the ledgers."""

    __tablename__ = "user_gamification_stats"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    achievement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    challenge_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_trade_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_achievement_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class ChallengeDefinition(Base):
    """Time-boxed goal active during [start_date, end_date)."""

    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="behavioral")
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    target_value: Mapped[float] = mapped_column(Float, nullable=False)
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reward_achievement_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("achievements.id"), nullable=True
    )
    is_community: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    reward_achievement: Mapped[AchievementDefinition | None] = relationship(
        "AchievementDefinition", lazy="joined"
    )


class UserChallenge(Base):
    """A user's participation in a challenge. Progress never decreases while active."""

    __tablename__ = "user_challenges"
    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="user_challenges_user_challenge_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(Integer, ForeignKey("challenges.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    challenge_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)

    challenge: Mapped[ChallengeDefinition] = relationship("ChallengeDefinition", lazy="joined")


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


class LeaderboardDefinition(Base):
    """A named ranking of one metric over one period."""

    __tablename__ = "leaderboards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metric_key: Mapped[str] = mapped_column(String(32), nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class LeaderboardEntry(Base):
    """One ranked row of a daily snapshot. A snapshot is replaced as a whole."""

    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint(
            "leaderboard_id", "snapshot_date", "user_id",
            name="leaderboard_entries_board_date_user_key",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    leaderboard_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("leaderboards.id", ondelete="CASCADE"), nullable=False
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    anonymous_name: Mapped[str] = mapped_column(String(64), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Peer Groups
# ---------------------------------------------------------------------------


class PeerGroup(Base):
    """Cohort of traders with similar profiles. ``criteria`` maps feature to bucket."""

    __tablename__ = "peer_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    min_members: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    max_members: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class UserPeerGroup(Base):
    """Membership of a user in a peer group."""

    __tablename__ = "user_peer_groups"
    __table_args__ = (
        UniqueConstraint("user_id", "peer_group_id", name="user_peer_groups_user_group_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    peer_group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("peer_groups.id", ondelete="CASCADE"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    peer_group: Mapped[PeerGroup] = relationship("PeerGroup", lazy="joined")
