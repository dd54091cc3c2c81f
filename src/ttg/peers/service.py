"""Peer groups: profile traders, assign them to similar cohorts, compare within.

A trader's profile is derived from their closed trades in the last 90 days
and bucketed into trading style, account size tier and risk profile. Peer
groups declare the buckets they want in ``criteria``.
"""

from __future__ import annotations

import logging
import statistics
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.competition.scoring import period_bounds
from ttg.db.models import PeerGroup, UserAchievement, UserGamificationStats, UserPeerGroup, XPLedger
from ttg.gamification.criteria import percent_rank
from ttg.gamification.seed import PEER_GROUP_SEED_DATA, seed_peer_groups
from ttg.privacy.service import PrivacySettingsProvider
from ttg.trades import metrics
from ttg.trades.provider import TradeHistoryProvider, TradeRecord

logger = logging.getLogger(__name__)

ComparisonMetric = Literal["discipline_score", "consistency_score", "achievement_points"]
COMPARISON_METRICS = ("discipline_score", "consistency_score", "achievement_points")

# Rebalancing moves members out of groups above 120% of capacity into
# groups holding the same criteria keys that are below 80%.
OVERCROWDED_RATIO = 1.2
SPARE_CAPACITY_RATIO = 0.8
RECENT_ACHIEVEMENT_DAYS = 30


class PeerComparisonForbiddenError(ValueError):
    """The user's privacy settings do not allow this comparison."""


class PeerGroupNotFoundError(ValueError):
    pass


@dataclass
class TradingProfile:
    total_trades: int = 0
    avg_hold_minutes: float | None = None
    avg_position_size: float | None = None
    volatility: float | None = None
    win_rate: float | None = None
    symbols_traded: int = 0
    trading_days: int = 0
    features: dict[str, str] = field(default_factory=dict)


def trading_style(avg_hold_minutes: float) -> str:
    if avg_hold_minutes < 60:
        return "scalper"
    if avg_hold_minutes < 1440:
        return "day_trader"
    if avg_hold_minutes < 10080:
        return "swing_trader"
    return "position_trader"


def account_size_tier(avg_position_size: float) -> str:
    if avg_position_size < 1_000:
        return "micro"
    if avg_position_size < 10_000:
        return "small"
    if avg_position_size < 100_000:
        return "medium"
    return "large"


def risk_profile(volatility: float) -> str:
    if volatility < 50:
        return "conservative"
    if volatility < 200:
        return "moderate"
    return "aggressive"


def build_profile(trades: list[TradeRecord]) -> TradingProfile:
    """Profile from closed trades; buckets are only set when their input exists."""
    sample = metrics.closed(trades)
    profile = TradingProfile(total_trades=len(sample))
    if not sample:
        return profile

    holds = [t.hold_minutes for t in sample if t.hold_minutes is not None]
    profile.avg_hold_minutes = sum(holds) / len(holds) if holds else None
    profile.avg_position_size = metrics.average_position_value(sample)
    profile.volatility = metrics.pnl_stddev(sample)
    profile.win_rate = metrics.win_rate(sample)
    profile.symbols_traded = len({t.symbol for t in sample})
    profile.trading_days = len({t.entry_time.date() for t in sample})

    if profile.avg_hold_minutes is not None:
        profile.features["trading_style"] = trading_style(profile.avg_hold_minutes)
    if profile.avg_position_size is not None:
        profile.features["account_size_tier"] = account_size_tier(profile.avg_position_size)
    if profile.volatility is not None:
        profile.features["risk_profile"] = risk_profile(profile.volatility)
    return profile


async def get_trading_profile(
    trades: TradeHistoryProvider,
    user_id: uuid.UUID,
    now: datetime | None = None,
    window_days: int = 90,
) -> TradingProfile:
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=window_days)
    history = await trades.get_trades(user_id, since=since, closed_only=True)
    return build_profile(metrics.entered_between(history, since))


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


async def _member_counts(db: AsyncSession) -> dict[int, int]:
    result = await db.execute(
        select(UserPeerGroup.peer_group_id, func.count(UserPeerGroup.id))
        .where(UserPeerGroup.is_active.is_(True))
        .group_by(UserPeerGroup.peer_group_id)
    )
    return {group_id: int(count) for group_id, count in result.all()}


def rank_candidate_groups(
    features: dict[str, str],
    groups: list[PeerGroup],
    member_counts: dict[int, int],
) -> list[PeerGroup]:
    """Groups sharing at least one criterion with the profile, best first.

    Exact matches (every criterion satisfied) come first, then more matching
    criteria, then the emptier group.
    """
    scored = []
    for group in groups:
        criteria = group.criteria or {}
        matched = sum(1 for key, value in criteria.items() if features.get(key) == value)
        if matched == 0:
            continue
        exact = matched == len(criteria)
        scored.append(((not exact, -matched, member_counts.get(group.id, 0), group.id), group))
    scored.sort(key=lambda item: item[0])
    return [group for _, group in scored]


async def _join_groups(db: AsyncSession, user_id: uuid.UUID, group_ids: list[int], now: datetime) -> None:
    result = await db.execute(
        select(UserPeerGroup).where(
            UserPeerGroup.user_id == user_id,
            UserPeerGroup.peer_group_id.in_(group_ids),
        )
    )
    existing = {m.peer_group_id: m for m in result.unique().scalars()}
    for group_id in group_ids:
        membership = existing.get(group_id)
        if membership is None:
            db.add(UserPeerGroup(user_id=user_id, peer_group_id=group_id, is_active=True, joined_at=now))
        elif not membership.is_active:
            membership.is_active = True
            membership.joined_at = now
    await db.commit()


async def assign_user_to_peer_groups(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    privacy: PrivacySettingsProvider,
    user_id: uuid.UUID,
    now: datetime | None = None,
    min_trades: int = 20,
    max_assignments: int = 3,
    window_days: int = 90,
) -> list[PeerGroup]:
    """Place a user in up to ``max_assignments`` best-matching groups with spare room."""
    now = now or datetime.now(timezone.utc)
    settings = await privacy.get_settings(user_id)
    if not settings.share_with_peer_group:
        logger.debug("User %s opted out of peer groups", user_id)
        return []

    profile = await get_trading_profile(trades, user_id, now, window_days)
    if profile.total_trades < min_trades:
        logger.debug("User %s has %d trades, not enough for peer grouping", user_id, profile.total_trades)
        return []

    result = await db.execute(select(PeerGroup).where(PeerGroup.is_active.is_(True)))
    groups = list(result.scalars())
    counts = await _member_counts(db)
    current = set(
        (await db.execute(
            select(UserPeerGroup.peer_group_id).where(
                UserPeerGroup.user_id == user_id, UserPeerGroup.is_active.is_(True)
            )
        )).scalars()
    )
    open_groups = [g for g in groups if g.id in current or counts.get(g.id, 0) < g.max_members]
    # The user's own seats do not count against a group when ranking it.
    others = {gid: n - (1 if gid in current else 0) for gid, n in counts.items()}
    chosen = rank_candidate_groups(profile.features, open_groups, others)[:max_assignments]
    if not chosen:
        return []

    group_ids = [g.id for g in chosen]
    try:
        await _join_groups(db, user_id, group_ids, now)
    except IntegrityError:
        # A concurrent assignment inserted one of the rows; the second pass reactivates instead.
        await db.rollback()
        await _join_groups(db, user_id, group_ids, now)

    logger.info("Assigned %s to peer groups %s (%s)", user_id, group_ids, profile.features)
    result = await db.execute(
        select(PeerGroup).where(PeerGroup.id.in_(group_ids)).execution_options(populate_existing=True)
    )
    by_id = {g.id: g for g in result.scalars()}
    return [by_id[group_id] for group_id in group_ids]


async def cleanup_inactive_members(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    now: datetime | None = None,
    inactivity_days: int = 90,
) -> int:
    """Deactivate memberships of users with no trade entry in the last ``inactivity_days``."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=inactivity_days)
    last_trades = await trades.get_last_trade_times()

    members = set(
        (await db.execute(
            select(UserPeerGroup.user_id).where(UserPeerGroup.is_active.is_(True)).distinct()
        )).scalars()
    )
    inactive = [u for u in members if u not in last_trades or last_trades[u] < cutoff]
    if not inactive:
        return 0

    result = await db.execute(
        update(UserPeerGroup)
        .where(UserPeerGroup.user_id.in_(inactive), UserPeerGroup.is_active.is_(True))
        .values({UserPeerGroup.is_active: False})
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Deactivated %d peer group memberships of %d inactive users", result.rowcount, len(inactive))
    return result.rowcount or 0


async def rebalance_peer_groups(db: AsyncSession, now: datetime | None = None) -> int:
    """Move the newest members of overcrowded groups into similar groups with room.

    Returns the number of members moved.
    """
    now = now or datetime.now(timezone.utc)
    groups = {g.id: g for g in (await db.execute(select(PeerGroup))).scalars()}
    counts = await _member_counts(db)

    moved = 0
    for group in sorted(groups.values(), key=lambda g: g.id):
        members = counts.get(group.id, 0)
        if members <= group.max_members * OVERCROWDED_RATIO:
            continue

        keys = set((group.criteria or {}).keys())
        targets = sorted(
            (
                g for g in groups.values()
                if g.id != group.id
                and g.is_active
                and keys <= set((g.criteria or {}).keys())
                and counts.get(g.id, 0) < g.max_members * SPARE_CAPACITY_RATIO
            ),
            key=lambda g: (counts.get(g.id, 0), g.id),
        )
        if not targets:
            continue
        target = targets[0]
        to_move = (members - group.max_members) // 2

        newest = (await db.execute(
            select(UserPeerGroup)
            .where(UserPeerGroup.peer_group_id == group.id, UserPeerGroup.is_active.is_(True))
            .order_by(UserPeerGroup.joined_at.desc(), UserPeerGroup.id.desc())
            .limit(to_move)
        )).unique().scalars().all()
        user_ids = [m.user_id for m in newest]
        in_target = {
            m.user_id: m for m in (await db.execute(
                select(UserPeerGroup).where(
                    UserPeerGroup.peer_group_id == target.id,
                    UserPeerGroup.user_id.in_(user_ids),
                )
            )).unique().scalars()
        }
        for membership in newest:
            existing = in_target.get(membership.user_id)
            if existing is None:
                membership.peer_group_id = target.id
                membership.joined_at = now
            else:
                membership.is_active = False
                existing.is_active = True
                existing.joined_at = now
        await db.commit()

        counts[group.id] = members - len(newest)
        counts[target.id] = counts.get(target.id, 0) + len(newest)
        moved += len(newest)
        logger.info("Moved %d members from peer group %s to %s", len(newest), group.name, target.name)
    return moved


async def create_default_peer_groups(db: AsyncSession) -> int:
    """Ensure the standard cohorts exist. Safe to run repeatedly."""
    created = await seed_peer_groups(db)
    logger.debug("Default peer groups: %d defined, %d created", len(PEER_GROUP_SEED_DATA), created)
    return created


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_user_peer_groups(db: AsyncSession, user_id: uuid.UUID) -> list[dict]:
    result = await db.execute(
        select(UserPeerGroup)
        .where(UserPeerGroup.user_id == user_id, UserPeerGroup.is_active.is_(True))
        .order_by(UserPeerGroup.joined_at.desc())
    )
    memberships = list(result.unique().scalars())
    counts = await _member_counts(db)
    return [
        {
            "id": m.peer_group.id,
            "name": m.peer_group.name,
            "description": m.peer_group.description,
            "criteria": m.peer_group.criteria,
            "member_count": counts.get(m.peer_group_id, 0),
            "max_members": m.peer_group.max_members,
            "joined_at": m.joined_at,
        }
        for m in memberships
    ]


def _rank_of(value: float, population: list[float]) -> int:
    """RANK() OVER (ORDER BY value DESC)."""
    return 1 + sum(1 for other in population if other > value)


async def get_peer_group_stats(
    db: AsyncSession,
    peer_group_id: int,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> dict:
    """Points and achievement aggregates for a group, with the user's ranks."""
    now = now or datetime.now(timezone.utc)
    if await db.get(PeerGroup, peer_group_id) is None:
        raise PeerGroupNotFoundError(f"Peer group {peer_group_id} not found")

    result = await db.execute(
        select(
            UserPeerGroup.user_id,
            func.coalesce(UserGamificationStats.total_points, 0).label("points"),
            func.coalesce(UserGamificationStats.achievement_count, 0).label("achievements"),
        )
        .outerjoin(UserGamificationStats, UserGamificationStats.user_id == UserPeerGroup.user_id)
        .where(UserPeerGroup.peer_group_id == peer_group_id, UserPeerGroup.is_active.is_(True))
    )
    rows = result.all()
    member_ids = [row.user_id for row in rows]

    recent: dict[uuid.UUID, int] = defaultdict(int)
    if member_ids:
        recent_rows = await db.execute(
            select(UserAchievement.user_id, func.count(func.distinct(UserAchievement.achievement_id)))
            .where(
                UserAchievement.user_id.in_(member_ids),
                UserAchievement.earned_at >= now - timedelta(days=RECENT_ACHIEVEMENT_DAYS),
            )
            .group_by(UserAchievement.user_id)
        )
        recent.update({uid: int(count) for uid, count in recent_rows.all()})

    points = [float(r.points) for r in rows]
    achievements = [float(r.achievements) for r in rows]
    own = next((r for r in rows if r.user_id == user_id), None)
    return {
        "peer_group_id": peer_group_id,
        "total_members": len(rows),
        "avg_points": round(statistics.fmean(points), 2) if points else 0.0,
        "top_points": max(points, default=0.0),
        "avg_achievements": round(statistics.fmean(achievements), 2) if achievements else 0.0,
        "avg_recent_achievements": round(statistics.fmean(recent[u] for u in member_ids), 2) if member_ids else 0.0,
        "user_points": own.points if own else None,
        "user_achievements": own.achievements if own else None,
        "user_points_rank": _rank_of(own.points, points) if own else None,
        "user_achievement_rank": _rank_of(own.achievements, achievements) if own else None,
    }


async def _metric_values(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    metric: ComparisonMetric,
    user_ids: list[uuid.UUID],
    since: datetime | None,
) -> dict[uuid.UUID, float]:
    """Metric value per user; users with no value are omitted."""
    if metric == "achievement_points":
        result = await db.execute(
            select(XPLedger.user_id, func.sum(XPLedger.amount))
            .where(XPLedger.user_id.in_(user_ids))
            .group_by(XPLedger.user_id)
        )
        values = {uid: float(total or 0) for uid, total in result.all()}
        return {uid: values.get(uid, 0.0) for uid in user_ids}

    values: dict[uuid.UUID, float] = {}
    for uid in user_ids:
        history = metrics.closed(await trades.get_trades(uid, since=since, closed_only=True))
        if since is not None:
            history = metrics.exited_between(history, since)
        if metric == "discipline_score":
            daily = metrics.daily_discipline_scores(history)
            if daily:
                values[uid] = round(statistics.fmean(daily.values()), 2)
        else:
            scored = metrics.consistency_score(history)
            if scored is not None:
                values[uid] = scored[0]
    return values


async def get_peer_comparison(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    privacy: PrivacySettingsProvider,
    user_id: uuid.UUID,
    metric: ComparisonMetric,
    timeframe: str = "monthly",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Compare one metric against everyone sharing an active peer group with the user.

    Peers who do not share with their peer group are left out.
    """
    now = now or datetime.now(timezone.utc)
    settings = await privacy.get_settings(user_id)
    if not settings.share_with_peer_group or metric not in settings.visible_metrics:
        raise PeerComparisonForbiddenError("Privacy settings restrict this comparison")

    own_groups = select(UserPeerGroup.peer_group_id).where(
        UserPeerGroup.user_id == user_id, UserPeerGroup.is_active.is_(True)
    )
    result = await db.execute(
        select(UserPeerGroup.user_id)
        .where(UserPeerGroup.peer_group_id.in_(own_groups), UserPeerGroup.is_active.is_(True))
        .distinct()
    )
    members = set(result.scalars())
    base = {"metric": metric, "timeframe": timeframe}
    if user_id not in members:
        return {**base, "user_score": None, "peer_average": None, "percentile": None,
                "peer_count": 0, "top_performer": None, "message": "No peer group assigned"}

    peers = []
    for peer_id in sorted(members - {user_id}, key=str):
        if (await privacy.get_settings(peer_id)).share_with_peer_group:
            peers.append(peer_id)

    since, _ = period_bounds(timeframe, now.date())
    values = await _metric_values(db, trades, metric, [user_id, *peers], since)
    user_score = values.get(user_id)
    peer_scores = [values[p] for p in peers if p in values]

    percentile = None
    if user_score is not None and peer_scores:
        percentile = round(percent_rank(user_score, [user_score, *peer_scores]), 2)
    return {
        **base,
        "user_score": user_score,
        "peer_average": round(statistics.fmean(peer_scores), 2) if peer_scores else None,
        "percentile": percentile,
        "peer_count": len(peer_scores),
        "top_performer": max(peer_scores, default=None),
        "message": None,
    }
