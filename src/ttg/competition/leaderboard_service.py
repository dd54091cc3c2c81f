"""Leaderboard service: compile daily snapshots, read rankings, filtered views.

A snapshot is the full ranked set of entries for one leaderboard on one day.
It is only ever replaced as a whole, inside one transaction, so readers see
either the previous snapshot or the new one and never a mix.

Filtered views (strategy / volume / P&L) are computed over a cohort from
``select_filtered_cohort``; they re-derive a presentation rank and never
touch the persisted ranks.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.competition import scoring
from ttg.competition.anonymize import anonymous_name
from ttg.db.models import LeaderboardDefinition, LeaderboardEntry, Trade
from ttg.privacy.service import PrivacySettingsProvider
from ttg.trades.provider import TradeHistoryProvider

logger = logging.getLogger(__name__)

# Users need this many trades to count towards the filter range statistics.
FILTER_OPTIONS_MIN_TRADES = 5

SUGGESTED_VOLUME_RANGES = [
    {"label": "Small ($0 - $10K)", "min": 0, "max": 10_000},
    {"label": "Medium ($10K - $50K)", "min": 10_000, "max": 50_000},
    {"label": "Large ($50K - $250K)", "min": 50_000, "max": 250_000},
    {"label": "Extra Large ($250K+)", "min": 250_000, "max": None},
]

SUGGESTED_PNL_RANGES = [
    {"label": "Struggling (Below $0)", "min": None, "max": 0},
    {"label": "Break Even ($0 - $50)", "min": 0, "max": 50},
    {"label": "Profitable ($50 - $200)", "min": 50, "max": 200},
    {"label": "Highly Profitable ($200+)", "min": 200, "max": None},
]


class LeaderboardNotFoundError(ValueError):
    pass


class InvalidLeaderboardError(ValueError):
    pass


class DuplicateLeaderboardError(ValueError):
    pass


@dataclass
class RankingFilters:
    strategy: str | None = None
    min_volume: float | None = None
    max_volume: float | None = None
    min_pnl: float | None = None
    max_pnl: float | None = None

    @property
    def is_empty(self) -> bool:
        return (
            (self.strategy is None or self.strategy == "all")
            and self.min_volume is None
            and self.max_volume is None
            and self.min_pnl is None
            and self.max_pnl is None
        )

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


async def compile_leaderboard(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    privacy: PrivacySettingsProvider,
    definition: LeaderboardDefinition,
    today: date | None = None,
    salt: str = "",
    max_entries: int = 100,
    min_consistency_trades: int = 10,
) -> int:
    """Recompute one leaderboard and replace today's snapshot atomically.

    Returns the number of entries written. On any failure the transaction
    is rolled back, leaving the previous snapshot untouched, and the error
    propagates.
    """
    today = today or datetime.now(timezone.utc).date()
    leaderboard_id = definition.id
    metric_key = definition.metric_key

    hidden = await privacy.get_hidden_user_ids()
    scores = await scoring.compute_scores(db, trades, definition, today, hidden, min_consistency_trades)
    ranked = scoring.rank_scores(metric_key, scores)[:max_entries]
    recorded_at = datetime.now(timezone.utc)

    try:
        await db.execute(
            delete(LeaderboardEntry).where(
                LeaderboardEntry.leaderboard_id == leaderboard_id,
                LeaderboardEntry.snapshot_date == today,
            )
        )
        for entry in ranked:
            db.add(LeaderboardEntry(
                leaderboard_id=leaderboard_id,
                snapshot_date=today,
                user_id=entry.user_id,
                anonymous_name=anonymous_name(entry.user_id, salt),
                score=entry.score,
                rank=entry.rank,
                entry_metadata=entry.metadata,
                recorded_at=recorded_at,
            ))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Compiled leaderboard %s for %s: %d entries", definition.key, today, len(ranked))
    return len(ranked)


async def compile_all_leaderboards(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    privacy: PrivacySettingsProvider,
    today: date | None = None,
    salt: str = "",
    max_entries: int = 100,
    min_consistency_trades: int = 10,
) -> dict[str, int | None]:
    """Compile every active leaderboard. One failing board does not stop the rest.

    Returns {key: entries written, or None if that board failed}.
    """
    result = await db.execute(
        select(LeaderboardDefinition.id, LeaderboardDefinition.key)
        .where(LeaderboardDefinition.is_active.is_(True))
        .order_by(LeaderboardDefinition.id)
    )
    boards = result.all()

    results: dict[str, int | None] = {}
    for board_id, key in boards:
        try:
            definition = (
                await db.execute(select(LeaderboardDefinition).where(LeaderboardDefinition.id == board_id))
            ).scalar_one()
            results[key] = await compile_leaderboard(
                db, trades, privacy, definition, today, salt, max_entries, min_consistency_trades
            )
        except Exception:
            logger.exception("Failed to compile leaderboard %s", key)
            await db.rollback()
            results[key] = None
    return results


async def create_leaderboard(db: AsyncSession, data: dict[str, Any], default_min_participants: int = 10) -> LeaderboardDefinition:
    if data.get("metric_key") not in scoring.METRIC_KEYS:
        raise InvalidLeaderboardError(f"Unknown metric {data.get('metric_key')!r}")
    if data.get("period_type") not in scoring.PERIOD_TYPES:
        raise InvalidLeaderboardError(f"Unknown period type {data.get('period_type')!r}")
    if data["period_type"] == "custom":
        start, end = data.get("period_start"), data.get("period_end")
        if start is None or end is None or end <= start:
            raise InvalidLeaderboardError("Custom leaderboards need period_start < period_end")

    values = {**data}
    if values.get("min_participants") is None:
        values["min_participants"] = default_min_participants
    definition = LeaderboardDefinition(**values)
    db.add(definition)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateLeaderboardError(f"Leaderboard key {data['key']!r} already exists") from exc
    logger.info("Created leaderboard %s (%s, %s)", definition.key, definition.metric_key, definition.period_type)
    return definition


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_definition(db: AsyncSession, key: str) -> LeaderboardDefinition:
    result = await db.execute(
        select(LeaderboardDefinition).where(
            LeaderboardDefinition.key == key,
            LeaderboardDefinition.is_active.is_(True),
        )
    )
    definition = result.scalar_one_or_none()
    if definition is None:
        raise LeaderboardNotFoundError(f"Leaderboard {key!r} not found")
    return definition


async def latest_snapshot_date(db: AsyncSession, leaderboard_id: int | None = None) -> date | None:
    query = select(func.max(LeaderboardEntry.snapshot_date))
    if leaderboard_id is not None:
        query = query.where(LeaderboardEntry.leaderboard_id == leaderboard_id)
    return (await db.execute(query)).scalar()


async def _visible_snapshot(
    db: AsyncSession,
    privacy: PrivacySettingsProvider,
    leaderboard_id: int,
    snapshot_date: date | None,
) -> list[LeaderboardEntry]:
    """Entries of one snapshot in rank order, without users who opted out since."""
    if snapshot_date is None:
        return []
    result = await db.execute(
        select(LeaderboardEntry)
        .where(
            LeaderboardEntry.leaderboard_id == leaderboard_id,
            LeaderboardEntry.snapshot_date == snapshot_date,
        )
        .order_by(LeaderboardEntry.rank)
    )
    entries = list(result.scalars())
    hidden = await privacy.get_hidden_user_ids([e.user_id for e in entries])
    return [e for e in entries if e.user_id not in hidden]


def _entry_view(entry: LeaderboardEntry, viewer_id: uuid.UUID | None, rank: int | None = None) -> dict:
    return {
        "rank": rank if rank is not None else entry.rank,
        "display_name": entry.anonymous_name,
        "score": entry.score,
        "metadata": entry.entry_metadata or {},
        "is_current_user": entry.user_id == viewer_id,
        "recorded_at": entry.recorded_at,
    }


def _definition_view(definition: LeaderboardDefinition) -> dict:
    return {
        "key": definition.key,
        "name": definition.name,
        "description": definition.description,
        "metric_key": definition.metric_key,
        "period_type": definition.period_type,
        "min_participants": definition.min_participants,
    }


def _board_view(
    definition: LeaderboardDefinition,
    entries: list[LeaderboardEntry],
    viewer_id: uuid.UUID | None,
    limit: int,
    snapshot_date: date | None,
    presentation_ranks: bool = False,
) -> dict:
    views = [
        _entry_view(e, viewer_id, position if presentation_ranks else None)
        for position, e in enumerate(entries, start=1)
    ]
    top = views[:limit] if limit > 0 else views
    viewer_rank = None
    if viewer_id is not None and not any(v["is_current_user"] for v in top):
        viewer_rank = next((v for v in views if v["is_current_user"]), None)
    return {
        "leaderboard": _definition_view(definition),
        "entries": top,
        "viewer_rank": viewer_rank,
        "participant_count": len(views),
        "min_participants_met": len(views) >= definition.min_participants,
        "snapshot_date": snapshot_date,
        "last_updated": max((e.recorded_at for e in entries), default=None),
    }


async def get_leaderboard(
    db: AsyncSession,
    privacy: PrivacySettingsProvider,
    key: str,
    viewer_id: uuid.UUID | None = None,
    limit: int = 100,
) -> dict:
    """Latest snapshot of one leaderboard, plus the viewer's own row if outside the top."""
    definition = await get_definition(db, key)
    snapshot_date = await latest_snapshot_date(db, definition.id)
    entries = await _visible_snapshot(db, privacy, definition.id, snapshot_date)
    return _board_view(definition, entries, viewer_id, limit, snapshot_date)


async def get_all_leaderboards(
    db: AsyncSession,
    privacy: PrivacySettingsProvider,
    viewer_id: uuid.UUID | None = None,
    filters: RankingFilters | None = None,
    limit: int = 10,
) -> list[dict]:
    """Every active leaderboard. With filters, each is narrowed to the filtered cohort."""
    result = await db.execute(
        select(LeaderboardDefinition)
        .where(LeaderboardDefinition.is_active.is_(True))
        .order_by(LeaderboardDefinition.name)
    )
    definitions = list(result.scalars())

    filtered = filters is not None and not filters.is_empty
    cohort: set[uuid.UUID] | None = None
    if filtered:
        cohort = await select_filtered_cohort(db, filters)  # type: ignore[arg-type]

    boards = []
    for definition in definitions:
        snapshot_date = await latest_snapshot_date(db, definition.id)
        entries = await _visible_snapshot(db, privacy, definition.id, snapshot_date)
        if cohort is not None:
            entries = [e for e in entries if e.user_id in cohort]
        board = _board_view(definition, entries, viewer_id, limit, snapshot_date, presentation_ranks=filtered)
        board["filtered"] = filtered
        boards.append(board)
    return boards


async def get_user_rankings(
    db: AsyncSession,
    privacy: PrivacySettingsProvider,
    user_id: uuid.UUID,
    filters: RankingFilters | None = None,
) -> list[dict]:
    """The user's position on every active leaderboard's latest snapshot.

    With filters, the rank is re-derived among the filtered cohort, and boards
    are left out when the user is not part of that cohort.
    """
    cohort: set[uuid.UUID] | None = None
    if filters is not None and not filters.is_empty:
        cohort = await select_filtered_cohort(db, filters)

    result = await db.execute(
        select(LeaderboardDefinition)
        .where(LeaderboardDefinition.is_active.is_(True))
        .order_by(LeaderboardDefinition.name)
    )
    rankings = []
    for definition in result.scalars().all():
        snapshot_date = await latest_snapshot_date(db, definition.id)
        entries = await _visible_snapshot(db, privacy, definition.id, snapshot_date)
        own = next((e for e in entries if e.user_id == user_id), None)
        if own is None or (cohort is not None and user_id not in cohort):
            continue

        ranking = {
            "key": definition.key,
            "name": definition.name,
            "period_type": definition.period_type,
            "rank": own.rank,
            "score": own.score,
            "metadata": own.entry_metadata or {},
            "total_participants": len(entries),
            "filtered": False,
        }
        if cohort is not None:
            members = [e for e in entries if e.user_id in cohort]
            ranking["rank"] = 1 + sum(1 for e in members if e.rank < own.rank)
            ranking.update({
                "total_participants": len(members),
                "filtered": True,
                "filter_criteria": filters.as_dict(),  # type: ignore[union-attr]
                "total_filtered_users": len(cohort),
            })
        rankings.append(ranking)
    return rankings


# ---------------------------------------------------------------------------
# Filtered cohort
# ---------------------------------------------------------------------------


def _ranked_user_ids():
    """Users on the latest snapshot of any leaderboard.

    Each board contributes its own most recent snapshot, so a board whose
    last compile failed still counts with the day it was last written.
    """
    latest = (
        select(
            LeaderboardEntry.leaderboard_id,
            func.max(LeaderboardEntry.snapshot_date).label("snapshot_date"),
        )
        .group_by(LeaderboardEntry.leaderboard_id)
        .subquery()
    )
    return select(LeaderboardEntry.user_id).join(
        latest,
        and_(
            LeaderboardEntry.leaderboard_id == latest.c.leaderboard_id,
            LeaderboardEntry.snapshot_date == latest.c.snapshot_date,
        ),
    )


async def select_filtered_cohort(db: AsyncSession, filters: RankingFilters) -> set[uuid.UUID]:
    """Ranked users whose trades match the filters.

    Membership depends on trade data only: strategy narrows the trades
    considered, and the volume and P&L bounds apply to the per-user averages
    over those trades. Callers intersect the cohort with each board's own
    snapshot. This is the only place filter membership is decided.
    """
    ranked_users = _ranked_user_ids()
    avg_volume = func.avg(func.abs(Trade.quantity * Trade.entry_price))
    avg_pnl = func.avg(Trade.pnl)

    query = select(Trade.user_id).where(Trade.user_id.in_(ranked_users))
    if filters.strategy and filters.strategy != "all":
        query = query.where(Trade.strategy == filters.strategy)
    query = query.group_by(Trade.user_id).having(func.count(Trade.id) >= 1)
    if filters.min_volume is not None:
        query = query.having(avg_volume >= filters.min_volume)
    if filters.max_volume is not None:
        query = query.having(avg_volume <= filters.max_volume)
    if filters.min_pnl is not None:
        query = query.having(avg_pnl >= filters.min_pnl)
    if filters.max_pnl is not None:
        query = query.having(avg_pnl <= filters.max_pnl)

    result = await db.execute(query)
    return set(result.scalars())


def _percentile(values: list[float], fraction: float) -> float | None:
    """Linear-interpolated percentile (PERCENTILE_CONT)."""
    if not values:
        return None
    ordered = sorted(values)
    position = (len(ordered) - 1) * fraction
    lower = math.floor(position)
    upper = math.ceil(position)
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (position - lower)


def _range_summary(values: list[float], default_min: float, default_max: float) -> dict:
    def floor_or(value: float | None, default: float = 0) -> int:
        return math.floor(value) if value is not None else int(default)

    return {
        "min": floor_or(min(values, default=None), default_min),
        "max": math.ceil(max(values)) if values else int(default_max),
        "quartiles": {
            "q25": floor_or(_percentile(values, 0.25)),
            "median": floor_or(_percentile(values, 0.5)),
            "q75": floor_or(_percentile(values, 0.75)),
        },
    }


async def get_ranking_filter_options(db: AsyncSession) -> dict:
    """Strategies and volume/P&L ranges among currently ranked users."""
    ranked_users = _ranked_user_ids()
    result = await db.execute(
        select(Trade.strategy)
        .where(Trade.user_id.in_(ranked_users), Trade.strategy.isnot(None), Trade.strategy != "")
        .distinct()
        .order_by(Trade.strategy)
    )
    strategies = list(result.scalars())

    result = await db.execute(
        select(
            func.avg(func.abs(Trade.quantity * Trade.entry_price)).label("avg_volume"),
            func.avg(Trade.pnl).label("avg_pnl"),
        )
        .where(Trade.user_id.in_(ranked_users))
        .group_by(Trade.user_id)
        .having(func.count(Trade.id) >= FILTER_OPTIONS_MIN_TRADES)
    )
    rows = result.all()
    volumes = [float(r.avg_volume) for r in rows if r.avg_volume is not None]
    pnls = [float(r.avg_pnl) for r in rows if r.avg_pnl is not None]

    return {
        "strategies": [{"value": "all", "label": "All Strategies"}]
        + [{"value": s, "label": s} for s in strategies],
        "volume_ranges": {
            **_range_summary(volumes, 0, 100_000),
            "suggested_ranges": SUGGESTED_VOLUME_RANGES,
        },
        "pnl_ranges": {
            **_range_summary(pnls, -1000, 1000),
            "suggested_ranges": SUGGESTED_PNL_RANGES,
        },
    }
