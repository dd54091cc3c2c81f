"""Leaderboard and ranking API endpoints — 6 routes.

Leaderboards (3), Rankings (2), Admin compile (1).
"""

from __future__ import annotations

import uuid
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.competition.leaderboard_service import (
    DuplicateLeaderboardError,
    InvalidLeaderboardError,
    LeaderboardNotFoundError,
    RankingFilters,
    compile_all_leaderboards,
    create_leaderboard,
    get_all_leaderboards,
    get_leaderboard,
    get_ranking_filter_options,
    get_user_rankings,
)
from ttg.competition.schemas import (
    AllLeaderboardsResponse,
    CompileLeaderboardsResponse,
    CreateLeaderboardRequest,
    LeaderboardDefinitionResponse,
    LeaderboardResponse,
    RankingFilterOptionsResponse,
    UserRankingResponse,
    UserRankingsResponse,
)
from ttg.config import get_settings
from ttg.dependencies import get_current_user_id, get_db, get_privacy_provider, get_trade_provider, require_admin
from ttg.privacy.service import PrivacySettingsProvider
from ttg.trades.provider import TradeHistoryProvider

router = APIRouter(prefix="/api/v1/gamification", tags=["Competition"])


def _ranking_filters(
    strategy: str | None = Query(None),
    min_volume: float | None = Query(None, ge=0),
    max_volume: float | None = Query(None, ge=0),
    min_pnl: float | None = Query(None),
    max_pnl: float | None = Query(None),
) -> RankingFilters:
    return RankingFilters(
        strategy=strategy,
        min_volume=min_volume,
        max_volume=max_volume,
        min_pnl=min_pnl,
        max_pnl=max_pnl,
    )


# ── Leaderboard Endpoints (3) ──


@router.get("/leaderboards", response_model=AllLeaderboardsResponse)
async def list_leaderboards(
    limit: int = Query(10, ge=1, le=100),
    filters: RankingFilters = Depends(_ranking_filters),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    """Every active leaderboard, optionally narrowed to a filtered cohort."""
    boards = await get_all_leaderboards(db, privacy, viewer_id=user_id, filters=filters, limit=limit)
    return AllLeaderboardsResponse(
        leaderboards=[LeaderboardResponse(**b) for b in boards],
        filtered=not filters.is_empty,
        filter_criteria=filters.as_dict(),
    )


@router.get("/leaderboards/{key}", response_model=LeaderboardResponse)
async def get_one_leaderboard(
    key: str,
    limit: int = Query(100, ge=1, le=500),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    """Latest snapshot of one leaderboard, with the caller's row if outside the top."""
    try:
        board = await get_leaderboard(db, privacy, key, viewer_id=user_id, limit=limit)
    except LeaderboardNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return LeaderboardResponse(**board)


@router.post("/leaderboards", response_model=LeaderboardDefinitionResponse, status_code=201)
async def create_one_leaderboard(
    body: CreateLeaderboardRequest,
    _admin_id: uuid.UUID = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a leaderboard definition (admin only)."""
    data = body.model_dump()
    for field_name in ("period_start", "period_end"):
        if data[field_name] is not None and data[field_name].tzinfo is None:
            data[field_name] = data[field_name].replace(tzinfo=timezone.utc)
    try:
        definition = await create_leaderboard(
            db, data, default_min_participants=get_settings().leaderboard_default_min_participants
        )
    except InvalidLeaderboardError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except DuplicateLeaderboardError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return LeaderboardDefinitionResponse(
        key=definition.key,
        name=definition.name,
        description=definition.description,
        metric_key=definition.metric_key,
        period_type=definition.period_type,
        min_participants=definition.min_participants,
    )


# ── Ranking Endpoints (2) ──


@router.get("/rankings", response_model=UserRankingsResponse)
async def my_rankings(
    filters: RankingFilters = Depends(_ranking_filters),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    """The caller's position on every leaderboard they appear on."""
    rankings = await get_user_rankings(db, privacy, user_id, filters=filters)
    return UserRankingsResponse(rankings=[UserRankingResponse(**r) for r in rankings])


@router.get("/rankings/filters", response_model=RankingFilterOptionsResponse)
async def ranking_filter_options(
    _user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Strategies and volume/P&L ranges available for ranking filters."""
    return RankingFilterOptionsResponse(**await get_ranking_filter_options(db))


# ── Admin ──


@router.post("/leaderboards/update", response_model=CompileLeaderboardsResponse)
async def update_leaderboards(
    _admin_id: uuid.UUID = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    trades: TradeHistoryProvider = Depends(get_trade_provider),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    """Recompile every active leaderboard now (admin only)."""
    settings = get_settings()
    results = await compile_all_leaderboards(
        db,
        trades,
        privacy,
        salt=settings.anonymous_name_salt,
        max_entries=settings.leaderboard_max_entries,
        min_consistency_trades=settings.consistency_min_trades,
    )
    return CompileLeaderboardsResponse(
        results=results,
        compiled=sum(1 for count in results.values() if count is not None),
        failed=sum(1 for count in results.values() if count is None),
    )
