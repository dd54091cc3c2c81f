"""Peer group API endpoints — 3 routes."""

from __future__ import annotations

import uuid
from dataclasses import asdict
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.config import get_settings
from ttg.dependencies import get_current_user_id, get_db, get_privacy_provider, get_trade_provider
from ttg.peers.schemas import (
    AssignPeerGroupsResponse,
    PeerComparisonResponse,
    PeerGroupResponse,
    PeerGroupsResponse,
    PeerGroupStatsResponse,
    TradingProfileResponse,
)
from ttg.peers.service import (
    ComparisonMetric,
    PeerComparisonForbiddenError,
    assign_user_to_peer_groups,
    get_peer_comparison,
    get_peer_group_stats,
    get_trading_profile,
    get_user_peer_groups,
)
from ttg.privacy.service import PrivacySettingsProvider
from ttg.trades.provider import TradeHistoryProvider

router = APIRouter(prefix="/api/v1/gamification", tags=["Peer Groups"])


async def _groups_with_stats(db: AsyncSession, user_id: uuid.UUID) -> list[PeerGroupResponse]:
    groups = []
    for group in await get_user_peer_groups(db, user_id):
        stats = await get_peer_group_stats(db, group["id"], user_id)
        groups.append(PeerGroupResponse(**group, stats=PeerGroupStatsResponse(**stats)))
    return groups


@router.get("/peer-groups", response_model=PeerGroupsResponse)
async def my_peer_groups(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The caller's active peer groups with group aggregates and the caller's ranks."""
    return PeerGroupsResponse(peer_groups=await _groups_with_stats(db, user_id))


@router.post("/peer-groups/assign", response_model=AssignPeerGroupsResponse)
async def assign_peer_groups(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    trades: TradeHistoryProvider = Depends(get_trade_provider),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    """Profile the caller and place them in their best-matching groups."""
    settings = get_settings()
    assigned = await assign_user_to_peer_groups(
        db,
        trades,
        privacy,
        user_id,
        min_trades=settings.peer_group_min_trades,
        max_assignments=settings.peer_group_max_assignments,
        window_days=settings.peer_profile_window_days,
    )
    profile = await get_trading_profile(trades, user_id, window_days=settings.peer_profile_window_days)
    assigned_ids = {group.id for group in assigned}
    groups = [g for g in await _groups_with_stats(db, user_id) if g.id in assigned_ids]
    return AssignPeerGroupsResponse(assigned=groups, profile=TradingProfileResponse(**asdict(profile)))


@router.get("/peer-comparison", response_model=PeerComparisonResponse)
async def peer_comparison(
    metric: ComparisonMetric = Query("discipline_score"),
    timeframe: Literal["weekly", "monthly", "all_time"] = Query("monthly"),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    trades: TradeHistoryProvider = Depends(get_trade_provider),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    """Compare one of the caller's metrics against their peers."""
    try:
        comparison = await get_peer_comparison(db, trades, privacy, user_id, metric, timeframe)
    except PeerComparisonForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return PeerComparisonResponse(**comparison)
