"""Pydantic response models for peer group endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class PeerGroupStatsResponse(BaseModel):
    peer_group_id: int
    total_members: int
    avg_points: float
    top_points: float
    avg_achievements: float
    avg_recent_achievements: float
    user_points: float | None = None
    user_achievements: float | None = None
    user_points_rank: int | None = None
    user_achievement_rank: int | None = None


class PeerGroupResponse(BaseModel):
    id: int
    name: str
    description: str
    criteria: dict[str, Any]
    member_count: int
    max_members: int
    joined_at: datetime
    stats: PeerGroupStatsResponse | None = None


class PeerGroupsResponse(BaseModel):
    peer_groups: list[PeerGroupResponse]


class TradingProfileResponse(BaseModel):
    total_trades: int
    avg_hold_minutes: float | None = None
    avg_position_size: float | None = None
    volatility: float | None = None
    win_rate: float | None = None
    symbols_traded: int
    trading_days: int
    features: dict[str, str]


class AssignPeerGroupsResponse(BaseModel):
    assigned: list[PeerGroupResponse]
    profile: TradingProfileResponse


class PeerComparisonResponse(BaseModel):
    metric: str
    timeframe: str
    user_score: float | None = None
    peer_average: float | None = None
    percentile: float | None = None
    peer_count: int
    top_performer: float | None = None
    message: str | None = None
