"""Pydantic response models for leaderboard and ranking endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


# ── Leaderboard ──


class LeaderboardEntryResponse(BaseModel):
    rank: int
    display_name: str
    score: float
    metadata: dict[str, Any] = {}
    is_current_user: bool = False
    recorded_at: datetime | None = None


class LeaderboardDefinitionResponse(BaseModel):
    key: str
    name: str
    description: str
    metric_key: str
    period_type: str
    min_participants: int


class LeaderboardResponse(BaseModel):
    leaderboard: LeaderboardDefinitionResponse
    entries: list[LeaderboardEntryResponse]
    viewer_rank: LeaderboardEntryResponse | None = None
    participant_count: int
    min_participants_met: bool
    snapshot_date: date | None = None
    last_updated: datetime | None = None
    filtered: bool = False


class AllLeaderboardsResponse(BaseModel):
    leaderboards: list[LeaderboardResponse]
    filtered: bool = False
    filter_criteria: dict[str, Any] = {}


class CompileLeaderboardsResponse(BaseModel):
    results: dict[str, int | None]
    compiled: int
    failed: int


class CreateLeaderboardRequest(BaseModel):
    key: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    metric_key: str
    period_type: Literal["daily", "weekly", "monthly", "all_time", "custom"]
    period_start: datetime | None = None
    period_end: datetime | None = None
    min_participants: int | None = Field(default=None, ge=0)


# ── Rankings ──


class UserRankingResponse(BaseModel):
    key: str
    name: str
    period_type: str
    rank: int
    score: float
    metadata: dict[str, Any] = {}
    total_participants: int
    filtered: bool = False
    filter_criteria: dict[str, Any] | None = None
    total_filtered_users: int | None = None


class UserRankingsResponse(BaseModel):
    rankings: list[UserRankingResponse]


class StrategyOption(BaseModel):
    value: str
    label: str


class Quartiles(BaseModel):
    q25: int
    median: int
    q75: int


class SuggestedRange(BaseModel):
    label: str
    min: float | None = None
    max: float | None = None


class RangeSummary(BaseModel):
    min: int
    max: int
    quartiles: Quartiles
    suggested_ranges: list[SuggestedRange]


class RankingFilterOptionsResponse(BaseModel):
    strategies: list[StrategyOption]
    volume_ranges: RangeSummary
    pnl_ranges: RangeSummary
