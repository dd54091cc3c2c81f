"""Pydantic models for challenge endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ChallengeResponse(BaseModel):
    id: int
    key: str
    name: str
    description: str
    category: str
    criteria: dict[str, Any]
    start_date: datetime
    end_date: datetime
    target_value: float
    reward_points: int
    reward_achievement_key: str | None = None
    is_community: bool
    participant_count: int = 0
    avg_progress: float = 0.0


class ActiveChallengesResponse(BaseModel):
    challenges: list[ChallengeResponse]


class UserChallengeResponse(BaseModel):
    challenge: ChallengeResponse
    status: str
    progress: float
    started_at: datetime
    completed_at: datetime | None = None
    metadata: dict = {}


class UserChallengesResponse(BaseModel):
    challenges: list[UserChallengeResponse]


class JoinChallengeResponse(BaseModel):
    joined: bool
    participation: UserChallengeResponse


class ChallengeLeaderboardEntry(BaseModel):
    rank: int
    display_name: str
    progress: float
    status: str
    completed_at: datetime | None = None
    is_current_user: bool = False


class ChallengeLeaderboardResponse(BaseModel):
    challenge_id: int
    entries: list[ChallengeLeaderboardEntry]


class CreateChallengeRequest(BaseModel):
    key: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    category: str = "behavioral"
    criteria: dict[str, Any]
    start_date: datetime
    end_date: datetime
    target_value: float
    reward_points: int = Field(default=0, ge=0)
    reward_achievement_id: int | None = None
    is_community: bool = False
