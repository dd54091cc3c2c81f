"""Pydantic response models for achievement and stats endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel


# --- Achievements ---


class AchievementResponse(BaseModel):
    id: int
    key: str
    name: str
    description: str
    category: str
    difficulty: str
    points: int
    is_repeatable: bool = False
    max_progress: int | None = None
    earned: bool = False
    times_earned: int = 0
    earned_at: datetime | None = None
    progress: int | None = None


class AllAchievementsResponse(BaseModel):
    achievements: list[AchievementResponse]
    total_available: int
    total_earned: int


class EarnedAchievementResponse(BaseModel):
    key: str
    name: str
    description: str
    category: str
    difficulty: str
    points: int
    earned_at: datetime
    metadata: dict = {}


class EarnedAchievementsResponse(BaseModel):
    earned: list[EarnedAchievementResponse]
    total_points: int


class CheckAchievementsRequest(BaseModel):
    trigger: Literal["registration", "dashboard_visit", "achievement_page_visit"] | None = None


class CheckAchievementsResponse(BaseModel):
    new_achievements: list[EarnedAchievementResponse]
    xp_gained: int


# --- Stats ---


class LevelProgressResponse(BaseModel):
    level: int
    current_level_min_xp: int
    next_level_min_xp: int
    xp_into_level: int
    xp_for_level: int
    progress_percentage: float


class StatsResponse(BaseModel):
    user_id: uuid.UUID
    total_points: int
    level: int
    achievement_count: int
    challenge_count: int
    current_streak_days: int
    longest_streak_days: int
    last_achievement_at: datetime | None = None
    level_progress: LevelProgressResponse
