"""Achievement and stats API endpoints — 5 routes."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.dependencies import get_achievement_engine, get_current_user_id, get_db
from ttg.db.models import AchievementDefinition, UserAchievement
from ttg.gamification.achievement_engine import AchievementEngine
from ttg.gamification.award_ledger import get_available_achievements, get_user_achievements
from ttg.gamification.schemas import (
    AchievementResponse,
    AllAchievementsResponse,
    CheckAchievementsRequest,
    CheckAchievementsResponse,
    EarnedAchievementResponse,
    EarnedAchievementsResponse,
    StatsResponse,
)
from ttg.gamification.xp_service import get_user_stats, sync_stats

router = APIRouter(prefix="/api/v1/gamification", tags=["Gamification"])


def _earned_response(row: UserAchievement, definition: AchievementDefinition) -> EarnedAchievementResponse:
    return EarnedAchievementResponse(
        key=definition.key,
        name=definition.name,
        description=definition.description,
        category=definition.category,
        difficulty=definition.difficulty,
        points=row.points,
        earned_at=row.earned_at,
        metadata=row.achievement_metadata or {},
    )


# ── Achievements ──


@router.get("/achievements", response_model=AllAchievementsResponse)
async def list_achievements(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """All active achievements with the caller's earned state and progress."""
    achievements = await get_available_achievements(db, user_id)
    return AllAchievementsResponse(
        achievements=[AchievementResponse(**a) for a in achievements],
        total_available=len(achievements),
        total_earned=sum(1 for a in achievements if a["earned"]),
    )


@router.get("/achievements/earned", response_model=EarnedAchievementsResponse)
async def list_earned_achievements(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    rows = await get_user_achievements(db, user_id)
    return EarnedAchievementsResponse(
        earned=[_earned_response(row, row.achievement) for row in rows],
        total_points=sum(row.points for row in rows),
    )


@router.post("/achievements/check", response_model=CheckAchievementsResponse)
async def check_achievements(
    body: CheckAchievementsRequest | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    engine: AchievementEngine = Depends(get_achievement_engine),
):
    """Evaluate the caller's achievements now. With a trigger, only that onboarding rule."""
    if body is not None and body.trigger is not None:
        awards = await engine.check_immediate_achievements(user_id, body.trigger)
    else:
        awards = await engine.check_and_award(user_id)
    return CheckAchievementsResponse(
        new_achievements=[_earned_response(a.user_achievement, a.definition) for a in awards],
        xp_gained=sum(a.points for a in awards),
    )


# ── Stats ──


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return StatsResponse(**await get_user_stats(db, user_id))


@router.post("/stats/sync", response_model=StatsResponse)
async def sync_user_stats(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Rebuild the caller's cached stats from the XP and achievement ledgers."""
    await sync_stats(db, user_id)
    return StatsResponse(**await get_user_stats(db, user_id))
