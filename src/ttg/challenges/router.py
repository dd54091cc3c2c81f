"""Challenge API endpoints — 5 routes."""

from __future__ import annotations

import uuid
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.challenges.schemas import (
    ActiveChallengesResponse,
    ChallengeLeaderboardEntry,
    ChallengeLeaderboardResponse,
    ChallengeResponse,
    CreateChallengeRequest,
    JoinChallengeResponse,
    UserChallengeResponse,
    UserChallengesResponse,
)
from ttg.challenges.service import (
    ChallengeNotActiveError,
    ChallengeNotFoundError,
    ChallengeParticipationDisabledError,
    DuplicateChallengeError,
    InvalidChallengeError,
    create_challenge,
    get_active_challenges,
    get_challenge_leaderboard,
    get_user_challenges,
    join_challenge,
)
from ttg.config import get_settings
from ttg.db.models import ChallengeDefinition, UserChallenge
from ttg.dependencies import get_current_user_id, get_db, get_dispatcher, get_privacy_provider, require_admin
from ttg.gamification.criteria import InvalidCriteriaError
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.privacy.service import PrivacySettingsProvider

router = APIRouter(prefix="/api/v1/gamification", tags=["Challenges"])


def _challenge_response(
    challenge: ChallengeDefinition, participant_count: int = 0, avg_progress: float = 0.0
) -> ChallengeResponse:
    return ChallengeResponse(
        id=challenge.id,
        key=challenge.key,
        name=challenge.name,
        description=challenge.description,
        category=challenge.category,
        criteria=challenge.criteria,
        start_date=challenge.start_date,
        end_date=challenge.end_date,
        target_value=challenge.target_value,
        reward_points=challenge.reward_points,
        reward_achievement_key=challenge.reward_achievement.key if challenge.reward_achievement else None,
        is_community=challenge.is_community,
        participant_count=participant_count,
        avg_progress=avg_progress,
    )


def _participation_response(row: UserChallenge) -> UserChallengeResponse:
    return UserChallengeResponse(
        challenge=_challenge_response(row.challenge),
        status=row.status,
        progress=row.progress,
        started_at=row.started_at,
        completed_at=row.completed_at,
        metadata=row.challenge_metadata or {},
    )


@router.get("/challenges/active", response_model=ActiveChallengesResponse)
async def list_active_challenges(
    _user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Challenges currently open for joining."""
    rows = await get_active_challenges(db)
    return ActiveChallengesResponse(
        challenges=[
            _challenge_response(r["challenge"], r["participant_count"], r["avg_progress"]) for r in rows
        ],
    )


@router.get("/challenges", response_model=UserChallengesResponse)
async def list_user_challenges(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The caller's challenges, active first."""
    rows = await get_user_challenges(db, user_id)
    return UserChallengesResponse(challenges=[_participation_response(r) for r in rows])


@router.post("/challenges/{challenge_id}/join", response_model=JoinChallengeResponse)
async def join(
    challenge_id: int,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        row, created = await join_challenge(db, privacy, user_id, challenge_id, dispatcher=dispatcher)
    except ChallengeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ChallengeNotActiveError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ChallengeParticipationDisabledError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return JoinChallengeResponse(joined=created, participation=_participation_response(row))


@router.get("/challenges/{challenge_id}/leaderboard", response_model=ChallengeLeaderboardResponse)
async def challenge_leaderboard(
    challenge_id: int,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    privacy: PrivacySettingsProvider = Depends(get_privacy_provider),
):
    try:
        entries = await get_challenge_leaderboard(
            db, privacy, challenge_id, salt=get_settings().anonymous_name_salt, viewer_id=user_id
        )
    except ChallengeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ChallengeLeaderboardResponse(
        challenge_id=challenge_id,
        entries=[ChallengeLeaderboardEntry(**e) for e in entries],
    )


# ── Admin ──


@router.post("/challenges", response_model=ChallengeResponse, status_code=201)
async def create(
    body: CreateChallengeRequest,
    _admin_id: uuid.UUID = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a challenge definition (admin only)."""
    data = body.model_dump()
    for field_name in ("start_date", "end_date"):
        if data[field_name].tzinfo is None:
            data[field_name] = data[field_name].replace(tzinfo=timezone.utc)
    try:
        challenge = await create_challenge(db, data)
    except (InvalidCriteriaError, InvalidChallengeError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except DuplicateChallengeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _challenge_response(challenge)
