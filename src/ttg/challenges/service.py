"""Challenge enrollment, progress tracking and completion rewards.

Lifecycle of a UserChallenge: ``active`` -> ``completed`` (progress reached
the target) or ``active`` -> ``expired`` (window ended first). Both are
terminal. Every transition is a compare-and-set on ``status = 'active'``,
so the completion reward is paid by exactly one writer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.challenges.criteria import ChallengeContext, parse_challenge_criteria
from ttg.competition.anonymize import anonymous_name
from ttg.db.models import AchievementDefinition, ChallengeDefinition, UserChallenge
from ttg.gamification.award_ledger import Award, award_seq, owned_award_keys, stage_award
from ttg.gamification.xp_service import add_xp_entry, build_xp_update, get_total_xp, recompute_stats
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.privacy.service import PrivacySettingsProvider
from ttg.trades.provider import TradeHistoryProvider

logger = logging.getLogger(__name__)

CHALLENGE_LEADERBOARD_LIMIT = 100


class ChallengeNotFoundError(ValueError):
    pass


class ChallengeNotActiveError(ValueError):
    """The challenge window has not started or has already ended."""


class ChallengeParticipationDisabledError(ValueError):
    """The user opted out of challenges in their privacy settings."""


class InvalidChallengeError(ValueError):
    pass


class DuplicateChallengeError(ValueError):
    pass


@dataclass
class ChallengeCompletion:
    xp_before: int
    xp_after: int
    award: Award | None = None


def challenge_xp_key(challenge_id: int, user_id: uuid.UUID) -> str:
    return f"challenge:{challenge_id}:{user_id}"


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


async def get_challenge(db: AsyncSession, challenge_id: int) -> ChallengeDefinition | None:
    result = await db.execute(select(ChallengeDefinition).where(ChallengeDefinition.id == challenge_id))
    return result.unique().scalar_one_or_none()


async def create_challenge(db: AsyncSession, data: dict[str, Any]) -> ChallengeDefinition:
    """Create a challenge definition after validating its rule and window."""
    parse_challenge_criteria(data["criteria"])
    if data["end_date"] <= data["start_date"]:
        raise InvalidChallengeError("end_date must be after start_date")
    if data["target_value"] <= 0:
        raise InvalidChallengeError("target_value must be positive")

    reward_id = data.get("reward_achievement_id")
    if reward_id is not None:
        exists = await db.execute(select(AchievementDefinition.id).where(AchievementDefinition.id == reward_id))
        if exists.first() is None:
            raise InvalidChallengeError(f"Unknown reward achievement {reward_id}")

    challenge = ChallengeDefinition(**data)
    db.add(challenge)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateChallengeError(f"Challenge key {data['key']!r} already exists") from exc

    # Reload so the reward achievement relationship is populated.
    result = await db.execute(
        select(ChallengeDefinition)
        .where(ChallengeDefinition.id == challenge.id)
        .execution_options(populate_existing=True)
    )
    challenge = result.unique().scalar_one()

    logger.info("Created challenge %s (%s -> %s)", challenge.key, challenge.start_date, challenge.end_date)
    return challenge


# ---------------------------------------------------------------------------
# Participation
# ---------------------------------------------------------------------------


async def _get_user_challenge(db: AsyncSession, user_id: uuid.UUID, challenge_id: int) -> UserChallenge | None:
    result = await db.execute(
        select(UserChallenge)
        .where(UserChallenge.user_id == user_id, UserChallenge.challenge_id == challenge_id)
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


async def join_challenge(
    db: AsyncSession,
    privacy: PrivacySettingsProvider,
    user_id: uuid.UUID,
    challenge_id: int,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> tuple[UserChallenge, bool]:
    """Enroll a user. Returns (row, created); joining twice returns the existing row."""
    now = now or datetime.now(timezone.utc)
    challenge = await get_challenge(db, challenge_id)
    if challenge is None:
        raise ChallengeNotFoundError(f"Challenge {challenge_id} not found")
    if not (challenge.start_date <= now < challenge.end_date):
        raise ChallengeNotActiveError(f"Challenge {challenge.key} is not active")

    settings = await privacy.get_settings(user_id)
    if not settings.participate_in_challenges:
        raise ChallengeParticipationDisabledError("User has disabled challenge participation")

    existing = await _get_user_challenge(db, user_id, challenge_id)
    if existing is not None:
        return existing, False

    row = UserChallenge(
        user_id=user_id,
        challenge_id=challenge_id,
        status="active",
        progress=0,
        started_at=now,
        challenge_metadata={},
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _get_user_challenge(db, user_id, challenge_id)
        if existing is None:
            raise
        return existing, False

    row = await _get_user_challenge(db, user_id, challenge_id) or row
    logger.info("User %s joined challenge %s", user_id, challenge.key)
    if dispatcher is not None:
        await dispatcher.challenge_joined(user_id, challenge)
    return row, True


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


async def _disburse_reward(
    db: AsyncSession,
    user_id: uuid.UUID,
    challenge: ChallengeDefinition,
    now: datetime,
) -> ChallengeCompletion:
    """Credit XP and the optional reward achievement inside the completing transaction."""
    xp_before = await get_total_xp(db, user_id)
    if challenge.reward_points:
        add_xp_entry(
            db,
            user_id=user_id,
            amount=challenge.reward_points,
            source="challenge",
            source_id=challenge.key,
            description=f'Completed challenge: "{challenge.name}"',
            idempotency_key=challenge_xp_key(challenge.id, user_id),
            now=now,
        )

    award = None
    reward = challenge.reward_achievement
    if reward is not None and reward.is_active:
        key = (reward.id, award_seq(reward, now))
        if key not in await owned_award_keys(db, user_id, [key]):
            user_achievement = await stage_award(db, user_id, reward, {"from_challenge": challenge.key}, now)
            award = Award(user_achievement=user_achievement, definition=reward)

    await db.flush()
    stats = await recompute_stats(db, user_id, now)
    return ChallengeCompletion(xp_before=xp_before, xp_after=stats.total_points, award=award)


async def _notify_completion(
    dispatcher: NotificationDispatcher,
    user_id: uuid.UUID,
    challenge: ChallengeDefinition,
    completion: ChallengeCompletion,
) -> None:
    await dispatcher.challenge_completed(user_id, challenge)
    if completion.xp_after != completion.xp_before:
        xp = build_xp_update(completion.xp_before, completion.xp_after)
        await dispatcher.xp_update(user_id, xp)
        if xp["new_level"] > xp["old_level"]:
            await dispatcher.level_up(user_id, xp["old_level"], xp["new_level"])
    if completion.award is not None:
        await dispatcher.achievement_earned(user_id, completion.award.definition)


async def update_progress(
    db: AsyncSession,
    user_id: uuid.UUID,
    challenge_id: int,
    progress: float,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
    metadata: dict[str, Any] | None = None,
    max_retries: int = 3,
) -> UserChallenge | None:
    """Apply a progress reading to an active participation.

    Progress never goes down. Reaching the target completes the challenge
    with progress clamped to the target and pays the reward once; otherwise
    a reading after the window closes expires it. Rows that are not active
    are returned unchanged.
    """
    now = now or datetime.now(timezone.utc)
    challenge = await get_challenge(db, challenge_id)
    if challenge is None:
        raise ChallengeNotFoundError(f"Challenge {challenge_id} not found")

    for attempt in range(max_retries + 1):
        row = await _get_user_challenge(db, user_id, challenge_id)
        if row is None or row.status != "active":
            return row

        completing = progress >= challenge.target_value
        values: dict[Any, Any] = {
            UserChallenge.progress: case(
                (UserChallenge.progress < progress, progress), else_=UserChallenge.progress
            ),
        }
        if metadata:
            values[UserChallenge.challenge_metadata] = {**(row.challenge_metadata or {}), **metadata}
        if completing:
            values[UserChallenge.status] = "completed"
            values[UserChallenge.progress] = challenge.target_value
            values[UserChallenge.completed_at] = now
        elif now > challenge.end_date:
            values[UserChallenge.status] = "expired"

        completion = None
        try:
            result = await db.execute(
                update(UserChallenge)
                .where(
                    UserChallenge.user_id == user_id,
                    UserChallenge.challenge_id == challenge_id,
                    UserChallenge.status == "active",
                )
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Someone else moved the row out of 'active'; re-read it.
                await db.rollback()
                await db.refresh(challenge)
                continue
            if completing:
                completion = await _disburse_reward(db, user_id, challenge, now)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            await db.refresh(challenge)
            logger.info("Challenge %s completion conflict for %s (attempt %d)", challenge_id, user_id, attempt + 1)
            continue

        if completion is not None:
            logger.info("User %s completed challenge %s (+%d XP)", user_id, challenge.key, challenge.reward_points)
            if dispatcher is not None:
                await _notify_completion(dispatcher, user_id, challenge, completion)
        return await _get_user_challenge(db, user_id, challenge_id)

    logger.warning("Giving up on challenge %s progress for %s after %d attempts", challenge_id, user_id, max_retries + 1)
    return await _get_user_challenge(db, user_id, challenge_id)


async def expire_challenges(db: AsyncSession, now: datetime | None = None) -> int:
    """Mark active participations of ended challenges as expired."""
    now = now or datetime.now(timezone.utc)
    ended = select(ChallengeDefinition.id).where(ChallengeDefinition.end_date < now)
    result = await db.execute(
        update(UserChallenge)
        .where(UserChallenge.status == "active", UserChallenge.challenge_id.in_(ended))
        .values({UserChallenge.status: "expired"})
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def check_and_update_challenges(
    db: AsyncSession,
    trades: TradeHistoryProvider,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> dict[str, int]:
    """Batch pass: recompute progress of every active participation, then sweep expiries.

    One failing participation is logged and skipped; the rest still run.
    """
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(
            UserChallenge.user_id,
            UserChallenge.challenge_id,
            UserChallenge.progress,
            ChallengeDefinition.criteria,
            ChallengeDefinition.start_date,
        )
        .join(ChallengeDefinition, ChallengeDefinition.id == UserChallenge.challenge_id)
        .where(UserChallenge.status == "active", ChallengeDefinition.end_date >= now)
    )
    rows = result.all()

    counts = {"checked": len(rows), "updated": 0, "completed": 0, "failed": 0, "expired": 0}
    for row in rows:
        try:
            criteria = parse_challenge_criteria(row.criteria)
            ctx = ChallengeContext(trades=trades, user_id=row.user_id, window_start=row.start_date, now=now)
            progress = await criteria.progress(ctx)
            if progress == row.progress:
                continue
            updated = await update_progress(db, row.user_id, row.challenge_id, progress, now, dispatcher)
        except Exception:
            logger.exception("Challenge progress update failed (challenge %s, user %s)", row.challenge_id, row.user_id)
            await db.rollback()
            counts["failed"] += 1
            continue
        counts["updated"] += 1
        if updated is not None and updated.status == "completed":
            counts["completed"] += 1

    counts["expired"] = await expire_challenges(db, now)
    logger.info("Challenge pass: %s", counts)
    return counts


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_active_challenges(db: AsyncSession, now: datetime | None = None) -> list[dict]:
    """Challenges open for joining, with participant count and average progress."""
    now = now or datetime.now(timezone.utc)
    participation = (
        select(
            UserChallenge.challenge_id,
            func.count(func.distinct(UserChallenge.user_id)).label("participant_count"),
            func.avg(UserChallenge.progress).label("avg_progress"),
        )
        .group_by(UserChallenge.challenge_id)
        .subquery()
    )
    result = await db.execute(
        select(ChallengeDefinition, participation.c.participant_count, participation.c.avg_progress)
        .outerjoin(participation, participation.c.challenge_id == ChallengeDefinition.id)
        .where(ChallengeDefinition.start_date <= now, ChallengeDefinition.end_date > now)
        .order_by(ChallengeDefinition.start_date.desc())
    )
    return [
        {
            "challenge": challenge,
            "participant_count": int(participants or 0),
            "avg_progress": round(float(avg), 2) if avg is not None else 0.0,
        }
        for challenge, participants, avg in result.unique().all()
    ]


async def get_user_challenges(db: AsyncSession, user_id: uuid.UUID) -> list[UserChallenge]:
    """A user's participations: active first, then completed, then expired."""
    status_order = case(
        (UserChallenge.status == "active", 1),
        (UserChallenge.status == "completed", 2),
        else_=3,
    )
    result = await db.execute(
        select(UserChallenge)
        .join(ChallengeDefinition, ChallengeDefinition.id == UserChallenge.challenge_id)
        .where(UserChallenge.user_id == user_id)
        .order_by(status_order, ChallengeDefinition.end_date.desc())
    )
    return list(result.unique().scalars())


async def get_challenge_leaderboard(
    db: AsyncSession,
    privacy: PrivacySettingsProvider,
    challenge_id: int,
    salt: str = "",
    viewer_id: uuid.UUID | None = None,
    limit: int = CHALLENGE_LEADERBOARD_LIMIT,
) -> list[dict]:
    """Participants ranked by progress, earliest completion first on ties.

    Users hidden from leaderboards are left out; everyone else is shown
    under their pseudonym.
    """
    if await get_challenge(db, challenge_id) is None:
        raise ChallengeNotFoundError(f"Challenge {challenge_id} not found")

    result = await db.execute(
        select(UserChallenge.user_id, UserChallenge.progress, UserChallenge.completed_at, UserChallenge.status)
        .where(
            UserChallenge.challenge_id == challenge_id,
            UserChallenge.status.in_(("active", "completed")),
        )
    )
    rows = result.all()
    hidden = await privacy.get_hidden_user_ids([row.user_id for row in rows])
    visible = [row for row in rows if row.user_id not in hidden]

    far_future = datetime.max.replace(tzinfo=timezone.utc)
    visible.sort(key=lambda r: (-r.progress, r.completed_at or far_future, str(r.user_id)))

    entries: list[dict] = []
    previous: tuple | None = None
    rank = 0
    for position, row in enumerate(visible[:limit], start=1):
        key = (row.progress, row.completed_at)
        if key != previous:
            rank = position
            previous = key
        entries.append({
            "rank": rank,
            "display_name": anonymous_name(row.user_id, salt),
            "progress": row.progress,
            "status": row.status,
            "completed_at": row.completed_at,
            "is_current_user": row.user_id == viewer_id,
        })
    return entries
