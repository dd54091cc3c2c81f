"""Idempotent achievement awards.

UNIQUE(user_id, achievement_id, award_seq) on user_achievements and the
unique xp_ledger idempotency key are the only guards against double awards.
Two evaluations racing on the same user both try to insert; the loser's
transaction fails with IntegrityError, is rolled back, and is retried
without the achievements that are now owned. Losing a race is a silent
no-op and never credits XP twice.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import AchievementDefinition, UserAchievement
from ttg.gamification.xp_service import add_xp_entry, get_total_xp, recompute_stats

logger = logging.getLogger(__name__)


@dataclass
class AwardCandidate:
    """An achievement the evaluator found satisfied, not yet persisted."""

    definition: AchievementDefinition
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Award:
    user_achievement: UserAchievement
    definition: AchievementDefinition

    @property
    def points(self) -> int:
        return self.user_achievement.points


@dataclass
class AwardBatchResult:
    awards: list[Award]
    xp_before: int
    xp_after: int


def award_seq(definition: AchievementDefinition, now: datetime) -> int:
    """0 for one-time achievements; the UTC day ordinal for repeatable ones."""
    if definition.is_repeatable:
        return now.astimezone(timezone.utc).date().toordinal()
    return 0


def xp_idempotency_key(achievement_id: int, user_id: uuid.UUID, seq: int) -> str:
    return f"achievement:{achievement_id}:{user_id}:{seq}"


async def stage_award(
    db: AsyncSession,
    user_id: uuid.UUID,
    definition: AchievementDefinition,
    metadata: dict[str, Any],
    now: datetime,
) -> UserAchievement:
    """Write one award and its XP credit inside the caller's transaction.

    An in-progress row is promoted with a compare-and-set update; otherwise a
    new row is inserted. Raises IntegrityError at flush if the award exists.
    """
    seq = award_seq(definition, now)
    promoted = await db.execute(
        update(UserAchievement)
        .where(
            UserAchievement.user_id == user_id,
            UserAchievement.achievement_id == definition.id,
            UserAchievement.award_seq == seq,
            UserAchievement.earned_at.is_(None),
        )
        .values({
            UserAchievement.earned_at: now,
            UserAchievement.points: definition.points,
            UserAchievement.progress: definition.max_progress,
            UserAchievement.achievement_metadata: metadata,
        })
        .execution_options(synchronize_session=False)
    )

    if promoted.rowcount == 1:
        result = await db.execute(
            select(UserAchievement)
            .where(
                UserAchievement.user_id == user_id,
                UserAchievement.achievement_id == definition.id,
                UserAchievement.award_seq == seq,
            )
            .execution_options(populate_existing=True)
        )
        user_achievement = result.scalar_one()
    else:
        user_achievement = UserAchievement(
            user_id=user_id,
            achievement_id=definition.id,
            award_seq=seq,
            earned_at=now,
            points=definition.points,
            progress=definition.max_progress,
            achievement_metadata=metadata,
            created_at=now,
        )
        db.add(user_achievement)

    if definition.points:
        add_xp_entry(
            db,
            user_id=user_id,
            amount=definition.points,
            source="achievement",
            source_id=definition.key,
            description=f'Earned achievement: "{definition.name}"',
            idempotency_key=xp_idempotency_key(definition.id, user_id, seq),
            now=now,
        )
    await db.flush()
    return user_achievement


async def owned_award_keys(
    db: AsyncSession,
    user_id: uuid.UUID,
    keys: list[tuple[int, int]],
) -> set[tuple[int, int]]:
    """Which (achievement_id, award_seq) pairs the user has already earned."""
    if not keys:
        return set()
    result = await db.execute(
        select(UserAchievement.achievement_id, UserAchievement.award_seq).where(
            UserAchievement.user_id == user_id,
            UserAchievement.earned_at.isnot(None),
            or_(*(
                and_(UserAchievement.achievement_id == achievement_id, UserAchievement.award_seq == seq)
                for achievement_id, seq in keys
            )),
        )
    )
    return {(row.achievement_id, row.award_seq) for row in result}


async def award_batch(
    db: AsyncSession,
    user_id: uuid.UUID,
    candidates: list[AwardCandidate],
    now: datetime | None = None,
    max_retries: int = 3,
) -> AwardBatchResult:
    """Persist a batch of awards, their XP and the recomputed stats atomically.

    Commits on success. Candidates another writer already awarded are
    dropped, so the result lists only awards this call actually made.
    """
    now = now or datetime.now(timezone.utc)
    remaining = list(candidates)

    for attempt in range(max_retries + 1):
        xp_before = await get_total_xp(db, user_id)
        if not remaining:
            return AwardBatchResult(awards=[], xp_before=xp_before, xp_after=xp_before)

        try:
            awards = []
            for candidate in remaining:
                user_achievement = await stage_award(db, user_id, candidate.definition, candidate.metadata, now)
                awards.append(Award(user_achievement=user_achievement, definition=candidate.definition))
            stats = await recompute_stats(db, user_id, now)
            xp_after = stats.total_points
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(
                "Award conflict for user %s (attempt %d), dropping already-owned achievements",
                user_id, attempt + 1,
            )
            # Rollback expired the definitions; reload before reading them again.
            for candidate in remaining:
                await db.refresh(candidate.definition)
            keys = [(c.definition.id, award_seq(c.definition, now)) for c in remaining]
            owned = await owned_award_keys(db, user_id, keys)
            remaining = [c for c, key in zip(remaining, keys) if key not in owned]
            continue

        for award in awards:
            logger.info("Awarded %s to %s (+%d XP)", award.definition.key, user_id, award.points)
        return AwardBatchResult(awards=awards, xp_before=xp_before, xp_after=xp_after)

    logger.warning("Giving up awarding %d achievements to %s after %d attempts", len(remaining), user_id, max_retries + 1)
    xp_total = await get_total_xp(db, user_id)
    return AwardBatchResult(awards=[], xp_before=xp_total, xp_after=xp_total)


async def award(
    db: AsyncSession,
    user_id: uuid.UUID,
    definition: AchievementDefinition,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Award | None:
    """Award one achievement. Returns None if the user already has it."""
    result = await award_batch(db, user_id, [AwardCandidate(definition, metadata or {})], now)
    return result.awards[0] if result.awards else None


# ---------------------------------------------------------------------------
# Progress tracking
# ---------------------------------------------------------------------------


async def get_definition_by_key(db: AsyncSession, key: str) -> AchievementDefinition | None:
    result = await db.execute(select(AchievementDefinition).where(AchievementDefinition.key == key))
    return result.scalar_one_or_none()


async def update_achievement_progress(
    db: AsyncSession,
    user_id: uuid.UUID,
    key: str,
    progress: int,
    now: datetime | None = None,
) -> Award | None:
    """Record progress towards a one-time achievement; award it at max_progress.

    Progress only ever moves forward. Returns the award when this call earned it.
    """
    now = now or datetime.now(timezone.utc)
    definition = await get_definition_by_key(db, key)
    if definition is None or not definition.is_active:
        logger.warning("Progress update for unknown achievement: %s", key)
        return None

    target = definition.max_progress or 1
    if progress >= target:
        return await award(db, user_id, definition, {"progress": progress}, now)

    result = await db.execute(
        select(UserAchievement).where(
            UserAchievement.user_id == user_id,
            UserAchievement.achievement_id == definition.id,
            UserAchievement.award_seq == 0,
        )
    )
    row = result.scalar_one_or_none()
    try:
        if row is None:
            db.add(UserAchievement(
                user_id=user_id,
                achievement_id=definition.id,
                award_seq=0,
                progress=progress,
                earned_at=None,
                created_at=now,
            ))
        elif row.earned_at is None and (row.progress or 0) < progress:
            row.progress = progress
        await db.commit()
    except IntegrityError:
        # A concurrent writer created the row first; its value stands.
        await db.rollback()
    return None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_active_definitions(db: AsyncSession) -> list[AchievementDefinition]:
    result = await db.execute(
        select(AchievementDefinition)
        .where(AchievementDefinition.is_active.is_(True))
        .order_by(AchievementDefinition.category, AchievementDefinition.points)
    )
    return list(result.scalars())


async def get_unearned_definitions(
    db: AsyncSession, user_id: uuid.UUID, now: datetime
) -> list[AchievementDefinition]:
    """Active definitions the user can still earn: never earned, or repeatable and not earned today."""
    definitions = await get_active_definitions(db)
    keys = [(d.id, award_seq(d, now)) for d in definitions]
    owned = await owned_award_keys(db, user_id, keys)
    return [d for d, key in zip(definitions, keys) if key not in owned]


async def get_user_achievements(db: AsyncSession, user_id: uuid.UUID) -> list[UserAchievement]:
    """Earned achievements, newest first."""
    result = await db.execute(
        select(UserAchievement)
        .where(UserAchievement.user_id == user_id, UserAchievement.earned_at.isnot(None))
        .order_by(UserAchievement.earned_at.desc())
    )
    return list(result.scalars().unique())


async def get_available_achievements(db: AsyncSession, user_id: uuid.UUID) -> list[dict]:
    """Every active achievement with the user's earned state and progress."""
    definitions = await get_active_definitions(db)
    result = await db.execute(select(UserAchievement).where(UserAchievement.user_id == user_id))
    rows: dict[int, list[UserAchievement]] = {}
    for row in result.scalars().unique():
        rows.setdefault(row.achievement_id, []).append(row)

    available = []
    for definition in definitions:
        own = rows.get(definition.id, [])
        earned = [r for r in own if r.earned_at is not None]
        in_progress = next((r for r in own if r.earned_at is None), None)
        available.append({
            "id": definition.id,
            "key": definition.key,
            "name": definition.name,
            "description": definition.description,
            "category": definition.category,
            "difficulty": definition.difficulty,
            "points": definition.points,
            "is_repeatable": definition.is_repeatable,
            "max_progress": definition.max_progress,
            "earned": bool(earned),
            "times_earned": len(earned),
            "earned_at": max((r.earned_at for r in earned), default=None),
            "progress": in_progress.progress if in_progress else None,
        })
    return available
