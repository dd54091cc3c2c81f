"""Level curve and computation.

Level 1 spans [0, 100). Advancing from level L to L+1 costs 50 * (L + 1) XP,
so levels start at 0, 100, 250, 450, 700, 1000, 1350, ...

Level is always derived from cumulative XP; nothing stores it as truth.
"""

from __future__ import annotations


def xp_to_advance(level: int) -> int:
    """XP needed to go from ``level`` to ``level + 1``."""
    return 50 * (level + 1)


def level_min_xp(level: int) -> int:
    """Cumulative XP at which ``level`` starts."""
    if level <= 1:
        return 0
    return 25 * (level - 1) * (level + 2)


def level_from_xp(total_xp: int) -> int:
    """Walk the thresholds until XP falls below the next one."""
    level = 1
    while total_xp >= level_min_xp(level + 1):
        level += 1
    return level


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP, including progress bounds for the UI."""
    total_xp = max(0, total_xp)
    level = level_from_xp(total_xp)
    current_min = level_min_xp(level)
    next_min = level_min_xp(level + 1)
    xp_for_level = next_min - current_min
    xp_into_level = total_xp - current_min

    return {
        "level": level,
        "current_level_min_xp": current_min,
        "next_level_min_xp": next_min,
        "xp_into_level": xp_into_level,
        "xp_for_level": xp_for_level,
        "progress_percentage": round(xp_into_level / xp_for_level * 100, 2),
    }
