"""Level curve (50 * level^1.7) and streak bonuses."""
from __future__ import annotations

import math

LEVEL_BASE_XP = 50
LEVEL_EXPONENT = 1.7
MAX_LEVEL = 100

STREAK_BONUS_STEPS: tuple[tuple[int, int], ...] = (
    (3, 0),
    (7, 5),
    (14, 10),
    (30, 15),
    (60, 20),
)
MAX_STREAK_BONUS = 25


def xp_required_for_level(level: int) -> int:
    if level <= 1:
        return 0
    return math.floor(LEVEL_BASE_XP * level**LEVEL_EXPONENT)


def level_for_xp(total_xp: int) -> int:
    if total_xp <= 0:
        return 1
    level = 1
    while level < MAX_LEVEL and xp_required_for_level(level + 1) <= total_xp:
        level += 1
    return level


def xp_to_next_level(total_xp: int) -> int:
    level = level_for_xp(total_xp)
    if level >= MAX_LEVEL:
        return 0
    return xp_required_for_level(level + 1) - max(0, total_xp)


def level_progress(total_xp: int) -> float:
    level = level_for_xp(total_xp)
    if level >= MAX_LEVEL:
        return 1.0
    floor_xp = xp_required_for_level(level)
    span = xp_required_for_level(level + 1) - floor_xp
    if span <= 0:
        return 0.0
    return (max(0, total_xp) - floor_xp) / span


def streak_bonus(streak_days: int) -> int:
    for upper, bonus in STREAK_BONUS_STEPS:
        if streak_days < upper:
            return bonus
    return MAX_STREAK_BONUS


def level_summary(total_xp: int) -> dict:
    return {
        "total_xp": total_xp,
        "level": level_for_xp(total_xp),
        "xp_to_next_level": xp_to_next_level(total_xp),
        "level_progress": round(level_progress(total_xp), 4),
    }
