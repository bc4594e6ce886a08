"""Deterministic scoring: per-question points, XP rewards and accuracy.

Identical inputs always give identical outputs, so a result can be recomputed from a
frozen answer list (e.g. to recognise a retried submission).
"""
from __future__ import annotations

import math
from typing import Sequence

from lingualearn.core.settings import settings
from lingualearn.models.quiz import Answer, Question

SECTION_BASE_XP: dict[str, int] = {
    "vocabulary": 10,
    "grammar": 15,
    "pronunciation": 20,
    "quiz": 25,
    "reading": 12,
    "listening": 18,
}
DEFAULT_SECTION_BASE_XP = 5


def _clamp_ratio(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def points_for_answer(question: Question, is_correct: bool) -> int:
    return question.points if is_correct else 0


def xp_for_section(section_type: str, accuracy: float = 1.0) -> int:
    base = SECTION_BASE_XP.get((section_type or "").strip().lower(), DEFAULT_SECTION_BASE_XP)
    return math.floor(base * _clamp_ratio(accuracy))


def xp_for_result(total_points: int, accuracy: float, time_spent_seconds: int) -> int:
    """Base points, plus half the points scaled by accuracy, plus a flat bonus under five minutes."""
    total_points = max(0, total_points)
    accuracy_bonus = math.floor(total_points * _clamp_ratio(accuracy) * settings.quiz_accuracy_bonus_ratio)
    speed_bonus = settings.quiz_speed_bonus_xp if time_spent_seconds < settings.quiz_speed_bonus_seconds else 0
    return total_points + accuracy_bonus + speed_bonus


def accuracy(answers: Sequence[Answer], total_questions: int | None = None) -> float:
    """Fraction of ``answers`` judged correct.

    With ``total_questions`` the denominator is the whole quiz, so questions never
    answered count against the learner.
    """
    denominator = len(answers) if total_questions is None else max(total_questions, len(answers))
    if denominator == 0:
        return 0.0
    correct = sum(1 for answer in answers if answer.is_correct)
    return correct / denominator
