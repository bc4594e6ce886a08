"""Answer validation per question type.

Judging never raises: an unknown question type, a question without correct answers
or a malformed submission is simply "not correct".
"""
from __future__ import annotations

from typing import Callable, Sequence

from lingualearn.models.quiz import Question, QuestionType


def _single(submitted: Sequence[str]) -> str | None:
    if len(submitted) != 1 or not isinstance(submitted[0], str):
        return None
    return submitted[0]


def _matches_choice(question: Question, submitted: Sequence[str]) -> bool:
    answer = _single(submitted)
    if answer is None:
        return False
    folded = answer.casefold()
    return any(correct.casefold() == folded for correct in question.correct_answers)


def _matches_blank(question: Question, submitted: Sequence[str]) -> bool:
    answer = _single(submitted)
    if answer is None:
        return False
    folded = answer.strip().casefold()
    return any(correct.strip().casefold() == folded for correct in question.correct_answers)


def _matches_pairs(question: Question, submitted: Sequence[str]) -> bool:
    # Order- and case-sensitive: the learner must reproduce the exact sequence.
    return list(submitted) == list(question.correct_answers)


_VALIDATORS: dict[str, Callable[[Question, Sequence[str]], bool]] = {
    QuestionType.MULTIPLE_CHOICE.value: _matches_choice,
    QuestionType.TRUE_FALSE.value: _matches_choice,
    QuestionType.FILL_BLANK.value: _matches_blank,
    QuestionType.MATCHING.value: _matches_pairs,
}


def validate_answer(question: Question, submitted: Sequence[str]) -> bool:
    if not question.correct_answers or submitted is None:
        return False
    validator = _VALIDATORS.get(question.type)
    if validator is None:
        return False
    return validator(question, submitted)
