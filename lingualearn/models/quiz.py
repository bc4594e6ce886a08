from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    FILL_BLANK = "fill_blank"
    TRUE_FALSE = "true_false"
    MATCHING = "matching"
    TRANSLATION = "translation"
    LISTENING = "listening"
    SPEAKING = "speaking"
    ORDERING = "ordering"


class AdaptiveConfig(BaseModel):
    is_enabled: bool = True
    difficulty_adjustment_factor: float = 0.1
    min_questions_per_session: int = Field(default=5, ge=1)
    max_questions_per_session: int = Field(default=20, ge=1)
    time_per_question_seconds: int = Field(default=30, ge=1)


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    # Kept as a plain string so documents with types this version does not know still load.
    type: str
    prompt: str = ""
    options: list[str] = Field(default_factory=list)
    correct_answers: list[str] = Field(default_factory=list)
    explanation: str = ""
    points: int = Field(default=1, ge=1)
    difficulty: str = "medium"
    order: int = 0


class Quiz(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    lesson_id: str
    title: str = ""
    description: str = ""
    questions: list[Question] = Field(default_factory=list)
    time_limit_seconds: int = Field(default=0, ge=0)
    passing_score: int = Field(default=70, ge=0, le=100)
    adaptive_settings: AdaptiveConfig = Field(default_factory=AdaptiveConfig)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def ordered_questions(self) -> list[Question]:
        return sorted(self.questions, key=lambda q: q.order)

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)


class Answer(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    submitted: list[str]
    is_correct: bool
    points_earned: int = 0
    time_spent_seconds: int = 0
    answered_at: datetime


class QuestionFeedback(BaseModel):
    """Per-question transient state shown after a submission; cleared on advance."""

    question_id: str
    selected: list[str] = Field(default_factory=list)
    is_correct: bool = False
    show_feedback: bool = True


class QuizSession(BaseModel):
    id: str
    learner_id: str
    quiz_id: str
    current_question_index: int = 0
    answers: list[Answer] = Field(default_factory=list)
    score: int = 0
    total_questions: int = 0
    time_budget_seconds: int = 0
    time_remaining_seconds: float = 0.0
    is_completed: bool = False
    started_at: datetime
    completed_at: datetime | None = None
    question_started_at: datetime | None = None
    feedback: QuestionFeedback | None = None

    def answered(self, question_id: str) -> bool:
        return any(a.question_id == question_id for a in self.answers)


class QuizResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    learner_id: str
    quiz_id: str
    lesson_id: str
    score: int
    total_points: int
    accuracy: float = Field(ge=0.0, le=1.0)
    time_spent_seconds: int
    xp_earned: int
    is_passed: bool
    answers: tuple[Answer, ...] = ()
    completed_at: datetime

    @property
    def score_percentage(self) -> float:
        if self.total_points <= 0:
            return 0.0
        return self.score * 100.0 / self.total_points
