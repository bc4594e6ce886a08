from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from lingualearn.models.quiz import QuizResult, utcnow

ACTIVITY_QUIZ = "quiz"
ACTIVITY_SECTION = "section"


class ProgressRecord(BaseModel):
    """Durable, append-only summary of one completed learning activity."""

    id: str = ""
    learner_id: str
    lesson_id: str
    section_id: str
    activity: str = ACTIVITY_QUIZ
    score: float = 0.0
    accuracy: float = 0.0
    time_spent_seconds: int = 0
    xp_earned: int = 0
    is_completed: bool = False
    result: QuizResult | None = None
    metadata: dict = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=utcnow)


class UserProgress(BaseModel):
    learner_id: str
    lesson_id: str
    is_started: bool = False
    is_completed: bool = False
    completed_sections: list[str] = Field(default_factory=list)
    total_xp_earned: int = 0
    accuracy: float = 0.0
    time_spent_seconds: int = 0
    started_at: datetime | None = None
    last_accessed_at: datetime | None = None

    @property
    def document_id(self) -> str:
        return f"{self.learner_id}_{self.lesson_id}"
