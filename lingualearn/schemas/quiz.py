from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from lingualearn.models.quiz import Answer, AdaptiveConfig, Question, Quiz, QuizResult, QuizSession
from lingualearn.quiz.engine import state_of


class QuestionIn(BaseModel):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    prompt: str = ""
    options: list[str] = Field(default_factory=list)
    correct_answers: list[str] = Field(default_factory=list)
    explanation: str = ""
    points: int = Field(default=1, ge=1)
    difficulty: str = "medium"
    order: int = 0


class QuizIn(BaseModel):
    id: str = ""
    lesson_id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    questions: list[QuestionIn] = Field(default_factory=list)
    time_limit_seconds: int = Field(default=0, ge=0)
    passing_score: int = Field(default=70, ge=0, le=100)
    adaptive_settings: AdaptiveConfig = Field(default_factory=AdaptiveConfig)
    is_active: bool = True

    def to_quiz(self) -> Quiz:
        return Quiz(
            id=self.id,
            lesson_id=self.lesson_id,
            title=self.title,
            description=self.description,
            questions=[Question(**q.model_dump()) for q in self.questions],
            time_limit_seconds=self.time_limit_seconds,
            passing_score=self.passing_score,
            adaptive_settings=self.adaptive_settings,
            is_active=self.is_active,
        )


class QuestionView(BaseModel):
    """A question as shown to the learner: never carries the correct answers."""

    id: str
    type: str
    prompt: str
    options: list[str]
    points: int
    difficulty: str
    order: int

    @classmethod
    def from_question(cls, question: Question) -> "QuestionView":
        return cls(
            id=question.id,
            type=question.type,
            prompt=question.prompt,
            options=list(question.options),
            points=question.points,
            difficulty=question.difficulty,
            order=question.order,
        )


class QuizView(BaseModel):
    id: str
    lesson_id: str
    title: str
    description: str
    time_limit_seconds: int
    passing_score: int
    total_points: int
    is_active: bool
    questions: list[QuestionView]

    @classmethod
    def from_quiz(cls, quiz: Quiz) -> "QuizView":
        return cls(
            id=quiz.id,
            lesson_id=quiz.lesson_id,
            title=quiz.title,
            description=quiz.description,
            time_limit_seconds=quiz.time_limit_seconds,
            passing_score=quiz.passing_score,
            total_points=quiz.total_points,
            is_active=quiz.is_active,
            questions=[QuestionView.from_question(q) for q in quiz.ordered_questions()],
        )


class StartQuizSessionRequest(BaseModel):
    learner_id: str = Field(min_length=1, max_length=128)
    quiz_id: str = Field(min_length=1, max_length=128)


class SubmitAnswerRequest(BaseModel):
    question_id: str = Field(min_length=1)
    answers: list[str] = Field(default_factory=list)


class SessionView(BaseModel):
    session_id: str
    learner_id: str
    quiz_id: str
    state: str
    current_question_index: int
    total_questions: int
    score: int
    time_remaining_seconds: float
    is_completed: bool
    started_at: datetime
    completed_at: datetime | None = None
    answers: list[Answer] = Field(default_factory=list)
    last_answer_correct: bool | None = None

    @classmethod
    def from_session(cls, session: QuizSession) -> "SessionView":
        return cls(
            session_id=session.id,
            learner_id=session.learner_id,
            quiz_id=session.quiz_id,
            state=state_of(session).value,
            current_question_index=session.current_question_index,
            total_questions=session.total_questions,
            score=session.score,
            time_remaining_seconds=session.time_remaining_seconds,
            is_completed=session.is_completed,
            started_at=session.started_at,
            completed_at=session.completed_at,
            answers=list(session.answers),
            last_answer_correct=session.feedback.is_correct if session.feedback else None,
        )


class AdvanceResponse(BaseModel):
    session: SessionView
    result: QuizResult | None = None
    progress_saved: bool | None = None
    persistence_error: str | None = None
