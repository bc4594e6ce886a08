from __future__ import annotations

import asyncio
import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from lingualearn.core.errors import (
    InvalidStateError,
    NotFoundError,
    OutOfRangeError,
    PersistenceError,
    ValidationError,
)
from lingualearn.core.logging import DOMAIN_QUIZ, get_domain_logger
from lingualearn.models.quiz import Answer, Question, QuestionFeedback, Quiz, QuizResult, QuizSession, utcnow
from lingualearn.progress.recorder import ProgressRecorder
from lingualearn.quiz.catalog import QuizCatalog
from lingualearn.quiz.scoring import accuracy, points_for_answer, xp_for_result
from lingualearn.quiz.states import SessionState, can_transition
from lingualearn.quiz.validator import validate_answer

logger = get_domain_logger(__name__, DOMAIN_QUIZ)

_PENDING = ""


@dataclass(frozen=True)
class Completion:
    """Outcome of finalizing a session: the scored result and whether it was persisted."""

    result: QuizResult
    record_id: str | None = None
    persistence_error: PersistenceError | None = None

    @property
    def progress_saved(self) -> bool:
        return self.persistence_error is None


def state_of(session: QuizSession) -> SessionState:
    return SessionState.COMPLETED if session.is_completed else SessionState.IN_PROGRESS


def _elapsed_seconds(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    return max(0, math.floor((end - start).total_seconds()))


def build_result(session: QuizSession, quiz: Quiz, completed_at: datetime) -> QuizResult:
    """Score a session snapshot. Pure: the same session and timestamp give an equal result."""
    total_points = quiz.total_points
    ratio = accuracy(session.answers, session.total_questions)
    budget_used = math.floor(max(0.0, session.time_budget_seconds - session.time_remaining_seconds))
    time_spent = max(_elapsed_seconds(session.started_at, completed_at), budget_used)
    is_passed = total_points > 0 and session.score * 100.0 / total_points >= quiz.passing_score
    return QuizResult(
        session_id=session.id,
        learner_id=session.learner_id,
        quiz_id=quiz.id,
        lesson_id=quiz.lesson_id,
        score=session.score,
        total_points=total_points,
        accuracy=ratio,
        time_spent_seconds=time_spent,
        xp_earned=xp_for_result(total_points, ratio, time_spent),
        is_passed=is_passed,
        answers=tuple(session.answers),
        completed_at=completed_at,
    )


class QuizSessionEngine:
    """Drives sessions through NotStarted -> InProgress -> Completed.

    Every rejected call raises before touching the session, so a failed operation
    leaves it exactly as it was. Sessions are not locked: each one must be driven
    from a single task (see ``quiz.runner.SessionActor``).
    """

    def __init__(
        self,
        catalog: QuizCatalog,
        recorder: ProgressRecorder,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._catalog = catalog
        self._recorder = recorder
        self._clock = clock
        self._quizzes: dict[str, Quiz] = {}
        self._active: dict[tuple[str, str], str] = {}

    def _log_transition(self, session: QuizSession, from_state: SessionState, to_state: SessionState, event: str, payload: dict | None = None) -> None:
        logger.info(
            json.dumps(
                {
                    "type": "state_transition",
                    "session_id": session.id,
                    "learner_id": session.learner_id,
                    "quiz_id": session.quiz_id,
                    "question_index": session.current_question_index,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                    "event": event,
                    "payload": payload or {},
                    "ts": self._clock().isoformat(),
                }
            )
        )

    def quiz_for(self, session: QuizSession) -> Quiz:
        quiz = self._quizzes.get(session.id)
        if quiz is None:
            raise NotFoundError(f"session {session.id} not found")
        return quiz

    def active_session_id(self, learner_id: str, quiz_id: str) -> str | None:
        return self._active.get((learner_id, quiz_id)) or None

    def forget(self, session: QuizSession) -> None:
        self._quizzes.pop(session.id, None)
        if self._active.get((session.learner_id, session.quiz_id)) == session.id:
            del self._active[(session.learner_id, session.quiz_id)]

    async def start(self, learner_id: str, quiz_id: str, *, cancel: asyncio.Event | None = None) -> QuizSession:
        if not learner_id or not quiz_id:
            raise ValidationError("learner id and quiz id are required")
        key = (learner_id, quiz_id)
        if key in self._active:
            raise InvalidStateError(f"learner {learner_id} already has an active session for quiz {quiz_id}")
        # Reserve the slot before the catalog lookup suspends; an empty id marks a start in flight.
        self._active[key] = _PENDING
        try:
            quiz = await self._catalog.get_quiz(quiz_id, cancel=cancel)
            if not quiz.is_active:
                raise NotFoundError(f"quiz {quiz_id} is not available")
            if not quiz.questions:
                raise InvalidStateError(f"quiz {quiz_id} has no questions")
        except BaseException:
            if self._active.get(key) == _PENDING:
                del self._active[key]
            raise

        budget = quiz.time_limit_seconds or quiz.adaptive_settings.time_per_question_seconds * len(quiz.questions)
        now = self._clock()
        session = QuizSession(
            id=str(uuid.uuid4()),
            learner_id=learner_id,
            quiz_id=quiz.id,
            total_questions=len(quiz.questions),
            time_budget_seconds=budget,
            time_remaining_seconds=budget,
            started_at=now,
            question_started_at=now,
        )
        # Snapshot the quiz so edits to its definition cannot change a running session.
        self._quizzes[session.id] = quiz.model_copy(update={"questions": quiz.ordered_questions()})
        self._active[key] = session.id
        self._log_transition(session, SessionState.NOT_STARTED, SessionState.IN_PROGRESS, "start", {"time_budget": budget})
        return session

    def current_question(self, session: QuizSession) -> Question:
        questions = self.quiz_for(session).questions
        if session.current_question_index >= len(questions):
            raise OutOfRangeError(
                f"question index {session.current_question_index} is past the last question ({len(questions)})"
            )
        return questions[session.current_question_index]

    def submit_answer(self, session: QuizSession, question_id: str, submitted: Sequence[str]) -> QuizSession:
        if session.is_completed:
            raise InvalidStateError(f"session {session.id} is already completed")
        if not submitted or all(not str(value).strip() for value in submitted):
            raise ValidationError("an answer is required")
        quiz = self.quiz_for(session)
        question = next((q for q in quiz.questions if q.id == question_id), None)
        if question is None:
            raise ValidationError(f"question {question_id} is not part of quiz {quiz.id}")
        current = self.current_question(session)
        if current.id != question.id:
            raise ValidationError(f"question {question_id} is not the current question")
        if session.answered(question.id):
            # Replayed submission for the same question: keep the first verdict, count it once.
            logger.info("Ignoring duplicate answer for session %s question %s", session.id, question.id)
            return session

        now = self._clock()
        answers = [str(value) for value in submitted]
        is_correct = validate_answer(question, answers)
        points = points_for_answer(question, is_correct)
        session.answers.append(
            Answer(
                question_id=question.id,
                submitted=answers,
                is_correct=is_correct,
                points_earned=points,
                time_spent_seconds=_elapsed_seconds(session.question_started_at or session.started_at, now),
                answered_at=now,
            )
        )
        session.score += points
        session.feedback = QuestionFeedback(question_id=question.id, selected=answers, is_correct=is_correct)
        logger.info(
            "Answer recorded session=%s question=%s correct=%s points=%s score=%s",
            session.id,
            question.id,
            is_correct,
            points,
            session.score,
        )
        return session

    async def advance(self, session: QuizSession, *, cancel: asyncio.Event | None = None) -> Completion | None:
        """Move to the next question, or finalize when the current one is the last."""
        if session.is_completed:
            raise InvalidStateError(f"session {session.id} is already completed")
        if session.current_question_index >= session.total_questions - 1:
            return await self._finalize(session, "last_question", cancel=cancel)
        session.current_question_index += 1
        session.feedback = None
        session.question_started_at = self._clock()
        self._log_transition(session, SessionState.IN_PROGRESS, SessionState.IN_PROGRESS, "advance")
        return None

    async def tick(
        self, session: QuizSession, seconds: float = 1, *, cancel: asyncio.Event | None = None
    ) -> Completion | None:
        """Consume ``seconds`` of the time budget; force-complete the session when it runs out.

        Fractions accumulate, so a timer firing every quarter second drains one second per four ticks.
        """
        if session.is_completed:
            return None
        session.time_remaining_seconds = max(0.0, session.time_remaining_seconds - max(0.0, seconds))
        if session.time_remaining_seconds <= 0:
            return await self._finalize(session, "time_expired", cancel=cancel)
        return None

    async def _finalize(self, session: QuizSession, event: str, *, cancel: asyncio.Event | None = None) -> Completion:
        if not can_transition(state_of(session), SessionState.COMPLETED):
            raise InvalidStateError(f"session {session.id} cannot be completed from {state_of(session).value}")
        quiz = self.quiz_for(session)
        now = self._clock()
        session.is_completed = True
        session.completed_at = now
        session.feedback = None
        if self._active.get((session.learner_id, session.quiz_id)) == session.id:
            del self._active[(session.learner_id, session.quiz_id)]
        result = build_result(session, quiz, now)
        self._log_transition(
            session,
            SessionState.IN_PROGRESS,
            SessionState.COMPLETED,
            event,
            {"score": result.score, "total_points": result.total_points, "xp": result.xp_earned},
        )

        outcome = await self._recorder.record(session.learner_id, quiz.lesson_id, quiz.id, result, cancel=cancel)
        if not outcome.success:
            logger.warning("Quiz %s completed for learner %s but progress was not saved: %s", quiz.id, session.learner_id, outcome.error)
        return Completion(result=result, record_id=outcome.record_id, persistence_error=outcome.error)
