from __future__ import annotations

import asyncio
import random
import uuid

from lingualearn.core.errors import NotFoundError, ValidationError
from lingualearn.core.logging import DOMAIN_QUIZ, get_domain_logger
from lingualearn.models.quiz import Question, Quiz, utcnow
from lingualearn.storage.store import DocumentStore, QueryFilter

QUIZZES_COLLECTION = "quizzes"

logger = get_domain_logger(__name__, DOMAIN_QUIZ)


class QuizCatalog:
    """Authored quiz definitions, read from and written to the document store."""

    def __init__(self, store: DocumentStore):
        self._store = store

    async def get_quiz(self, quiz_id: str, *, cancel: asyncio.Event | None = None) -> Quiz:
        if not quiz_id:
            raise ValidationError("quiz id is required")
        result = await self._store.get_document(QUIZZES_COLLECTION, quiz_id, cancel=cancel)
        if result.not_found:
            raise NotFoundError(f"quiz {quiz_id} not found")
        return Quiz.model_validate(result.unwrap())

    async def quizzes_for_lesson(self, lesson_id: str, *, cancel: asyncio.Event | None = None) -> list[Quiz]:
        result = await self._store.query_collection(
            QUIZZES_COLLECTION,
            QueryFilter(equals={"lesson_id": lesson_id, "is_active": True}),
            cancel=cancel,
        )
        quizzes = [Quiz.model_validate(doc) for doc in result.unwrap()]
        return sorted(quizzes, key=lambda q: q.title)

    async def save_quiz(self, quiz: Quiz, *, cancel: asyncio.Event | None = None) -> Quiz:
        question_ids = [q.id for q in quiz.questions]
        if len(set(question_ids)) != len(question_ids):
            raise ValidationError("question ids must be unique within a quiz")
        stored = quiz.model_copy(update={"id": quiz.id or str(uuid.uuid4()), "updated_at": utcnow()})
        result = await self._store.set_document(
            QUIZZES_COLLECTION, stored.id, stored.model_dump(mode="json"), cancel=cancel
        )
        result.unwrap()
        logger.info("Saved quiz %s for lesson %s with %s questions", stored.id, stored.lesson_id, len(stored.questions))
        return stored

    async def delete_quiz(self, quiz_id: str, *, cancel: asyncio.Event | None = None) -> bool:
        result = await self._store.delete_document(QUIZZES_COLLECTION, quiz_id, cancel=cancel)
        return bool(result.unwrap())

    async def adaptive_questions(
        self,
        quiz_id: str,
        count: int,
        *,
        rng: random.Random | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[Question]:
        quiz = await self.get_quiz(quiz_id, cancel=cancel)
        bounds = quiz.adaptive_settings
        wanted = max(bounds.min_questions_per_session, min(bounds.max_questions_per_session, count))
        wanted = min(wanted, len(quiz.questions))
        picked = (rng or random.Random()).sample(list(quiz.questions), wanted)
        return sorted(picked, key=lambda q: q.order)
