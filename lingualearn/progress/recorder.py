"""Durable progress records and the per-lesson/per-learner views folded from them.

Nothing here raises for a storage failure: writes return a ``RecordOutcome`` and reads
a ``StoreResult``, so a learner who has already been scored never loses that outcome
because the database was unavailable.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from pydantic import TypeAdapter

from lingualearn.core.errors import PersistenceError
from lingualearn.core.logging import DOMAIN_PROGRESS, get_domain_logger
from lingualearn.core.settings import settings
from lingualearn.gamification.levels import level_summary
from lingualearn.models.progress import ACTIVITY_QUIZ, ACTIVITY_SECTION, ProgressRecord, UserProgress
from lingualearn.models.quiz import QuizResult, utcnow
from lingualearn.quiz.scoring import xp_for_section
from lingualearn.storage.store import BatchAction, BatchOperation, DocumentStore, QueryFilter, StoreResult

PROGRESS_COLLECTION = "progress"
USER_PROGRESS_COLLECTION = "user_progress"

logger = get_domain_logger(__name__, DOMAIN_PROGRESS)
_datetime_json = TypeAdapter(datetime)


@dataclass(frozen=True)
class RecordOutcome:
    record_id: str | None = None
    error: PersistenceError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def _failed(result: StoreResult) -> StoreResult:
    return StoreResult(success=False, error=result.error, cause=result.cause, cancelled=result.cancelled)


def _newest_first(records: list[ProgressRecord]) -> list[ProgressRecord]:
    return sorted(records, key=lambda r: r.completed_at, reverse=True)


class ProgressRecorder:
    def __init__(self, store: DocumentStore, *, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    async def record(
        self,
        learner_id: str,
        lesson_id: str,
        section_id: str,
        result: QuizResult,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RecordOutcome:
        entry = ProgressRecord(
            learner_id=learner_id,
            lesson_id=lesson_id,
            section_id=section_id,
            activity=ACTIVITY_QUIZ,
            score=round(result.score_percentage, 2),
            accuracy=result.accuracy,
            time_spent_seconds=result.time_spent_seconds,
            xp_earned=result.xp_earned,
            is_completed=result.is_passed,
            result=result,
            metadata={
                "quiz_score": result.score,
                "total_points": result.total_points,
                "is_passed": result.is_passed,
            },
            completed_at=result.completed_at,
        )
        return await self.record_entry(entry, cancel=cancel)

    async def record_section(
        self,
        learner_id: str,
        lesson_id: str,
        section_id: str,
        section_type: str,
        *,
        accuracy: float = 1.0,
        time_spent_seconds: int = 0,
        cancel: asyncio.Event | None = None,
    ) -> RecordOutcome:
        entry = ProgressRecord(
            learner_id=learner_id,
            lesson_id=lesson_id,
            section_id=section_id,
            activity=ACTIVITY_SECTION,
            score=round(accuracy * 100, 2),
            accuracy=accuracy,
            time_spent_seconds=time_spent_seconds,
            xp_earned=xp_for_section(section_type, accuracy),
            is_completed=True,
            metadata={"section_type": section_type},
            completed_at=self._clock(),
        )
        return await self.record_entry(entry, cancel=cancel)

    async def record_entry(self, entry: ProgressRecord, *, cancel: asyncio.Event | None = None) -> RecordOutcome:
        if not entry.id:
            entry = entry.model_copy(update={"id": str(uuid.uuid4())})
        try:
            result = await self._store.set_document(
                PROGRESS_COLLECTION, entry.id, entry.model_dump(mode="json"), cancel=cancel
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Progress write raised for learner %s lesson %s", entry.learner_id, entry.lesson_id)
            return RecordOutcome(error=PersistenceError(f"progress write failed: {exc}", cause=exc))
        if not result.success:
            logger.warning(
                "Progress not saved for learner %s lesson %s section %s: %s",
                entry.learner_id,
                entry.lesson_id,
                entry.section_id,
                result.error,
            )
            return RecordOutcome(error=result.to_error())
        logger.info(
            "Progress recorded for learner %s, lesson %s, section %s (xp=%s)",
            entry.learner_id,
            entry.lesson_id,
            entry.section_id,
            entry.xp_earned,
        )
        return RecordOutcome(record_id=entry.id)

    async def record_many(
        self, entries: list[ProgressRecord], *, cancel: asyncio.Event | None = None
    ) -> StoreResult[bool]:
        outcomes = await asyncio.gather(*(self.record_entry(entry, cancel=cancel) for entry in entries))
        return StoreResult.ok(all(outcome.success for outcome in outcomes))

    async def _query(self, query: QueryFilter, cancel: asyncio.Event | None) -> StoreResult[list[ProgressRecord]]:
        result = await self._store.query_collection(PROGRESS_COLLECTION, query, cancel=cancel)
        if not result.success:
            return _failed(result)
        return StoreResult.ok([ProgressRecord.model_validate(doc) for doc in result.value or []])

    async def history(
        self, learner_id: str, lesson_id: str, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[list[ProgressRecord]]:
        result = await self._query(QueryFilter(equals={"learner_id": learner_id, "lesson_id": lesson_id}), cancel)
        if not result.success:
            return result
        return StoreResult.ok(_newest_first(result.value or []))

    async def aggregate(
        self, learner_id: str, lesson_id: str, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[UserProgress]:
        # Always refolded from the full history; the stored document is only a cache.
        history = await self.history(learner_id, lesson_id, cancel=cancel)
        if not history.success:
            return _failed(history)
        records = list(reversed(history.value or []))

        progress = UserProgress(learner_id=learner_id, lesson_id=lesson_id)
        existing = await self._store.get_document(USER_PROGRESS_COLLECTION, progress.document_id, cancel=cancel)
        if not existing.success and not existing.not_found:
            # The cached document holds merged section ids; never rebuild it from a blank read.
            logger.warning("Could not read cached progress %s: %s", progress.document_id, existing.error)
            return _failed(existing)
        if existing.success:
            cached = UserProgress.model_validate(existing.value)
            progress = progress.model_copy(
                update={
                    "is_started": cached.is_started,
                    "is_completed": cached.is_completed,
                    "started_at": cached.started_at,
                    "completed_sections": list(cached.completed_sections),
                }
            )

        sections = list(progress.completed_sections)
        for record in records:
            if record.is_completed and record.section_id not in sections:
                sections.append(record.section_id)

        update: dict = {
            "completed_sections": sections,
            "total_xp_earned": sum(r.xp_earned for r in records),
            "time_spent_seconds": sum(r.time_spent_seconds for r in records),
        }
        if records:
            update["is_started"] = True
            update["accuracy"] = sum(r.accuracy for r in records) / len(records)
            update["last_accessed_at"] = max(r.completed_at for r in records)
            update["started_at"] = progress.started_at or records[0].completed_at
        progress = progress.model_copy(update=update)

        cached_write = await self._store.set_document(
            USER_PROGRESS_COLLECTION, progress.document_id, progress.model_dump(mode="json"), cancel=cancel
        )
        if not cached_write.success:
            logger.warning("Could not cache aggregated progress %s: %s", progress.document_id, cached_write.error)
        return StoreResult.ok(progress)

    async def mark_sections_completed(
        self,
        learner_id: str,
        lesson_id: str,
        section_ids: list[str],
        *,
        lesson_completed: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> StoreResult[bool]:
        progress = UserProgress(learner_id=learner_id, lesson_id=lesson_id, is_started=True, started_at=self._clock())
        existing = await self._store.get_document(USER_PROGRESS_COLLECTION, progress.document_id, cancel=cancel)
        if existing.success:
            progress = UserProgress.model_validate(existing.value)
        elif not existing.not_found:
            return _failed(existing)

        sections = list(progress.completed_sections)
        sections.extend(s for s in section_ids if s not in sections)
        progress = progress.model_copy(
            update={
                "completed_sections": sections,
                "is_completed": progress.is_completed or lesson_completed,
                "last_accessed_at": self._clock(),
            }
        )
        return await self._store.set_document(
            USER_PROGRESS_COLLECTION, progress.document_id, progress.model_dump(mode="json"), cancel=cancel
        )

    async def learner_accuracy(self, learner_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[float]:
        result = await self._query(QueryFilter(equals={"learner_id": learner_id}), cancel)
        if not result.success:
            return _failed(result)
        window = _newest_first(result.value or [])[: settings.progress_accuracy_window]
        if not window:
            return StoreResult.ok(0.0)
        return StoreResult.ok(sum(r.accuracy for r in window) / len(window))

    async def total_study_seconds(self, learner_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[int]:
        result = await self._query(QueryFilter(equals={"learner_id": learner_id}), cancel)
        if not result.success:
            return _failed(result)
        return StoreResult.ok(sum(r.time_spent_seconds for r in result.value or []))

    async def total_xp(self, learner_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[int]:
        result = await self._query(QueryFilter(equals={"learner_id": learner_id}), cancel)
        if not result.success:
            return _failed(result)
        return StoreResult.ok(sum(r.xp_earned for r in result.value or []))

    async def recent(
        self, learner_id: str, days: int | None = None, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[list[ProgressRecord]]:
        cutoff = self._clock() - timedelta(days=settings.progress_recent_days if days is None else days)
        # Whole-second bound one second early: backends comparing timestamps as text still
        # keep every record at or after the cutoff; the exact cut happens below.
        lower_bound = (cutoff - timedelta(seconds=1)).replace(microsecond=0)
        result = await self._query(
            QueryFilter(
                equals={"learner_id": learner_id},
                range_field="completed_at",
                ge=_datetime_json.dump_python(lower_bound, mode="json"),
            ),
            cancel,
        )
        if not result.success:
            return result
        return StoreResult.ok(_newest_first([r for r in result.value or [] if r.completed_at >= cutoff]))

    async def completed_lessons(self, learner_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[int]:
        result = await self._store.query_collection(
            USER_PROGRESS_COLLECTION,
            QueryFilter(equals={"learner_id": learner_id, "is_completed": True}),
            cancel=cancel,
        )
        if not result.success:
            return _failed(result)
        return StoreResult.ok(len(result.value or []))

    async def quiz_history(
        self, learner_id: str, limit: int = 10, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[list[QuizResult]]:
        result = await self._query(QueryFilter(equals={"learner_id": learner_id, "activity": ACTIVITY_QUIZ}), cancel)
        if not result.success:
            return _failed(result)
        results = [r.result for r in _newest_first(result.value or []) if r.result is not None]
        return StoreResult.ok(results[: max(0, limit)])

    async def statistics(self, learner_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[dict]:
        stats: dict = {}
        accuracy = await self.learner_accuracy(learner_id, cancel=cancel)
        if accuracy.success:
            stats["accuracy"] = accuracy.value
        study = await self.total_study_seconds(learner_id, cancel=cancel)
        if study.success:
            stats["total_study_minutes"] = round((study.value or 0) / 60, 2)
        lessons = await self.completed_lessons(learner_id, cancel=cancel)
        if lessons.success:
            stats["completed_lessons"] = lessons.value
        xp = await self.total_xp(learner_id, cancel=cancel)
        if xp.success:
            stats.update(level_summary(xp.value or 0))
        recent = await self.recent(learner_id, cancel=cancel)
        if recent.success:
            stats["recent_activities"] = len(recent.value or [])
        quizzes = await self.quiz_history(learner_id, limit=settings.progress_accuracy_window, cancel=cancel)
        if quizzes.success:
            taken = quizzes.value or []
            stats["quizzes_taken"] = len(taken)
            stats["quizzes_passed"] = sum(1 for r in taken if r.is_passed)
            stats["quiz_xp_earned"] = sum(r.xp_earned for r in taken)
        return StoreResult.ok(stats)

    async def purge_history(
        self, learner_id: str, lesson_id: str, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[int]:
        history = await self.history(learner_id, lesson_id, cancel=cancel)
        if not history.success:
            return _failed(history)
        records = history.value or []
        operations = [BatchOperation(PROGRESS_COLLECTION, r.id, BatchAction.DELETE) for r in records]
        operations.append(
            BatchOperation(USER_PROGRESS_COLLECTION, f"{learner_id}_{lesson_id}", BatchAction.DELETE)
        )
        result = await self._store.batch_write(operations, cancel=cancel)
        if not result.success:
            logger.warning("Purge of progress for %s/%s failed: %s", learner_id, lesson_id, result.error)
            return _failed(result)
        logger.info("Purged %s progress records for learner %s lesson %s", len(records), learner_id, lesson_id)
        return StoreResult.ok(len(records))
