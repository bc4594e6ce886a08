from __future__ import annotations

import asyncio

import pytest

from lingualearn.core.errors import (
    InvalidStateError,
    NotFoundError,
    OutOfRangeError,
    PersistenceError,
    ValidationError,
)
from lingualearn.progress.recorder import PROGRESS_COLLECTION, ProgressRecorder
from lingualearn.quiz.catalog import QuizCatalog
from lingualearn.quiz.engine import QuizSessionEngine, build_result, state_of
from lingualearn.quiz.states import SessionState
from lingualearn.storage.store import InMemoryDocumentStore, StoreResult


class ProgressOutageStore(InMemoryDocumentStore):
    async def set_document(self, collection, document_id, document, *, cancel=None):
        if collection == PROGRESS_COLLECTION:
            return StoreResult.failure("progress database unavailable")
        return await super().set_document(collection, document_id, document, cancel=cancel)


class YieldingStore(InMemoryDocumentStore):
    """Suspends on every read, the way a networked backend would."""

    async def get_document(self, collection, document_id, *, cancel=None):
        await asyncio.sleep(0)
        return await super().get_document(collection, document_id, cancel=cancel)


async def _engine(quiz, clock, store=None):
    store = store or InMemoryDocumentStore()
    catalog = QuizCatalog(store)
    saved = await catalog.save_quiz(quiz)
    recorder = ProgressRecorder(store, clock=clock)
    return QuizSessionEngine(catalog, recorder, clock=clock), recorder, saved


@pytest.mark.asyncio
async def test_timer_expiry_force_completes_with_partial_score(spanish_quiz, clock):
    engine, recorder, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    assert state_of(session) == SessionState.IN_PROGRESS
    assert session.time_remaining_seconds == 60

    clock.advance(5)
    engine.submit_answer(session, "q-hello", ["hola"])
    assert session.score == 1
    assert session.current_question_index == 0
    assert await engine.advance(session) is None

    clock.advance(10)
    engine.submit_answer(session, "q-goodbye", ["hasta luego"])
    assert session.score == 1
    await engine.advance(session)

    clock.advance(45)
    completion = None
    for _ in range(60):
        completion = await engine.tick(session) or completion
    assert completion is not None
    assert session.is_completed

    result = completion.result
    assert result.score == 1
    assert result.total_points == 3
    assert result.accuracy == 1 / 3
    assert len(result.answers) == 2
    assert "q-formal" not in [a.question_id for a in result.answers]
    assert result.time_spent_seconds >= 60
    assert result.xp_earned == 3 + 0 + 10
    assert result.is_passed is False

    assert completion.progress_saved
    history = (await recorder.history("ana", quiz.lesson_id)).value
    assert [r.id for r in history] == [completion.record_id]
    assert history[0].result == result


@pytest.mark.asyncio
async def test_submit_on_completed_session_is_rejected_without_changes(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    await engine.tick(session, 60)
    before = session.model_dump()

    with pytest.raises(InvalidStateError):
        engine.submit_answer(session, "q-hello", ["hola"])
    with pytest.raises(InvalidStateError):
        await engine.advance(session)
    assert await engine.tick(session) is None
    assert session.model_dump() == before


@pytest.mark.asyncio
async def test_completing_through_last_question(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    for question_id, answer in [("q-hello", "Hola"), ("q-goodbye", " ADIÓS "), ("q-formal", "true")]:
        engine.submit_answer(session, question_id, [answer])
        clock.advance(20)
        completion = await engine.advance(session)

    assert completion is not None
    assert completion.result.score == 3
    assert completion.result.accuracy == 1.0
    assert completion.result.is_passed
    assert completion.result.time_spent_seconds == 60
    assert completion.result.xp_earned == 3 + 1 + 10


@pytest.mark.asyncio
async def test_progress_failure_still_returns_result(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock, store=ProgressOutageStore())
    session = await engine.start("ana", quiz.id)
    engine.submit_answer(session, "q-hello", ["Hola"])
    completion = await engine.tick(session, 60)

    assert completion.result.score == 1
    assert not completion.progress_saved
    assert completion.record_id is None
    assert "progress database unavailable" in completion.persistence_error.message


@pytest.mark.asyncio
async def test_rejected_submissions_leave_session_untouched(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    before = session.model_dump()

    with pytest.raises(ValidationError):
        engine.submit_answer(session, "q-hello", [])
    with pytest.raises(ValidationError):
        engine.submit_answer(session, "q-hello", ["   "])
    with pytest.raises(ValidationError):
        engine.submit_answer(session, "q-unknown", ["hola"])
    with pytest.raises(ValidationError):
        engine.submit_answer(session, "q-goodbye", ["adiós"])
    assert session.model_dump() == before


@pytest.mark.asyncio
async def test_duplicate_submission_counts_once(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    engine.submit_answer(session, "q-hello", ["Hola"])
    engine.submit_answer(session, "q-hello", ["Hola"])
    engine.submit_answer(session, "q-hello", ["Adiós"])
    assert session.score == 1
    assert len(session.answers) == 1
    assert session.answers[0].is_correct


@pytest.mark.asyncio
async def test_start_rules(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    with pytest.raises(NotFoundError):
        await engine.start("ana", "no-such-quiz")
    with pytest.raises(ValidationError):
        await engine.start("", quiz.id)

    first = await engine.start("ana", quiz.id)
    assert engine.active_session_id("ana", quiz.id) == first.id
    with pytest.raises(InvalidStateError):
        await engine.start("ana", quiz.id)
    assert (await engine.start("luis", quiz.id)).id != first.id

    await engine.tick(first, 60)
    assert engine.active_session_id("ana", quiz.id) is None
    assert (await engine.start("ana", quiz.id)).id != first.id


@pytest.mark.asyncio
async def test_inactive_or_empty_quizzes_cannot_start(spanish_quiz, clock):
    engine, _, _ = await _engine(spanish_quiz, clock)
    catalog = engine._catalog
    inactive = await catalog.save_quiz(spanish_quiz.model_copy(update={"is_active": False}))
    empty = await catalog.save_quiz(spanish_quiz.model_copy(update={"questions": []}))
    with pytest.raises(NotFoundError):
        await engine.start("ana", inactive.id)
    with pytest.raises(InvalidStateError):
        await engine.start("ana", empty.id)


@pytest.mark.asyncio
async def test_time_budget_falls_back_to_per_question_allowance(spanish_quiz, clock):
    engine, _, _ = await _engine(spanish_quiz, clock)
    untimed = await engine._catalog.save_quiz(spanish_quiz.model_copy(update={"time_limit_seconds": 0}))
    session = await engine.start("ana", untimed.id)
    assert session.time_remaining_seconds == 3 * 30


@pytest.mark.asyncio
async def test_current_question_out_of_range(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    assert engine.current_question(session).id == "q-hello"
    session.current_question_index = 3
    with pytest.raises(OutOfRangeError):
        engine.current_question(session)


@pytest.mark.asyncio
async def test_build_result_is_repeatable(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    engine.submit_answer(session, "q-hello", ["Hola"])
    clock.advance(12)
    frozen = session.model_copy(deep=True)
    snapshot = engine.quiz_for(session)

    first = build_result(frozen, snapshot, clock())
    second = build_result(frozen, snapshot, clock())
    assert first == second
    assert first.model_dump_json() == second.model_dump_json()


@pytest.mark.asyncio
async def test_concurrent_starts_admit_one_session(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock, store=YieldingStore())

    outcomes = await asyncio.gather(
        engine.start("ana", quiz.id),
        engine.start("ana", quiz.id),
        return_exceptions=True,
    )

    sessions = [o for o in outcomes if not isinstance(o, BaseException)]
    rejected = [o for o in outcomes if isinstance(o, InvalidStateError)]
    assert len(sessions) == 1 and len(rejected) == 1
    assert engine.active_session_id("ana", quiz.id) == sessions[0].id


@pytest.mark.asyncio
async def test_failed_start_releases_the_learner_quiz_slot(spanish_quiz, clock):
    engine, _, quiz = await _engine(spanish_quiz, clock, store=YieldingStore())
    await engine._catalog.save_quiz(spanish_quiz.model_copy(update={"id": "retired", "is_active": False}))

    with pytest.raises(NotFoundError):
        await engine.start("ana", "retired")
    assert engine.active_session_id("ana", "retired") is None

    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(PersistenceError):
        await engine.start("ana", quiz.id, cancel=cancel)
    assert engine.active_session_id("ana", quiz.id) is None
    assert (await engine.start("ana", quiz.id)).quiz_id == quiz.id


@pytest.mark.asyncio
async def test_cancelled_finalize_keeps_result_but_skips_progress(spanish_quiz, clock):
    engine, recorder, quiz = await _engine(spanish_quiz, clock)
    session = await engine.start("ana", quiz.id)
    engine.submit_answer(session, "q-hello", ["hola"])
    cancel = asyncio.Event()
    cancel.set()

    completion = await engine.tick(session, 60, cancel=cancel)

    assert completion.result.score == 1
    assert not completion.progress_saved
    assert "cancelled" in completion.persistence_error.message
    assert (await recorder.history("ana", quiz.lesson_id)).value == []


@pytest.mark.asyncio
async def test_fractional_ticks_accumulate(spanish_quiz, clock):
    engine, _, _ = await _engine(spanish_quiz, clock)
    short = await engine._catalog.save_quiz(spanish_quiz.model_copy(update={"id": "short", "time_limit_seconds": 1}))
    session = await engine.start("ana", short.id)

    for _ in range(3):
        assert await engine.tick(session, 0.25) is None
    assert session.time_remaining_seconds == 0.25
    completion = await engine.tick(session, 0.25)

    assert completion is not None
    assert completion.result.time_spent_seconds == 1
