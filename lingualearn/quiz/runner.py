"""Single-writer execution of quiz sessions.

Each session is owned by one ``SessionActor``: learner commands and countdown ticks are
queued and applied one at a time by the actor's worker task, so time expiry can never
interleave with a submit or advance on the same session.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from lingualearn.core.errors import InvalidStateError, NotFoundError, QuizError
from lingualearn.core.event_bus import event_bus
from lingualearn.core.logging import DOMAIN_QUIZ, get_domain_logger
from lingualearn.core.settings import settings
from lingualearn.models.quiz import Question, QuizSession
from lingualearn.quiz.engine import Completion, QuizSessionEngine

logger = get_domain_logger(__name__, DOMAIN_QUIZ)

CMD_SUBMIT = "submit"
CMD_ADVANCE = "advance"
CMD_TICK = "tick"
CMD_STOP = "stop"


@dataclass
class _Command:
    kind: str
    args: tuple = ()
    future: asyncio.Future | None = field(default=None, repr=False)


class SessionActor:
    def __init__(
        self,
        engine: QuizSessionEngine,
        session: QuizSession,
        *,
        tick_seconds: float | None = None,
        on_complete: Callable[["SessionActor", Completion], Awaitable[None]] | None = None,
    ):
        self._engine = engine
        self._session = session
        self._tick_seconds = settings.quiz_tick_seconds if tick_seconds is None else tick_seconds
        self._on_complete = on_complete
        self._queue: asyncio.Queue[_Command] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._done = asyncio.Event()
        self.completion: Completion | None = None

    @property
    def session_id(self) -> str:
        return self._session.id

    def snapshot(self) -> QuizSession:
        return self._session.model_copy(deep=True)

    def current_question(self) -> Question:
        return self._engine.current_question(self._session)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run(), name=f"quiz-session-{self.session_id}")
        if self._tick_seconds > 0 and not self._session.is_completed:
            self._ticker = asyncio.create_task(self._tick_loop(), name=f"quiz-timer-{self.session_id}")

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def submit(self, question_id: str, answers: list[str]) -> QuizSession:
        return await self._call(CMD_SUBMIT, question_id, answers)

    async def advance(self) -> Completion | None:
        return await self._call(CMD_ADVANCE)

    async def tick(self, seconds: float = 1) -> Completion | None:
        return await self._call(CMD_TICK, seconds)

    async def wait_completed(self, timeout: float | None = None) -> Completion:
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        if self.completion is None:
            raise InvalidStateError(f"session {self.session_id} finished without a result")
        return self.completion

    async def stop(self) -> None:
        self._cancel_ticker()
        if not self.running:
            return
        await self._call(CMD_STOP)
        await self._worker

    async def _call(self, kind: str, *args: Any):
        if not self.running:
            raise InvalidStateError(f"session {self.session_id} is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command(kind, args, future))
        return await future

    def _cancel_ticker(self) -> None:
        if self._ticker is not None and not self._ticker.done() and self._ticker is not asyncio.current_task():
            self._ticker.cancel()

    async def _tick_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last = loop.time()
        while not self._session.is_completed:
            await asyncio.sleep(self._tick_seconds)
            now = loop.time()
            # Charge the wall time actually elapsed, not the nominal period.
            await self._queue.put(_Command(CMD_TICK, (now - last,)))
            last = now

    async def _apply(self, command: _Command):
        if command.kind == CMD_SUBMIT:
            self._engine.submit_answer(self._session, *command.args)
            return self.snapshot()
        if command.kind == CMD_ADVANCE:
            return await self._engine.advance(self._session)
        if command.kind == CMD_TICK:
            return await self._engine.tick(self._session, *command.args)
        raise ValueError(f"Unsupported session command: {command.kind}")

    async def _run(self) -> None:
        while True:
            command = await self._queue.get()
            if command.kind == CMD_STOP:
                if command.future is not None and not command.future.done():
                    command.future.set_result(None)
                return
            try:
                value = await self._apply(command)
            except QuizError as exc:
                if command.future is not None and not command.future.done():
                    command.future.set_exception(exc)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Session %s command %s failed", self.session_id, command.kind)
                if command.future is not None and not command.future.done():
                    command.future.set_exception(exc)
                continue
            if isinstance(value, Completion):
                await self._finish(value)
            if command.future is not None and not command.future.done():
                command.future.set_result(value)

    async def _finish(self, completion: Completion) -> None:
        self.completion = completion
        self._cancel_ticker()
        self._done.set()
        if self._on_complete is not None:
            try:
                await self._on_complete(self, completion)
            except Exception:  # noqa: BLE001
                logger.exception("Completion hook failed for session %s", self.session_id)


class SessionManager:
    """Registry of running session actors, keyed by session id."""

    def __init__(self, engine: QuizSessionEngine, *, tick_seconds: float | None = None):
        self._engine = engine
        self._tick_seconds = tick_seconds
        self._actors: dict[str, SessionActor] = {}

    async def start_session(self, learner_id: str, quiz_id: str) -> SessionActor:
        session = await self._engine.start(learner_id, quiz_id)
        actor = SessionActor(self._engine, session, tick_seconds=self._tick_seconds, on_complete=self._handle_completion)
        self._actors[session.id] = actor
        actor.start()
        await event_bus.publish(
            "quiz_session_started",
            "quiz_sessions",
            {"session_id": session.id, "learner_id": learner_id, "quiz_id": quiz_id},
        )
        return actor

    def get(self, session_id: str) -> SessionActor:
        actor = self._actors.get(session_id)
        if actor is None:
            raise NotFoundError(f"session {session_id} not found")
        return actor

    async def submit(self, session_id: str, question_id: str, answers: list[str]) -> QuizSession:
        session = await self.get(session_id).submit(question_id, answers)
        last = session.answers[-1] if session.answers else None
        await event_bus.publish(
            "quiz_answer_submitted",
            "quiz_sessions",
            {
                "session_id": session_id,
                "question_id": question_id,
                "is_correct": bool(last and last.question_id == question_id and last.is_correct),
                "score": session.score,
            },
        )
        return session

    async def advance(self, session_id: str) -> Completion | None:
        return await self.get(session_id).advance()

    async def stop(self, session_id: str) -> None:
        actor = self._actors.pop(session_id, None)
        if actor is None:
            raise NotFoundError(f"session {session_id} not found")
        await actor.stop()
        self._engine.forget(actor.snapshot())

    async def shutdown(self) -> None:
        for session_id in list(self._actors):
            await self.stop(session_id)

    def list_sessions(self) -> list[dict]:
        out = []
        for actor in self._actors.values():
            session = actor.snapshot()
            out.append(
                {
                    "session_id": session.id,
                    "learner_id": session.learner_id,
                    "quiz_id": session.quiz_id,
                    "is_completed": session.is_completed,
                    "time_remaining_seconds": session.time_remaining_seconds,
                }
            )
        return out

    def active_count(self) -> int:
        return sum(1 for actor in self._actors.values() if not actor.snapshot().is_completed)

    async def _handle_completion(self, actor: SessionActor, completion: Completion) -> None:
        result = completion.result
        await event_bus.publish(
            "quiz_session_completed",
            "quiz_sessions",
            {
                "session_id": actor.session_id,
                "learner_id": result.learner_id,
                "quiz_id": result.quiz_id,
                "score": result.score,
                "total_points": result.total_points,
                "xp_earned": result.xp_earned,
                "is_passed": result.is_passed,
            },
        )
        if not completion.progress_saved:
            await event_bus.publish(
                "quiz_progress_not_saved",
                "quiz_sessions",
                {
                    "session_id": actor.session_id,
                    "learner_id": result.learner_id,
                    "error": completion.persistence_error.message if completion.persistence_error else None,
                },
            )
