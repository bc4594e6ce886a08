from __future__ import annotations

from fastapi import APIRouter, Depends

from lingualearn.api.deps import Services, get_services
from lingualearn.quiz.engine import Completion
from lingualearn.quiz.runner import SessionActor
from lingualearn.schemas.quiz import (
    AdvanceResponse,
    QuestionView,
    SessionView,
    StartQuizSessionRequest,
    SubmitAnswerRequest,
)

router = APIRouter(prefix="/quiz-sessions", tags=["quiz-sessions"])


def _session_response(actor: SessionActor, completion: Completion | None = None) -> AdvanceResponse:
    completion = completion or actor.completion
    response = AdvanceResponse(session=SessionView.from_session(actor.snapshot()))
    if completion is not None:
        response.result = completion.result
        response.progress_saved = completion.progress_saved
        if completion.persistence_error is not None:
            response.persistence_error = completion.persistence_error.message
    return response


@router.post("", response_model=AdvanceResponse)
async def start_session(payload: StartQuizSessionRequest, services: Services = Depends(get_services)):
    actor = await services.manager.start_session(payload.learner_id.strip(), payload.quiz_id.strip())
    return _session_response(actor)


@router.get("")
async def list_sessions(services: Services = Depends(get_services)):
    return {"sessions": services.manager.list_sessions()}


@router.get("/{session_id}", response_model=AdvanceResponse)
async def get_session(session_id: str, services: Services = Depends(get_services)):
    return _session_response(services.manager.get(session_id))


@router.get("/{session_id}/question", response_model=QuestionView)
async def current_question(session_id: str, services: Services = Depends(get_services)):
    return QuestionView.from_question(services.manager.get(session_id).current_question())


@router.post("/{session_id}/answers", response_model=SessionView)
async def submit_answer(session_id: str, payload: SubmitAnswerRequest, services: Services = Depends(get_services)):
    session = await services.manager.submit(session_id, payload.question_id, payload.answers)
    return SessionView.from_session(session)


@router.post("/{session_id}/advance", response_model=AdvanceResponse)
async def advance(session_id: str, services: Services = Depends(get_services)):
    completion = await services.manager.advance(session_id)
    return _session_response(services.manager.get(session_id), completion)


@router.post("/{session_id}/stop")
async def stop_session(session_id: str, services: Services = Depends(get_services)):
    await services.manager.stop(session_id)
    return {"session_id": session_id, "status": "stopped"}
