from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from lingualearn.api.deps import Services, get_services

router = APIRouter(prefix="/learners", tags=["progress"])


@router.get("/{learner_id}/lessons/{lesson_id}/progress")
async def lesson_progress(learner_id: str, lesson_id: str, services: Services = Depends(get_services)):
    progress = (await services.recorder.aggregate(learner_id, lesson_id)).unwrap()
    return progress.model_dump(mode="json")


@router.get("/{learner_id}/lessons/{lesson_id}/history")
async def lesson_history(learner_id: str, lesson_id: str, services: Services = Depends(get_services)):
    records = (await services.recorder.history(learner_id, lesson_id)).unwrap()
    return {"records": [r.model_dump(mode="json") for r in records]}


@router.get("/{learner_id}/statistics")
async def statistics(learner_id: str, services: Services = Depends(get_services)):
    return {"learner_id": learner_id, "statistics": (await services.recorder.statistics(learner_id)).unwrap()}


@router.get("/{learner_id}/quiz-history")
async def quiz_history(
    learner_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    results = (await services.recorder.quiz_history(learner_id, limit)).unwrap()
    return {"learner_id": learner_id, "results": [r.model_dump(mode="json") for r in results]}
