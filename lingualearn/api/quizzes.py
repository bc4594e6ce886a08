from __future__ import annotations

from fastapi import APIRouter, Depends

from lingualearn.api.deps import Services, get_services
from lingualearn.schemas.quiz import QuizIn, QuizView

router = APIRouter(tags=["quizzes"])


@router.post("/quizzes", response_model=QuizView)
async def save_quiz(payload: QuizIn, services: Services = Depends(get_services)):
    quiz = await services.catalog.save_quiz(payload.to_quiz())
    return QuizView.from_quiz(quiz)


@router.get("/quizzes/{quiz_id}", response_model=QuizView)
async def get_quiz(quiz_id: str, services: Services = Depends(get_services)):
    return QuizView.from_quiz(await services.catalog.get_quiz(quiz_id))


@router.delete("/quizzes/{quiz_id}")
async def delete_quiz(quiz_id: str, services: Services = Depends(get_services)):
    return {"quiz_id": quiz_id, "deleted": await services.catalog.delete_quiz(quiz_id)}


@router.get("/lessons/{lesson_id}/quizzes")
async def lesson_quizzes(lesson_id: str, services: Services = Depends(get_services)):
    quizzes = await services.catalog.quizzes_for_lesson(lesson_id)
    return {"lesson_id": lesson_id, "quizzes": [QuizView.from_quiz(q) for q in quizzes]}
