from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

# Test-mode runtime guards:
# - in-process document store, no MongoDB traffic
# - no background timer during HTTP tests unless a test asks for one
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DOCUMENT_STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from lingualearn.main import app  # noqa: E402
from lingualearn.models.quiz import Question, Quiz  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def spanish_quiz() -> Quiz:
    return Quiz(
        lesson_id="lesson-greetings",
        title="Greetings check",
        time_limit_seconds=60,
        passing_score=70,
        questions=[
            Question(
                id="q-hello",
                type="multiple_choice",
                prompt="How do you say 'hello'?",
                options=["Hola", "Adiós", "Gracias"],
                correct_answers=["Hola"],
                order=1,
            ),
            Question(
                id="q-goodbye",
                type="fill_blank",
                prompt="___ means 'goodbye'",
                correct_answers=["adiós"],
                order=2,
            ),
            Question(
                id="q-formal",
                type="true_false",
                prompt="'Usted' is the formal 'you'.",
                options=["true", "false"],
                correct_answers=["true"],
                order=3,
            ),
        ],
    )


@pytest.fixture(scope="session")
def client() -> TestClient:
    with TestClient(app) as tc:
        yield tc
