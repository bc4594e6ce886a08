from __future__ import annotations

from dataclasses import dataclass

from lingualearn.progress.recorder import ProgressRecorder
from lingualearn.quiz.catalog import QuizCatalog
from lingualearn.quiz.engine import QuizSessionEngine
from lingualearn.quiz.runner import SessionManager
from lingualearn.storage.store import DocumentStore, build_document_store


@dataclass
class Services:
    store: DocumentStore
    catalog: QuizCatalog
    recorder: ProgressRecorder
    engine: QuizSessionEngine
    manager: SessionManager


_services: Services | None = None


def build_services(store: DocumentStore | None = None) -> Services:
    global _services
    store = store or build_document_store()
    catalog = QuizCatalog(store)
    recorder = ProgressRecorder(store)
    engine = QuizSessionEngine(catalog, recorder)
    _services = Services(
        store=store,
        catalog=catalog,
        recorder=recorder,
        engine=engine,
        manager=SessionManager(engine),
    )
    return _services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("services are not initialised; the application has not started")
    return _services


async def close_services() -> None:
    global _services
    if _services is None:
        return
    await _services.manager.shutdown()
    await _services.store.close()
    _services = None
