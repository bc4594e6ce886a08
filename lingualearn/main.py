from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from lingualearn.api.deps import build_services, close_services
from lingualearn.api.events import router as events_router
from lingualearn.api.health import router as health_router
from lingualearn.api.progress import router as progress_router
from lingualearn.api.quiz_sessions import router as quiz_sessions_router
from lingualearn.api.quizzes import router as quizzes_router
from lingualearn.core.errors import (
    QuizError,
    http_exception_handler,
    quiz_exception_handler,
    request_id_middleware,
    unhandled_exception_handler,
    validation_exception_handler,
)
from lingualearn.core.logging import DOMAIN_API, configure_logging, get_domain_logger
from lingualearn.core.settings import settings

configure_logging(settings.log_level)
logger = get_domain_logger(__name__, DOMAIN_API)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = build_services()
    logger.info("Started with %s document store (env=%s)", services.store.backend_name, settings.app_env)
    try:
        yield
    finally:
        await close_services()


app = FastAPI(title="LinguaLearn Quiz API", version="0.1.0", lifespan=lifespan)
app.include_router(health_router)
app.include_router(quizzes_router)
app.include_router(quiz_sessions_router)
app.include_router(progress_router)
app.include_router(events_router)
app.middleware("http")(request_id_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(QuizError, quiz_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)
