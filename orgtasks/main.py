"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from orgtasks.api.v1 import api_router
from orgtasks.config import Settings, settings as app_settings
from orgtasks.database import SessionLocal, init_db
from orgtasks.exceptions import TaskEngineError
from orgtasks.logging_setup import setup_logging
from orgtasks.services.notifications import NotificationPoller, engine_task_source

logger = logging.getLogger(__name__)


async def task_engine_exception_handler(request: Request, exc: TaskEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
    else:
        logger.info("%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> FastAPI:
    settings = settings or app_settings
    poller = NotificationPoller(engine_task_source(session_factory, settings), settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        init_db(getattr(session_factory, "kw", {}).get("bind"))
        logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
        yield
        await poller.stop_all()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.notification_poller = poller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TaskEngineError, task_engine_exception_handler)
    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()
