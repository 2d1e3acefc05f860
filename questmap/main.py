# questmap/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .db import init_db, make_engine, make_session_factory
from .engine.adventure import AdventureEngine
from .engine.catalog import WorldCatalog
from .engine.path_generator import PathGenerator
from .engine.progress import ProgressStore
from .engine.rewards import HttpXpService, InMemoryXpService
from .engine.tasks import HttpTaskSource, InMemoryTaskSource
from .errors import AdventureError, ObjectiveUnmet
from .logging import configure_logging
from .routes.adventure import router as adventure_router

logger = logging.getLogger(__name__)


def build_engine(db_engine: AsyncEngine) -> AdventureEngine:
    """Wire an AdventureEngine from config. Upstreams fall back to in-memory adapters when unset."""
    catalog = WorldCatalog.from_yaml(config.WORLD_DATA)
    store = ProgressStore(make_session_factory(db_engine))
    if config.TASKS_URL:
        tasks = HttpTaskSource(config.TASKS_URL, timeout=config.UPSTREAM_TIMEOUT)
    else:
        logger.warning("QUESTMAP_TASKS_URL not set; using in-memory task source")
        tasks = InMemoryTaskSource()
    if config.XP_URL:
        xp = HttpXpService(config.XP_URL, timeout=config.UPSTREAM_TIMEOUT)
    else:
        logger.warning("QUESTMAP_XP_URL not set; using in-memory XP service")
        xp = InMemoryXpService()
    return AdventureEngine(
        catalog,
        store,
        tasks,
        xp,
        generator=PathGenerator(config.MAX_NODES),
        upstream_timeout=config.UPSTREAM_TIMEOUT,
        timezone=config.TIMEZONE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Create tables once (migrations handle upgrades; see `questmap db upgrade`).
    - Build the AdventureEngine unless one was installed on app.state already.
    """
    configure_logging(config.LOG_LEVEL)

    # 1) Database
    db_engine: Optional[AsyncEngine] = getattr(app.state, "db_engine", None)
    if db_engine is None:
        db_engine = make_engine(config.DATABASE_URL)
        app.state.db_engine = db_engine
    await init_db(db_engine)

    # 2) Adventure engine
    engine_instance: Optional[AdventureEngine] = getattr(app.state, "adventure_engine", None)
    if engine_instance is None:
        engine_instance = build_engine(db_engine)
        app.state.adventure_engine = engine_instance
    logger.info("Adventure engine started with %d worlds", engine_instance.catalog.count)

    yield

    # Shutdown
    for client in (engine_instance.snapshots.source, engine_instance.xp):
        aclose = getattr(client, "aclose", None)
        if aclose is not None:
            await aclose()
    await db_engine.dispose()
    logger.info("Adventure engine stopped")


app = FastAPI(title="Questmap", lifespan=lifespan)
app.include_router(adventure_router)


# ============================================================================
# Error Envelope
# ============================================================================

def error_response(status_code: int, message: str, data: Optional[dict] = None) -> JSONResponse:
    body = {"status": "error", "message": message}
    if data:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AdventureError)
async def adventure_error_handler(request: Request, exc: AdventureError):
    if isinstance(exc, ObjectiveUnmet) and exc.evaluation is not None:
        return error_response(exc.status_code, exc.message, exc.evaluation.to_dict())
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", {"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
