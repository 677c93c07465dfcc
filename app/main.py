"""
FastAPI entrypoint: lesson generation triggers, job status, health and metrics
"""
from contextlib import asynccontextmanager
import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.core.exceptions import LessonNotFoundError, LinguaPipelineError
from app.core.locks import get_lock_store
from app.core.logging import get_logger, setup_logging, request_id_var
from app.db import get_engine
from app.models import Base
from app.routes import job_routes, lesson_routes

settings = get_settings()
logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings)
    logger.info("Lingua pipeline starting up",
                environment=settings.environment.value,
                provider=settings.provider.value,
                shared_locks=bool(settings.redis_url))
    engine = get_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as e:
        logger.error("Schema ensure failed", error=str(e))

    yield

    logger.info("Lingua pipeline shutting down")
    await get_lock_store(settings).close()
    await engine.dispose()


app = FastAPI(
    title="Lingua Pipeline",
    version=VERSION,
    description="Chunked-prompt LLM generation for language-learning lessons",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag the request with an id and log its timing"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed",
                     method=request.method,
                     path=request.url.path,
                     error=str(e),
                     duration_seconds=time.perf_counter() - started)
        raise

    duration = time.perf_counter() - started
    logger.info("request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=round(duration, 4))
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = f"{duration:.4f}"
    return response


def _error_body(exc: LinguaPipelineError) -> dict:
    return {
        "error": exc.message,
        "details": exc.details,
        "request_id": request_id_var.get(),
    }


@app.exception_handler(LessonNotFoundError)
async def handle_lesson_not_found(request: Request, exc: LessonNotFoundError):
    logger.warning("Lesson not found", details=exc.details, path=request.url.path)
    return JSONResponse(status_code=404, content=_error_body(exc))


@app.exception_handler(LinguaPipelineError)
async def handle_pipeline_error(request: Request, exc: LinguaPipelineError):
    logger.error("Pipeline error",
                 error=exc.message,
                 error_type=type(exc).__name__,
                 details=exc.details,
                 path=request.url.path)
    return JSONResponse(status_code=400, content=_error_body(exc))


@app.exception_handler(Exception)
async def handle_generic_exception(request: Request, exc: Exception):
    logger.error("Unexpected error",
                 error=str(exc),
                 error_type=type(exc).__name__,
                 path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc) if settings.debug else "An unexpected error occurred",
            "request_id": request_id_var.get()
        }
    )


app.include_router(lesson_routes.router)
app.include_router(job_routes.router)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": VERSION,
        "environment": settings.environment.value
    }


@app.get("/health/ready")
async def readiness():
    """Ready when the database answers and the lock store is reachable"""
    checks = {"database": "ok", "locks": "ok"}
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database readiness check failed", error=str(e))
        checks["database"] = "failed"

    if not await get_lock_store(settings).ping():
        checks["locks"] = "failed"

    if "failed" in checks.values():
        return JSONResponse(status_code=503, content={"status": "not ready", "checks": checks})
    return {"status": "ready", "checks": checks}


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
