"""
Shared lifecycle for background generation jobs: tracking row, lock, retry, timeout
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar
import asyncio
import time

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.locks import LessonLockStore, get_lock_store, lesson_lock_key
from app.core.exceptions import DatabaseError, LessonNotFoundError, LLMError
from app.core.logging import get_logger, metrics_logger
from app.core.retry import get_job_retry
from app.core.services import LessonServices, build_services
from app.db import async_session
from app.models import GenerationJob, Lesson
from app.utils.language import resolve_lesson_languages

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]
T = TypeVar("T")

ERROR_MESSAGE_CHARS = 900


@dataclass
class JobOutcome:
    """What a job body did; a skipped job changed nothing"""
    items_created: int = 0
    skipped: Optional[str] = None
    result_data: Dict[str, Any] = field(default_factory=dict)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobContext:
    """Everything a job body needs, with test overrides applied"""

    def __init__(
        self,
        job_id: str,
        job_type: str,
        lesson_id: int,
        settings: Optional[Settings] = None,
        session_factory: Optional[SessionFactory] = None,
        services: Optional[LessonServices] = None,
        locks: Optional[LessonLockStore] = None,
    ):
        self.job_id = job_id
        self.job_type = job_type
        self.lesson_id = lesson_id
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self._services = services
        self.locks = locks or get_lock_store(self.settings)

    @property
    def services(self) -> LessonServices:
        if self._services is None:
            self._services = build_services(self.settings)
        return self._services

    @property
    def lock_key(self) -> str:
        return lesson_lock_key(self.lesson_id, self.job_type)

    async def transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run work inside one transaction; SQLAlchemy errors surface as DatabaseError"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    return await work(session)
        except SQLAlchemyError as e:
            raise DatabaseError("Database operation failed",
                                {"job_type": self.job_type, "lesson_id": self.lesson_id, "error": str(e)}) from e

    async def load_lesson(self) -> Lesson:
        async def work(session: AsyncSession) -> Lesson:
            lesson = await session.get(Lesson, self.lesson_id)
            if lesson is None:
                raise LessonNotFoundError(f"Lesson {self.lesson_id} not found", {"lesson_id": self.lesson_id})
            return lesson

        return await self.transaction(work)

    def languages(self, lesson: Lesson) -> Tuple[str, str]:
        return resolve_lesson_languages(
            lesson.target_language,
            lesson.support_language,
            lesson.original_text or "",
            default_target=self.settings.default_target_language,
            default_support=self.settings.default_support_language,
        )


async def next_order_index(session: AsyncSession, column, lesson_column, lesson_id: int) -> int:
    """Order index that follows the existing rows of one lesson collection"""
    current = await session.scalar(select(func.max(column)).where(lesson_column == lesson_id))
    return 0 if current is None else int(current) + 1


async def _record_job(ctx: JobContext, **values: Any) -> None:
    async def work(session: AsyncSession) -> None:
        job = await session.get(GenerationJob, ctx.job_id)
        if job is None:
            job = GenerationJob(id=ctx.job_id, lesson_id=ctx.lesson_id, job_type=ctx.job_type)
            session.add(job)
        for key, value in values.items():
            setattr(job, key, value)

    await ctx.transaction(work)


async def run_job(
    ctx: JobContext,
    body: Callable[[JobContext], Awaitable[JobOutcome]],
    max_tries: Optional[int] = None,
    on_failure: Optional[Callable[[JobContext, Exception], Awaitable[None]]] = None,
) -> str:
    """
    Run one generation job and return its final status.

    The job row goes processing -> completed | skipped | failed. A job that
    cannot take the per-lesson lock for its collection is skipped. Only
    ``LLMError`` and ``DatabaseError`` are retried; ``on_failure`` runs once
    after the last try.
    """
    start_time = time.time()
    settings = ctx.settings

    await _record_job(ctx, status="processing", started_at=utcnow())
    metrics_logger.log_job_start(ctx.job_id, ctx.job_type, ctx.lesson_id)

    acquired = await ctx.locks.acquire(ctx.lock_key, ctx.job_id, settings.generation_lock_ttl_seconds)
    if not acquired:
        logger.warning("Lesson is locked by another job", lock_key=ctx.lock_key,
                       holder=await ctx.locks.holder(ctx.lock_key))
        metrics_logger.log_job_skipped(ctx.job_type, "locked")
        await _record_job(ctx, status="skipped", error_message="locked", completed_at=utcnow())
        return "skipped"

    retrying = get_job_retry(
        max_tries or settings.job_max_tries,
        settings.job_backoff_seconds,
        (LLMError, DatabaseError),
    )

    try:
        outcome = await asyncio.wait_for(retrying(body)(ctx), timeout=settings.job_timeout_seconds)
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.error("Generation job failed",
                     job_type=ctx.job_type,
                     error=message,
                     error_type=type(e).__name__)
        metrics_logger.log_job_error(ctx.job_type, message)
        if on_failure is not None:
            try:
                await on_failure(ctx, e)
            except Exception as hook_error:
                logger.error("Job failure hook raised",
                             job_type=ctx.job_type,
                             error=str(hook_error),
                             error_type=type(hook_error).__name__)
        await _record_job(ctx, status="failed", error_message=message[:ERROR_MESSAGE_CHARS], completed_at=utcnow())
        return "failed"
    finally:
        await ctx.locks.release(ctx.lock_key, ctx.job_id)

    if outcome.skipped:
        metrics_logger.log_job_skipped(ctx.job_type, outcome.skipped)
        await _record_job(ctx, status="skipped", error_message=outcome.skipped[:ERROR_MESSAGE_CHARS],
                          result_data=outcome.result_data or None, completed_at=utcnow())
        return "skipped"

    metrics_logger.log_job_complete(ctx.job_type, time.time() - start_time, outcome.items_created)
    await _record_job(ctx, status="completed", items_created=outcome.items_created,
                      result_data=outcome.result_data or None, completed_at=utcnow())
    return "completed"
