"""
AI lesson generation job: topic in, lesson text and lesson pack out
"""
import uuid
from dataclasses import replace

from sqlalchemy.ext.asyncio import AsyncSession

from app.analysis_job import run_analysis_job
from app.core.dialogue import LessonBrief
from app.core.job_runner import ERROR_MESSAGE_CHARS, JobContext, JobOutcome, run_job
from app.core.logging import get_logger
from app.models import Lesson

logger = get_logger(__name__)

SHORT_DESCRIPTION_CHARS = 180


async def run_ai_lesson_job(lesson_id: int, job_id: str, **overrides) -> str:
    """
    Generate a lesson from ``analysis_meta.ai_generation`` and chain the analysis job.

    Only lessons in ``generating`` status are touched. On terminal failure the
    lesson is marked ``failed`` with the error kept in ``analysis_meta``.
    """
    ctx = JobContext(job_id=job_id, job_type="ai_lesson", lesson_id=lesson_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if lesson.status != "generating":
            return JobOutcome(skipped=f"status_{lesson.status}")

        inputs = lesson.meta.get("ai_generation") or {}
        brief = LessonBrief.from_meta(
            inputs if isinstance(inputs, dict) else {},
            default_target=ctx.settings.default_target_language,
            default_support=ctx.settings.default_support_language,
        )
        brief = replace(
            brief,
            target_language=lesson.target_language or brief.target_language,
            support_language=lesson.support_language or brief.support_language,
            level=lesson.level or brief.level or "A2",
        )
        logger.info("AI lesson flags",
                    include_dialogue=brief.include_dialogue,
                    include_key_phrases=brief.include_key_phrases,
                    include_quick_questions=brief.include_quick_questions)

        pack = await ctx.services.dialogue.generate(brief)
        logger.info("AI lesson pack sizes",
                    dialogue=len(pack.dialogue),
                    key_phrases=len(pack.key_phrases),
                    quick_questions=len(pack.quick_questions))

        async def write(session: AsyncSession) -> int:
            row = await session.get(Lesson, lesson_id)
            lesson_text = pack.lesson_text.strip()
            tags = list(row.tags or [])
            for tag in pack.tags:
                if tag not in tags:
                    tags.append(tag)

            row.title = pack.title.strip() or row.title
            row.original_text = lesson_text
            row.short_description = lesson_text[:SHORT_DESCRIPTION_CHARS] or None
            row.tags = tags
            row.status = "draft"
            row.analysis_meta = {**row.meta, "lesson_pack": pack.model_dump()}
            return 1

        return JobOutcome(items_created=await ctx.transaction(write))

    async def mark_failed(ctx: JobContext, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__

        async def work(session: AsyncSession) -> None:
            row = await session.get(Lesson, lesson_id)
            if row is None:
                return
            row.status = "failed"
            row.analysis_meta = {**row.meta, "ai_generation_error": message[:ERROR_MESSAGE_CHARS]}

        await ctx.transaction(work)

    status = await run_job(ctx, body, max_tries=ctx.settings.ai_lesson_job_max_tries, on_failure=mark_failed)
    if status == "completed":
        await run_analysis_job(lesson_id, str(uuid.uuid4()), **overrides)
    return status
