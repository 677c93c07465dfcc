"""
Sentence translation job
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.job_runner import JobContext, JobOutcome, run_job
from app.core.logging import get_logger
from app.models import LessonSentence

logger = get_logger(__name__)


async def run_translation_job(
    lesson_id: int,
    job_id: str,
    only_missing: bool = True,
    custom_prompt: Optional[str] = None,
    **overrides,
) -> str:
    """Fill lesson_sentences.translation for all sentences, or only those without one"""
    ctx = JobContext(job_id=job_id, job_type="translation", lesson_id=lesson_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()

        async def read_sentences(session: AsyncSession):
            query = select(LessonSentence).where(LessonSentence.lesson_id == lesson_id)
            if only_missing:
                query = query.where(LessonSentence.translation.is_(None))
            rows = (await session.scalars(query.order_by(LessonSentence.order_index))).all()
            return [{"id": row.id, "text": row.text} for row in rows]

        sentences = await ctx.transaction(read_sentences)
        if not sentences:
            return JobOutcome(skipped="no_sentences")

        target, support = ctx.languages(lesson)
        result = await ctx.services.translation.translate(sentences, target, support, custom_prompt)
        if not result.ok:
            logger.warning("Translation returned nothing, sentences left unchanged",
                           reason=result.error.message if result.error else None)
            return JobOutcome(skipped="no_results")

        translations = {item.id: item.translation for item in result.items}

        async def write(session: AsyncSession) -> int:
            rows = (await session.scalars(
                select(LessonSentence).where(
                    LessonSentence.lesson_id == lesson_id,
                    LessonSentence.id.in_(list(translations)),
                )
            )).all()
            for row in rows:
                row.translation = translations[row.id]
            return len(rows)

        return JobOutcome(items_created=await ctx.transaction(write))

    return await run_job(ctx, body)
