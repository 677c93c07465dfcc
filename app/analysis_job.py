"""
Lesson analysis job
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.job_runner import JobContext, JobOutcome, run_job
from app.core.logging import get_logger
from app.models import Lesson

logger = get_logger(__name__)


async def run_analysis_job(lesson_id: int, job_id: str, custom_prompt: Optional[str] = None, **overrides) -> str:
    """Write overview, grammar, vocabulary and study tips onto the lesson"""
    ctx = JobContext(job_id=job_id, job_type="analysis", lesson_id=lesson_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if not (lesson.original_text or "").strip():
            return JobOutcome(skipped="empty_text")

        target, support = ctx.languages(lesson)
        result = await ctx.services.analysis.generate(lesson.original_text, target, support, custom_prompt)
        if not result.ok:
            logger.warning("Analysis returned nothing, lesson left unchanged",
                           reason=result.error.message if result.error else None)
            return JobOutcome(skipped="no_results")

        analysis = result.items[0]

        async def write(session: AsyncSession) -> int:
            row = await session.get(Lesson, lesson_id)
            row.analysis_overview = analysis.overview or row.analysis_overview
            row.analysis_grammar = analysis.grammar_points or row.analysis_grammar
            row.analysis_vocabulary = analysis.vocabulary_focus or row.analysis_vocabulary
            row.analysis_study_tips = analysis.study_tips or row.analysis_study_tips
            # Merge so lesson_pack and ai_generation survive
            row.analysis_meta = {**row.meta, **analysis.meta}
            return 1

        return JobOutcome(items_created=await ctx.transaction(write), result_data=analysis.meta)

    return await run_job(ctx, body, max_tries=ctx.settings.analysis_job_max_tries)
