"""
Background jobs that generate and persist lesson words, sentences, grammar and exercises
"""
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.job_runner import JobContext, JobOutcome, next_order_index, run_job
from app.core.logging import get_logger
from app.core.nlp import NlpTask
from app.core.words import build_word_prompt
from app.models import (
    Lesson,
    LessonExercise,
    LessonExerciseOption,
    LessonGrammarPoint,
    LessonSentence,
    LessonWord,
)
from app.schemas import ExerciseItem, GrammarPointItem, SentenceItem, WordItem

logger = get_logger(__name__)


# ======================= Persistence =======================

async def replace_words(session: AsyncSession, lesson_id: int, items: Iterable[WordItem], replace: bool) -> int:
    if replace:
        await session.execute(delete(LessonWord).where(LessonWord.lesson_id == lesson_id))
        start = 0
    else:
        start = await next_order_index(session, LessonWord.order_index, LessonWord.lesson_id, lesson_id)

    rows = [
        LessonWord(
            lesson_id=lesson_id,
            order_index=start + i,
            term=item.term,
            meaning=item.meaning or None,
            example_sentence=item.example_sentence or None,
            translation=item.translation,
        )
        for i, item in enumerate(items)
    ]
    session.add_all(rows)
    return len(rows)


async def replace_sentences(session: AsyncSession, lesson_id: int, items: Iterable[SentenceItem], replace: bool) -> int:
    if replace:
        await session.execute(delete(LessonSentence).where(LessonSentence.lesson_id == lesson_id))
        start = 0
    else:
        start = await next_order_index(session, LessonSentence.order_index, LessonSentence.lesson_id, lesson_id)

    rows = [
        LessonSentence(
            lesson_id=lesson_id,
            order_index=start + i,
            text=item.text,
            translation=item.translation,
            source=item.source or "generated",
        )
        for i, item in enumerate(items)
    ]
    session.add_all(rows)
    return len(rows)


async def replace_grammar_points(
    session: AsyncSession, lesson_id: int, items: Iterable[GrammarPointItem], replace: bool
) -> int:
    if replace:
        await session.execute(delete(LessonGrammarPoint).where(LessonGrammarPoint.lesson_id == lesson_id))
        start = 0
    else:
        start = await next_order_index(session, LessonGrammarPoint.order_index, LessonGrammarPoint.lesson_id,
                                       lesson_id)

    rows = [
        LessonGrammarPoint(
            lesson_id=lesson_id,
            order_index=start + i,
            key=item.key,
            title=item.title,
            level=item.level,
            description=item.description,
            pattern=item.pattern,
            examples=[ex.model_dump() for ex in item.examples],
            meta=item.meta or None,
        )
        for i, item in enumerate(items)
    ]
    session.add_all(rows)
    return len(rows)


async def replace_exercises(session: AsyncSession, lesson_id: int, items: Iterable[ExerciseItem], replace: bool) -> int:
    if replace:
        exercise_ids = select(LessonExercise.id).where(LessonExercise.lesson_id == lesson_id)
        await session.execute(
            delete(LessonExerciseOption).where(LessonExerciseOption.lesson_exercise_id.in_(exercise_ids))
        )
        await session.execute(delete(LessonExercise).where(LessonExercise.lesson_id == lesson_id))
        start = 0
    else:
        start = await next_order_index(session, LessonExercise.order_index, LessonExercise.lesson_id, lesson_id)

    created = 0
    for i, item in enumerate(items):
        exercise = LessonExercise(
            lesson_id=lesson_id,
            order_index=start + i,
            type=item.type,
            skill=item.skill,
            question_prompt=item.question_prompt,
            instructions=item.instructions,
            solution_explanation=item.solution_explanation,
            meta={**item.meta, "difficulty": item.difficulty},
        )
        exercise.options = [
            LessonExerciseOption(
                order_index=j,
                label=option.label,
                text=option.text,
                is_correct=option.is_correct,
                explanation=option.explanation,
            )
            for j, option in enumerate(item.options)
        ]
        session.add(exercise)
        created += 1
    return created


def grammar_row_to_dict(row: LessonGrammarPoint) -> dict:
    return {"key": row.key, "title": row.title, "pattern": row.pattern}


def word_row_to_dict(row: LessonWord) -> dict:
    return {"term": row.term, "meaning": row.meaning}


def _empty_text(lesson: Lesson) -> bool:
    return not (lesson.original_text or "").strip()


# ======================= Jobs =======================

def _context(job_type: str, lesson_id: int, job_id: str, **overrides) -> JobContext:
    return JobContext(job_id=job_id, job_type=job_type, lesson_id=lesson_id, **overrides)


async def run_words_job(
    lesson_id: int,
    job_id: str,
    custom_prompt: Optional[str] = None,
    replace_existing: bool = True,
    count: Optional[int] = None,
    **overrides,
) -> str:
    """Generate vocabulary items for a lesson and persist them"""
    ctx = _context("words", lesson_id, job_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if _empty_text(lesson):
            return JobOutcome(skipped="empty_text")

        target, support = ctx.languages(lesson)
        prompt = build_word_prompt(
            level=lesson.word_prompt_level,
            domain=lesson.word_prompt_domain,
            min_items=lesson.word_prompt_min_items,
            max_items=lesson.word_prompt_max_items,
            notes=lesson.word_prompt_notes,
            inline_prompt=(custom_prompt or "").strip() or None,
        )
        result = await ctx.services.words.generate(lesson.original_text, target, support, prompt, count)
        if not result.ok:
            logger.warning("Word generation returned nothing, lesson left unchanged",
                           reason=result.error.message if result.error else None)
            return JobOutcome(skipped="no_results")

        async def write(session: AsyncSession) -> int:
            return await replace_words(session, lesson_id, result.items, replace_existing)

        return JobOutcome(items_created=await ctx.transaction(write))

    return await run_job(ctx, body)


async def run_sentences_job(
    lesson_id: int,
    job_id: str,
    custom_prompt: Optional[str] = None,
    replace_existing: bool = True,
    count: Optional[int] = None,
    **overrides,
) -> str:
    """Generate shadowing sentences for a lesson and persist them"""
    ctx = _context("sentences", lesson_id, job_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if _empty_text(lesson):
            return JobOutcome(skipped="empty_text")

        target, support = ctx.languages(lesson)
        result = await ctx.services.sentences.generate(lesson.original_text, target, support, custom_prompt, count)
        if not result.ok:
            logger.warning("Sentence generation returned nothing, lesson left unchanged",
                           reason=result.error.message if result.error else None)
            return JobOutcome(skipped="no_results")

        async def write(session: AsyncSession) -> int:
            return await replace_sentences(session, lesson_id, result.items, replace_existing)

        return JobOutcome(items_created=await ctx.transaction(write))

    return await run_job(ctx, body)


async def run_grammar_job(
    lesson_id: int,
    job_id: str,
    custom_prompt: Optional[str] = None,
    replace_existing: bool = True,
    **overrides,
) -> str:
    """Extract grammar points for a lesson; replacing touches grammar points only"""
    ctx = _context("grammar", lesson_id, job_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if _empty_text(lesson):
            return JobOutcome(skipped="empty_text")

        target, support = ctx.languages(lesson)
        result = await ctx.services.grammar.generate(lesson.original_text, target, support, custom_prompt)
        if not result.ok:
            logger.warning("Grammar generation returned nothing, lesson left unchanged",
                           reason=result.error.message if result.error else None)
            return JobOutcome(skipped="no_results")

        async def write(session: AsyncSession) -> int:
            return await replace_grammar_points(session, lesson_id, result.items, replace_existing)

        return JobOutcome(items_created=await ctx.transaction(write))

    return await run_job(ctx, body)


async def run_exercises_job(
    lesson_id: int,
    job_id: str,
    custom_prompt: Optional[str] = None,
    replace_existing: bool = True,
    count: Optional[int] = None,
    **overrides,
) -> str:
    """Generate MCQ exercises grounded in the lesson's saved words and grammar points"""
    ctx = _context("exercises", lesson_id, job_id, **overrides)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if _empty_text(lesson):
            return JobOutcome(skipped="empty_text")

        async def read_context(session: AsyncSession):
            words = (await session.scalars(
                select(LessonWord).where(LessonWord.lesson_id == lesson_id).order_by(LessonWord.order_index)
            )).all()
            points = (await session.scalars(
                select(LessonGrammarPoint)
                .where(LessonGrammarPoint.lesson_id == lesson_id)
                .order_by(LessonGrammarPoint.order_index)
            )).all()
            return [word_row_to_dict(w) for w in words], [grammar_row_to_dict(p) for p in points]

        words, points = await ctx.transaction(read_context)
        target, support = ctx.languages(lesson)
        result = await ctx.services.exercises.generate(
            lesson.original_text, target, support,
            words=words, grammar_points=points, count=count, custom_prompt=custom_prompt,
        )
        if not result.ok:
            logger.warning("Exercise generation returned nothing, lesson left unchanged",
                           reason=result.error.message if result.error else None)
            return JobOutcome(skipped="no_results")

        async def write(session: AsyncSession) -> int:
            return await replace_exercises(session, lesson_id, result.items, replace_existing)

        return JobOutcome(items_created=await ctx.transaction(write))

    return await run_job(ctx, body)


async def _set_lesson_status(ctx: JobContext, status: str) -> None:
    async def work(session: AsyncSession) -> None:
        lesson = await session.get(Lesson, ctx.lesson_id)
        if lesson is not None:
            lesson.status = status

    await ctx.transaction(work)


async def run_process_job(
    lesson_id: int,
    job_id: str,
    task: str = NlpTask.FULL_LESSON.value,
    custom_prompt: Optional[str] = None,
    replace_existing: bool = True,
    **overrides,
) -> str:
    """
    Full-text pass that fills sentences, words and exercises at once.

    The lesson moves processing -> ready, or -> failed when the analysis
    raises or yields nothing. All collections are written in one transaction.
    """
    ctx = _context("process", lesson_id, job_id, **overrides)
    nlp_task = NlpTask(task)

    async def body(ctx: JobContext) -> JobOutcome:
        lesson = await ctx.load_lesson()
        if _empty_text(lesson):
            return JobOutcome(skipped="empty_text")

        await _set_lesson_status(ctx, "processing")
        target, support = ctx.languages(lesson)
        result = await ctx.services.nlp.analyze_text(lesson.original_text, target, support, nlp_task, custom_prompt)
        if not result.ok:
            logger.warning("Text analysis returned nothing, lesson left unchanged",
                           reason=result.error.message if result.error else None)
            await _set_lesson_status(ctx, "failed")
            return JobOutcome(skipped="no_results")

        output = result.items[0]
        write_sentences = nlp_task in (NlpTask.FULL_LESSON, NlpTask.SENTENCES_ONLY) and output.sentences
        write_words = nlp_task in (NlpTask.FULL_LESSON, NlpTask.WORDS_ONLY) and output.words
        write_exercises = nlp_task in (NlpTask.FULL_LESSON, NlpTask.EXERCISES_ONLY) and output.exercises

        async def write(session: AsyncSession) -> List[int]:
            counts = [0, 0, 0]
            if write_sentences:
                counts[0] = await replace_sentences(session, lesson_id, output.sentences, replace_existing)
            if write_words:
                counts[1] = await replace_words(session, lesson_id, output.words, replace_existing)
            if write_exercises:
                counts[2] = await replace_exercises(session, lesson_id, output.exercises, replace_existing)
            lesson_row = await session.get(Lesson, lesson_id)
            if lesson_row is not None:
                lesson_row.status = "ready"
            return counts

        sentences, words, exercises = await ctx.transaction(write)
        return JobOutcome(
            items_created=sentences + words + exercises,
            result_data={"sentences": sentences, "words": words, "exercises": exercises},
        )

    async def mark_failed(ctx: JobContext, _error: Exception) -> None:
        await _set_lesson_status(ctx, "failed")

    return await run_job(ctx, body, on_failure=mark_failed)


GENERATION_JOBS = {
    "words": run_words_job,
    "sentences": run_sentences_job,
    "grammar": run_grammar_job,
    "exercises": run_exercises_job,
}
