"""
Lesson generation routes
"""
import uuid
from typing import Any, Callable, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai_lesson_job import run_ai_lesson_job
from app.analysis_job import run_analysis_job
from app.core.exceptions import LessonNotFoundError
from app.core.logging import get_logger
from app.db import async_session
from app.generation_job import GENERATION_JOBS, run_process_job
from app.models import GenerationJob, Lesson
from app.schemas import (
    AiLessonRequest,
    AnalysisRequest,
    GenerateRequest,
    GenerationTask,
    JobAcceptedResponse,
    ProcessTextRequest,
    TranslateSentencesRequest,
)
from app.translation_job import run_translation_job

logger = get_logger(__name__)

router = APIRouter(prefix="/ai/lessons", tags=["lessons"])


def get_session_factory() -> Callable[[], AsyncSession]:
    return async_session


async def _require_lesson(session_factory, lesson_id: int) -> None:
    async with session_factory() as session:
        if await session.get(Lesson, lesson_id) is None:
            raise LessonNotFoundError(f"Lesson {lesson_id} not found", {"lesson_id": lesson_id})


async def _accept(
    background: BackgroundTasks,
    session_factory,
    lesson_id: int,
    job_type: str,
    job: Callable[..., Any],
    **kwargs: Any,
) -> JobAcceptedResponse:
    """Record a pending job row and schedule the job after the response"""
    job_id = str(uuid.uuid4())
    async with session_factory() as session:
        async with session.begin():
            session.add(GenerationJob(id=job_id, lesson_id=lesson_id, job_type=job_type, status="pending"))

    background.add_task(job, lesson_id, job_id, session_factory=session_factory, **kwargs)
    logger.info("Generation job accepted", job_id=job_id, job_type=job_type, lesson_id=lesson_id)
    return JobAcceptedResponse(status="accepted", job_id=job_id)


@router.post("/{lesson_id}/generate/{task}", response_model=JobAcceptedResponse, status_code=202)
async def generate_items(
    lesson_id: int,
    task: GenerationTask,
    req: GenerateRequest,
    background: BackgroundTasks,
    session_factory=Depends(get_session_factory),
):
    """
    Generate one collection of lesson items in the background.

    ``task`` is one of words, sentences, grammar, exercises. With
    ``replace_existing`` the previous items of that collection are replaced
    in the same transaction that inserts the new ones.
    """
    await _require_lesson(session_factory, lesson_id)

    params: Dict[str, Any] = {
        "custom_prompt": req.custom_prompt,
        "replace_existing": req.replace_existing,
    }
    if task != "grammar":
        params["count"] = req.count

    return await _accept(background, session_factory, lesson_id, task, GENERATION_JOBS[task], **params)


@router.post("/{lesson_id}/process", response_model=JobAcceptedResponse, status_code=202)
async def process_text(
    lesson_id: int,
    req: ProcessTextRequest,
    background: BackgroundTasks,
    session_factory=Depends(get_session_factory),
):
    """Full-text pass: sentences, words and exercises from one analysis"""
    await _require_lesson(session_factory, lesson_id)
    return await _accept(
        background, session_factory, lesson_id, "process", run_process_job,
        task=req.task, custom_prompt=req.custom_prompt, replace_existing=req.replace_existing,
    )


@router.post("/{lesson_id}/ai-lesson", response_model=JobAcceptedResponse, status_code=202)
async def generate_ai_lesson(
    lesson_id: int,
    req: AiLessonRequest,
    background: BackgroundTasks,
    session_factory=Depends(get_session_factory),
):
    """Store the generation brief on the lesson, mark it generating and start the job"""
    async with session_factory() as session:
        async with session.begin():
            lesson = await session.get(Lesson, lesson_id)
            if lesson is None:
                raise LessonNotFoundError(f"Lesson {lesson_id} not found", {"lesson_id": lesson_id})
            if lesson.status == "generating":
                raise HTTPException(status_code=409, detail="Lesson generation already in progress")

            meta = lesson.meta
            meta.pop("ai_generation_error", None)
            meta["ai_generation"] = req.model_dump()
            lesson.status = "generating"
            lesson.analysis_meta = meta

    return await _accept(background, session_factory, lesson_id, "ai_lesson", run_ai_lesson_job)


@router.post("/{lesson_id}/translate-sentences", response_model=JobAcceptedResponse, status_code=202)
async def translate_sentences(
    lesson_id: int,
    req: TranslateSentencesRequest,
    background: BackgroundTasks,
    session_factory=Depends(get_session_factory),
):
    await _require_lesson(session_factory, lesson_id)
    return await _accept(
        background, session_factory, lesson_id, "translation", run_translation_job,
        only_missing=req.only_missing, custom_prompt=req.custom_prompt,
    )


@router.post("/{lesson_id}/analysis", response_model=JobAcceptedResponse, status_code=202)
async def analyze_lesson(
    lesson_id: int,
    req: AnalysisRequest,
    background: BackgroundTasks,
    session_factory=Depends(get_session_factory),
):
    await _require_lesson(session_factory, lesson_id)
    return await _accept(
        background, session_factory, lesson_id, "analysis", run_analysis_job,
        custom_prompt=req.custom_prompt,
    )
