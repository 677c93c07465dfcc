"""
Generation job status routes
"""
from fastapi import APIRouter, Depends, HTTPException

from app.models import GenerationJob
from app.routes.lesson_routes import get_session_factory
from app.schemas import JobStatusResponse

router = APIRouter(prefix="/ai/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, session_factory=Depends(get_session_factory)):
    async with session_factory() as session:
        job = await session.get(GenerationJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse.model_validate(job)
