"""
Submission and polling endpoints.
"""

from fastapi import APIRouter, Depends, status

from webanalyzer.config.logging import get_logger
from webanalyzer.jobs.models import JobStatus
from webanalyzer.jobs.schemas import AnalyseRequest, AnalyseResponse, JobStatusView
from webanalyzer.jobs.service import JobLifecycleController, get_controller

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["analysis"])


@router.post(
    "/analyse",
    response_model=AnalyseResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def analyse_url(
    request: AnalyseRequest,
    controller: JobLifecycleController = Depends(get_controller),
) -> AnalyseResponse:
    """Queue a URL for analysis and return its job id."""
    job = await controller.submit(request.url)

    return AnalyseResponse(
        job_id=job.job_id,
        status=JobStatus.PENDING,
        message="Job queued successfully",
    )


@router.get(
    "/results/{job_id}",
    response_model=JobStatusView,
    response_model_exclude_none=True,
)
async def get_results(
    job_id: str,
    controller: JobLifecycleController = Depends(get_controller),
) -> JobStatusView:
    """Current status of a job, with results or error once it has finished."""
    return await controller.get_status(job_id)
