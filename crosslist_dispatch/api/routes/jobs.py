from fastapi import APIRouter, Depends, HTTPException, status

from crosslist_dispatch.api.dependencies import get_delivery_coordinator
from crosslist_dispatch.schemas.jobs import JobStatusOut
from crosslist_dispatch.services.delivery import DeliveryCoordinator, JobNotFoundError
from crosslist_dispatch.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/{job_id}/status", response_model=JobStatusOut)
async def get_job_status(
    job_id: str,
    coordinator: DeliveryCoordinator = Depends(get_delivery_coordinator),
) -> JobStatusOut:
    try:
        job = await coordinator.get_job_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobStatusOut.model_validate(job)
