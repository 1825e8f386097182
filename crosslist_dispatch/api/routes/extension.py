from fastapi import APIRouter, Depends, HTTPException, Query, status

from crosslist_dispatch.api.dependencies import get_delivery_coordinator
from crosslist_dispatch.core.auth import AuthUnavailableError, UnauthenticatedError
from crosslist_dispatch.schemas.extension import (
    AgentIdentity,
    CallbackRequest,
    PollOut,
    RegisterOut,
    SuccessOut,
)
from crosslist_dispatch.services.delivery import (
    DeliveryCoordinator,
    JobNotFoundError,
    JobResultConflictError,
)
from crosslist_dispatch.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
)

router = APIRouter()


@router.post("/connect", response_model=RegisterOut)
async def connect_agent(
    payload: AgentIdentity,
    coordinator: DeliveryCoordinator = Depends(get_delivery_coordinator),
) -> RegisterOut:
    try:
        result = await coordinator.register(payload.user_id, payload.auth_token)
    except UnauthenticatedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except (AuthUnavailableError, RepositoryUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RegisterOut.model_validate(result)


@router.get("/poll", response_model=PollOut)
async def poll_jobs(
    user_id: str | None = Query(default=None, alias="userId"),
    auth_token: str | None = Query(default=None, alias="authToken"),
    coordinator: DeliveryCoordinator = Depends(get_delivery_coordinator),
) -> PollOut:
    try:
        result = await coordinator.poll(user_id, auth_token)
    except UnauthenticatedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except (AuthUnavailableError, RepositoryUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PollOut.model_validate(result)


@router.post("/callback", response_model=SuccessOut)
async def report_job_result(
    payload: CallbackRequest,
    coordinator: DeliveryCoordinator = Depends(get_delivery_coordinator),
) -> SuccessOut:
    report = payload.result
    try:
        result = await coordinator.report_result(
            payload.user_id,
            payload.auth_token,
            job_id=report.job_id,
            success=report.success,
            platform_listing_id=report.platform_listing_id,
            platform_url=report.platform_url,
            error=report.error,
        )
    except UnauthenticatedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (JobResultConflictError, RepositoryConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (AuthUnavailableError, RepositoryUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SuccessOut.model_validate(result)
