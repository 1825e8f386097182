from fastapi import APIRouter, Depends, HTTPException, status

from crosslist_dispatch.api.dependencies import get_publishing_service
from crosslist_dispatch.schemas.listings import DelistRequest, JobAccepted, PublishRequest
from crosslist_dispatch.services.delivery import InvalidPlatformError
from crosslist_dispatch.services.publishing import (
    ListingNotFoundError,
    ListingValidationError,
    PublishingService,
    PublishRejectedError,
)
from crosslist_dispatch.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
)

router = APIRouter()


@router.post("/publish", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def publish_listing(
    payload: PublishRequest,
    service: PublishingService = Depends(get_publishing_service),
) -> JobAccepted:
    try:
        result = await service.publish_listing(payload.user_id, payload.listing_id, payload.platform)
    except InvalidPlatformError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ListingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ListingValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail={"message": str(exc), "missingFields": exc.missing_fields},
        ) from exc
    except PublishRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobAccepted.model_validate(result)


@router.post("/delist", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def delist_listing(
    payload: DelistRequest,
    service: PublishingService = Depends(get_publishing_service),
) -> JobAccepted:
    try:
        result = await service.delist_listing(payload.user_id, payload.platform_listing_id, payload.platform)
    except InvalidPlatformError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ListingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobAccepted.model_validate(result)
