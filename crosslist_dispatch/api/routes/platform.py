from fastapi import APIRouter, Depends, HTTPException, status

from crosslist_dispatch.api.dependencies import get_delivery_coordinator
from crosslist_dispatch.schemas.extension import SaveCredentialsRequest, SuccessOut, VerifyConnectionRequest
from crosslist_dispatch.services.delivery import (
    DeliveryCoordinator,
    EncryptionFailureError,
    InvalidPlatformError,
    VerificationRejectedError,
)
from crosslist_dispatch.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("/save-credentials", response_model=SuccessOut)
async def save_credentials(
    payload: SaveCredentialsRequest,
    coordinator: DeliveryCoordinator = Depends(get_delivery_coordinator),
) -> SuccessOut:
    try:
        result = await coordinator.save_credentials(
            payload.user_id,
            payload.platform,
            payload.username,
            payload.password,
        )
    except InvalidPlatformError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except EncryptionFailureError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SuccessOut.model_validate(result)


@router.post("/verify-connection", response_model=SuccessOut)
async def verify_connection(
    payload: VerifyConnectionRequest,
    coordinator: DeliveryCoordinator = Depends(get_delivery_coordinator),
) -> SuccessOut:
    try:
        result = await coordinator.verify_connection(payload.user_id, payload.platform, payload.confidence)
    except (InvalidPlatformError, VerificationRejectedError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SuccessOut.model_validate(result)
