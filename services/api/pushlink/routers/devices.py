"""Device token registration for push notifications."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pushlink.dependencies import get_current_user_id, get_db, get_notifications
from pushlink.models.device_token import DeviceToken
from pushlink.schemas.device import DeviceRegisterRequest, DeviceResponse, DeviceUnregisterRequest
from pushlink.services.notification_service import NotificationService, RegistrationStatus
from pushlink.services.token_store import TokenStore

router = APIRouter(prefix="/devices", tags=["devices"])


def _to_response(token: DeviceToken) -> DeviceResponse:
    return DeviceResponse(
        id=str(token.id),
        platform=token.platform,
        status=token.status,
        registered_at=token.registered_at,
        last_used_at=token.last_used_at,
    )


@router.post("/register", response_model=DeviceResponse, status_code=201)
async def register_device(
    body: DeviceRegisterRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notifications),
):
    """Register a device for push notifications.

    Safe to retry: registering the same address again returns the existing
    token. A new address for the same platform supersedes the previous one.
    """
    result = await notifications.register_device(db, user_id, body.platform, body.address)

    if result.status == RegistrationStatus.REJECTED:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": result.field, "message": result.error},
        )
    if result.status == RegistrationStatus.FAILED:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.error)

    return _to_response(result.token)


@router.post("/unregister")
async def unregister_device(
    body: DeviceUnregisterRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notifications),
):
    """Stop sending to an address (e.g. on logout). The row is kept for audit."""
    result = await notifications.unregister_device(db, user_id, body.address)

    if result.status == RegistrationStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not registered")
    if result.status == RegistrationStatus.FAILED:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.error)
    return {"status": "ok"}


@router.get("", response_model=list[DeviceResponse])
async def list_devices(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's live devices."""
    tokens = await TokenStore(db).lookup_active(user_id)
    return [_to_response(t) for t in tokens]
