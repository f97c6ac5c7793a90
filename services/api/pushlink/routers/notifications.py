"""Self-service notification endpoint, used by the app to test its push setup."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pushlink.dependencies import get_current_user_id, get_db, get_notifications
from pushlink.schemas.notification import AttemptResponse, NotifyRequest, NotifyResponse
from pushlink.services.notification_service import NotificationService, NotifyStatus

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/test", response_model=NotifyResponse)
async def send_test_notification(
    body: NotifyRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notifications),
):
    """Send a notification to all of the caller's devices and report per-device outcomes."""
    result = await notifications.notify(
        db,
        user_id=user_id,
        title=body.title,
        body=body.body,
        deep_link=body.deep_link,
        extra_data=body.data,
    )

    if result.status == NotifyStatus.REJECTED:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.error)
    if result.status == NotifyStatus.FAILED:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.error)

    return NotifyResponse(
        status=result.status.value,
        delivered=result.delivered,
        invalid_recipients=result.invalid_recipients,
        deferred=result.deferred,
        attempts=[
            AttemptResponse(
                platform=a.platform.value,
                state=a.state.value,
                outcome=a.receipt.outcome.value,
                retryable=a.retryable,
                provider_message_id=a.receipt.provider_message_id,
            )
            for a in result.attempts
        ],
    )
