"""Notification queue endpoint for the delivery worker."""

from typing import List
import structlog
from fastapi import APIRouter, Depends

from docflow.api.v1.dependencies import get_engine
from docflow.models.schemas import NotificationPayload

router = APIRouter(prefix="/api/notifications", tags=["notifications"])
logger = structlog.get_logger()


@router.post("/drain", response_model=List[NotificationPayload])
def drain_notifications(engine=Depends(get_engine)):
    """
    Hand every queued notification to the caller and clear the queue.
    Meant for a single delivery worker.
    """
    notifications = engine.get_notification_queue()
    if notifications:
        logger.info("notifications_drained", count=len(notifications))
    return notifications
