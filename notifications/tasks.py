import logging
from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model

from core.celery import app as celery_app

from .services import NotificationService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, queue="notifications")
def deliver_notification(
    self,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    payload: Optional[Dict[str, Any]] = None,
):
    user = get_user_model().objects.filter(pk=user_id).first()
    if user is None:
        logger.warning("Notification %s skipped: user %s not found", notification_type, user_id)
        return None
    try:
        notification = NotificationService.notify(
            user=user,
            notification_type=notification_type,
            title=title,
            message=message,
            payload=payload,
        )
    except Exception as exc:
        logger.exception("Notification delivery failed user=%s type=%s", user_id, notification_type)
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
    return str(notification.id)
