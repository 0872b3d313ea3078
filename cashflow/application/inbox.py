import logging

from cashflow.models import Notification

logger = logging.getLogger(__name__)


def list_notifications(recipient_id, unread_only=False):
    notifications = Notification.objects.filter(recipient_id=recipient_id)
    if unread_only:
        notifications = notifications.filter(is_read=False)
    return notifications.order_by("-created_at", "-id")


def unread_count(recipient_id):
    return Notification.objects.filter(recipient_id=recipient_id, is_read=False).count()


def mark_read(recipient_id, notification_ids=None):
    """
    Mark the recipient's notifications as read; all unread ones when no ids are given.

    Ids belonging to other recipients are ignored. Returns the number updated.
    """
    notifications = Notification.objects.filter(recipient_id=recipient_id, is_read=False)
    if notification_ids is not None:
        notifications = notifications.filter(pk__in=notification_ids)

    updated = notifications.update(is_read=True)
    logger.info("Notifications read: recipient=%s count=%s", recipient_id, updated)
    return updated
