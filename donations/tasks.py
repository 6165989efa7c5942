from celery import shared_task

from . import notifications


@shared_task(name="donations.dispatch_notifications_task")
def dispatch_notifications_task(event_id):
    """
    Fan one committed change event out to recipients' inboxes.
    Kept thin so it's easy to test/patch.
    """
    return len(notifications.dispatch_event(event_id))


@shared_task(name="donations.deliver_notification_task")
def deliver_notification_task(notification_id):
    """Hand one stored notification to the external SMS/push/email relay."""
    return notifications.deliver(notification_id)
