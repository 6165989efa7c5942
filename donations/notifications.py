"""
Role-specific notifications for donation changes.

``render`` is a pure mapping from (event, recipient role, recipient id) to at
most one message. ``dispatch`` runs on the Celery side: it picks the
recipients allowed to read the record, stores one inbox entry each (at most
once per event), trims every inbox to the newest NOTIFICATION_INBOX_LIMIT,
and queues delivery through the external channel. Nothing in here may undo
or block the transition that produced the event; failures are logged and
dropped.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

import requests
from django.conf import settings
from django.db.models import Q

from .bus import ChangeEvent
from .models import DonationEvent, Notification, Profile, Role, Status
from .policy import Actor, can_read

logger = logging.getLogger(__name__)

Kind = Notification.Kind


@dataclass(frozen=True)
class RenderedNotification:
    kind: str
    title: str
    message: str


def render(event: ChangeEvent, recipient_role: str, recipient_id: uuid.UUID,
           shelter_name: Optional[str] = None) -> Optional[RenderedNotification]:
    record = event.record
    is_donor = record.donor_id == recipient_id

    if event.kind == DonationEvent.Kind.CREATED:
        if recipient_role == Role.SHELTER:
            return RenderedNotification(
                Kind.DONATION_AVAILABLE,
                "New Donation Available",
                f"{record.donor_name} has donated {record.quantity} of {record.food_type}",
            )
        return None

    if event.kind != DonationEvent.Kind.UPDATED:
        return None

    if record.status == Status.ACCEPTED and event.prior_status == Status.PENDING:
        if is_donor:
            return RenderedNotification(
                Kind.DONATION_ACCEPTED,
                "Donation Accepted!",
                f"Hi {record.donor_name}, your donation of {record.quantity} {record.food_type} has been "
                f"accepted by {shelter_name or 'a shelter'}. A volunteer will contact you soon for pickup!",
            )
        if recipient_role == Role.VOLUNTEER:
            return RenderedNotification(
                Kind.PICKUP_AVAILABLE,
                "New Pickup Available",
                f"Pickup needed: {record.quantity} of {record.food_type} from {record.donor_name}",
            )
        return None

    if record.status == Status.COMPLETED and event.prior_status == Status.ACCEPTED and is_donor:
        return RenderedNotification(
            Kind.DONATION_COMPLETED,
            "Donation Completed!",
            f"Your donation of {record.quantity} {record.food_type} has been successfully delivered.",
        )
    return None


def candidates(event: ChangeEvent):
    record = event.record
    q = Q(pk=record.donor_id)
    if event.kind == DonationEvent.Kind.CREATED:
        q |= Q(role=Role.SHELTER)
    elif record.status == Status.ACCEPTED:
        q |= Q(role=Role.VOLUNTEER)
    return Profile.objects.filter(q)


def dispatch(event: ChangeEvent) -> List[Notification]:
    """Store and queue notifications for one event. Returns the new ones."""
    record = event.record
    shelter_name = None
    if record.shelter_id:
        shelter_name = Profile.objects.filter(pk=record.shelter_id).values_list("name", flat=True).first()

    created = []
    for profile in candidates(event):
        if not can_read(Actor.from_profile(profile), record):
            continue
        rendered = render(event, profile.role, profile.pk, shelter_name=shelter_name)
        if rendered is None:
            continue
        notification, is_new = Notification.objects.get_or_create(
            recipient=profile,
            event_id=event.seq,
            defaults={
                "donation_id": record.pk,
                "kind": rendered.kind,
                "title": rendered.title,
                "message": rendered.message,
            },
        )
        if is_new:
            trim_inbox(profile.pk)
            created.append(notification)

    for notification in created:
        enqueue_delivery(notification.pk)
    logger.info("event %s produced %d notification(s)", event.seq, len(created))
    return created


def dispatch_event(event_id: int) -> List[Notification]:
    row = DonationEvent.objects.filter(pk=event_id).first()
    if row is None:
        logger.warning("change event %s vanished before dispatch", event_id)
        return []
    return dispatch(ChangeEvent.from_row(row))


def trim_inbox(recipient_id, limit: Optional[int] = None) -> int:
    limit = settings.NOTIFICATION_INBOX_LIMIT if limit is None else limit
    stale = list(
        Notification.objects.filter(recipient_id=recipient_id)
        .order_by("-created_at", "-id")
        .values_list("pk", flat=True)[limit:]
    )
    if not stale:
        return 0
    deleted, _ = Notification.objects.filter(pk__in=stale).delete()
    return deleted


# ---------- inbox ----------

def inbox(recipient_id) -> Tuple[List[Notification], int]:
    items = list(Notification.objects.filter(recipient_id=recipient_id).order_by("-created_at", "-id"))
    unread = sum(1 for n in items if not n.read)
    return items, unread


def mark_read(recipient_id, notification_id: Optional[int] = None) -> int:
    qs = Notification.objects.filter(recipient_id=recipient_id, read=False)
    if notification_id is not None:
        qs = qs.filter(pk=notification_id)
    return qs.update(read=True)


def clear(recipient_id) -> int:
    deleted, _ = Notification.objects.filter(recipient_id=recipient_id).delete()
    return deleted


# ---------- hand-off to Celery and the external channel ----------

def enqueue_dispatch(event_id: int) -> None:
    from .tasks import dispatch_notifications_task

    try:
        dispatch_notifications_task.delay(event_id)
    except Exception:
        # broker down: the transition is committed, the notification is lost
        logger.exception("could not queue notifications for event %s", event_id)


def enqueue_delivery(notification_id: int) -> None:
    if not settings.NOTIFICATION_WEBHOOK_URL:
        return
    from .tasks import deliver_notification_task

    try:
        deliver_notification_task.delay(notification_id)
    except Exception:
        logger.exception("could not queue delivery of notification %s", notification_id)


def deliver(notification_id: int) -> bool:
    """
    POST one notification to the SMS/push/email relay. Returns True when the
    relay accepted it; any failure is logged and dropped.
    """
    url = settings.NOTIFICATION_WEBHOOK_URL
    if not url:
        return False
    notification = Notification.objects.select_related("recipient").filter(pk=notification_id).first()
    if notification is None:
        # trimmed out of the inbox before we got to it
        return False

    recipient = notification.recipient
    payload = {
        "recipient": {
            "id": str(recipient.pk),
            "name": recipient.name,
            "email": recipient.email,
            "phone": recipient.phone,
            "role": recipient.role,
        },
        "notification": notification.to_dict(),
    }
    headers = {}
    if settings.NOTIFICATION_WEBHOOK_TOKEN:
        headers["Authorization"] = f"Bearer {settings.NOTIFICATION_WEBHOOK_TOKEN}"

    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=settings.EXTERNAL_HTTP_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("delivery of notification %s failed: %s", notification_id, exc)
        return False
    return True
