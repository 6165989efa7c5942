"""
Donation lifecycle coordinator.

Owns the ``pending -> accepted -> completed`` state machine. Transitions are
optimistic: read the record, decide against the access policy, then issue a
single conditional UPDATE that only matches if the status is still what was
read. The database decides the winner of a race; nothing here locks.

    coordinator = LifecycleCoordinator()
    donation = coordinator.create(donor, {"food_type": "Prepared Meals", ...})
    coordinator.accept(shelter, donation.pk)
    coordinator.complete(volunteer, donation.pk)

Each committed write appends a DonationEvent in the same transaction and,
after commit, wakes the subscription bus and queues notification dispatch.
"""
import logging
import uuid
from functools import partial
from typing import Callable, Dict, Optional, Tuple

from django.conf import settings
from django.db import OperationalError, connection, transaction
from django.db.models import Count, Q
from django.utils import timezone

from . import bus, utils
from .exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from .models import Donation, DonationEvent, FoodType, Profile, Role, Status
from .notifications import enqueue_dispatch
from .policy import ACCEPT, COMPLETE, Actor, can_read, is_allowed

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("food_type", "quantity", "pickup_location")
MAX_LENGTHS = {"donor_name": 100, "quantity": 200}


def announce(event_id: int) -> None:
    """Post-commit fan-out of one change event."""
    bus.publish(event_id)
    enqueue_dispatch(event_id)


def _text(attributes: dict, key: str) -> str:
    value = attributes.get(key)
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value).strip()


def _coordinate(attributes: dict, key: str, bound: float, errors: Dict[str, str]) -> Optional[float]:
    value = attributes.get(key)
    if value in (None, ""):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors[key] = "must be a number"
        return None
    if not -bound <= number <= bound:
        errors[key] = f"must be between -{bound:g} and {bound:g}"
        return None
    return number


class LifecycleCoordinator:
    def __init__(self, geocoder: Optional[Callable[[str], Optional[Tuple[float, float]]]] = None):
        # None means donations.utils.geocode_address, looked up per call
        self.geocoder = geocoder

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, actor: Actor, donation_id) -> Donation:
        donation = self._load(donation_id, Donation.objects.visible_to(actor))
        # a record the actor may not see looks exactly like a missing one
        if donation is None or not can_read(actor, donation):
            raise NotFoundError("donation not found")
        return donation

    def list_visible(self, actor: Actor, status: Optional[str] = None, limit: Optional[int] = None):
        qs = Donation.objects.visible_to(actor)
        if status:
            if status not in Status.values:
                raise ValidationError(f"unknown status {status!r}", fields={"status": "unknown"})
            qs = qs.filter(status=status)
        qs = qs.order_by("-created_at")
        if limit is not None:
            if limit < 1:
                raise ValidationError("limit must be positive", fields={"limit": "positive integer"})
            qs = qs[:limit]
        return qs

    def stats(self, actor: Actor) -> Dict[str, int]:
        """Dashboard counters over the donations the actor can see."""
        try:
            return Donation.objects.visible_to(actor).aggregate(
                total=Count("pk"),
                active=Count("pk", filter=Q(status__in=[Status.PENDING, Status.ACCEPTED])),
                completed=Count("pk", filter=Q(status=Status.COMPLETED)),
                mine=Count("pk", filter=Q(donor_id=actor.id)),
            )
        except OperationalError as exc:
            raise UnavailableError("donation ledger unavailable") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, actor: Actor, attributes: dict) -> Donation:
        if actor.role != Role.DONOR:
            raise InvalidTransitionError(f"{actor.role} cannot create donations")

        cleaned = self._clean(attributes)
        if cleaned["pickup_lat"] is None:
            cleaned["pickup_lat"], cleaned["pickup_lng"] = self._geocode(cleaned["pickup_location"])

        try:
            with transaction.atomic():
                if not cleaned["donor_name"]:
                    cleaned["donor_name"] = (
                        Profile.objects.filter(pk=actor.id).values_list("name", flat=True).first() or ""
                    )
                donation = Donation.objects.create(donor_id=actor.id, **cleaned)
                event = DonationEvent.record_change(donation)
                transaction.on_commit(partial(announce, event.pk))
        except OperationalError as exc:
            logger.warning("ledger unavailable creating donation for %s: %s", actor.id, exc)
            raise UnavailableError("donation ledger unavailable") from exc

        logger.info("donation %s created by donor %s", donation.pk, actor.id)
        return donation

    def accept(self, actor: Actor, donation_id) -> Donation:
        return self._transition(
            actor,
            donation_id,
            ACCEPT,
            expected=Status.PENDING,
            changes={"status": Status.ACCEPTED, "shelter_id": actor.id},
            stamp="accepted_at",
            conflict="already accepted",
        )

    def complete(self, actor: Actor, donation_id) -> Donation:
        return self._transition(
            actor,
            donation_id,
            COMPLETE,
            expected=Status.ACCEPTED,
            changes={"status": Status.COMPLETED, "volunteer_id": actor.id},
            stamp="completed_at",
            conflict="already completed",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, actor, donation_id, operation, expected, changes, stamp, conflict) -> Donation:
        current = self._load(donation_id)
        if current is None:
            raise InvalidTransitionError("donation does not exist")
        if not is_allowed(actor, current, operation):
            raise InvalidTransitionError(f"{actor.role} cannot {operation} a {current.status} donation")

        changes = dict(changes, **{stamp: timezone.now()})
        try:
            with transaction.atomic():
                written = Donation.objects.transition(current.pk, actor, operation, expected, **changes)
                if not written:
                    # the status moved between our read and our write
                    raise ConflictError(conflict)
                donation = Donation.objects.get(pk=current.pk)
                event = DonationEvent.record_change(donation, prior_status=current.status)
                transaction.on_commit(partial(announce, event.pk))
        except ConflictError:
            logger.info("%s %s lost the %s race on donation %s", actor.role, actor.id, operation, current.pk)
            raise
        except OperationalError as exc:
            logger.warning("ledger unavailable during %s of %s: %s", operation, current.pk, exc)
            raise UnavailableError("donation ledger unavailable") from exc

        logger.info("donation %s %s by %s %s", donation.pk, donation.status, actor.role, actor.id)
        return donation

    def _load(self, donation_id, queryset=None) -> Optional[Donation]:
        """Read-then-decide phase: one bounded read of the current record."""
        try:
            pk = donation_id if isinstance(donation_id, uuid.UUID) else uuid.UUID(str(donation_id))
        except (TypeError, ValueError, AttributeError):
            return None

        qs = Donation.objects.all() if queryset is None else queryset
        try:
            with transaction.atomic():
                self._bound_wait()
                return qs.filter(pk=pk).first()
        except OperationalError as exc:
            logger.warning("ledger read of %s timed out: %s", pk, exc)
            raise UnavailableError("donation ledger did not answer in time") from exc

    @staticmethod
    def _bound_wait():
        # sqlite relies on the connection "timeout" option instead
        if connection.vendor == "postgresql":
            with connection.cursor() as cursor:
                cursor.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    [str(settings.DONATION_READ_TIMEOUT_MS)],
                )

    def _clean(self, attributes: dict) -> dict:
        errors: Dict[str, str] = {}
        cleaned = {
            "donor_name": _text(attributes, "donor_name"),
            "food_type": _text(attributes, "food_type"),
            "quantity": _text(attributes, "quantity"),
            "pickup_location": _text(attributes, "pickup_location"),
            "notes": _text(attributes, "notes") or None,
        }

        for field in REQUIRED_FIELDS:
            if not cleaned[field]:
                errors[field] = "required"
        if cleaned["food_type"] and cleaned["food_type"] not in FoodType.values:
            errors["food_type"] = "unknown food type"
        for field, limit in MAX_LENGTHS.items():
            if len(cleaned[field]) > limit:
                errors[field] = f"at most {limit} characters"

        cleaned["pickup_lat"] = _coordinate(attributes, "pickup_lat", 90, errors)
        cleaned["pickup_lng"] = _coordinate(attributes, "pickup_lng", 180, errors)
        if (cleaned["pickup_lat"] is None) != (cleaned["pickup_lng"] is None) and not errors:
            errors["pickup_lat"] = "latitude and longitude go together"

        if errors:
            detail = "; ".join(f"{k}: {v}" for k, v in sorted(errors.items()))
            raise ValidationError(detail, fields=errors)
        return cleaned

    def _geocode(self, address: str) -> Tuple[Optional[float], Optional[float]]:
        # best effort; an address we can't place is still a valid donation
        try:
            coords = (self.geocoder or utils.geocode_address)(address)
        except Exception:
            logger.exception("geocoder failed for %r", address)
            return None, None
        if not coords:
            return None, None
        return coords[0], coords[1]
