import uuid
from typing import Optional

from django.db import IntegrityError, models
from django.db.models import F, Q
from django.utils.dateparse import parse_datetime


class Role(models.TextChoices):
    DONOR = "donor", "Donor"
    SHELTER = "shelter", "Shelter"
    VOLUNTEER = "volunteer", "Volunteer"


class Status(models.TextChoices):
    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"
    COMPLETED = "completed", "Completed"
    # stored in the constraint set, no transition produces it
    CANCELLED = "cancelled", "Cancelled"


class FoodType(models.TextChoices):
    PREPARED_MEALS = "Prepared Meals", "Prepared Meals"
    BAKERY_ITEMS = "Bakery Items", "Bakery Items"
    DAIRY_PRODUCTS = "Dairy Products", "Dairy Products"
    FRESH_PRODUCE = "Fresh Produce", "Fresh Produce"
    PACKAGED_FOODS = "Packaged Foods", "Packaged Foods"
    BEVERAGES = "Beverages", "Beverages"
    CANNED_GOODS = "Canned Goods", "Canned Goods"
    FROZEN_ITEMS = "Frozen Items", "Frozen Items"
    OTHER = "Other Food Items", "Other Food Items"


# the only status moves a saved row may make
FORWARD_TRANSITIONS = {
    (Status.PENDING.value, Status.ACCEPTED.value),
    (Status.ACCEPTED.value, Status.COMPLETED.value),
}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


class Profile(models.Model):
    # opaque identity issued by the identity provider
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100)
    email = models.EmailField(max_length=254, blank=True, null=True)
    phone = models.CharField(max_length=32, blank=True, null=True)
    role = models.CharField(max_length=16, choices=Role.choices)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["role"], name="profile_role_idx")]
        constraints = [
            models.CheckConstraint(condition=Q(role__in=Role.values), name="profile_role_valid"),
        ]

    def __str__(self):
        return f"{self.name} ({self.role})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            stored = type(self).objects.filter(pk=self.pk).values_list("role", flat=True).first()
            if stored is not None and stored != self.role:
                raise IntegrityError("profile role is immutable")
        super().save(*args, **kwargs)

    def to_dict(self) -> dict:
        return {
            "id": str(self.pk),
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "created_at": _iso(self.created_at),
        }


class DonationQuerySet(models.QuerySet):
    def visible_to(self, actor):
        from .policy import readable_filter

        return self.filter(readable_filter(actor))

    def transition(self, pk, actor, operation: str, expected_status: str, **changes) -> int:
        """
        Conditional update for one record. Commits only if the row still has
        ``expected_status`` and the write policy for ``operation`` still holds
        for ``actor``; bumps ``version``. Returns the number of rows written.
        """
        from .policy import writable_filter

        return (
            self.filter(pk=pk, status=expected_status)
            .filter(writable_filter(actor, operation))
            .update(version=F("version") + 1, **changes)
        )


class Donation(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    donor = models.ForeignKey(Profile, on_delete=models.PROTECT, related_name="donations")
    donor_name = models.CharField(max_length=100)
    food_type = models.CharField(max_length=32, choices=FoodType.choices)
    quantity = models.CharField(max_length=200)
    pickup_location = models.TextField()
    pickup_lat = models.FloatField(null=True, blank=True)
    pickup_lng = models.FloatField(null=True, blank=True)
    notes = models.TextField(blank=True, null=True)

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    shelter = models.ForeignKey(
        Profile, on_delete=models.PROTECT, null=True, blank=True, related_name="accepted_donations"
    )
    volunteer = models.ForeignKey(
        Profile, on_delete=models.PROTECT, null=True, blank=True, related_name="completed_donations"
    )
    # per-record write sequence; orders the change events of this donation
    version = models.PositiveIntegerField(default=1)

    created_at = models.DateTimeField(auto_now_add=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    objects = DonationQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)
        indexes = [
            models.Index(fields=["status"], name="donation_status_idx"),
            models.Index(fields=["-created_at"], name="donation_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(status__in=Status.values), name="donation_status_valid"),
            models.CheckConstraint(
                condition=(
                    Q(
                        status=Status.PENDING,
                        shelter__isnull=True,
                        accepted_at__isnull=True,
                        volunteer__isnull=True,
                        completed_at__isnull=True,
                    )
                    | Q(
                        status=Status.ACCEPTED,
                        shelter__isnull=False,
                        accepted_at__isnull=False,
                        volunteer__isnull=True,
                        completed_at__isnull=True,
                    )
                    | Q(
                        status=Status.COMPLETED,
                        shelter__isnull=False,
                        accepted_at__isnull=False,
                        volunteer__isnull=False,
                        completed_at__isnull=False,
                    )
                    | Q(status=Status.CANCELLED)
                ),
                name="donation_bindings_match_status",
            ),
        ]

    def __str__(self):
        return f"{self.quantity} {self.food_type} ({self.status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            self._guard_history()
        super().save(*args, **kwargs)

    def _guard_history(self):
        stored = (
            type(self).objects.filter(pk=self.pk)
            .values("donor_id", "created_at", "status")
            .first()
        )
        if stored is None:
            return
        if stored["donor_id"] != self.donor_id or stored["created_at"] != self.created_at:
            raise IntegrityError("donor and created_at are immutable")
        if stored["status"] != self.status and (stored["status"], str(self.status)) not in FORWARD_TRANSITIONS:
            raise IntegrityError(f"status cannot move from {stored['status']} to {self.status}")

    def snapshot(self) -> dict:
        """Full JSON-safe copy of the record, as carried by change events."""
        return {
            "id": str(self.pk),
            "donor_id": str(self.donor_id),
            "donor_name": self.donor_name,
            "food_type": self.food_type,
            "quantity": self.quantity,
            "pickup_location": self.pickup_location,
            "pickup_lat": self.pickup_lat,
            "pickup_lng": self.pickup_lng,
            "notes": self.notes,
            "status": self.status,
            "shelter_id": _str_or_none(self.shelter_id),
            "volunteer_id": _str_or_none(self.volunteer_id),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "accepted_at": _iso(self.accepted_at),
            "completed_at": _iso(self.completed_at),
        }

    to_dict = snapshot

    @classmethod
    def from_snapshot(cls, data: dict) -> "Donation":
        """Rebuild an unsaved, read-only instance from :meth:`snapshot` output."""

        def _uuid(key):
            value = data.get(key)
            return uuid.UUID(value) if value else None

        def _dt(key):
            value = data.get(key)
            return parse_datetime(value) if value else None

        record = cls(
            id=_uuid("id"),
            donor_id=_uuid("donor_id"),
            donor_name=data.get("donor_name", ""),
            food_type=data.get("food_type", ""),
            quantity=data.get("quantity", ""),
            pickup_location=data.get("pickup_location", ""),
            pickup_lat=data.get("pickup_lat"),
            pickup_lng=data.get("pickup_lng"),
            notes=data.get("notes"),
            status=data.get("status", Status.PENDING),
            shelter_id=_uuid("shelter_id"),
            volunteer_id=_uuid("volunteer_id"),
            version=data.get("version", 1),
            created_at=_dt("created_at"),
            accepted_at=_dt("accepted_at"),
            completed_at=_dt("completed_at"),
        )
        record._state.adding = False
        return record


class DonationEvent(models.Model):
    """
    Append-only change feed of the ledger. A row is written in the same
    transaction as the donation write it describes; ``id`` is the global
    sequence, ``version`` the per-record one.
    """

    class Kind(models.TextChoices):
        CREATED = "created", "Created"
        UPDATED = "updated", "Updated"

    donation = models.ForeignKey(Donation, on_delete=models.PROTECT, related_name="events")
    kind = models.CharField(max_length=16, choices=Kind.choices)
    version = models.PositiveIntegerField()
    prior_status = models.CharField(max_length=16, choices=Status.choices, null=True, blank=True)
    snapshot = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("id",)
        constraints = [
            models.UniqueConstraint(fields=["donation", "version"], name="donation_event_version_unique"),
            models.CheckConstraint(
                condition=(
                    Q(kind="created", prior_status__isnull=True)
                    | Q(kind="updated", prior_status__isnull=False)
                ),
                name="donation_event_prior_status",
            ),
        ]

    def __str__(self):
        return f"#{self.pk} {self.kind} {self.donation_id} v{self.version}"

    @property
    def seq(self) -> int:
        return self.pk

    @property
    def record(self) -> Donation:
        return Donation.from_snapshot(self.snapshot)

    @classmethod
    def record_change(cls, donation: Donation, prior_status: Optional[str] = None) -> "DonationEvent":
        kind = cls.Kind.CREATED if prior_status is None else cls.Kind.UPDATED
        return cls.objects.create(
            donation=donation,
            kind=kind,
            version=donation.version,
            prior_status=prior_status,
            snapshot=donation.snapshot(),
        )


class Notification(models.Model):
    class Kind(models.TextChoices):
        DONATION_AVAILABLE = "donation_available", "New donation available"
        DONATION_ACCEPTED = "donation_accepted", "Donation accepted"
        PICKUP_AVAILABLE = "pickup_available", "New pickup available"
        DONATION_COMPLETED = "donation_completed", "Donation completed"

    recipient = models.ForeignKey(Profile, on_delete=models.CASCADE, related_name="notifications")
    donation = models.ForeignKey(Donation, on_delete=models.CASCADE, related_name="notifications")
    event = models.ForeignKey(DonationEvent, on_delete=models.CASCADE, related_name="notifications")
    kind = models.CharField(max_length=32, choices=Kind.choices)
    title = models.CharField(max_length=100)
    message = models.TextField()
    read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [models.Index(fields=["recipient", "-created_at"], name="notification_inbox_idx")]
        constraints = [
            models.UniqueConstraint(fields=["recipient", "event"], name="notification_once_per_event"),
        ]

    def __str__(self):
        return self.title

    def to_dict(self) -> dict:
        return {
            "id": self.pk,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "donation_id": str(self.donation_id),
            "read": self.read,
            "created_at": _iso(self.created_at),
        }
