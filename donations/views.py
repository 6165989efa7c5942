import json
import uuid

from django.conf import settings
from django.db import IntegrityError, transaction
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from . import bus, notifications
from .exceptions import AuthenticationError, ConflictError, DonationError, NotFoundError, ValidationError
from .lifecycle import LifecycleCoordinator
from .models import Profile, Role
from .policy import Actor
from .utils import classify_food_type

PROFILE_FIELDS = ("name", "email", "phone")


def error_response(exc: DonationError) -> JsonResponse:
    body = {"error": exc.code, "detail": exc.detail}
    if isinstance(exc, ValidationError) and exc.fields:
        body["fields"] = exc.fields
    return JsonResponse(body, status=exc.status)


# Identity comes from the upstream gateway header, so no CSRF cookie here.
@method_decorator(csrf_exempt, name="dispatch")
class ApiView(View):
    coordinator = LifecycleCoordinator()

    def dispatch(self, request, *args, **kwargs):
        try:
            return super().dispatch(request, *args, **kwargs)
        except DonationError as exc:
            return error_response(exc)

    def identity(self) -> uuid.UUID:
        raw = self.request.headers.get(settings.ACTOR_HEADER)
        if not raw:
            raise AuthenticationError("missing actor identity")
        try:
            return uuid.UUID(raw)
        except ValueError:
            raise AuthenticationError("malformed actor identity")

    def actor(self) -> Actor:
        return Actor.resolve(self.identity())

    def payload(self) -> dict:
        # must be JSON
        try:
            data = json.loads(self.request.body.decode("utf-8") or "{}")
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("invalid_json")
        if not isinstance(data, dict):
            raise ValidationError("expected a JSON object")
        return data


def clean_profile_fields(data: dict, require_name: bool) -> dict:
    """Text fields of a profile payload, checked against the column sizes."""
    cleaned, errors = {}, {}
    for field in PROFILE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if value is not None and not isinstance(value, str):
            errors[field] = "must be a string"
            continue
        value = (value or "").strip()
        limit = Profile._meta.get_field(field).max_length
        if len(value) > limit:
            errors[field] = f"at most {limit} characters"
            continue
        cleaned[field] = value or None
    if "name" not in errors and not cleaned.get("name") and (require_name or "name" in data):
        errors["name"] = "required"
    if errors:
        raise ValidationError("invalid profile", fields=errors)
    return cleaned


class ProfileView(ApiView):
    http_method_names = ["get", "post", "patch"]

    def get(self, request, *args, **kwargs):
        profile = Profile.objects.filter(pk=self.identity()).first()
        if profile is None:
            raise NotFoundError("no profile for this identity")
        return JsonResponse(profile.to_dict())

    def post(self, request, *args, **kwargs):
        identity = self.identity()
        data = self.payload()

        role = data.get("role")
        if role not in Role.values:
            raise ValidationError("invalid profile", fields={"role": f"one of {', '.join(Role.values)}"})
        fields = clean_profile_fields(data, require_name=True)

        try:
            with transaction.atomic():
                profile = Profile.objects.create(id=identity, role=role, **fields)
        except IntegrityError:
            raise ConflictError("profile already exists")
        return JsonResponse(profile.to_dict(), status=201)

    def patch(self, request, *args, **kwargs):
        profile = Profile.objects.filter(pk=self.identity()).first()
        if profile is None:
            raise NotFoundError("no profile for this identity")
        data = self.payload()
        if "role" in data and data["role"] != profile.role:
            raise ValidationError("role is fixed at profile creation", fields={"role": "immutable"})

        for field, value in clean_profile_fields(data, require_name=False).items():
            setattr(profile, field, value)
        profile.save()
        return JsonResponse(profile.to_dict())


def int_param(request, name):
    raw = request.GET.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", fields={name: "integer"})


class DonationListView(ApiView):
    http_method_names = ["get", "post"]

    def get(self, request, *args, **kwargs):
        donations = self.coordinator.list_visible(
            self.actor(), status=request.GET.get("status") or None, limit=int_param(request, "limit"),
        )
        return JsonResponse({"donations": [d.to_dict() for d in donations]})

    def post(self, request, *args, **kwargs):
        actor = self.actor()
        donation = self.coordinator.create(actor, self.payload())
        return JsonResponse(donation.to_dict(), status=201)


class StatsView(ApiView):
    """Dashboard: counters plus the newest donations the caller can see."""

    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        actor = self.actor()
        recent = self.coordinator.list_visible(actor, limit=settings.DASHBOARD_RECENT_LIMIT)
        return JsonResponse({
            "stats": self.coordinator.stats(actor),
            "recent": [d.to_dict() for d in recent],
        })


class DonationDetailView(ApiView):
    http_method_names = ["get"]

    def get(self, request, donation_id, *args, **kwargs):
        return JsonResponse(self.coordinator.read(self.actor(), donation_id).to_dict())


class AcceptView(ApiView):
    http_method_names = ["post"]

    def post(self, request, donation_id, *args, **kwargs):
        return JsonResponse(self.coordinator.accept(self.actor(), donation_id).to_dict())


class CompleteView(ApiView):
    http_method_names = ["post"]

    def post(self, request, donation_id, *args, **kwargs):
        return JsonResponse(self.coordinator.complete(self.actor(), donation_id).to_dict())


class EventsView(ApiView):
    """
    One non-blocking poll of the subscription bus. Clients keep ``cursor``
    (an opaque feed position) and pass it back as ``after``; without it the
    stream starts from now.
    """

    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        actor = self.actor()
        subscription = bus.subscribe(actor, after=request.GET.get("after") or None)
        events = subscription.poll()
        return JsonResponse({"events": [e.to_dict() for e in events], "cursor": subscription.position})


class ResyncView(ApiView):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        records, cursor = bus.resync(self.actor())
        return JsonResponse({"donations": [d.to_dict() for d in records], "cursor": cursor})


class NotificationListView(ApiView):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        items, unread = notifications.inbox(self.actor().id)
        return JsonResponse({"notifications": [n.to_dict() for n in items], "unread": unread})


class NotificationReadView(ApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        actor = self.actor()
        notification_id = self.payload().get("id")
        if notification_id is not None and (isinstance(notification_id, bool) or not isinstance(notification_id, int)):
            raise ValidationError("id must be an integer", fields={"id": "integer"})
        updated = notifications.mark_read(actor.id, notification_id)
        return JsonResponse({"updated": updated})


class NotificationClearView(ApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        return JsonResponse({"deleted": notifications.clear(self.actor().id)})


class ClassifyView(ApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        text = self.payload().get("text")
        if not text or not isinstance(text, str):
            raise ValidationError("text_required", fields={"text": "required"})
        return JsonResponse({"food_type": classify_food_type(text)})
