import io
import itertools
import json
import threading
import uuid
from unittest import skipUnless
from unittest.mock import MagicMock, patch

import requests
from django.core.management import CommandError, call_command
from django.db import IntegrityError, OperationalError, connection, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils.http import urlencode

from donations import bus, notifications
from donations.bus import ChangeEvent
from donations.exceptions import (
    AuthenticationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from donations.lifecycle import LifecycleCoordinator
from donations.models import Donation, DonationEvent, Notification, Profile, Role, Status
from donations.policy import ACCEPT, COMPLETE, Actor, can_read, is_allowed
from donations.utils import classify_food_type, geocode_address

MEALS = {
    "food_type": "Prepared Meals",
    "quantity": "10 meals",
    "pickup_location": "123 Main Street, New York, NY 10001",
}


def make_profile(role, name=None):
    return Profile.objects.create(name=name or f"{role}-{uuid.uuid4().hex[:6]}", role=role)


def as_actor(profile):
    return Actor.from_profile(profile)


class LifecycleTestMixin:
    def setUp(self):
        super().setUp()
        self.coordinator = LifecycleCoordinator(geocoder=lambda address: None)
        self.donor = make_profile(Role.DONOR, "Dana's Deli")
        self.s1 = make_profile(Role.SHELTER, "Harbor Shelter")
        self.s2 = make_profile(Role.SHELTER, "Hilltop Shelter")
        self.v1 = make_profile(Role.VOLUNTEER, "Vic")
        self.v2 = make_profile(Role.VOLUNTEER, "Val")

    def create(self, **overrides):
        return self.coordinator.create(as_actor(self.donor), dict(MEALS, **overrides))

    def accepted(self):
        donation = self.create()
        return self.coordinator.accept(as_actor(self.s1), donation.pk)

    def completed(self):
        donation = self.accepted()
        return self.coordinator.complete(as_actor(self.v1), donation.pk)

    def hold_back(self, donation):
        """Pull the donation's first event out of the feed, as if its commit were still in flight."""
        event = DonationEvent.objects.filter(donation=donation).order_by("id").first()
        DonationEvent.objects.filter(pk=event.pk).delete()
        return event


class AccessPolicyTests(SimpleTestCase):
    def setUp(self):
        self.donor = Actor(uuid.uuid4(), Role.DONOR)
        self.other_donor = Actor(uuid.uuid4(), Role.DONOR)
        self.shelter = Actor(uuid.uuid4(), Role.SHELTER)
        self.other_shelter = Actor(uuid.uuid4(), Role.SHELTER)
        self.volunteer = Actor(uuid.uuid4(), Role.VOLUNTEER)

    def donation(self, status, shelter=None):
        return Donation(id=uuid.uuid4(), donor_id=self.donor.id, status=status,
                        shelter_id=shelter.id if shelter else None)

    def test_donor_always_reads_own_donation(self):
        for status, shelter in ((Status.PENDING, None), (Status.ACCEPTED, self.shelter), (Status.COMPLETED, self.shelter)):
            self.assertTrue(can_read(self.donor, self.donation(status, shelter)))

    def test_donor_cannot_read_someone_elses_donation(self):
        self.assertFalse(can_read(self.other_donor, self.donation(Status.PENDING)))

    def test_shelters_see_open_requests(self):
        self.assertTrue(can_read(self.shelter, self.donation(Status.PENDING)))
        self.assertTrue(can_read(self.other_shelter, self.donation(Status.PENDING)))

    def test_shelter_sees_only_its_own_accepted_donations(self):
        accepted = self.donation(Status.ACCEPTED, self.shelter)
        self.assertTrue(can_read(self.shelter, accepted))
        self.assertFalse(can_read(self.other_shelter, accepted))

    def test_volunteer_sees_accepted_and_completed_only(self):
        self.assertFalse(can_read(self.volunteer, self.donation(Status.PENDING)))
        self.assertTrue(can_read(self.volunteer, self.donation(Status.ACCEPTED, self.shelter)))
        self.assertTrue(can_read(self.volunteer, self.donation(Status.COMPLETED, self.shelter)))

    def test_accept_needs_shelter_and_pending(self):
        self.assertTrue(is_allowed(self.shelter, self.donation(Status.PENDING), ACCEPT))
        self.assertFalse(is_allowed(self.volunteer, self.donation(Status.PENDING), ACCEPT))
        self.assertFalse(is_allowed(self.donor, self.donation(Status.PENDING), ACCEPT))
        self.assertFalse(is_allowed(self.shelter, self.donation(Status.ACCEPTED, self.other_shelter), ACCEPT))

    def test_complete_needs_volunteer_and_accepted(self):
        self.assertTrue(is_allowed(self.volunteer, self.donation(Status.ACCEPTED, self.shelter), COMPLETE))
        self.assertFalse(is_allowed(self.volunteer, self.donation(Status.PENDING), COMPLETE))
        self.assertFalse(is_allowed(self.shelter, self.donation(Status.ACCEPTED, self.shelter), COMPLETE))
        self.assertFalse(is_allowed(self.volunteer, self.donation(Status.COMPLETED, self.shelter), COMPLETE))

    def test_unknown_operation_is_rejected(self):
        with self.assertRaises(ValueError):
            is_allowed(self.donor, self.donation(Status.PENDING), "cancel")


class StoragePolicyTests(LifecycleTestMixin, TestCase):
    def test_visible_to_agrees_with_can_read(self):
        pending = self.create()
        accepted = self.accepted()
        completed = self.completed()
        stranger = make_profile(Role.DONOR)

        for profile in (self.donor, stranger, self.s1, self.s2, self.v1, self.v2):
            actor = as_actor(profile)
            visible = set(Donation.objects.visible_to(actor).values_list("pk", flat=True))
            for donation in (pending, accepted, completed):
                self.assertEqual(donation.pk in visible, can_read(actor, donation), (profile.name, donation.status))

    def test_conditional_write_refuses_actor_without_write_rights(self):
        donation = self.create()
        written = Donation.objects.transition(
            donation.pk, as_actor(self.v1), ACCEPT, Status.PENDING, status=Status.ACCEPTED, shelter_id=self.v1.pk,
        )
        self.assertEqual(written, 0)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Status.PENDING)

    def test_database_rejects_accepted_row_without_shelter(self):
        donation = self.create()
        with self.assertRaises(IntegrityError), transaction.atomic():
            Donation.objects.filter(pk=donation.pk).update(status=Status.ACCEPTED)

    def test_save_refuses_backward_status(self):
        donation = self.accepted()
        donation.status = Status.PENDING
        donation.shelter = None
        donation.accepted_at = None
        with self.assertRaises(IntegrityError):
            donation.save()

    def test_save_refuses_changing_donor(self):
        donation = self.create()
        donation.donor = make_profile(Role.DONOR)
        with self.assertRaises(IntegrityError):
            donation.save()

    def test_profile_role_is_immutable(self):
        self.s1.role = Role.VOLUNTEER
        with self.assertRaises(IntegrityError):
            self.s1.save()

    def test_actor_role_comes_from_profile(self):
        actor = Actor.resolve(str(self.s1.pk))
        self.assertEqual(actor.role, Role.SHELTER)
        with self.assertRaises(AuthenticationError):
            Actor.resolve(str(uuid.uuid4()))
        with self.assertRaises(AuthenticationError):
            Actor.resolve("not-a-uuid")


class CreateTests(LifecycleTestMixin, TestCase):
    def test_create_then_read_returns_pending_record(self):
        donation = self.create()
        got = self.coordinator.read(as_actor(self.donor), donation.pk)

        self.assertEqual(got.status, Status.PENDING)
        self.assertIsNone(got.shelter_id)
        self.assertIsNone(got.volunteer_id)
        self.assertIsNone(got.accepted_at)
        self.assertIsNone(got.completed_at)
        self.assertEqual(got.version, 1)
        self.assertEqual(got.quantity, "10 meals")
        self.assertEqual(got.donor_name, "Dana's Deli")  # defaults to profile name

        event = DonationEvent.objects.get(donation=donation)
        self.assertEqual(event.kind, DonationEvent.Kind.CREATED)
        self.assertIsNone(event.prior_status)
        self.assertEqual(event.snapshot["status"], "pending")

    def test_required_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            self.coordinator.create(as_actor(self.donor), {"food_type": "", "quantity": "  ", "pickup_location": None})
        self.assertEqual(set(ctx.exception.fields), {"food_type", "quantity", "pickup_location"})
        self.assertEqual(Donation.objects.count(), 0)

    def test_unknown_food_type(self):
        with self.assertRaises(ValidationError) as ctx:
            self.create(food_type="Space Food")
        self.assertIn("food_type", ctx.exception.fields)

    def test_only_donors_create(self):
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.create(as_actor(self.s1), MEALS)

    def test_geocoder_fills_missing_coordinates(self):
        self.coordinator.geocoder = lambda address: (40.7128, -74.0060)
        donation = self.create()
        self.assertEqual((donation.pickup_lat, donation.pickup_lng), (40.7128, -74.0060))

    def test_geocoder_failure_does_not_block_creation(self):
        self.coordinator.geocoder = MagicMock(side_effect=requests.ConnectionError("down"))
        donation = self.create()
        self.assertIsNone(donation.pickup_lat)
        self.assertEqual(donation.status, Status.PENDING)

    def test_explicit_coordinates_skip_geocoder(self):
        self.coordinator.geocoder = MagicMock()
        donation = self.create(pickup_lat="34.05", pickup_lng=-118.24)
        self.coordinator.geocoder.assert_not_called()
        self.assertAlmostEqual(donation.pickup_lat, 34.05)

    def test_half_coordinates_are_invalid(self):
        with self.assertRaises(ValidationError):
            self.create(pickup_lat=34.05)
        with self.assertRaises(ValidationError):
            self.create(pickup_lat=134.05, pickup_lng=10)


class TransitionTests(LifecycleTestMixin, TestCase):
    def test_accept_binds_shelter_and_stamps_time(self):
        donation = self.accepted()
        self.assertEqual(donation.status, Status.ACCEPTED)
        self.assertEqual(donation.shelter_id, self.s1.pk)
        self.assertIsNotNone(donation.accepted_at)
        self.assertIsNone(donation.completed_at)
        self.assertEqual(donation.version, 2)

        event = donation.events.last()
        self.assertEqual(event.kind, DonationEvent.Kind.UPDATED)
        self.assertEqual(event.prior_status, Status.PENDING)
        self.assertEqual(event.version, 2)

    def test_complete_binds_volunteer(self):
        donation = self.completed()
        self.assertEqual(donation.status, Status.COMPLETED)
        self.assertEqual(donation.volunteer_id, self.v1.pk)
        self.assertEqual(donation.shelter_id, self.s1.pk)
        self.assertIsNotNone(donation.completed_at)
        self.assertEqual(list(donation.events.values_list("version", flat=True)), [1, 2, 3])

    def test_timestamps_track_status(self):
        for donation in (self.create(), self.accepted(), self.completed()):
            donation.refresh_from_db()
            self.assertEqual(donation.accepted_at is not None, donation.status in (Status.ACCEPTED, Status.COMPLETED))
            self.assertEqual(donation.completed_at is not None, donation.status == Status.COMPLETED)
            self.assertEqual(donation.shelter_id is None, donation.status == Status.PENDING)

    def test_two_shelters_race_exactly_one_wins(self):
        # scenario A: both shelters read "pending" before either writes
        donation = self.create()
        stale = Donation.objects.get(pk=donation.pk)

        winner = self.coordinator.accept(as_actor(self.s1), donation.pk)
        with patch.object(LifecycleCoordinator, "_load", return_value=stale):
            with self.assertRaises(ConflictError) as ctx:
                self.coordinator.accept(as_actor(self.s2), donation.pk)

        self.assertIn("already accepted", str(ctx.exception))
        self.assertEqual(winner.shelter_id, self.s1.pk)
        donation.refresh_from_db()
        self.assertEqual(donation.shelter_id, self.s1.pk)
        self.assertEqual(donation.events.count(), 2)

    def test_many_stale_accepts_produce_one_winner(self):
        donation = self.create()
        stale = Donation.objects.get(pk=donation.pk)
        shelters = [self.s1, self.s2] + [make_profile(Role.SHELTER) for _ in range(4)]

        outcomes = []
        with patch.object(LifecycleCoordinator, "_load", return_value=stale):
            for shelter in shelters:
                try:
                    self.coordinator.accept(as_actor(shelter), donation.pk)
                    outcomes.append("ok")
                except ConflictError:
                    outcomes.append("conflict")

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("conflict"), len(shelters) - 1)

    def test_accept_after_refresh_is_invalid_not_conflict(self):
        donation = self.accepted()
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.accept(as_actor(self.s2), donation.pk)

    def test_complete_on_pending_is_invalid(self):
        # scenario B
        donation = self.create()
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.complete(as_actor(self.v1), donation.pk)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Status.PENDING)

    def test_two_volunteers_race_one_completion_one_notification(self):
        # scenario C
        donation = self.accepted()
        stale = Donation.objects.get(pk=donation.pk)

        self.coordinator.complete(as_actor(self.v1), donation.pk)
        with patch.object(LifecycleCoordinator, "_load", return_value=stale):
            with self.assertRaises(ConflictError):
                self.coordinator.complete(as_actor(self.v2), donation.pk)

        for event_id in DonationEvent.objects.filter(donation=donation).values_list("pk", flat=True):
            notifications.dispatch_event(event_id)

        completed = Notification.objects.filter(recipient=self.donor, kind=Notification.Kind.DONATION_COMPLETED)
        self.assertEqual(completed.count(), 1)
        donation.refresh_from_db()
        self.assertEqual(donation.volunteer_id, self.v1.pk)

    def test_wrong_roles_are_invalid(self):
        pending = self.create()
        for profile in (self.donor, self.v1):
            with self.assertRaises(InvalidTransitionError):
                self.coordinator.accept(as_actor(profile), pending.pk)
        accepted = self.accepted()
        for profile in (self.donor, self.s1):
            with self.assertRaises(InvalidTransitionError):
                self.coordinator.complete(as_actor(profile), accepted.pk)

    def test_missing_record_is_invalid(self):
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.accept(as_actor(self.s1), uuid.uuid4())
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.accept(as_actor(self.s1), "nope")

    def test_completed_is_terminal(self):
        donation = self.completed()
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.complete(as_actor(self.v2), donation.pk)
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.accept(as_actor(self.s2), donation.pk)

    @patch.object(LifecycleCoordinator, "_bound_wait", side_effect=OperationalError("database is locked"))
    def test_slow_ledger_is_unavailable_not_conflict(self, _):
        donation = Donation.objects.create(donor=self.donor, donor_name="x", **MEALS)
        with self.assertRaises(UnavailableError) as ctx:
            self.coordinator.accept(as_actor(self.s1), donation.pk)
        self.assertTrue(ctx.exception.retryable)

    def test_commit_announces_event(self):
        with patch("donations.lifecycle.enqueue_dispatch") as enqueue:
            with self.captureOnCommitCallbacks(execute=True):
                donation = self.create()
            with self.captureOnCommitCallbacks(execute=True):
                self.coordinator.accept(as_actor(self.s1), donation.pk)

        seqs = list(DonationEvent.objects.filter(donation=donation).values_list("pk", flat=True))
        self.assertEqual([c.args[0] for c in enqueue.call_args_list], seqs)

    def test_failed_transition_announces_nothing(self):
        donation = self.accepted()
        with patch("donations.lifecycle.enqueue_dispatch") as enqueue:
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                with self.assertRaises(InvalidTransitionError):
                    self.coordinator.accept(as_actor(self.s2), donation.pk)
        self.assertEqual(callbacks, [])
        enqueue.assert_not_called()


class ReadTests(LifecycleTestMixin, TestCase):
    def test_other_shelter_cannot_read_accepted(self):
        donation = self.accepted()
        self.assertEqual(self.coordinator.read(as_actor(self.s1), donation.pk).pk, donation.pk)
        with self.assertRaises(NotFoundError):
            self.coordinator.read(as_actor(self.s2), donation.pk)

    def test_volunteer_cannot_read_pending(self):
        donation = self.create()
        with self.assertRaises(NotFoundError):
            self.coordinator.read(as_actor(self.v1), donation.pk)

    def test_list_visible_filters_by_status(self):
        self.create()
        self.accepted()
        self.completed()
        volunteer = as_actor(self.v1)
        self.assertEqual(self.coordinator.list_visible(volunteer).count(), 2)
        self.assertEqual(self.coordinator.list_visible(volunteer, status="accepted").count(), 1)
        self.assertEqual(self.coordinator.list_visible(as_actor(self.donor)).count(), 3)
        with self.assertRaises(ValidationError):
            self.coordinator.list_visible(volunteer, status="lost")

    def test_list_visible_limit(self):
        for n in range(3):
            self.create(quantity=f"{n} crates")
        donor = as_actor(self.donor)
        self.assertEqual(len(self.coordinator.list_visible(donor, limit=2)), 2)
        self.assertEqual(len(self.coordinator.list_visible(donor, limit=10)), 3)
        with self.assertRaises(ValidationError):
            self.coordinator.list_visible(donor, limit=0)

    def test_stats_count_only_visible_donations(self):
        self.create()
        self.accepted()
        self.completed()

        self.assertEqual(self.coordinator.stats(as_actor(self.donor)),
                         {"total": 3, "active": 2, "completed": 1, "mine": 3})
        # s2 sees the open request only; both accepted ones belong to s1
        self.assertEqual(self.coordinator.stats(as_actor(self.s2)),
                         {"total": 1, "active": 1, "completed": 0, "mine": 0})
        self.assertEqual(self.coordinator.stats(as_actor(self.v2)),
                         {"total": 2, "active": 1, "completed": 1, "mine": 0})


class SubscriptionBusTests(LifecycleTestMixin, TestCase):
    def test_shelter_never_sees_other_shelters_acceptance(self):
        donation = self.create()
        self.coordinator.accept(as_actor(self.s1), donation.pk)

        s2_events = bus.subscribe(as_actor(self.s2), after=0).poll()
        s1_events = bus.subscribe(as_actor(self.s1), after=0).poll()

        self.assertEqual([e.kind for e in s2_events], ["created"])
        self.assertEqual([(e.kind, e.prior_status) for e in s1_events], [("created", None), ("updated", "pending")])

    def test_volunteer_sees_pickups_not_open_requests(self):
        self.completed()
        events = bus.subscribe(as_actor(self.v2), after=0).poll()
        self.assertEqual([e.record.status for e in events], ["accepted", "completed"])

    def test_events_per_record_are_in_version_order(self):
        a = self.create()
        b = self.create()
        self.coordinator.accept(as_actor(self.s1), b.pk)
        self.coordinator.accept(as_actor(self.s1), a.pk)
        self.coordinator.complete(as_actor(self.v1), a.pk)

        events = bus.subscribe(as_actor(self.donor), after=0).poll()
        for donation in (a, b):
            versions = [e.record.version for e in events if e.donation_id == donation.pk]
            self.assertEqual(versions, sorted(versions))
        self.assertEqual(len(events), 5)

    def test_poll_does_not_redeliver(self):
        self.create()
        sub = bus.subscribe(as_actor(self.donor), after=0)
        self.assertEqual(len(sub.poll()), 1)
        self.assertEqual(sub.poll(), [])
        self.create()
        self.assertEqual(len(sub.poll()), 1)

    def test_subscribe_without_cursor_tails_from_now(self):
        self.create()
        sub = bus.subscribe(as_actor(self.s1))
        self.assertEqual(sub.poll(), [])
        fresh = self.create()
        self.assertEqual([e.donation_id for e in sub.poll()], [fresh.pk])

    def test_resume_from_cursor(self):
        first = self.create()
        sub = bus.subscribe(as_actor(self.s1), after=0)
        self.assertEqual([e.donation_id for e in sub.poll()], [first.pk])
        cursor = sub.cursor

        second = self.create()
        resumed = bus.subscribe(as_actor(self.s1), after=cursor)
        self.assertEqual([e.donation_id for e in resumed.poll()], [second.pk])

    def test_iteration_is_lazy(self):
        self.create()
        self.create()
        sub = bus.subscribe(as_actor(self.s1), after=0)
        events = list(itertools.islice(sub, 2))
        self.assertEqual(len(events), 2)
        self.assertTrue(all(isinstance(e, ChangeEvent) for e in events))

    def test_closed_subscription_stops_silently(self):
        self.create()
        sub = bus.subscribe(as_actor(self.s1), after=0)
        sub.close()
        self.assertEqual(sub.poll(), [])
        self.assertEqual(list(sub), [])

    def test_reconnect_and_resync_matches_ledger(self):
        # scenario D
        donation = self.create()
        sub = bus.subscribe(as_actor(self.donor), after=0)
        self.assertEqual(len(sub.poll()), 1)
        sub.close()

        # missed while disconnected
        self.coordinator.accept(as_actor(self.s1), donation.pk)
        self.coordinator.complete(as_actor(self.v1), donation.pk)

        records, cursor = bus.resync(as_actor(self.donor))
        donation.refresh_from_db()
        self.assertEqual([(r.pk, r.status, r.version) for r in records],
                         [(donation.pk, Status.COMPLETED, donation.version)])
        self.assertEqual(bus.subscribe(as_actor(self.donor), after=cursor).poll(), [])

        later = self.create()
        resumed = bus.subscribe(as_actor(self.donor), after=cursor)
        self.assertEqual([e.donation_id for e in resumed.poll()], [later.pk])

    def test_change_event_to_dict(self):
        donation = self.accepted()
        event = bus.subscribe(as_actor(self.s1), after=0).poll()[-1]
        data = event.to_dict()
        self.assertEqual(data["kind"], "updated")
        self.assertEqual(data["prior_status"], "pending")
        self.assertEqual(data["record"]["id"], str(donation.pk))
        self.assertEqual(data["record"]["shelter_id"], str(self.s1.pk))

    def test_late_commit_below_cursor_is_delivered(self):
        d1 = self.create()
        d2 = self.create()
        late = self.hold_back(d1)

        sub = bus.subscribe(as_actor(self.s1), after=0)
        self.assertEqual([e.donation_id for e in sub.poll()], [d2.pk])
        self.assertIn(late.pk, sub.pending)

        late.save(force_insert=True)
        self.assertEqual([e.donation_id for e in sub.poll()], [d1.pk])
        self.assertNotIn(late.pk, sub.pending)
        self.assertEqual(sub.poll(), [])

    def test_position_carries_gaps_to_a_new_subscription(self):
        d1 = self.create()
        self.create()
        late = self.hold_back(d1)

        first = bus.subscribe(as_actor(self.s1), after=0)
        first.poll()
        position = first.position
        self.assertIn(f"{late.pk}", position.partition(":")[2].split(","))

        late.save(force_insert=True)
        resumed = bus.subscribe(as_actor(self.s1), after=position)
        self.assertEqual([e.donation_id for e in resumed.poll()], [d1.pk])
        self.assertEqual(bus.subscribe(as_actor(self.s1), after=resumed.position).poll(), [])

    def test_gaps_older_than_lookback_are_forgotten(self):
        lost = self.create()
        late = self.hold_back(lost)
        sub = bus.subscribe(as_actor(self.donor), after=0, lookback=3)
        self.create()
        sub.poll()
        self.assertIn(late.pk, sub.pending)

        for _ in range(4):
            self.create()
        sub.poll()
        self.assertNotIn(late.pk, sub.pending)
        self.assertTrue(all(pk > sub.cursor - sub.lookback for pk in sub.pending))

        late.save(force_insert=True)
        self.assertEqual(sub.poll(), [])

    def test_positions(self):
        self.assertEqual(bus.format_position(12, {9, 3}), "12:3,9")
        self.assertEqual(bus.parse_position("12:3,9"), (12, {3, 9}))
        self.assertEqual(bus.parse_position(7), (7, set()))
        self.assertEqual(bus.parse_position("7"), (7, set()))
        for bad in ("soon", "5:7", "-1", "5:x"):
            with self.assertRaises(ValidationError):
                bus.parse_position(bad)

    @patch("donations.bus.DonationEvent.objects.filter", side_effect=OperationalError("timeout"))
    def test_feed_failure_is_unavailable(self, _):
        with self.assertRaises(UnavailableError):
            bus.Subscription(as_actor(self.s1), after=0).poll()

    def test_publish_wakes_waiting_subscriber(self):
        sub = bus.subscribe(as_actor(self.s1), after=0, poll_interval=5)
        woke = threading.Event()

        def wait():
            sub._wait()
            woke.set()

        t = threading.Thread(target=wait)
        t.start()
        bus.publish(sub.cursor + 1)
        t.join(timeout=2)
        self.assertTrue(woke.is_set())


class RenderTests(SimpleTestCase):
    def setUp(self):
        self.donor_id = uuid.uuid4()
        self.shelter_id = uuid.uuid4()

    def event(self, kind, status, prior=None):
        record = Donation(
            id=uuid.uuid4(), donor_id=self.donor_id, donor_name="Dana's Deli", food_type="Bakery Items",
            quantity="3 trays", pickup_location="1 Elm St", status=status,
            shelter_id=self.shelter_id if status != Status.PENDING else None,
        )
        return ChangeEvent(seq=1, kind=kind, record=record, prior_status=prior)

    def test_created_goes_to_shelters_only(self):
        event = self.event("created", Status.PENDING)
        got = notifications.render(event, Role.SHELTER, uuid.uuid4())
        self.assertEqual(got.title, "New Donation Available")
        self.assertEqual(got.message, "Dana's Deli has donated 3 trays of Bakery Items")
        self.assertIsNone(notifications.render(event, Role.VOLUNTEER, uuid.uuid4()))
        self.assertIsNone(notifications.render(event, Role.DONOR, self.donor_id))

    def test_accepted_tells_donor_which_shelter(self):
        event = self.event("updated", Status.ACCEPTED, Status.PENDING)
        got = notifications.render(event, Role.DONOR, self.donor_id, shelter_name="Harbor Shelter")
        self.assertEqual(got.kind, Notification.Kind.DONATION_ACCEPTED)
        self.assertIn("Harbor Shelter", got.message)

    def test_accepted_offers_pickup_to_volunteers(self):
        event = self.event("updated", Status.ACCEPTED, Status.PENDING)
        got = notifications.render(event, Role.VOLUNTEER, uuid.uuid4())
        self.assertEqual(got.title, "New Pickup Available")
        self.assertEqual(got.message, "Pickup needed: 3 trays of Bakery Items from Dana's Deli")
        self.assertIsNone(notifications.render(event, Role.SHELTER, self.shelter_id))

    def test_completed_confirms_to_donor_only(self):
        event = self.event("updated", Status.COMPLETED, Status.ACCEPTED)
        got = notifications.render(event, Role.DONOR, self.donor_id)
        self.assertEqual(got.kind, Notification.Kind.DONATION_COMPLETED)
        self.assertIsNone(notifications.render(event, Role.VOLUNTEER, uuid.uuid4()))
        self.assertIsNone(notifications.render(event, Role.DONOR, uuid.uuid4()))


class DispatchTests(LifecycleTestMixin, TestCase):
    def dispatch_all(self):
        for event_id in DonationEvent.objects.values_list("pk", flat=True):
            notifications.dispatch_event(event_id)

    def test_created_notifies_every_shelter(self):
        self.create()
        self.dispatch_all()
        self.assertEqual(
            set(Notification.objects.values_list("recipient_id", flat=True)), {self.s1.pk, self.s2.pk}
        )

    def test_accepted_notifies_donor_and_volunteers(self):
        donation = self.accepted()
        notifications.dispatch_event(donation.events.last().pk)
        got = dict(Notification.objects.values_list("recipient_id", "kind"))
        self.assertEqual(got, {
            self.donor.pk: Notification.Kind.DONATION_ACCEPTED,
            self.v1.pk: Notification.Kind.PICKUP_AVAILABLE,
            self.v2.pk: Notification.Kind.PICKUP_AVAILABLE,
        })
        self.assertIn("Harbor Shelter", Notification.objects.get(recipient=self.donor).message)

    def test_redelivered_event_does_not_duplicate(self):
        donation = self.completed()
        event_id = donation.events.last().pk
        self.assertEqual(len(notifications.dispatch_event(event_id)), 1)
        self.assertEqual(notifications.dispatch_event(event_id), [])
        self.assertEqual(Notification.objects.filter(recipient=self.donor).count(), 1)

    def test_inbox_keeps_ten_newest(self):
        made = [self.create(quantity=f"{n} boxes") for n in range(12)]
        self.dispatch_all()
        items, unread = notifications.inbox(self.s1.pk)
        self.assertEqual(len(items), 10)
        self.assertEqual(unread, 10)
        kept = {n.donation_id for n in items}
        self.assertNotIn(made[0].pk, kept)
        self.assertNotIn(made[1].pk, kept)
        self.assertIn(made[-1].pk, kept)

    def test_mark_read_and_clear(self):
        self.create()
        self.create()
        self.dispatch_all()
        first = Notification.objects.filter(recipient=self.s1).first()
        self.assertEqual(notifications.mark_read(self.s1.pk, first.pk), 1)
        self.assertEqual(notifications.inbox(self.s1.pk)[1], 1)
        self.assertEqual(notifications.mark_read(self.s1.pk), 1)
        self.assertEqual(notifications.clear(self.s1.pk), 2)
        self.assertEqual(Notification.objects.filter(recipient=self.s2).count(), 2)

    def test_missing_event_is_dropped(self):
        self.assertEqual(notifications.dispatch_event(987654), [])

    @override_settings(NOTIFICATION_WEBHOOK_URL="https://relay.example/notify")
    @patch("donations.notifications.enqueue_delivery")
    def test_new_notifications_are_handed_to_channel(self, enqueue):
        self.create()
        made = notifications.dispatch_event(DonationEvent.objects.get().pk)
        self.assertEqual(sorted(c.args[0] for c in enqueue.call_args_list), sorted(n.pk for n in made))


class DeliveryTests(LifecycleTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.create()
        notifications.dispatch_event(DonationEvent.objects.get().pk)
        self.notification = Notification.objects.filter(recipient=self.s1).get()

    def test_no_channel_configured(self):
        self.assertFalse(notifications.deliver(self.notification.pk))

    @override_settings(NOTIFICATION_WEBHOOK_URL="https://relay.example/notify", NOTIFICATION_WEBHOOK_TOKEN="t0k")
    @patch("donations.notifications.requests.post")
    def test_posts_to_relay(self, post):
        post.return_value.raise_for_status.return_value = None
        self.assertTrue(notifications.deliver(self.notification.pk))
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://relay.example/notify")
        self.assertEqual(kwargs["json"]["recipient"]["id"], str(self.s1.pk))
        self.assertEqual(kwargs["json"]["notification"]["title"], "New Donation Available")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer t0k")

    @override_settings(NOTIFICATION_WEBHOOK_URL="https://relay.example/notify")
    @patch("donations.notifications.requests.post", side_effect=requests.ConnectionError("unreachable"))
    def test_relay_failure_is_logged_and_dropped(self, _):
        with self.assertLogs("donations.notifications", level="WARNING"):
            self.assertFalse(notifications.deliver(self.notification.pk))
        self.assertTrue(Notification.objects.filter(pk=self.notification.pk).exists())

    @patch("donations.tasks.dispatch_notifications_task")
    def test_broker_failure_does_not_raise(self, task):
        task.delay.side_effect = OSError("broker down")
        with self.assertLogs("donations.notifications", level="ERROR"):
            notifications.enqueue_dispatch(1)


class CeleryTaskTests(SimpleTestCase):
    @patch("donations.tasks.notifications.dispatch_event")
    def test_dispatch_task_delegates(self, dispatch_event):
        from donations.tasks import dispatch_notifications_task

        dispatch_event.return_value = ["a", "b"]
        self.assertEqual(dispatch_notifications_task.run(42), 2)
        dispatch_event.assert_called_once_with(42)

    @patch("donations.tasks.notifications.deliver")
    def test_deliver_task_delegates(self, deliver):
        from donations.tasks import deliver_notification_task

        deliver.return_value = True
        self.assertTrue(deliver_notification_task.run(7))
        deliver.assert_called_once_with(7)


class ApiTests(LifecycleTestMixin, TestCase):
    def call(self, method, name, profile=None, data=None, args=None, query=""):
        extra = {"HTTP_X_ACTOR_ID": str(profile.pk)} if profile else {}
        url = reverse(f"donations:{name}", args=args or []) + query
        if method == "get":
            return self.client.get(url, **extra)
        body = json.dumps(data if data is not None else {})
        return getattr(self.client, method)(url, data=body, content_type="application/json", **extra)

    def test_profile_lifecycle(self):
        identity = uuid.uuid4()
        headers = {"HTTP_X_ACTOR_ID": str(identity)}
        url = reverse("donations:profile")

        r = self.client.post(url, data=json.dumps({"name": "Corner Pantry", "role": "shelter"}),
                             content_type="application/json", **headers)
        self.assertEqual(r.status_code, 201, r.content)
        self.assertEqual(r.json()["role"], "shelter")

        r = self.client.post(url, data=json.dumps({"name": "Again", "role": "donor"}),
                             content_type="application/json", **headers)
        self.assertEqual(r.status_code, 409)

        r = self.client.patch(url, data=json.dumps({"role": "volunteer"}), content_type="application/json", **headers)
        self.assertEqual(r.status_code, 400)

        r = self.client.patch(url, data=json.dumps({"phone": "555-0100"}), content_type="application/json", **headers)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(self.client.get(url, **headers).json()["phone"], "555-0100")

    def test_profile_requires_role(self):
        r = self.client.post(reverse("donations:profile"), data=json.dumps({"name": "X", "role": "admin"}),
                             content_type="application/json", HTTP_X_ACTOR_ID=str(uuid.uuid4()))
        self.assertEqual(r.status_code, 400)
        self.assertIn("role", r.json()["fields"])

    def test_identity_required(self):
        self.assertEqual(self.call("get", "donations").status_code, 401)
        r = self.client.get(reverse("donations:donations"), HTTP_X_ACTOR_ID=str(uuid.uuid4()))
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.json()["error"], "unauthenticated")

    def test_create_and_read(self):
        r = self.call("post", "donations", self.donor, MEALS)
        self.assertEqual(r.status_code, 201, r.content)
        body = r.json()
        self.assertEqual(body["status"], "pending")
        self.assertIsNone(body["shelter_id"])
        self.assertEqual((body["pickup_lat"], body["pickup_lng"]), (40.7128, -74.006))

        r = self.call("get", "donation", self.donor, args=[body["id"]])
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["quantity"], "10 meals")

    def test_create_validation(self):
        r = self.call("post", "donations", self.donor, {"food_type": "Prepared Meals"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(set(r.json()["fields"]), {"quantity", "pickup_location"})

        r = self.client.post(reverse("donations:donations"), data="{not json", content_type="application/json",
                             HTTP_X_ACTOR_ID=str(self.donor.pk))
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["detail"], "invalid_json")

    def test_accept_and_complete(self):
        donation = self.create()
        r = self.call("post", "accept", self.s1, args=[donation.pk])
        self.assertEqual(r.status_code, 200, r.content)
        self.assertEqual(r.json()["shelter_id"], str(self.s1.pk))

        r = self.call("post", "accept", self.s2, args=[donation.pk])
        self.assertEqual(r.status_code, 422)
        self.assertEqual(r.json()["error"], "invalid_transition")

        r = self.call("post", "complete", self.v1, args=[donation.pk])
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "completed")

    def test_complete_pending_is_rejected(self):
        donation = self.create()
        r = self.call("post", "complete", self.v1, args=[donation.pk])
        self.assertEqual(r.status_code, 422)

    def test_accept_requires_post(self):
        donation = self.create()
        self.assertEqual(self.call("get", "accept", self.s1, args=[donation.pk]).status_code, 405)

    @patch.object(LifecycleCoordinator, "accept", side_effect=ConflictError("already accepted"))
    def test_conflict_maps_to_409(self, _):
        r = self.call("post", "accept", self.s1, args=[uuid.uuid4()])
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json(), {"error": "conflict", "detail": "already accepted"})

    @patch.object(LifecycleCoordinator, "complete", side_effect=UnavailableError("donation ledger did not answer in time"))
    def test_unavailable_maps_to_503(self, _):
        r = self.call("post", "complete", self.v1, args=[uuid.uuid4()])
        self.assertEqual(r.status_code, 503)

    def test_invisible_donation_is_404(self):
        donation = self.accepted()
        self.assertEqual(self.call("get", "donation", self.s2, args=[donation.pk]).status_code, 404)

    def test_list_for_shelter(self):
        self.create()
        mine = self.accepted()
        r = self.call("get", "donations", self.s2)
        self.assertEqual(len(r.json()["donations"]), 1)
        r = self.call("get", "donations", self.s1, query="?status=accepted")
        self.assertEqual([d["id"] for d in r.json()["donations"]], [str(mine.pk)])

    def test_events_and_resync(self):
        donation = self.accepted()
        r = self.call("get", "events", self.s2, query="?after=0")
        self.assertEqual(r.status_code, 200)
        self.assertEqual([e["kind"] for e in r.json()["events"]], ["created"])

        r = self.call("get", "events", self.s1, query="?after=0")
        cursor = r.json()["cursor"]
        self.assertEqual(len(r.json()["events"]), 2)
        self.assertEqual(self.call("get", "events", self.s1, query="?" + urlencode({"after": cursor})).json()["events"], [])

        r = self.call("get", "events", self.s1, query="?after=soon")
        self.assertEqual(r.status_code, 400)

        r = self.call("get", "resync", self.s1)
        self.assertEqual([d["id"] for d in r.json()["donations"]], [str(donation.pk)])
        self.assertEqual(r.json()["cursor"], cursor)

    def test_events_resume_across_late_commit(self):
        d1 = self.create()
        d2 = self.create()
        late = self.hold_back(d1)

        r = self.call("get", "events", self.s1, query="?after=0")
        self.assertEqual([e["record"]["id"] for e in r.json()["events"]], [str(d2.pk)])
        cursor = r.json()["cursor"]

        # d1's event commits after the client already holds a cursor past it
        late.save(force_insert=True)
        r = self.call("get", "events", self.s1, query="?" + urlencode({"after": cursor}))
        self.assertEqual([e["record"]["id"] for e in r.json()["events"]], [str(d1.pk)])

        r = self.call("get", "events", self.s1, query="?" + urlencode({"after": r.json()["cursor"]}))
        self.assertEqual(r.json()["events"], [])

    def test_events_reject_malformed_position(self):
        r = self.call("get", "events", self.s1, query="?" + urlencode({"after": "9:12"}))
        self.assertEqual(r.status_code, 400)
        self.assertIn("after", r.json()["fields"])

    def test_stats(self):
        for _ in range(6):
            self.create()
        self.coordinator.accept(as_actor(self.s1), Donation.objects.first().pk)

        r = self.call("get", "stats", self.donor)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["stats"], {"total": 6, "active": 6, "completed": 0, "mine": 6})
        self.assertEqual(len(r.json()["recent"]), 5)

        r = self.call("get", "stats", self.v1)
        self.assertEqual(r.json()["stats"], {"total": 1, "active": 1, "completed": 0, "mine": 0})
        self.assertEqual([d["status"] for d in r.json()["recent"]], ["accepted"])

    def test_list_limit(self):
        for _ in range(3):
            self.create()
        r = self.call("get", "donations", self.donor, query="?limit=2")
        self.assertEqual(len(r.json()["donations"]), 2)
        self.assertEqual(self.call("get", "donations", self.donor, query="?limit=two").status_code, 400)
        self.assertEqual(self.call("get", "donations", self.donor, query="?limit=0").status_code, 400)

    def test_profile_field_lengths(self):
        identity = uuid.uuid4()
        headers = {"HTTP_X_ACTOR_ID": str(identity)}
        url = reverse("donations:profile")

        r = self.client.post(url, data=json.dumps({"name": "Pantry", "role": "donor", "phone": "5" * 33}),
                             content_type="application/json", **headers)
        self.assertEqual(r.status_code, 400)
        self.assertIn("phone", r.json()["fields"])
        self.assertFalse(Profile.objects.filter(pk=identity).exists())

        r = self.client.post(url, data=json.dumps({"name": "Pantry", "role": "donor", "phone": "5" * 32}),
                             content_type="application/json", **headers)
        self.assertEqual(r.status_code, 201)

        for body in ({"name": "x" * 101}, {"name": "  "}, {"email": "a" * 250 + "@b.io"}, {"phone": 5551234}):
            r = self.client.patch(url, data=json.dumps(body), content_type="application/json", **headers)
            self.assertEqual(r.status_code, 400, body)
        self.assertEqual(Profile.objects.get(pk=identity).name, "Pantry")

    def test_mark_read_rejects_boolean_id(self):
        self.create()
        notifications.dispatch_event(DonationEvent.objects.get().pk)
        r = self.call("post", "notifications-read", self.s1, {"id": True})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(notifications.inbox(self.s1.pk)[1], 1)

    @patch("donations.utils.geocode_address", return_value=(1.5, 2.5))
    def test_api_uses_current_geocoder(self, geocode):
        r = self.call("post", "donations", self.donor, MEALS)
        self.assertEqual((r.json()["pickup_lat"], r.json()["pickup_lng"]), (1.5, 2.5))
        geocode.assert_called_once_with(MEALS["pickup_location"])

    def test_notification_endpoints(self):
        self.create()
        notifications.dispatch_event(DonationEvent.objects.get().pk)

        r = self.call("get", "notifications", self.s1)
        self.assertEqual(r.json()["unread"], 1)
        note_id = r.json()["notifications"][0]["id"]

        r = self.call("post", "notifications-read", self.s1, {"id": note_id})
        self.assertEqual(r.json()["updated"], 1)
        self.assertEqual(self.call("get", "notifications", self.s1).json()["unread"], 0)

        r = self.call("post", "notifications-clear", self.s1)
        self.assertEqual(r.json()["deleted"], 1)

    def test_classify(self):
        r = self.client.post(reverse("donations:classify"), data=json.dumps({"text": "two loaves of bread"}),
                             content_type="application/json")
        self.assertEqual(r.json()["food_type"], "Bakery Items")
        r = self.client.post(reverse("donations:classify"), data=json.dumps({}), content_type="application/json")
        self.assertEqual(r.status_code, 400)


class UtilsTests(SimpleTestCase):
    def test_classify_keywords(self):
        self.assertEqual(classify_food_type("leftover pizza and soup"), "Prepared Meals")
        self.assertEqual(classify_food_type("day-old muffins"), "Bakery Items")
        self.assertEqual(classify_food_type("2 gallons of milk"), "Dairy Products")
        self.assertEqual(classify_food_type("crate of apples"), "Fresh Produce")
        self.assertEqual(classify_food_type("frozen peas"), "Frozen Items")
        self.assertEqual(classify_food_type("canned beans"), "Canned Goods")
        self.assertEqual(classify_food_type("bottled water"), "Beverages")
        self.assertEqual(classify_food_type("boxes of cereal"), "Packaged Foods")
        self.assertEqual(classify_food_type("mystery"), "Other Food Items")
        self.assertEqual(classify_food_type(""), "Other Food Items")

    def test_classify_passes_through_category_names(self):
        self.assertEqual(classify_food_type("fresh produce"), "Fresh Produce")

    def test_geocode_builtin_table(self):
        self.assertEqual(geocode_address("500 W Madison St, Chicago, IL"), (41.8781, -87.6298))
        self.assertIsNone(geocode_address("Somewhere unmapped"))
        self.assertIsNone(geocode_address("   "))

    @override_settings(GEOCODER_URL="https://geo.example/search")
    @patch("donations.utils.requests.get")
    def test_geocode_remote(self, get):
        get.return_value.status_code = 200
        get.return_value.json.return_value = [{"lat": "51.5", "lon": "-0.12"}]
        self.assertEqual(geocode_address("10 Downing St, London"), (51.5, -0.12))

    @override_settings(GEOCODER_URL="https://geo.example/search")
    @patch("donations.utils.requests.get", side_effect=requests.Timeout("slow"))
    def test_geocode_remote_failure_falls_back(self, _):
        self.assertEqual(geocode_address("1 Main St, Houston, TX"), (29.7604, -95.3698))
        self.assertIsNone(geocode_address("10 Downing St, London"))


class WatchCommandTests(LifecycleTestMixin, TestCase):
    def test_prints_visible_events(self):
        self.create()
        out = io.StringIO()
        call_command("watch_donations", actor=str(self.s1.pk), after=0, limit=1, stdout=out)
        text = out.getvalue()
        self.assertIn("created", text)
        self.assertIn("10 meals Prepared Meals", text)
        self.assertIn("events=1", text)

    def test_unknown_actor(self):
        with self.assertRaises(CommandError):
            call_command("watch_donations", actor=str(uuid.uuid4()), limit=1, stdout=io.StringIO())


@skipUnless(connection.vendor == "postgresql", "needs concurrent writers")
class ConcurrentAcceptTests(TransactionTestCase):
    def test_only_one_shelter_wins_under_threads(self):
        donor = make_profile(Role.DONOR)
        shelters = [make_profile(Role.SHELTER) for _ in range(8)]
        coordinator = LifecycleCoordinator(geocoder=lambda address: None)

        with patch("donations.lifecycle.enqueue_dispatch"):
            donation = coordinator.create(as_actor(donor), MEALS)
            barrier = threading.Barrier(len(shelters))
            outcomes = []
            lock = threading.Lock()

            def attempt(shelter):
                try:
                    barrier.wait()
                    coordinator.accept(as_actor(shelter), donation.pk)
                    result = "ok"
                except ConflictError:
                    result = "conflict"
                except InvalidTransitionError:
                    # read after the winner committed
                    result = "invalid"
                finally:
                    connection.close()
                with lock:
                    outcomes.append(result)

            threads = [threading.Thread(target=attempt, args=(s,)) for s in shelters]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(len(outcomes), len(shelters))
        donation.refresh_from_db()
        self.assertEqual(donation.events.count(), 2)
