import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Profile",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=100)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("phone", models.CharField(blank=True, max_length=32, null=True)),
                ("role", models.CharField(choices=[("donor", "Donor"), ("shelter", "Shelter"), ("volunteer", "Volunteer")], max_length=16)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "indexes": [models.Index(fields=["role"], name="profile_role_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("role__in", ["donor", "shelter", "volunteer"])),
                        name="profile_role_valid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Donation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("donor_name", models.CharField(max_length=100)),
                ("food_type", models.CharField(choices=[("Prepared Meals", "Prepared Meals"), ("Bakery Items", "Bakery Items"), ("Dairy Products", "Dairy Products"), ("Fresh Produce", "Fresh Produce"), ("Packaged Foods", "Packaged Foods"), ("Beverages", "Beverages"), ("Canned Goods", "Canned Goods"), ("Frozen Items", "Frozen Items"), ("Other Food Items", "Other Food Items")], max_length=32)),
                ("quantity", models.CharField(max_length=200)),
                ("pickup_location", models.TextField()),
                ("pickup_lat", models.FloatField(blank=True, null=True)),
                ("pickup_lng", models.FloatField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, null=True)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("accepted", "Accepted"), ("completed", "Completed"), ("cancelled", "Cancelled")], default="pending", max_length=16)),
                ("version", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("donor", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="donations", to="donations.profile")),
                ("shelter", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="accepted_donations", to="donations.profile")),
                ("volunteer", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="completed_donations", to="donations.profile")),
            ],
            options={
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["status"], name="donation_status_idx"),
                    models.Index(fields=["-created_at"], name="donation_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("status__in", ["pending", "accepted", "completed", "cancelled"])),
                        name="donation_status_valid",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("status", "pending"),
                                ("shelter__isnull", True),
                                ("accepted_at__isnull", True),
                                ("volunteer__isnull", True),
                                ("completed_at__isnull", True),
                            ),
                            models.Q(
                                ("status", "accepted"),
                                ("shelter__isnull", False),
                                ("accepted_at__isnull", False),
                                ("volunteer__isnull", True),
                                ("completed_at__isnull", True),
                            ),
                            models.Q(
                                ("status", "completed"),
                                ("shelter__isnull", False),
                                ("accepted_at__isnull", False),
                                ("volunteer__isnull", False),
                                ("completed_at__isnull", False),
                            ),
                            ("status", "cancelled"),
                            _connector="OR",
                        ),
                        name="donation_bindings_match_status",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DonationEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("created", "Created"), ("updated", "Updated")], max_length=16)),
                ("version", models.PositiveIntegerField()),
                ("prior_status", models.CharField(blank=True, choices=[("pending", "Pending"), ("accepted", "Accepted"), ("completed", "Completed"), ("cancelled", "Cancelled")], max_length=16, null=True)),
                ("snapshot", models.JSONField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("donation", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="events", to="donations.donation")),
            ],
            options={
                "ordering": ("id",),
                "constraints": [
                    models.UniqueConstraint(fields=("donation", "version"), name="donation_event_version_unique"),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("kind", "created"), ("prior_status__isnull", True)),
                            models.Q(("kind", "updated"), ("prior_status__isnull", False)),
                            _connector="OR",
                        ),
                        name="donation_event_prior_status",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Notification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("donation_available", "New donation available"), ("donation_accepted", "Donation accepted"), ("pickup_available", "New pickup available"), ("donation_completed", "Donation completed")], max_length=32)),
                ("title", models.CharField(max_length=100)),
                ("message", models.TextField()),
                ("read", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("donation", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notifications", to="donations.donation")),
                ("event", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notifications", to="donations.donationevent")),
                ("recipient", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notifications", to="donations.profile")),
            ],
            options={
                "ordering": ("-created_at", "-id"),
                "indexes": [models.Index(fields=["recipient", "-created_at"], name="notification_inbox_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("recipient", "event"), name="notification_once_per_event"),
                ],
            },
        ),
    ]
