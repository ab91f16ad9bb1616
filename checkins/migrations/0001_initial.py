from decimal import Decimal

from django.conf import settings
from django.db import migrations, models
import django.core.validators
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CheckInOutRecord",
            fields=[
                ("id", models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False, serialize=False)),
                ("subject_name", models.CharField(max_length=255)),
                ("site_name", models.CharField(max_length=255)),
                (
                    "kind",
                    models.CharField(
                        max_length=20,
                        choices=[("Check In", "Check In"), ("Check Out", "Check Out")],
                    ),
                ),
                ("timestamp", models.DateTimeField()),
                ("latitude", models.FloatField()),
                ("longitude", models.FloatField()),
                ("accuracy", models.FloatField(null=True, blank=True)),
                ("address", models.TextField(blank=True)),
                ("image", models.ImageField(upload_to="check_inout_images/", null=True, blank=True)),
                ("remarks", models.TextField(blank=True)),
                ("auto_generated", models.BooleanField(default=False)),
                ("distance_from_branch", models.FloatField(null=True, blank=True)),
                ("is_inside_geofence", models.BooleanField(null=True, blank=True)),
                (
                    "status",
                    models.CharField(
                        max_length=20,
                        choices=[("Pending", "Pending"), ("Approved", "Approved"), ("Rejected", "Rejected")],
                        null=True,
                        blank=True,
                    ),
                ),
                ("reviewed_at", models.DateTimeField(null=True, blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "closes",
                    models.OneToOneField(
                        to="checkins.checkinoutrecord",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="auto_checkout",
                        null=True,
                        blank=True,
                    ),
                ),
                (
                    "reviewed_by",
                    models.ForeignKey(
                        to=settings.AUTH_USER_MODEL,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="reviewed_check_inout_records",
                        null=True,
                        blank=True,
                    ),
                ),
                (
                    "subject",
                    models.ForeignKey(
                        to=settings.AUTH_USER_MODEL,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="check_inout_records",
                    ),
                ),
            ],
            options={
                "db_table": "checkins_records",
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["subject", "timestamp"], name="checkins_re_subject_5b1f0e_idx"),
                    models.Index(fields=["kind", "timestamp"], name="checkins_re_kind_8c2d41_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="VisitSettings",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "max_visit_duration_hours",
                    models.DecimalField(
                        max_digits=5,
                        decimal_places=2,
                        default=Decimal("8"),
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0.25")),
                            django.core.validators.MaxValueValidator(Decimal("23.99")),
                        ],
                    ),
                ),
                ("branch_latitude", models.FloatField(null=True, blank=True)),
                ("branch_longitude", models.FloatField(null=True, blank=True)),
                ("geofence_radius_meters", models.PositiveIntegerField(default=100)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "checkins_visit_settings",
                "verbose_name_plural": "visit settings",
            },
        ),
    ]
