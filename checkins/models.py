from collections import namedtuple
from decimal import Decimal

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
import uuid

from .visits import CHECK_IN, CHECK_OUT


Location = namedtuple('Location', ['latitude', 'longitude', 'accuracy', 'address'])


class CheckInOutRecord(models.Model):
    """A single check-in or check-out made by a staff member at a site.

    Records are append-only: apart from the review fields they are never
    edited, only deleted together with the visit they belong to.
    """

    CHECK_IN = CHECK_IN
    CHECK_OUT = CHECK_OUT
    KIND_CHOICES = [
        (CHECK_IN, 'Check In'),
        (CHECK_OUT, 'Check Out'),
    ]

    STATUS_CHOICES = [
        ('Pending', 'Pending'),
        ('Approved', 'Approved'),
        ('Rejected', 'Rejected'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subject = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='check_inout_records',
    )
    subject_name = models.CharField(max_length=255)
    site_name = models.CharField(max_length=255)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    timestamp = models.DateTimeField()

    latitude = models.FloatField()
    longitude = models.FloatField()
    accuracy = models.FloatField(null=True, blank=True)
    address = models.TextField(blank=True)

    image = models.ImageField(upload_to='check_inout_images/', null=True, blank=True)
    remarks = models.TextField(blank=True)

    # Synthetic checkouts point at the check-in they close; at most one each
    auto_generated = models.BooleanField(default=False)
    closes = models.OneToOneField(
        'self',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='auto_checkout',
    )

    distance_from_branch = models.FloatField(null=True, blank=True)
    is_inside_geofence = models.BooleanField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, null=True, blank=True)
    reviewed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reviewed_check_inout_records',
    )
    reviewed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'checkins_records'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['subject', 'timestamp'], name='checkins_re_subject_5b1f0e_idx'),
            models.Index(fields=['kind', 'timestamp'], name='checkins_re_kind_8c2d41_idx'),
        ]

    def __str__(self):
        return f"{self.subject_name} - {self.kind} - {self.site_name} - {self.timestamp}"

    @property
    def is_check_in(self):
        return self.kind == self.CHECK_IN

    @property
    def is_check_out(self):
        return self.kind == self.CHECK_OUT

    @property
    def location(self):
        return Location(self.latitude, self.longitude, self.accuracy, self.address)


class VisitSettings(models.Model):
    """Singleton row holding the visit duration budget and branch geofence."""

    max_visit_duration_hours = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('8'),
        validators=[MinValueValidator(Decimal('0.25')), MaxValueValidator(Decimal('23.99'))],
    )
    branch_latitude = models.FloatField(null=True, blank=True)
    branch_longitude = models.FloatField(null=True, blank=True)
    geofence_radius_meters = models.PositiveIntegerField(default=100)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'checkins_visit_settings'
        verbose_name_plural = 'visit settings'

    def __str__(self):
        return f"Visit settings (max {self.max_visit_duration_hours}h)"

    def save(self, *args, **kwargs):
        self.pk = 1
        super().save(*args, **kwargs)

    @classmethod
    def load(cls):
        obj, _ = cls.objects.get_or_create(
            pk=1,
            defaults={'max_visit_duration_hours': Decimal(str(settings.VISIT_MAX_DURATION_HOURS))},
        )
        return obj

    @property
    def has_branch_location(self):
        return self.branch_latitude is not None and self.branch_longitude is not None
