"""
ORM-backed event store for check-in/out records.
"""
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
import logging
from typing import Any, Optional

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import Min
from django.utils import timezone

from core.exceptions import EventStoreUnavailable
from .models import CheckInOutRecord, Location
from .visits import CHECK_IN, CHECK_OUT, PAIRING_WINDOW, match_visits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventFilter:
    subject_id: Any = None
    kind: Optional[str] = None
    site_name: Optional[str] = None
    # A date bounds whole days (inclusive); a datetime is an exact bound
    from_date: Any = None
    to_date: Any = None

    def as_params(self):
        return {
            'subject_id': self.subject_id,
            'kind': self.kind,
            'site_name': self.site_name,
            'from_date': self.from_date.isoformat() if self.from_date else None,
            'to_date': self.to_date.isoformat() if self.to_date else None,
        }

    def matches(self, record):
        """Same selection as the queryset filter, applied to a loaded record."""
        if self.subject_id is not None and record.subject_id != self.subject_id:
            return False
        if self.kind and record.kind != self.kind:
            return False
        if self.site_name and record.site_name != self.site_name:
            return False
        day = timezone.localdate(record.timestamp)
        if isinstance(self.from_date, datetime):
            if record.timestamp < self.from_date:
                return False
        elif isinstance(self.from_date, date) and day < self.from_date:
            return False
        if isinstance(self.to_date, datetime):
            if record.timestamp > self.to_date:
                return False
        elif isinstance(self.to_date, date) and day > self.to_date:
            return False
        return True


def _start_of(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return timezone.make_aware(datetime.combine(value, time.min))
    return None


def _end_of(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return timezone.make_aware(datetime.combine(value + timedelta(days=1), time.min))
    return None


def _apply_filter(qs, event_filter):
    if event_filter is None:
        return qs
    if event_filter.subject_id is not None:
        qs = qs.filter(subject_id=event_filter.subject_id)
    if event_filter.kind:
        qs = qs.filter(kind=event_filter.kind)
    if event_filter.site_name:
        qs = qs.filter(site_name=event_filter.site_name)
    if isinstance(event_filter.from_date, datetime):
        qs = qs.filter(timestamp__gte=event_filter.from_date)
    elif isinstance(event_filter.from_date, date):
        qs = qs.filter(timestamp__date__gte=event_filter.from_date)
    if isinstance(event_filter.to_date, datetime):
        qs = qs.filter(timestamp__lte=event_filter.to_date)
    elif isinstance(event_filter.to_date, date):
        qs = qs.filter(timestamp__date__lte=event_filter.to_date)
    return qs


def _location_fields(location):
    if location is None:
        return {}
    if isinstance(location, dict):
        location = Location(
            location.get('latitude'),
            location.get('longitude'),
            location.get('accuracy'),
            location.get('address') or '',
        )
    return {
        'latitude': location.latitude,
        'longitude': location.longitude,
        'accuracy': location.accuracy,
        'address': location.address or '',
    }


class EventStore:
    model = CheckInOutRecord

    def list_events(self, event_filter: Optional[EventFilter] = None):
        """Filtered records in insertion order. Read failures surface as EventStoreUnavailable."""
        qs = _apply_filter(self.model.objects.all(), event_filter).order_by('created_at', 'id')
        try:
            return list(qs)
        except DatabaseError as e:
            logger.error(f"Failed to load check-in/out records: {e}")
            raise EventStoreUnavailable() from e

    def get_event(self, event_id):
        try:
            return self.model.objects.get(pk=event_id)
        except (self.model.DoesNotExist, ValidationError, ValueError):
            return None

    def create_event(self, subject_id, subject_name, site_name, kind, location,
                     image=None, remarks='', timestamp=None, **extra):
        return self.model.objects.create(
            subject_id=subject_id,
            subject_name=subject_name,
            site_name=site_name,
            kind=kind,
            timestamp=timestamp or timezone.now(),
            image=image,
            remarks=remarks or '',
            **_location_fields(location),
            **extra,
        )

    def matching_context(self, event_filter: Optional[EventFilter] = None):
        """
        Records needed to pair the check-ins selected by ``event_filter``
        exactly as a match over the whole history would.

        Kind and date bounds are not applied to the read. The lower bound is
        pushed back while an earlier check-in could still claim a check-out
        inside the range, and the upper bound is widened by the pairing
        window so late check-outs are seen.
        """
        event_filter = event_filter or EventFilter()
        scope = EventFilter(subject_id=event_filter.subject_id, site_name=event_filter.site_name)
        lower = _start_of(event_filter.from_date)
        upper = _end_of(event_filter.to_date)
        if lower is not None:
            lower = self._earliest_competing_time(scope, lower)
        if upper is not None:
            upper = upper + PAIRING_WINDOW
        return self.list_events(replace(scope, from_date=lower, to_date=upper))

    def _earliest_competing_time(self, scope, lower):
        check_ins = _apply_filter(self.model.objects.filter(kind=CHECK_IN), scope)
        try:
            while True:
                # Anything at or before lower - window can only claim check-outs before lower
                earlier = check_ins.filter(
                    timestamp__gt=lower - PAIRING_WINDOW,
                    timestamp__lt=lower,
                ).aggregate(earliest=Min('timestamp'))['earliest']
                if earlier is None:
                    return lower
                lower = earlier
        except DatabaseError as e:
            logger.error(f"Failed to load check-in/out records: {e}")
            raise EventStoreUnavailable() from e

    def neighbourhood(self, check_in):
        """Records that decide which check-out, if any, belongs to ``check_in``."""
        return self.matching_context(EventFilter(
            subject_id=check_in.subject_id,
            site_name=check_in.site_name,
            from_date=check_in.timestamp,
            to_date=check_in.timestamp,
        ))

    def create_checkout_if_absent(self, check_in, timestamp, remarks):
        """
        Write a synthetic check-out for ``check_in`` unless it already has one.

        The check-in row is locked and pairing is re-evaluated inside the
        transaction, so two overlapping runs cannot both close the same
        check-in. Returns the new record, or None when nothing was written.
        """
        with transaction.atomic():
            locked = self.model.objects.select_for_update().filter(pk=check_in.pk).first()
            if locked is None:
                logger.info(f"Check-in {check_in.pk} was deleted before auto check-out")
                return None
            if self.model.objects.filter(closes=locked).exists():
                return None
            if match_visits(self.neighbourhood(locked)).get(locked.pk) is not None:
                return None
            return self.model.objects.create(
                subject_id=locked.subject_id,
                subject_name=locked.subject_name,
                site_name=locked.site_name,
                kind=CHECK_OUT,
                timestamp=timestamp,
                remarks=remarks,
                auto_generated=True,
                closes=locked,
                **_location_fields(locked.location),
            )

    def delete_event(self, event_id):
        self.model.objects.filter(pk=event_id).delete()

    def delete_evidence(self, record):
        """Best-effort removal of the evidence photo; never raises."""
        if not record.image:
            return False
        name = record.image.name
        try:
            record.image.delete(save=False)
        except Exception as e:
            logger.warning(f"Failed to delete evidence image {name} for record {record.pk}: {e}")
            return False
        return True
