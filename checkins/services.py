"""
Visit services: one fetch cycle is read -> auto check-out -> re-read -> match -> paginate.
Views, the Celery sweep and the management command all go through here.
"""
import logging
from typing import Callable, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from core.exceptions import InvalidVisitRecord, VisitNotFound
from core.utils import calculate_distance
from .models import VisitSettings
from .store import EventFilter, EventStore
from .visits import (
    DEFAULT_MAX_VISIT_DURATION_HOURS,
    VisitConfig,
    VisitPage,
    auto_checkout_remarks,
    auto_checkout_time,
    build_visits,
    overdue_check_ins,
    paginate_visits,
)

logger = logging.getLogger(__name__)


def get_visit_config() -> VisitConfig:
    """Current budget from the settings row, falling back to VISIT_MAX_DURATION_HOURS."""
    fallback = getattr(settings, 'VISIT_MAX_DURATION_HOURS', DEFAULT_MAX_VISIT_DURATION_HOURS)
    try:
        hours = VisitSettings.load().max_visit_duration_hours
    except DatabaseError as e:
        logger.warning(f"Could not load visit settings, using {fallback}h: {e}")
        hours = fallback
    try:
        return VisitConfig(max_visit_duration_hours=float(hours))
    except ValueError as e:
        logger.warning(f"Invalid visit duration budget, using {DEFAULT_MAX_VISIT_DURATION_HOURS:g}h: {e}")
        return VisitConfig()


def geofence_fields(latitude, longitude, visit_settings=None):
    """Distance from the configured branch and whether the point is inside its geofence."""
    visit_settings = visit_settings or VisitSettings.load()
    if not visit_settings.has_branch_location:
        return {}
    distance = calculate_distance(
        float(visit_settings.branch_latitude),
        float(visit_settings.branch_longitude),
        float(latitude),
        float(longitude),
    )
    return {
        'distance_from_branch': round(distance, 2),
        'is_inside_geofence': distance <= visit_settings.geofence_radius_meters,
    }


def run_auto_checkout(
    event_filter: Optional[EventFilter] = None,
    config: Optional[VisitConfig] = None,
    clock: Callable = timezone.now,
    store: Optional[EventStore] = None,
    events=None,
    dry_run: bool = False,
):
    """
    Close every overdue, unmatched check-in with a synthetic check-out stamped
    exactly at check-in + budget. Each write is independent: a failure is
    logged and the next check-in is still processed.

    Returns the records written (or, with ``dry_run``, the check-ins that
    would have been closed). Callers must re-read the store to see them.
    """
    store = store or EventStore()
    config = config or get_visit_config()
    if events is None:
        events = store.matching_context(event_filter)

    overdue = overdue_check_ins(events, config, clock())
    if event_filter is not None:
        overdue = [c for c in overdue if event_filter.matches(c)]
    if dry_run:
        return overdue

    created = []
    for check_in in overdue:
        checkout_at = auto_checkout_time(check_in, config)
        try:
            record = store.create_checkout_if_absent(
                check_in, checkout_at, auto_checkout_remarks(config, checkout_at)
            )
        except Exception as e:
            logger.error(f"Auto check-out failed for check-in {check_in.id}: {e}")
            continue
        if record is None:
            logger.info(f"Skipped auto check-out for check-in {check_in.id}: already closed")
            continue
        created.append(record)
        logger.info(
            f"Auto checked out {check_in.subject_name} at {check_in.site_name} "
            f"(check-in {check_in.id}) at {checkout_at.isoformat()}"
        )
    return created


def get_visits(
    event_filter: Optional[EventFilter] = None,
    page=1,
    page_size: Optional[int] = None,
    config: Optional[VisitConfig] = None,
    clock: Callable = timezone.now,
    store: Optional[EventStore] = None,
    exclusive: bool = True,
) -> VisitPage:
    store = store or EventStore()
    config = config or get_visit_config()
    page_size = page_size or settings.VISITS_PAGE_SIZE

    # Matching runs over the wider context; only the selected check-ins become visits
    events = store.matching_context(event_filter)
    created = run_auto_checkout(event_filter, config=config, clock=clock, store=store, events=events)
    if created:
        logger.debug(f"Re-reading records after {len(created)} auto check-out(s)")
    events = store.matching_context(event_filter)

    visits = build_visits(events, config=config, clock=clock, exclusive=exclusive)
    if event_filter is not None:
        visits = [v for v in visits if event_filter.matches(v.check_in)]
    return paginate_visits(visits, page=page, page_size=page_size)


def find_visit(check_in_id, config: Optional[VisitConfig] = None, clock: Callable = timezone.now,
               store: Optional[EventStore] = None):
    store = store or EventStore()
    record = store.get_event(check_in_id)
    if record is None:
        raise VisitNotFound()
    if not record.is_check_in:
        raise InvalidVisitRecord()
    visits = build_visits(store.neighbourhood(record), config=config or get_visit_config(), clock=clock)
    for visit in visits:
        if visit.check_in.pk == record.pk:
            return visit
    raise VisitNotFound()


def delete_visit(visit, store: Optional[EventStore] = None):
    """
    Delete a visit's check-in, its matched check-out and their evidence photos.

    Photos are only removed once the record deletion has committed.
    """
    store = store or EventStore()
    records = [r for r in (visit.check_out, visit.check_in) if r is not None]

    with transaction.atomic():
        for record in records:
            store.delete_event(record.pk)
        for record in records:
            transaction.on_commit(lambda record=record: store.delete_evidence(record))
    logger.info(
        f"Deleted visit of {visit.subject_name} at {visit.site_name} "
        f"(check-in {visit.check_in.pk}, check-out {getattr(visit.check_out, 'pk', None)})"
    )

