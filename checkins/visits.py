"""
Visit reconciliation: pairs check-in and check-out events into visits,
measures dwell time against the configured budget and plans auto check-outs.

Everything here works on plain record objects (anything with ``id``,
``subject_id``, ``site_name``, ``kind`` and ``timestamp``) and never touches
the database; reads and writes go through ``checkins.store``.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from django.utils import timezone

from core.utils import coerce_page, paginate_list, total_pages

CHECK_IN = 'Check In'
CHECK_OUT = 'Check Out'

PAIRING_WINDOW = timedelta(hours=24)
DEFAULT_MAX_VISIT_DURATION_HOURS = 8.0
AUTO_CHECKOUT_TIME_FORMAT = '%Y-%m-%d %I:%M %p'


@dataclass(frozen=True)
class VisitConfig:
    max_visit_duration_hours: float = DEFAULT_MAX_VISIT_DURATION_HOURS

    def __post_init__(self):
        hours = float(self.max_visit_duration_hours)
        # A synthetic check-out must land inside the pairing window
        if not 0 < hours < PAIRING_WINDOW.total_seconds() / 3600:
            raise ValueError(f"max_visit_duration_hours must be between 0 and 24, got {hours}")
        object.__setattr__(self, 'max_visit_duration_hours', hours)

    @property
    def max_duration(self) -> timedelta:
        return timedelta(hours=self.max_visit_duration_hours)


@dataclass
class Visit:
    check_in: object
    check_out: Optional[object] = None
    duration: Optional[timedelta] = None
    exceeds_budget: bool = False

    @property
    def subject_id(self):
        return self.check_in.subject_id

    @property
    def subject_name(self):
        return self.check_in.subject_name

    @property
    def site_name(self):
        return self.check_in.site_name

    @property
    def is_open(self) -> bool:
        return self.check_out is None

    @property
    def auto_closed(self) -> bool:
        return bool(self.check_out is not None and getattr(self.check_out, 'auto_generated', False))


@dataclass
class VisitPage:
    visits: List[Visit]
    page: int
    page_size: int
    total_pages: int
    total: int


def is_candidate(check_in, check_out) -> bool:
    """True when ``check_out`` may close ``check_in``: same subject and site, within 24h after."""
    if check_out.subject_id != check_in.subject_id or check_out.site_name != check_in.site_name:
        return False
    gap = check_out.timestamp - check_in.timestamp
    return timedelta(0) < gap < PAIRING_WINDOW


def match_visits(events: Iterable, exclusive: bool = True) -> Dict[object, Optional[object]]:
    """
    Pair every check-in with at most one check-out.

    Returns a dict keyed by check-in id in store order. In exclusive mode
    (the default) check-ins claim check-outs in chronological order, each
    taking the earliest qualifying check-out nobody has claimed yet; a
    synthetic check-out always goes to the check-in it was created for.
    With ``exclusive=False`` each check-in takes the first qualifying
    check-out in store order and a check-out may serve several check-ins.
    """
    events = list(events)
    check_ins = [e for e in events if e.kind == CHECK_IN]
    check_outs = [e for e in events if e.kind == CHECK_OUT]
    matches = {c.id: None for c in check_ins}

    if not exclusive:
        for check_in in check_ins:
            matches[check_in.id] = next((o for o in check_outs if is_candidate(check_in, o)), None)
        return matches

    by_id = {c.id: c for c in check_ins}
    consumed = set()
    for check_out in check_outs:
        target = getattr(check_out, 'closes_id', None)
        if target in by_id and matches[target] is None and is_candidate(by_id[target], check_out):
            matches[target] = check_out
            consumed.add(check_out.id)

    # sorted() is stable, so equal timestamps keep store order
    for check_in in sorted(check_ins, key=lambda c: c.timestamp):
        if matches[check_in.id] is not None:
            continue
        best = None
        for check_out in check_outs:
            if check_out.id in consumed or not is_candidate(check_in, check_out):
                continue
            if best is None or check_out.timestamp < best.timestamp:
                best = check_out
        if best is not None:
            consumed.add(best.id)
            matches[check_in.id] = best
    return matches


def visit_duration(check_in, check_out=None, now=None) -> timedelta:
    """Actual duration when closed, elapsed time so far when still open."""
    end = check_out.timestamp if check_out is not None else now
    return end - check_in.timestamp


def exceeds_budget(check_in, check_out, config: VisitConfig, now) -> bool:
    # A synthetic check-out sits exactly on the budget, but only exists because the visit overran
    if check_out is not None and getattr(check_out, 'auto_generated', False):
        return True
    return visit_duration(check_in, check_out, now) > config.max_duration


def overdue_check_ins(events: Iterable, config: VisitConfig, now, exclusive: bool = True) -> list:
    """Check-ins with no check-out whose elapsed time already exceeds the budget."""
    events = list(events)
    matches = match_visits(events, exclusive=exclusive)
    return [
        e for e in events
        if e.kind == CHECK_IN and matches[e.id] is None and exceeds_budget(e, None, config, now)
    ]


def auto_checkout_time(check_in, config: VisitConfig):
    return check_in.timestamp + config.max_duration


def auto_checkout_remarks(config: VisitConfig, checkout_time) -> str:
    local = timezone.localtime(checkout_time)
    return (
        f"Auto check-out: Visit exceeded {config.max_visit_duration_hours:g} hours. "
        f"Automatically checked out at {local.strftime(AUTO_CHECKOUT_TIME_FORMAT)}."
    )


def iter_visits(events: Iterable, config: VisitConfig, now, exclusive: bool = True) -> Iterator[Visit]:
    events = list(events)
    matches = match_visits(events, exclusive=exclusive)
    for event in events:
        if event.kind != CHECK_IN:
            continue
        check_out = matches[event.id]
        yield Visit(
            check_in=event,
            check_out=check_out,
            duration=visit_duration(event, check_out, now),
            exceeds_budget=exceeds_budget(event, check_out, config, now),
        )


def build_visits(
    events: Iterable,
    config: Optional[VisitConfig] = None,
    clock: Callable = timezone.now,
    exclusive: bool = True,
) -> List[Visit]:
    """One visit per check-in, in the order the store returned the check-ins."""
    return list(iter_visits(events, config or VisitConfig(), clock(), exclusive=exclusive))


def paginate_visits(visits: List[Visit], page=1, page_size: int = 10) -> VisitPage:
    page = coerce_page(page)
    return VisitPage(
        visits=paginate_list(visits, page, page_size),
        page=page,
        page_size=page_size,
        total_pages=total_pages(len(visits), page_size),
        total=len(visits),
    )
