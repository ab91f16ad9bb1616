import shutil
import tempfile
from datetime import datetime, timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError, IntegrityError, transaction
from django.test import TestCase, override_settings

from checkins.models import CheckInOutRecord, VisitSettings
from checkins.services import delete_visit, find_visit, get_visit_config, get_visits, run_auto_checkout
from checkins.store import EventFilter, EventStore
from checkins.visits import CHECK_IN, CHECK_OUT, VisitConfig
from core.exceptions import EventStoreUnavailable, InvalidVisitRecord, VisitNotFound

LOCATION = {"latitude": 23.8103, "longitude": 90.4125, "accuracy": 12.0, "address": "Gulshan Avenue, Dhaka"}

TINY_GIF = (
    b"GIF89a\x01\x00\x01\x00\x80\x00\x00\x00\x00\x00\xff\xff\xff!\xf9\x04\x01\x00\x00\x00\x00,"
    b"\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x02D\x01\x00;"
)


def at(value):
    return datetime.fromisoformat(value + "+00:00")


def clock_at(value):
    return lambda: at(value)


class VisitServiceTestCase(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(
            username="rahim",
            password="pass123",
            first_name="Rahim",
            last_name="Uddin",
        )
        self.store = EventStore()
        self.config = VisitConfig(8)

    def record(self, kind, ts, site="Acme Textiles", **kwargs):
        return self.store.create_event(
            subject_id=self.user.pk,
            subject_name="Rahim Uddin",
            site_name=site,
            kind=kind,
            location=LOCATION,
            timestamp=at(ts),
            **kwargs,
        )


@override_settings(TIME_ZONE="UTC")
class AutoCheckoutTests(VisitServiceTestCase):
    def test_overdue_visit_is_closed_at_budget_boundary(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00")

        result = get_visits(config=self.config, clock=clock_at("2024-01-01T18:00:00"), store=self.store)

        self.assertEqual(result.total, 1)
        visit = result.visits[0]
        self.assertEqual(visit.check_in.pk, check_in.pk)
        self.assertIsNotNone(visit.check_out)
        self.assertEqual(visit.check_out.timestamp, at("2024-01-01T17:00:00"))
        self.assertIn("exceeded 8 hours", visit.check_out.remarks)
        self.assertIn("2024-01-01 05:00 PM", visit.check_out.remarks)
        self.assertEqual(visit.duration, timedelta(hours=8))
        self.assertTrue(visit.exceeds_budget)
        self.assertTrue(visit.auto_closed)

        synthetic = CheckInOutRecord.objects.get(kind=CHECK_OUT)
        self.assertTrue(synthetic.auto_generated)
        self.assertEqual(synthetic.closes_id, check_in.pk)
        self.assertEqual(synthetic.latitude, check_in.latitude)
        self.assertEqual(synthetic.address, check_in.address)
        self.assertFalse(synthetic.image)

    def test_no_write_when_real_checkout_exists(self):
        self.record(CHECK_IN, "2024-01-01T09:00:00")
        self.record(CHECK_OUT, "2024-01-01T11:30:00")

        created = run_auto_checkout(config=self.config, clock=clock_at("2024-01-01T18:00:00"), store=self.store)

        self.assertEqual(created, [])
        self.assertEqual(CheckInOutRecord.objects.count(), 2)

    def test_visit_within_budget_is_left_open(self):
        self.record(CHECK_IN, "2024-01-01T09:00:00")

        result = get_visits(config=self.config, clock=clock_at("2024-01-01T12:00:00"), store=self.store)

        self.assertTrue(result.visits[0].is_open)
        self.assertEqual(result.visits[0].duration, timedelta(hours=3))
        self.assertFalse(CheckInOutRecord.objects.filter(kind=CHECK_OUT).exists())

    def test_repeated_cycles_write_once(self):
        self.record(CHECK_IN, "2024-01-01T09:00:00")
        clock = clock_at("2024-01-01T18:00:00")

        first = run_auto_checkout(config=self.config, clock=clock, store=self.store)
        second = run_auto_checkout(config=self.config, clock=clock, store=self.store)

        self.assertEqual(len(first), 1)
        self.assertEqual(second, [])
        self.assertEqual(CheckInOutRecord.objects.filter(auto_generated=True).count(), 1)

    def test_stale_read_does_not_duplicate(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00")
        stale_events = self.store.list_events()
        self.store.create_checkout_if_absent(check_in, at("2024-01-01T17:00:00"), "first run")

        created = run_auto_checkout(
            config=self.config, clock=clock_at("2024-01-01T18:00:00"), store=self.store, events=stale_events
        )

        self.assertEqual(created, [])
        self.assertEqual(CheckInOutRecord.objects.filter(kind=CHECK_OUT).count(), 1)

    def test_real_checkout_written_after_read_wins(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00")
        stale_events = self.store.list_events()
        self.record(CHECK_OUT, "2024-01-01T16:45:00")

        created = run_auto_checkout(
            config=self.config, clock=clock_at("2024-01-01T18:00:00"), store=self.store, events=stale_events
        )

        self.assertEqual(created, [])
        self.assertFalse(CheckInOutRecord.objects.filter(closes=check_in).exists())

    def test_store_rejects_second_synthetic_checkout(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00")
        self.store.create_checkout_if_absent(check_in, at("2024-01-01T17:00:00"), "auto")

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.record(CHECK_OUT, "2024-01-01T17:00:00", auto_generated=True, closes=check_in)

    def test_write_failure_does_not_stop_the_batch(self):
        failing = self.record(CHECK_IN, "2024-01-01T09:00:00", site="Acme Textiles")
        healthy = self.record(CHECK_IN, "2024-01-01T09:30:00", site="Beta Garments")
        original = EventStore.create_checkout_if_absent

        def flaky(store, check_in, timestamp, remarks):
            if check_in.pk == failing.pk:
                raise DatabaseError("connection reset by peer")
            return original(store, check_in, timestamp, remarks)

        with mock.patch.object(EventStore, "create_checkout_if_absent", autospec=True, side_effect=flaky):
            with self.assertLogs("checkins.services", level="ERROR") as logs:
                created = run_auto_checkout(
                    config=self.config, clock=clock_at("2024-01-01T18:00:00"), store=self.store
                )

        self.assertEqual([r.closes_id for r in created], [healthy.pk])
        self.assertIn(str(failing.pk), logs.output[0])
        self.assertFalse(CheckInOutRecord.objects.filter(closes=failing).exists())

    def test_dry_run_writes_nothing(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00")

        planned = run_auto_checkout(
            config=self.config, clock=clock_at("2024-01-01T18:00:00"), store=self.store, dry_run=True
        )

        self.assertEqual([c.pk for c in planned], [check_in.pk])
        self.assertEqual(CheckInOutRecord.objects.count(), 1)

    def test_uses_saved_budget_by_default(self):
        settings_row = VisitSettings.load()
        settings_row.max_visit_duration_hours = 4
        settings_row.save()
        self.record(CHECK_IN, "2024-01-01T09:00:00")

        run_auto_checkout(clock=clock_at("2024-01-01T14:00:00"), store=self.store)

        synthetic = CheckInOutRecord.objects.get(kind=CHECK_OUT)
        self.assertEqual(synthetic.timestamp, at("2024-01-01T13:00:00"))
        self.assertIn("exceeded 4 hours", synthetic.remarks)


class VisitQueryTests(VisitServiceTestCase):
    def test_checkout_after_24h_is_not_matched(self):
        self.record(CHECK_IN, "2024-01-01T10:00:00")
        self.record(CHECK_OUT, "2024-01-02T10:01:00")

        result = get_visits(config=self.config, clock=clock_at("2024-01-01T12:00:00"), store=self.store)

        visit = result.visits[0]
        self.assertIsNone(visit.check_out)
        self.assertFalse(visit.exceeds_budget)

    def test_matched_visit_duration(self):
        self.record(CHECK_IN, "2024-01-01T10:00:00")
        self.record(CHECK_OUT, "2024-01-01T11:30:00")

        visit = get_visits(config=self.config, clock=clock_at("2024-01-01T20:00:00"), store=self.store).visits[0]

        self.assertEqual(visit.duration, timedelta(hours=1, minutes=30))
        self.assertFalse(visit.exceeds_budget)

    def test_filters_by_site_and_date(self):
        self.record(CHECK_IN, "2024-01-01T10:00:00", site="Acme Textiles")
        self.record(CHECK_IN, "2024-01-02T10:00:00", site="Acme Textiles")
        self.record(CHECK_IN, "2024-01-02T11:00:00", site="Beta Garments")
        clock = clock_at("2024-01-02T12:00:00")

        by_site = get_visits(EventFilter(site_name="Beta Garments"), config=VisitConfig(23), clock=clock)
        by_day = get_visits(
            EventFilter(from_date=at("2024-01-02T00:00:00").date(), to_date=at("2024-01-02T00:00:00").date()),
            config=VisitConfig(23),
            clock=clock,
        )

        self.assertEqual(by_site.total, 1)
        self.assertEqual(by_day.total, 2)

    def test_visits_keep_store_order(self):
        later = self.record(CHECK_IN, "2024-01-01T15:00:00", site="Beta Garments")
        earlier = self.record(CHECK_IN, "2024-01-01T09:00:00", site="Acme Textiles")

        result = get_visits(config=VisitConfig(20), clock=clock_at("2024-01-01T16:00:00"), store=self.store)

        self.assertEqual([v.check_in.pk for v in result.visits], [later.pk, earlier.pk])

    def test_pagination_through_service(self):
        for i in range(12):
            self.record(CHECK_IN, "2024-01-01T09:00:00", site=f"Site {i}")

        result = get_visits(
            page=3, page_size=5, config=VisitConfig(20), clock=clock_at("2024-01-01T10:00:00"), store=self.store
        )

        self.assertEqual(result.total_pages, 3)
        self.assertEqual([v.site_name for v in result.visits], ["Site 10", "Site 11"])

    def test_read_failure_surfaces(self):
        class BrokenQuerySet:
            def order_by(self, *args):
                return self

            def __iter__(self):
                raise DatabaseError("could not connect to server")

        with mock.patch("checkins.store._apply_filter", return_value=BrokenQuerySet()):
            with self.assertLogs("checkins.store", level="ERROR"):
                with self.assertRaises(EventStoreUnavailable):
                    get_visits(config=self.config, store=self.store)

    def test_config_defaults_to_eight_hours(self):
        self.assertEqual(get_visit_config().max_visit_duration_hours, 8.0)

    @override_settings(VISIT_MAX_DURATION_HOURS=30)
    def test_out_of_range_default_budget_falls_back(self):
        with self.assertLogs("checkins.services", level="WARNING"):
            config = get_visit_config()
        self.assertEqual(config.max_visit_duration_hours, 8.0)

        self.record(CHECK_IN, "2024-01-01T09:00:00")
        with self.assertLogs("checkins.services", level="WARNING"):
            result = get_visits(clock=clock_at("2024-01-01T18:00:00"), store=self.store)
        self.assertTrue(result.visits[0].auto_closed)


class MatchingContextTests(VisitServiceTestCase):
    """A check-in more than a day earlier can still decide which check-out a later one gets."""

    def setUp(self):
        super().setUp()
        self.first = self.record(CHECK_IN, "2024-01-01T06:00:00")
        self.second = self.record(CHECK_IN, "2024-01-01T16:00:00")
        self.evening_out = self.record(CHECK_OUT, "2024-01-01T17:00:00")
        self.morning_out = self.record(CHECK_OUT, "2024-01-02T11:00:00")
        self.third = self.record(CHECK_IN, "2024-01-02T10:00:00")
        self.clock = clock_at("2024-01-02T12:00:00")

    def visit_for(self, result, check_in):
        return next(v for v in result.visits if v.check_in.pk == check_in.pk)

    def test_detail_agrees_with_list(self):
        listed = get_visits(config=self.config, clock=self.clock, store=self.store)

        self.assertEqual(self.visit_for(listed, self.first).check_out.pk, self.evening_out.pk)
        self.assertEqual(self.visit_for(listed, self.second).check_out.pk, self.morning_out.pk)
        self.assertIsNone(self.visit_for(listed, self.third).check_out)

        detail = find_visit(self.third.pk, config=self.config, clock=self.clock, store=self.store)
        self.assertIsNone(detail.check_out)
        detail = find_visit(self.second.pk, config=self.config, clock=self.clock, store=self.store)
        self.assertEqual(detail.check_out.pk, self.morning_out.pk)

    def test_date_filter_keeps_full_history_pairing(self):
        day_two = at("2024-01-02T00:00:00").date()
        listed = get_visits(
            EventFilter(from_date=day_two, to_date=day_two), config=self.config, clock=self.clock, store=self.store
        )

        self.assertEqual([v.check_in.pk for v in listed.visits], [self.third.pk])
        self.assertIsNone(listed.visits[0].check_out)

    def test_deleting_open_visit_keeps_neighbours_checkout(self):
        delete_visit(find_visit(self.third.pk, config=self.config, clock=self.clock, store=self.store))

        self.assertTrue(CheckInOutRecord.objects.filter(pk=self.morning_out.pk).exists())
        self.assertFalse(CheckInOutRecord.objects.filter(pk=self.third.pk).exists())

    def test_overdue_visit_is_still_auto_closed(self):
        created = run_auto_checkout(config=self.config, clock=clock_at("2024-01-02T19:00:00"), store=self.store)

        self.assertEqual([r.closes_id for r in created], [self.third.pk])
        self.assertEqual(created[0].timestamp, at("2024-01-02T18:00:00"))

    def test_context_reaches_back_through_chained_check_ins(self):
        context = self.store.neighbourhood(self.third)
        self.assertIn(self.first.pk, [r.pk for r in context])


class DeleteVisitTests(VisitServiceTestCase):
    def setUp(self):
        super().setUp()
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        override = override_settings(MEDIA_ROOT=self.media_root)
        override.enable()
        self.addCleanup(override.disable)

    def photo(self, name):
        return SimpleUploadedFile(name, TINY_GIF, content_type="image/gif")

    def test_deletes_both_records_and_photos(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00", image=self.photo("in.gif"))
        check_out = self.record(CHECK_OUT, "2024-01-01T10:00:00", image=self.photo("out.gif"))
        storage = check_in.image.storage
        paths = [check_in.image.name, check_out.image.name]

        visit = find_visit(check_in.pk, config=self.config, clock=clock_at("2024-01-01T11:00:00"))
        with self.captureOnCommitCallbacks(execute=True):
            delete_visit(visit)

        self.assertFalse(CheckInOutRecord.objects.exists())
        for path in paths:
            self.assertFalse(storage.exists(path))

    def test_photo_failure_does_not_block_deletion(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00", image=self.photo("in.gif"))
        self.record(CHECK_OUT, "2024-01-01T10:00:00")
        visit = find_visit(check_in.pk, config=self.config, clock=clock_at("2024-01-01T11:00:00"))

        with mock.patch(
            "django.db.models.fields.files.FieldFile.delete", side_effect=OSError("permission denied")
        ):
            with self.assertLogs("checkins.store", level="WARNING"):
                with self.captureOnCommitCallbacks(execute=True):
                    delete_visit(visit)

        self.assertFalse(CheckInOutRecord.objects.exists())

    def test_failed_record_deletion_keeps_photos(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00", image=self.photo("in.gif"))
        check_out = self.record(CHECK_OUT, "2024-01-01T10:00:00", image=self.photo("out.gif"))
        storage = check_in.image.storage
        paths = [check_in.image.name, check_out.image.name]
        visit = find_visit(check_in.pk, config=self.config, clock=clock_at("2024-01-01T11:00:00"))
        original = self.store.delete_event

        def fail_on_check_in(event_id):
            if event_id == check_in.pk:
                raise DatabaseError("deadlock detected")
            original(event_id)

        with mock.patch.object(self.store, "delete_event", side_effect=fail_on_check_in):
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                with self.assertRaises(DatabaseError):
                    delete_visit(visit, store=self.store)

        self.assertEqual(callbacks, [])
        self.assertEqual(CheckInOutRecord.objects.count(), 2)
        for path in paths:
            self.assertTrue(storage.exists(path))

    def test_open_visit_deletes_only_check_in(self):
        check_in = self.record(CHECK_IN, "2024-01-01T09:00:00")
        unrelated = self.record(CHECK_OUT, "2024-01-01T10:00:00", site="Beta Garments")

        delete_visit(find_visit(check_in.pk, config=self.config, clock=clock_at("2024-01-01T11:00:00")))

        self.assertEqual(list(CheckInOutRecord.objects.values_list("pk", flat=True)), [unrelated.pk])

    def test_find_visit_rejects_checkouts_and_unknown_ids(self):
        check_out = self.record(CHECK_OUT, "2024-01-01T10:00:00")
        with self.assertRaises(InvalidVisitRecord):
            find_visit(check_out.pk)
        with self.assertRaises(VisitNotFound):
            find_visit("00000000-0000-0000-0000-000000000000")
