"""
Django management command that closes overdue visits with a synthetic check-out
"""
from django.core.management.base import BaseCommand, CommandError

from checkins.services import get_visit_config, run_auto_checkout
from checkins.store import EventFilter
from checkins.visits import VisitConfig, auto_checkout_time


class Command(BaseCommand):
    help = 'Close overdue, unmatched check-ins with a synthetic check-out'

    def add_arguments(self, parser):
        parser.add_argument(
            '--subject',
            type=int,
            help='Only process check-ins of this subject (user id)'
        )

        parser.add_argument(
            '--hours',
            type=float,
            help='Override the configured maximum visit duration'
        )

        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List the check-ins that would be closed without writing anything'
        )

    def handle(self, *args, **options):
        try:
            config = VisitConfig(options['hours']) if options['hours'] else get_visit_config()
        except ValueError as e:
            raise CommandError(str(e))

        event_filter = EventFilter(subject_id=options['subject']) if options['subject'] else None
        records = run_auto_checkout(event_filter=event_filter, config=config, dry_run=options['dry_run'])

        if options['dry_run']:
            for check_in in records:
                self.stdout.write(
                    f"{check_in.subject_name} @ {check_in.site_name}: checked in {check_in.timestamp.isoformat()}, "
                    f"would close at {auto_checkout_time(check_in, config).isoformat()}"
                )
            self.stdout.write(self.style.WARNING(f"Dry run: {len(records)} visit(s) would be closed."))
            return

        self.stdout.write(self.style.SUCCESS(
            f"Auto checked out {len(records)} visit(s) (budget {config.max_visit_duration_hours:g}h)."
        ))
