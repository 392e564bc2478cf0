from django.core.management.base import BaseCommand
from django.db import transaction

from visits.models import Session, Visitor


class Command(BaseCommand):
    help = 'Recompute stored session durations and visitor engagement totals'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='Report without saving')

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        fixed = 0

        for session in Session.objects.filter(is_active=False).iterator():
            expected = session.calculate_duration()
            if session.duration != expected:
                fixed += 1
                if not dry_run:
                    Session.objects.filter(pk=session.pk).update(duration=expected)

        self.stdout.write(f"{fixed} session durations {'would be ' if dry_run else ''}repaired")
        if dry_run:
            return

        visitors = 0
        for visitor in Visitor.objects.iterator():
            with transaction.atomic():
                visitor.recompute_engagement()
            visitors += 1
        self.stdout.write(self.style.SUCCESS(f"Recomputed totals for {visitors} visitors"))
