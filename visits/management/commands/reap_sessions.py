import time

from django.core.management.base import BaseCommand
from django.db import DatabaseError

from visits.conf import visits_setting
from visits.reaper import PresenceReaper


class Command(BaseCommand):
    help = 'Close idle sessions, mark visitors offline and expire stale presence'

    def add_arguments(self, parser):
        parser.add_argument(
            '--continuous',
            action='store_true',
            help='Sweep on the reaper interval until interrupted',
        )
        parser.add_argument('--interval', type=int, default=None, help='Seconds between sweeps')

    def handle(self, *args, **options):
        reaper = PresenceReaper()
        interval = options['interval'] or visits_setting('REAPER_INTERVAL_SECONDS')

        if not options['continuous']:
            self.report(reaper.sweep())
            return

        self.stdout.write(f"Sweeping every {interval}s...")
        while True:
            try:
                self.report(reaper.sweep())
                time.sleep(interval)
            except KeyboardInterrupt:
                self.stdout.write("Stopping reaper...")
                break
            except DatabaseError as e:
                self.stderr.write(f"Error in sweep: {e}")
                time.sleep(interval)

    def report(self, result):
        self.stdout.write(
            f"Closed {result['closed_sessions']} sessions, "
            f"{result['offline_visitors']} visitors offline, "
            f"{result['expired_presence']} presence records expired"
        )
