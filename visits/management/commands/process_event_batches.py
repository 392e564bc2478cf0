import time

from django.core.management.base import BaseCommand
from redis.exceptions import RedisError

from visits.batch_processor import BatchEventProcessor


class Command(BaseCommand):
    help = 'Flush queued analytics events into the event store'

    def add_arguments(self, parser):
        parser.add_argument(
            '--continuous',
            action='store_true',
            help='Keep running, flushing whenever the size or time threshold is reached',
        )

    def handle(self, *args, **options):
        processor = BatchEventProcessor()

        if options['continuous']:
            self.stdout.write("Starting continuous batch processing...")
            while True:
                try:
                    flushed = processor.flush_if_due()
                    if flushed:
                        self.stdout.write(f"Flushed {flushed} events")
                    time.sleep(1)
                except KeyboardInterrupt:
                    self.stdout.write("Stopping batch processor, draining queue...")
                    processor.drain()
                    break
                except RedisError as e:
                    self.stderr.write(f"Error in batch processing: {e}")
                    time.sleep(10)
        else:
            flushed = processor.drain()
            self.stdout.write(f"Batch processing completed, {flushed} events stored")
