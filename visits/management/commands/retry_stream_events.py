from django.core.management.base import BaseCommand

from visits.ingestion import retry_failed_stream_events


class Command(BaseCommand):
    help = 'Reprocess stream events that failed'

    def add_arguments(self, parser):
        parser.add_argument('--limit', type=int, default=100)

    def handle(self, *args, **options):
        result = retry_failed_stream_events(options['limit'])
        self.stdout.write(
            f"Retried {result['total_retried']}: "
            f"{result['successful']} succeeded, {result['failed']} failed"
        )
