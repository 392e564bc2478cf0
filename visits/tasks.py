import logging
from datetime import timedelta

from celery import shared_task
from django.db import transaction
from django.utils import timezone

from .batch_processor import BatchEventProcessor
from .conf import visits_setting
from .events import apply_event_side_effects
from .models import Event, Session, StreamEvent, Visitor
from .purge import refresh_visitors
from .reaper import PresenceReaper

logger = logging.getLogger(__name__)


@shared_task
def flush_event_queue():
    """Time-based flush of the batch queue, run by beat"""
    processor = BatchEventProcessor()
    return processor.flush_if_due()


@shared_task
def reap_inactive_sessions():
    """Close idle sessions and expire stale presence"""
    return PresenceReaper().sweep()


@shared_task
def process_stream_event(event_id):
    """Move one stream event through processing"""
    from .ingestion import process_stream_event as process

    return process(event_id).processing_status


@shared_task
def retry_failed_stream_events(limit=100):
    """Operator-triggered retry of failed stream events"""
    from .ingestion import retry_failed_stream_events as retry

    return retry(limit)


def run_side_effects(event_ids):
    processed = failed = 0
    for event in Event.objects.filter(event_id__in=event_ids):
        try:
            apply_event_side_effects(event)
            processed += 1
        except Exception:
            failed += 1
            logger.exception(f"Side effects failed for event {event.event_id}")
    return {'processed': processed, 'failed': failed}


@shared_task
def enrich_events(event_ids):
    """Per-event enrichment after a queue flush"""
    return run_side_effects(event_ids)


@shared_task
def process_batch_side_effects(event_ids):
    """Session and page aggregates for a batch insert"""
    return run_side_effects(event_ids)


@shared_task
def cleanup_old_data():
    """Cleanup old analytics data"""
    cutoff_date = timezone.now() - timedelta(days=visits_setting('RETENTION_DAYS'))

    old_sessions = Session.objects.filter(is_active=False, start_time__lt=cutoff_date)
    old_events = Event.objects.filter(timestamp__lt=cutoff_date)

    with transaction.atomic():
        visitor_ids = set(old_sessions.values_list('visitor_id', flat=True))
        visitor_ids.update(
            Visitor.objects.filter(
                user_id__in=old_events.values('user_id')
            ).values_list('pk', flat=True)
        )
        deleted_sessions = old_sessions.delete()[0]
        deleted_events = old_events.delete()[0]
        refresh_visitors(visitor_ids)

    deleted_stream = StreamEvent.objects.filter(
        processing_status='completed', created_at__lt=cutoff_date
    ).delete()[0]

    logger.info(
        f"Retention cleanup: {deleted_sessions} sessions, {deleted_events} events, "
        f"{deleted_stream} stream events"
    )
    return f"Deleted {deleted_sessions} sessions, {deleted_events} events, {deleted_stream} stream events"
