"""
Event ingestion: single events, batches and the raw stream buffer.

Single events must point at an existing session. Batch, queued and stream
events are exempt, so the tracker can ship events ahead of the claim that
opens their session.
"""
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .batch_processor import BatchEventProcessor
from .conf import visits_setting
from .events import apply_event_side_effects, build_event, insert_new_events
from .exceptions import NotFound, ValidationFailed
from .models import Event, Session, StreamEvent
from .serializers import EventSerializer
from .utils import generate_event_id

logger = logging.getLogger(__name__)


def validate_event(data):
    serializer = EventSerializer(data=data)
    if not serializer.is_valid():
        raise ValidationFailed('Validation failed', serializer.errors)
    return dict(serializer.validated_data)


def enrich_event(data, context):
    """
    Stamp an event with ids, server receive time, location and the device
    fingerprint taken from the request ``context``.
    """
    now = timezone.now()
    data['event_id'] = data.get('event_id') or generate_event_id('evt')
    data['timestamp'] = data.get('timestamp') or now
    data['received_at'] = now
    data['device_fingerprint'] = context.get('device_fingerprint', '')
    data['location'] = context.get('location') or {}
    return data


def ingest_single(data, context, batch_mode=False, processor=None):
    """
    Returns ``(payload, http_status)``. In batch mode the event only goes
    onto the FIFO queue.
    """
    data = enrich_event(validate_event(data), context)

    if batch_mode:
        processor = processor or BatchEventProcessor()
        queue_size = processor.queue_event(data)
        return {
            'status': 'queued',
            'event_id': data['event_id'],
            'batch_processing': True,
            'queue_size': queue_size,
        }, 202

    if not Session.objects.filter(session_id=data['session_id']).exists():
        raise NotFound(f"Session {data['session_id']} not found")

    event = build_event(data, ingest_mode='single')
    with transaction.atomic():
        event.save()
        apply_event_side_effects(event)
    logger.debug(f"Stored event {event.event_id} for session {event.session_id}")
    return {
        'status': 'created',
        'event_id': event.event_id,
        'timestamp': event.timestamp,
        'event_class': event.event_class,
    }, 201


def ingest_batch(events, context):
    """Validate each event on its own; insert the valid ones in one statement"""
    max_events = visits_setting('MAX_BATCH_EVENTS')
    if not isinstance(events, list) or not events:
        raise ValidationFailed('events must be a non-empty list')
    if len(events) > max_events:
        raise ValidationFailed(f"A batch holds at most {max_events} events")

    batch_id = generate_event_id('batch')
    valid = []
    indexes = {}
    errors = []
    for index, raw in enumerate(events):
        if not isinstance(raw, dict):
            errors.append({'event_index': index, 'error': 'Validation failed',
                           'details': {'non_field_errors': ['Expected an object']}})
            continue
        serializer = EventSerializer(data=raw)
        if not serializer.is_valid():
            errors.append({'event_index': index, 'error': 'Validation failed',
                           'details': serializer.errors})
            continue
        data = enrich_event(dict(serializer.validated_data), context)
        data['metadata'] = dict(data.get('metadata') or {}, batch_id=batch_id)
        event = build_event(data, ingest_mode='batch')
        indexes.setdefault(event.event_id, []).append(index)
        valid.append(event)

    written = insert_new_events(valid) if valid else []
    if written:
        dispatch_batch_side_effects([event.event_id for event in written], batch_id)

    # Everything after the first occurrence of an id, or every occurrence of
    # an id that was already stored, was not written
    written_ids = {event.event_id for event in written}
    for event_id, positions in indexes.items():
        skipped = positions[1:] if event_id in written_ids else positions
        for index in skipped:
            errors.append({'event_index': index, 'error': 'Duplicate event',
                           'details': {'event_id': [f"Event {event_id} already exists"]}})
    errors.sort(key=lambda error: error['event_index'])

    logger.info(f"Batch {batch_id}: {len(written)} stored, {len(errors)} rejected")
    return {
        'partial_success': bool(errors),
        'processed': len(written),
        'failed': len(errors),
        'errors': errors,
        'batch_id': batch_id,
        'event_ids': [event.event_id for event in written],
    }


def dispatch_batch_side_effects(event_ids, batch_id):
    from .tasks import process_batch_side_effects

    try:
        process_batch_side_effects.delay(event_ids)
    except Exception:
        logger.exception(f"Could not schedule side effects for batch {batch_id}")


# ==============================================================================
# Stream buffer
# ==============================================================================


def ingest_stream(data):
    event_id = data.get('event_id') or generate_event_id('stream')
    if StreamEvent.objects.filter(event_id=event_id).exists():
        raise ValidationFailed('Duplicate event_id', {'event_id': [event_id]})

    stream_event = StreamEvent.objects.create(
        event_id=event_id,
        user_id=data['user_id'],
        event_type=data['event_type'],
        timestamp=data.get('timestamp') or timezone.now(),
        stream_source=data.get('stream_source') or 'direct',
        event_data=data.get('event_data') or {},
    )

    from .tasks import process_stream_event as process_stream_event_task
    try:
        process_stream_event_task.delay(stream_event.event_id)
    except Exception:
        logger.exception(f"Could not schedule stream event {stream_event.event_id}")
    return stream_event


def materialize_stream_event(stream_event):
    """Normalize a buffered stream event into the event store"""
    event_data = stream_event.event_data or {}
    payload = dict(event_data)
    payload.update({
        'event_id': stream_event.event_id,
        'user_id': stream_event.user_id,
        'event_type': stream_event.event_type,
        'event_name': event_data.get('event_name') or stream_event.event_type,
        'session_id': event_data.get('session_id') or f"stream_{stream_event.stream_source}",
        'timestamp': stream_event.timestamp,
    })
    data = validate_event(payload)
    data['metadata'] = dict(data.get('metadata') or {}, stream_source=stream_event.stream_source)

    Event.objects.bulk_create([build_event(data, ingest_mode='stream')], ignore_conflicts=True)
    event = Event.objects.get(event_id=stream_event.event_id)
    apply_event_side_effects(event)
    return event


def process_stream_event(event_id):
    """pending -> processing -> completed, or failed with the error recorded"""
    with transaction.atomic():
        stream_event = StreamEvent.objects.select_for_update().filter(event_id=event_id).first()
        if stream_event is None:
            raise NotFound(f"Stream event {event_id} not found")
        if stream_event.processing_status in ('processing', 'completed'):
            return stream_event
        stream_event.processing_status = 'processing'
        stream_event.save(update_fields=['processing_status'])

    try:
        with transaction.atomic():
            materialize_stream_event(stream_event)
    except Exception as e:
        logger.exception(f"Stream event {event_id} failed")
        stream_event.processing_status = 'failed'
        details = getattr(e, 'details', None)
        stream_event.error_message = f"{e}: {details}" if details else str(e)
        stream_event.save(update_fields=['processing_status', 'error_message'])
        return stream_event

    stream_event.processing_status = 'completed'
    stream_event.processed_at = timezone.now()
    stream_event.error_message = ''
    stream_event.save(update_fields=['processing_status', 'processed_at', 'error_message'])
    return stream_event


def retry_failed_stream_events(limit=100):
    """Reprocess failed stream events one by one; never scheduled automatically"""
    failed = list(
        StreamEvent.objects.filter(processing_status='failed')
        .order_by('created_at').values_list('event_id', flat=True)[:limit]
    )
    successful = 0
    for event_id in failed:
        StreamEvent.objects.filter(event_id=event_id).update(
            processing_status='pending', retry_count=F('retry_count') + 1
        )
        if process_stream_event(event_id).processing_status == 'completed':
            successful += 1

    logger.info(f"Retried {len(failed)} stream events, {successful} succeeded")
    return {
        'total_retried': len(failed),
        'successful': successful,
        'failed': len(failed) - successful,
    }


def bulk_process_stream_events(limit=100):
    pending = list(
        StreamEvent.objects.filter(processing_status='pending')
        .order_by('created_at').values_list('event_id', flat=True)[:limit]
    )
    successful = 0
    for event_id in pending:
        if process_stream_event(event_id).processing_status == 'completed':
            successful += 1
    return {
        'processed': len(pending),
        'successful': successful,
        'failed': len(pending) - successful,
    }
