import logging

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .models import Event, Session
from .pages import record_page_view
from .utils import generate_event_id

logger = logging.getLogger(__name__)


def parse_timestamp(value, default=None):
    """Accept datetimes or ISO strings; anything unusable becomes ``default``"""
    if isinstance(value, str):
        try:
            value = parse_datetime(value.replace('Z', '+00:00'))
        except ValueError:
            value = None
    if value is None:
        return default or timezone.now()
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


def build_event(data, ingest_mode='single'):
    """Turn a validated (or queued) event payload into an unsaved Event"""
    metadata = data.get('metadata') or {}
    return Event(
        event_id=data.get('event_id') or generate_event_id('evt'),
        user_id=data['user_id'],
        session_id=data['session_id'],
        event_type=data['event_type'],
        event_name=data['event_name'],
        timestamp=parse_timestamp(data.get('timestamp')),
        duration=int(data.get('duration') or 0),
        page_url=data.get('page_url') or metadata.get('page_url', ''),
        page_title=data.get('page_title') or metadata.get('page_title', ''),
        metadata=metadata,
        website_type=data.get('website_type') or 'ecommerce',
        ingest_mode=ingest_mode,
        device_fingerprint=data.get('device_fingerprint', ''),
        country=(data.get('location') or {}).get('country', ''),
        city=(data.get('location') or {}).get('city', ''),
    )


def insert_new_events(events):
    """
    Bulk insert ``events`` and return the ones actually written. Ids already
    stored, or repeated within ``events``, are skipped.
    """
    fresh = {}
    for event in events:
        fresh.setdefault(event.event_id, event)
    stored = set(
        Event.objects.filter(event_id__in=list(fresh)).values_list('event_id', flat=True)
    )
    written = [event for event_id, event in fresh.items() if event_id not in stored]
    # ignore_conflicts still covers a concurrent writer racing the lookup
    Event.objects.bulk_create(written, ignore_conflicts=True)
    return written


def touch_session(event):
    """Count the event against its session and move ``last_activity`` forward"""
    with transaction.atomic():
        session = Session.objects.select_for_update().filter(session_id=event.session_id).first()
        if session is None:
            return None
        session.total_events += 1
        fields = ['total_events']
        if session.is_active and event.timestamp > session.last_activity:
            session.last_activity = event.timestamp
            fields.append('last_activity')
        session.save(update_fields=fields)
        return session


def apply_event_side_effects(event, classifier=None):
    """
    Everything that follows an event insert: session touch, page metrics and
    the classification hook. Only the event's classification fields change.
    """
    from .classifier import get_session_classifier, session_features

    session = touch_session(event)

    if event.event_type == 'page_view' and event.page_url:
        record_page_view(event.page_url, event.page_title, event.user_id, None, event.timestamp)

    if session is None:
        return event

    classifier = classifier or get_session_classifier()
    result = classifier.classify(session_features(session.session_id))
    Session.objects.filter(pk=session.pk).update(
        session_class=result['class'], class_score=result['score']
    )
    event.event_class = result['class']
    event.class_score = result['score']
    event.save(update_fields=['event_class', 'class_score'])
    return event
