import logging
from collections import Counter
from datetime import timedelta

from django.db.models import Avg, Count, Q, Sum
from django.db.models.functions import TruncDate, TruncHour
from django.utils import timezone
from redis.exceptions import RedisError

from .conf import visits_setting
from .models import CONVERSION_EVENT_TYPES, Event, Presence, Session, StreamEvent, Visitor

logger = logging.getLogger(__name__)

ACTIVE_WINDOWS = {
    '5m': timedelta(minutes=5),
    '15m': timedelta(minutes=15),
    '1h': timedelta(hours=1),
    '24h': timedelta(hours=24),
}

PRESENCE_ACTIVE_WINDOW = timedelta(minutes=5)
IDLE_THRESHOLD_MS = 300000

DURATION_BUCKETS = [0, 30, 60, 300, 600, 1800, 3600]


def parse_window(value=None):
    value = value or visits_setting('ACTIVE_WINDOW_DEFAULT')
    if value not in ACTIVE_WINDOWS:
        value = '15m'
    return value, ACTIVE_WINDOWS[value]


def active_users(window=None, now=None):
    now = now or timezone.now()
    label, span = parse_window(window)
    sessions = Session.objects.filter(end_time__isnull=True, start_time__gte=now - span)

    by_device = {
        row['device_type'] or 'unknown': row['count']
        for row in sessions.values('device_type').annotate(count=Count('id'))
    }
    by_country = {
        row['country'] or 'unknown': row['count']
        for row in sessions.values('country').annotate(count=Count('id'))
    }
    return {
        'window': label,
        'count': sessions.values('visitor_id').distinct().count(),
        'by_device': by_device,
        'by_country': by_country,
        'total_sessions': sessions.count(),
        'last_updated': now,
    }


def conversion_rate(since):
    session_ids = list(Session.objects.filter(start_time__gte=since).values_list('session_id', flat=True))
    if not session_ids:
        return 0.0
    converting = (
        Event.objects.filter(session_id__in=session_ids, event_type__in=CONVERSION_EVENT_TYPES)
        .values('session_id').distinct().count()
    )
    return round(converting / len(session_ids) * 100, 2)


def batch_queue_size(processor=None):
    from .batch_processor import BatchEventProcessor

    try:
        return (processor or BatchEventProcessor()).queue_size()
    except RedisError as e:
        logger.warning(f"Could not read batch queue size: {e}")
        return None


def system_metrics(processor=None, now=None):
    now = now or timezone.now()
    one_hour_ago = now - timedelta(hours=1)
    one_day_ago = now - timedelta(days=1)

    events_last_hour = Event.objects.filter(timestamp__gte=one_hour_ago).count()
    avg_duration = Session.objects.filter(duration__gt=0).aggregate(avg=Avg('duration'))['avg']

    return {
        'events_processed': {
            'last_hour': events_last_hour,
            'last_24_hours': Event.objects.filter(timestamp__gte=one_day_ago).count(),
            'per_second': round(events_last_hour / 3600, 3),
        },
        'active_sessions': Session.objects.filter(is_active=True).count(),
        'session_metrics': {
            'new_sessions_last_hour': Session.objects.filter(start_time__gte=one_hour_ago).count(),
            'avg_duration': round(avg_duration or 0),
        },
        'user_metrics': {
            'new_users_last_24h': Visitor.objects.filter(first_seen__gte=one_day_ago).count(),
            'total_users': Visitor.objects.count(),
        },
        'conversion_rate': conversion_rate(one_day_ago),
        'batch_queue': batch_queue_size(processor),
        'timestamp': now,
    }


def duration_distribution(sessions):
    total = sessions.count()
    buckets = []
    bounds = DURATION_BUCKETS + [None]
    for lower, upper in zip(bounds, bounds[1:]):
        if upper is None:
            count = sessions.filter(duration__gte=lower).count()
            label = f"{lower}s+"
        else:
            count = sessions.filter(duration__gte=lower, duration__lt=upper).count()
            label = f"{lower}-{upper}s"
        buckets.append({
            'range': label,
            'count': count,
            'percentage': round(count / total * 100, 1) if total else 0,
        })
    return buckets


def session_stats(days=30, now=None):
    """Totals and breakdowns behind the sessions dashboard"""
    now = now or timezone.now()
    sessions = Session.objects.all()
    totals = sessions.aggregate(avg=Avg('duration'), total=Sum('duration'))

    timeline = (
        sessions.filter(start_time__gte=now - timedelta(days=days))
        .annotate(date=TruncDate('start_time'))
        .values('date')
        .annotate(sessions=Count('id'), avg_duration=Avg('duration'))
        .order_by('date')
    )

    return {
        'sessions': {
            'total': sessions.count(),
            'active': sessions.filter(is_active=True).count(),
            'inactive': sessions.filter(is_active=False).count(),
            'avg_duration': round(totals['avg'] or 0, 2),
            'total_time': totals['total'] or 0,
        },
        'visitors': {
            'total': Visitor.objects.count(),
            'online': Visitor.objects.filter(is_online=True).count(),
            'offline': Visitor.objects.filter(is_online=False).count(),
            'returning': Visitor.objects.filter(status='returning').count(),
        },
        'by_device': list(
            sessions.values('device_type').annotate(count=Count('id')).order_by('-count')
        ),
        'by_country': list(
            sessions.values('country').annotate(count=Count('id')).order_by('-count')[:10]
        ),
        'timeline': list(timeline),
        'duration_distribution': duration_distribution(sessions),
    }


# ==============================================================================
# Presence
# ==============================================================================


def active_presence(now=None):
    now = now or timezone.now()
    return Presence.objects.filter(
        is_active=True, last_ping__gte=now - PRESENCE_ACTIVE_WINDOW
    ).order_by('-last_ping')


def presence_analytics(now=None):
    active = active_presence(now)
    return {
        'total_active': active.count(),
        'by_device': {
            row['device_type']: row['count']
            for row in active.values('device_type').annotate(count=Count('id'))
        },
        'top_pages': list(
            active.exclude(page_url='')
            .values('page_url').annotate(users=Count('id')).order_by('-users')[:10]
        ),
        'idle_users': Presence.objects.filter(is_active=False).count(),
    }


# ==============================================================================
# Stream buffer
# ==============================================================================


def stream_analytics(hours=24, now=None):
    now = now or timezone.now()
    since = now - timedelta(hours=hours)
    recent = StreamEvent.objects.filter(created_at__gte=since)

    status_breakdown = {
        row['processing_status']: row['count']
        for row in recent.values('processing_status').annotate(count=Count('id'))
    }
    by_source = []
    for row in recent.values('stream_source').annotate(
        total=Count('id'),
        completed=Count('id', filter=Q(processing_status='completed')),
        failed=Count('id', filter=Q(processing_status='failed')),
    ).order_by('-total'):
        row['success_rate'] = round(row['completed'] / row['total'] * 100, 2) if row['total'] else 0
        by_source.append(row)

    hourly = (
        recent.annotate(hour=TruncHour('created_at'))
        .values('hour').annotate(events=Count('id')).order_by('hour')
    )

    total = recent.count()
    completed = status_breakdown.get('completed', 0)
    return {
        'hours': hours,
        'total_events': total,
        'status_breakdown': status_breakdown,
        'by_source': by_source,
        'hourly_throughput': list(hourly),
        'events_per_hour': round(total / hours, 2) if hours else 0,
        'success_rate': round(completed / total * 100, 2) if total else 0,
    }


def conversion_feed(limit=50, hours=24, now=None):
    now = now or timezone.now()
    events = (
        Event.objects.filter(event_type__in=CONVERSION_EVENT_TYPES, timestamp__gte=now - timedelta(hours=hours))
        .order_by('-timestamp')
        .values('event_id', 'user_id', 'session_id', 'event_type', 'event_name',
                'page_url', 'metadata', 'country', 'city', 'timestamp')[:limit]
    )
    events = list(events)
    return {
        'conversions': events,
        'count': len(events),
        'by_type': dict(Counter(e['event_type'] for e in events)),
    }
