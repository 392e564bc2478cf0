"""
Administrative deletes over the session and visitor stores.

Every purge returns ``{success, message, deleted_count, total_before,
timestamp}`` and recomputes the engagement aggregate of each visitor that
lost sessions.
"""
import logging
from datetime import datetime, time, timedelta

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from .exceptions import NotFound, ValidationFailed
from .models import Event, Goal, Page, Presence, Session, StreamEvent, Visitor

logger = logging.getLogger(__name__)

RESET_CONFIRMATION = 'I understand this will delete all data'

BULK_FILTERS = {
    'is_active', 'device_type', 'country', 'user_id',
    'start_date', 'end_date', 'min_duration', 'max_duration',
}


def purge_result(message, deleted_count, total_before, **extra):
    result = {
        'success': True,
        'message': message,
        'deleted_count': deleted_count,
        'total_before': total_before,
        'timestamp': timezone.now(),
    }
    result.update(extra)
    return result


def refresh_visitors(visitor_ids):
    for visitor in Visitor.objects.filter(pk__in=visitor_ids):
        if not visitor.sessions.filter(is_active=True).exists():
            visitor.is_online = False
            visitor.save(update_fields=['is_online', 'updated_at'])
        visitor.recompute_engagement()


@transaction.atomic
def purge_sessions(queryset, message):
    total_before = Session.objects.count()
    visitor_ids = set(queryset.values_list('visitor_id', flat=True))
    deleted, _ = queryset.delete()
    refresh_visitors(visitor_ids)
    logger.info(f"{message}: deleted {deleted} of {total_before} sessions")
    return purge_result(f"{message}: {deleted} sessions deleted", deleted, total_before)


def positive_int(value, name, default):
    if value in (None, ''):
        return default
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer")
    if value < 1:
        raise ValidationFailed(f"{name} must be at least 1")
    return value


def purge_all():
    return purge_sessions(Session.objects.all(), 'Cleared all sessions')


def purge_inactive():
    return purge_sessions(Session.objects.filter(is_active=False), 'Cleared inactive sessions')


def purge_older_than(days=None):
    days = positive_int(days, 'days', 7)
    cutoff = timezone.now() - timedelta(days=days)
    return purge_sessions(
        Session.objects.filter(start_time__lt=cutoff), f"Cleared sessions older than {days} days"
    )


def purge_for_visitor(user_id):
    if not Visitor.objects.filter(user_id=user_id).exists():
        raise NotFound(f"Visitor {user_id} not found")
    return purge_sessions(
        Session.objects.filter(visitor__user_id=user_id), f"Cleared sessions for {user_id}"
    )


def purge_by_ids(session_ids):
    if not session_ids:
        raise ValidationFailed('session_ids is required')
    return purge_sessions(
        Session.objects.filter(session_id__in=session_ids), 'Deleted selected sessions'
    )


def parse_date_bound(value, name):
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp"""
    text = str(value)
    try:
        parsed = parse_datetime(text.replace('Z', '+00:00'))
        if parsed is None:
            day = parse_date(text)
            parsed = datetime.combine(day, time.min) if day else None
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationFailed(f"{name} is not a valid date")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def purge_by_date_range(start_date, end_date):
    if not start_date or not end_date:
        raise ValidationFailed('Both start_date and end_date are required')
    start = parse_date_bound(start_date, 'start_date')
    end = parse_date_bound(end_date, 'end_date')
    if start > end:
        raise ValidationFailed('start_date must be before end_date')
    return purge_sessions(
        Session.objects.filter(start_time__gte=start, start_time__lte=end),
        'Cleared sessions in date range',
    )


def purge_by_device(device_type):
    if not device_type:
        raise ValidationFailed('device_type is required')
    return purge_sessions(
        Session.objects.filter(device_type=device_type), f"Cleared {device_type} sessions"
    )


def purge_by_country(country):
    if not country:
        raise ValidationFailed('country is required')
    return purge_sessions(
        Session.objects.filter(country__iexact=country), f"Cleared sessions from {country}"
    )


def purge_short(max_duration=None):
    max_duration = positive_int(max_duration, 'max_duration', 60)
    return purge_sessions(
        Session.objects.filter(is_active=False, duration__lt=max_duration),
        f"Cleared sessions shorter than {max_duration}s",
    )


def purge_abandoned():
    with_events = Event.objects.values('session_id')
    return purge_sessions(
        Session.objects.filter(is_active=False).exclude(session_id__in=with_events),
        'Cleared abandoned sessions',
    )


def purge_duplicates(window_seconds=None):
    """Sessions of one visitor starting in the same time bucket; the earliest survives"""
    window_seconds = positive_int(window_seconds, 'window_seconds', 300)
    seen = set()
    duplicates = []
    rows = Session.objects.order_by('visitor_id', 'start_time').values_list(
        'pk', 'visitor_id', 'start_time', 'is_active'
    )
    for pk, visitor_id, start_time, is_active in rows:
        bucket = (visitor_id, int(start_time.timestamp()) // window_seconds)
        if bucket in seen and not is_active:
            duplicates.append(pk)
        seen.add(bucket)
    return purge_sessions(
        Session.objects.filter(pk__in=duplicates), 'Cleared duplicate sessions'
    )


def purge_filtered(filters):
    unknown = set(filters) - BULK_FILTERS
    if unknown:
        raise ValidationFailed('Unsupported filters', {'filters': sorted(unknown)})
    if not filters:
        raise ValidationFailed('At least one filter is required')

    sessions = Session.objects.all()
    if 'is_active' in filters:
        sessions = sessions.filter(is_active=str(filters['is_active']).lower() in ('1', 'true'))
    if filters.get('device_type'):
        sessions = sessions.filter(device_type=filters['device_type'])
    if filters.get('country'):
        sessions = sessions.filter(country__iexact=filters['country'])
    if filters.get('user_id'):
        sessions = sessions.filter(visitor__user_id=filters['user_id'])
    if filters.get('start_date'):
        sessions = sessions.filter(start_time__gte=parse_date_bound(filters['start_date'], 'start_date'))
    if filters.get('end_date'):
        sessions = sessions.filter(start_time__lte=parse_date_bound(filters['end_date'], 'end_date'))
    if filters.get('min_duration') not in (None, ''):
        sessions = sessions.filter(duration__gte=int(filters['min_duration']))
    if filters.get('max_duration') not in (None, ''):
        sessions = sessions.filter(duration__lte=int(filters['max_duration']))
    return purge_sessions(sessions, 'Deleted filtered sessions')


@transaction.atomic
def delete_visitors(user_ids):
    """Remove visitors with their sessions, events, presence and goals"""
    if not user_ids:
        raise ValidationFailed('user_ids is required')
    user_ids = list(dict.fromkeys(user_ids))
    found = set(Visitor.objects.filter(user_id__in=user_ids).values_list('user_id', flat=True))
    missing = [user_id for user_id in user_ids if user_id not in found]
    if missing:
        raise NotFound(f"Visitors not found: {', '.join(missing)}")

    total_before = Visitor.objects.count()
    Event.objects.filter(user_id__in=user_ids).delete()
    Presence.objects.filter(user_id__in=user_ids).delete()
    Goal.objects.filter(user_id__in=user_ids).delete()
    deleted = Visitor.objects.filter(user_id__in=user_ids).delete()[1].get('visits.Visitor', 0)
    logger.info(f"Deleted {deleted} visitors")
    return purge_result(f"Deleted {deleted} visitors", deleted, total_before)


@transaction.atomic
def reset_all(confirmation):
    if confirmation != RESET_CONFIRMATION:
        raise ValidationFailed(f'Confirmation required. Send confirmation: "{RESET_CONFIRMATION}"')

    before = {
        'sessions': Session.objects.count(),
        'visitors': Visitor.objects.count(),
        'events': Event.objects.count(),
    }
    Session.objects.all().delete()
    Visitor.objects.all().delete()
    Event.objects.all().delete()
    StreamEvent.objects.all().delete()
    Presence.objects.all().delete()
    Goal.objects.all().delete()
    Page.objects.all().delete()
    logger.warning('All analytics data has been reset')

    deleted = sum(before.values())
    return purge_result(
        'Complete analytics reset successful', deleted, deleted,
        statistics=before,
    )
