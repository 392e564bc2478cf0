import csv
import logging
import math

from django.db import DatabaseError, connection
from django.http import HttpResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from redis import Redis
from redis.exceptions import RedisError
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from . import analytics, ingestion, purge, realtime
from .conf import visits_setting
from .consumers import broadcast_presence
from .exceptions import ValidationFailed, error_response
from .geolocation import parse_location
from .lifecycle import SessionLifecycle, VisitorAction
from .models import Event, Funnel, Presence, Segment, Session, StreamEvent, Visitor
from .permissions import PostOrAuthenticated
from .serializers import (
    ClaimSerializer, EventReadSerializer, FunnelSerializer, GoalSerializer,
    IdleSerializer, PresenceReadSerializer, PresenceSerializer, SegmentSerializer,
    SessionSerializer, SessionStartSerializer, StreamEventReadSerializer,
    StreamEventSerializer, VisitorSerializer,
)
from .utils import build_device_snapshot, device_fingerprint, get_client_ip, parse_referrer

logger = logging.getLogger(__name__)

EXPORT_LIMIT = 10000
EXPORT_FIELDS = [
    'event_id', 'user_id', 'session_id', 'event_type', 'event_name', 'timestamp',
    'duration', 'page_url', 'page_title', 'website_type', 'ingest_mode', 'country', 'city',
]


# Helper functions
def client_ip_for(request):
    return getattr(request, 'client_ip', None) or get_client_ip(request)


def int_param(params, name, default, minimum=None, maximum=None):
    value = params.get(name)
    if value in (None, ''):
        return default
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationFailed(f"{name} must be at least {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


def paginate(request, queryset, default_size=50, max_size=100):
    page = int_param(request.query_params, 'page', 1, minimum=1)
    page_size = int_param(request.query_params, 'page_size', default_size, minimum=1, maximum=max_size)
    total = queryset.count()
    offset = (page - 1) * page_size
    return queryset[offset:offset + page_size], {
        'page': page,
        'page_size': page_size,
        'total': total,
        'pages': math.ceil(total / page_size) if total else 0,
    }


def build_visitor_action(request, data):
    """Turn a validated claim payload plus request headers into a VisitorAction"""
    client_ip = client_ip_for(request)
    user_agent = request.META.get('HTTP_USER_AGENT', '')
    current_page = data.get('current_page')
    location, precise = parse_location(data.get('location'), request.META, client_ip)
    referrer = parse_referrer(data.get('referrer') or (current_page or {}).get('referrer'))

    return VisitorAction(
        user_id=data['user_id'],
        action_type=data.get('action_type') or 'page_view',
        device=build_device_snapshot(data.get('device'), user_agent),
        location=location,
        location_precise=precise,
        referrer=referrer,
        current_page=current_page,
        page_stay_duration=data.get('page_stay_duration') or 0,
        events=data.get('events') or [],
        is_after_reset=data.get('is_after_reset', False),
        user_agent=user_agent,
    )


def event_context(request, client_location=None):
    client_ip = client_ip_for(request)
    location, _ = parse_location(client_location, request.META, client_ip)
    return {
        'client_ip': client_ip,
        'device_fingerprint': (
            getattr(request, 'device_fingerprint', None) or device_fingerprint(request.META, client_ip)
        ),
        'location': location,
    }


def request_params(request):
    """Query string merged with the body, body wins"""
    params = request.query_params.dict()
    if isinstance(request.data, dict):
        params.update(request.data.items())
    return params


# ==============================================================================
# Visitor actions
# ==============================================================================


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def claim(request):
    """
    Single entry point for tracker pings (page view, heartbeat, page leave).
    Runs the session lifecycle and answers with the visitor's current state.
    """
    serializer = ClaimSerializer(data=request.data)
    if not serializer.is_valid():
        return error_response('Validation failed', status.HTTP_400_BAD_REQUEST, serializer.errors)

    action = build_visitor_action(request, serializer.validated_data)
    lifecycle = SessionLifecycle()
    try:
        outcome = lifecycle.record(action)
    except DatabaseError:
        logger.exception(f"Could not record {action.action_type} for {action.user_id}")
        return error_response('Internal server error', status.HTTP_500_INTERNAL_SERVER_ERROR)

    return Response({
        'success': True,
        'message': outcome.message,
        'data': outcome.as_response(lifecycle.session_timeout_ms),
    }, status=status.HTTP_201_CREATED if outcome.created else status.HTTP_200_OK)


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def start_session(request):
    serializer = SessionStartSerializer(data=request.data)
    if not serializer.is_valid():
        return error_response('Validation failed', status.HTTP_400_BAD_REQUEST, serializer.errors)

    action = build_visitor_action(request, serializer.validated_data)
    lifecycle = SessionLifecycle()
    outcome = lifecycle.start(action)
    return Response({
        'success': True,
        'message': outcome.message,
        'data': outcome.as_response(lifecycle.session_timeout_ms),
    }, status=status.HTTP_201_CREATED)


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def end_session(request, session_id):
    session, visitor = SessionLifecycle().end(session_id)
    return Response({
        'success': True,
        'message': 'Session ended',
        'data': {
            'session_id': session.session_id,
            'duration': session.duration,
            'end_time': session.end_time,
            'total_sessions': visitor.total_sessions,
            'total_time_spent': visitor.total_time_spent,
        },
    })


# ==============================================================================
# Visitors
# ==============================================================================


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def visitor_list(request):
    visitors = Visitor.objects.order_by('-last_active_at')
    params = request.query_params
    if params.get('status'):
        visitors = visitors.filter(status=params['status'])
    if params.get('is_online') in ('true', 'false'):
        visitors = visitors.filter(is_online=params['is_online'] == 'true')
    if params.get('country'):
        visitors = visitors.filter(country__iexact=params['country'])
    if params.get('device_type'):
        visitors = visitors.filter(device_type=params['device_type'])
    if params.get('search'):
        visitors = visitors.filter(user_id__icontains=params['search'])

    page, pagination = paginate(request, visitors)
    return Response({
        'success': True,
        'data': VisitorSerializer(page, many=True).data,
        'pagination': pagination,
    })


@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated])
def visitor_detail(request, user_id):
    if request.method == 'DELETE':
        return Response(purge.delete_visitors([user_id]))

    try:
        visitor = Visitor.objects.get(user_id=user_id)
    except Visitor.DoesNotExist:
        return error_response('Visitor not found', status.HTTP_404_NOT_FOUND)

    recent_sessions = visitor.sessions.order_by('-start_time')[:10]
    return Response({
        'success': True,
        'data': {
            **VisitorSerializer(visitor).data,
            'recent_sessions': SessionSerializer(recent_sessions, many=True).data,
        },
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def visitor_bulk_delete(request):
    user_ids = request.data.get('user_ids')
    if not isinstance(user_ids, list):
        raise ValidationFailed('user_ids must be a list')
    return Response(purge.delete_visitors(user_ids))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def visitor_sessions(request, user_id):
    visitor = get_object_or_404(Visitor, user_id=user_id)
    page, pagination = paginate(request, visitor.sessions.order_by('-start_time'))
    return Response({
        'success': True,
        'data': SessionSerializer(page, many=True).data,
        'pagination': pagination,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def visitor_engagement(request, user_id):
    get_object_or_404(Visitor, user_id=user_id)
    timeframe = request.query_params.get('timeframe', '30d')
    if timeframe not in analytics.TIMEFRAMES:
        raise ValidationFailed(f"timeframe must be one of {', '.join(analytics.TIMEFRAMES)}")
    result = analytics.user_engagement(
        user_id, timeframe, website_type=request.query_params.get('website_type')
    )
    return Response({'success': True, 'data': result})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def visitor_goals(request, user_id):
    return Response({'success': True, 'data': analytics.visitor_goals(user_id)})


# ==============================================================================
# Sessions
# ==============================================================================


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def session_stats(request):
    days = int_param(request.query_params, 'days', 30, minimum=1, maximum=365)
    return Response({'success': True, 'data': realtime.session_stats(days=days)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def session_events(request, session_id):
    session = get_object_or_404(Session, session_id=session_id)
    events = Event.objects.filter(session_id=session.session_id).order_by('timestamp')
    page, pagination = paginate(request, events, default_size=100, max_size=1000)
    return Response({
        'success': True,
        'data': EventReadSerializer(page, many=True).data,
        'pagination': pagination,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def session_engagement(request, session_id):
    session = get_object_or_404(Session, session_id=session_id)
    return Response({'success': True, 'data': analytics.session_engagement(session)})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def purge_sessions(request, variant):
    params = request_params(request)
    handlers = {
        'all': lambda: purge.purge_all(),
        'inactive': lambda: purge.purge_inactive(),
        'old': lambda: purge.purge_older_than(params.get('days')),
        'visitor': lambda: purge.purge_for_visitor(params.get('user_id')),
        'date-range': lambda: purge.purge_by_date_range(params.get('start_date'), params.get('end_date')),
        'device': lambda: purge.purge_by_device(params.get('device_type')),
        'country': lambda: purge.purge_by_country(params.get('country')),
        'short': lambda: purge.purge_short(params.get('max_duration')),
        'abandoned': lambda: purge.purge_abandoned(),
        'duplicates': lambda: purge.purge_duplicates(params.get('window_seconds')),
    }
    if variant not in handlers:
        return error_response(f"Unknown purge variant: {variant}", status.HTTP_404_NOT_FOUND)
    return Response(handlers[variant]())


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def session_bulk_delete(request):
    if 'session_ids' in request.data:
        session_ids = request.data.get('session_ids')
        if not isinstance(session_ids, list):
            raise ValidationFailed('session_ids must be a list')
        return Response(purge.purge_by_ids(session_ids))
    filters = request.data.get('filters')
    if not isinstance(filters, dict):
        raise ValidationFailed('Send either session_ids or filters')
    return Response(purge.purge_filtered(filters))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def reset_analytics(request):
    return Response(purge.reset_all(request.data.get('confirmation')))


# ==============================================================================
# Events
# ==============================================================================


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def ingest_event(request):
    """
    Event ingestion endpoint. With ``X-Batch-Mode: true`` the event is only
    queued for the next batch flush.
    """
    if not isinstance(request.data, dict):
        raise ValidationFailed('Expected a JSON object')
    batch_mode = request.META.get('HTTP_X_BATCH_MODE', '').lower() == 'true'
    context = event_context(request, request.data.get('location'))
    payload, status_code = ingestion.ingest_single(request.data, context, batch_mode=batch_mode)
    return Response({'success': True, 'data': payload}, status=status_code)


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def ingest_batch(request):
    events = request.data.get('events') if isinstance(request.data, dict) else request.data
    result = ingestion.ingest_batch(events, event_context(request))
    status_code = status.HTTP_207_MULTI_STATUS if result['partial_success'] else status.HTTP_201_CREATED
    return Response({'success': not result['failed'], 'data': result}, status=status_code)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def export_events(request):
    params = request.query_params
    export_format = params.get('format', 'json')
    if export_format not in ('json', 'csv'):
        raise ValidationFailed('format must be json or csv')

    events = Event.objects.order_by('-timestamp')
    if params.get('start_date'):
        events = events.filter(timestamp__gte=purge.parse_date_bound(params['start_date'], 'start_date'))
    if params.get('end_date'):
        events = events.filter(timestamp__lte=purge.parse_date_bound(params['end_date'], 'end_date'))
    if params.get('event_type'):
        events = events.filter(event_type=params['event_type'])
    if params.get('user_id'):
        events = events.filter(user_id=params['user_id'])
    limit = int_param(params, 'limit', EXPORT_LIMIT, minimum=1, maximum=EXPORT_LIMIT)
    events = events[:limit]

    if export_format == 'csv':
        response = HttpResponse(content_type='text/csv')
        response['Content-Disposition'] = 'attachment; filename="events.csv"'
        writer = csv.writer(response)
        writer.writerow(EXPORT_FIELDS)
        for row in events.values_list(*EXPORT_FIELDS):
            writer.writerow(row)
        return response

    data = EventReadSerializer(events, many=True).data
    return Response({'success': True, 'count': len(data), 'data': data})


# ==============================================================================
# Stream buffer
# ==============================================================================


@csrf_exempt
@api_view(['GET', 'POST'])
@permission_classes([PostOrAuthenticated])
def stream_events(request):
    if request.method == 'POST':
        serializer = StreamEventSerializer(data=request.data)
        if not serializer.is_valid():
            return error_response('Validation failed', status.HTTP_400_BAD_REQUEST, serializer.errors)
        stream_event = ingestion.ingest_stream(serializer.validated_data)
        return Response({
            'success': True,
            'data': {'event_id': stream_event.event_id, 'status': 'accepted'},
        }, status=status.HTTP_202_ACCEPTED)

    stream = StreamEvent.objects.order_by('-created_at')
    if request.query_params.get('status'):
        stream = stream.filter(processing_status=request.query_params['status'])
    if request.query_params.get('stream_source'):
        stream = stream.filter(stream_source=request.query_params['stream_source'])
    page, pagination = paginate(request, stream)
    return Response({
        'success': True,
        'data': StreamEventReadSerializer(page, many=True).data,
        'pagination': pagination,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def stream_retry(request):
    limit = int_param(request.data, 'limit', 100, minimum=1, maximum=1000)
    return Response({'success': True, 'data': ingestion.retry_failed_stream_events(limit)})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def stream_bulk_process(request):
    limit = int_param(request.data, 'limit', 100, minimum=1, maximum=1000)
    return Response({'success': True, 'data': ingestion.bulk_process_stream_events(limit)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stream_analytics(request):
    hours = int_param(request.query_params, 'hours', 24, minimum=1, maximum=24 * 30)
    return Response({'success': True, 'data': realtime.stream_analytics(hours=hours)})


# ==============================================================================
# Funnels, segments, goals
# ==============================================================================


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def funnel_list(request):
    if request.method == 'POST':
        serializer = FunnelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        funnel = serializer.save()
        return Response({'success': True, 'data': FunnelSerializer(funnel).data}, status=status.HTTP_201_CREATED)

    funnels = Funnel.objects.order_by('-created_at')
    if request.query_params.get('website_type'):
        funnels = funnels.filter(website_type=request.query_params['website_type'])
    return Response({'success': True, 'data': FunnelSerializer(funnels, many=True).data})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def funnel_detail(request, funnel_id):
    funnel = get_object_or_404(Funnel, id=funnel_id)
    funnel.delete()
    return Response({'success': True, 'message': 'Funnel deleted'})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def funnel_analytics(request, funnel_id):
    funnel = get_object_or_404(Funnel, id=funnel_id)
    params = request.query_params
    start = purge.parse_date_bound(params['start_date'], 'start_date') if params.get('start_date') else None
    end = purge.parse_date_bound(params['end_date'], 'end_date') if params.get('end_date') else None
    result = analytics.funnel_analytics(funnel, start, end, website_type=params.get('website_type'))
    return Response({'success': True, 'data': result})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def segment_list(request):
    if request.method == 'POST':
        serializer = SegmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        segment = serializer.save()
        analytics.refresh_segment(segment)
        return Response({'success': True, 'data': SegmentSerializer(segment).data}, status=status.HTTP_201_CREATED)

    segments = Segment.objects.filter(is_active=True).order_by('-created_at')
    return Response({'success': True, 'data': SegmentSerializer(segments, many=True).data})


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def segment_detail(request, segment_id):
    segment = get_object_or_404(Segment, id=segment_id)
    segment.delete()
    return Response({'success': True, 'message': 'Segment deleted'})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def segment_members(request, segment_id):
    segment = get_object_or_404(Segment, id=segment_id)
    if segment.is_dynamic:
        analytics.refresh_segment(segment)
    members = analytics.segment_queryset(segment.rules).order_by('-last_active_at')
    page, pagination = paginate(request, members)
    return Response({
        'success': True,
        'data': {
            'segment': SegmentSerializer(segment).data,
            'members': VisitorSerializer(page, many=True).data,
        },
        'pagination': pagination,
    })


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def create_goal(request):
    serializer = GoalSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    goal = serializer.save()
    if goal.is_conversion and not goal.conversion_value:
        goal.conversion_value = goal.value
        goal.save(update_fields=['conversion_value'])
    return Response({'success': True, 'data': GoalSerializer(goal).data}, status=status.HTTP_201_CREATED)


# ==============================================================================
# Analytics
# ==============================================================================


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def cohort_analysis(request):
    periods = int_param(request.query_params, 'periods', 6, minimum=1, maximum=24)
    result = analytics.cohort_analysis(request.query_params.get('period', 'month'), periods)
    return Response({'success': True, 'data': result})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def path_analysis(request):
    params = request.query_params
    result = analytics.path_analysis(
        start_page=params.get('start_page'),
        end_page=params.get('end_page'),
        max_path_length=int_param(params, 'max_path_length', 5, minimum=1, maximum=20),
        limit=int_param(params, 'limit', 10, minimum=1, maximum=100),
        website_type=params.get('website_type'),
    )
    return Response({'success': True, 'data': result})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def active_users(request):
    window = request.query_params.get('window') or request.query_params.get('time_window')
    return Response({'success': True, 'data': realtime.active_users(window)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def conversion_feed(request):
    params = request.query_params
    result = realtime.conversion_feed(
        limit=int_param(params, 'limit', 50, minimum=1, maximum=500),
        hours=int_param(params, 'hours', 24, minimum=1, maximum=24 * 30),
    )
    return Response({'success': True, 'data': result})


# ==============================================================================
# Presence
# ==============================================================================


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def presence_ping(request):
    serializer = PresenceSerializer(data=request.data)
    if not serializer.is_valid():
        return error_response('Validation failed', status.HTTP_400_BAD_REQUEST, serializer.errors)
    data = serializer.validated_data

    visitor = Visitor.objects.filter(user_id=data['user_id']).only('country', 'city').first()
    presence, _ = Presence.objects.update_or_create(
        user_id=data['user_id'],
        defaults={
            'session_id': data['session_id'],
            'page_url': data['page_url'],
            'device_type': data['device_type'],
            'idle_time': data['idle_time'],
            'is_active': data['idle_time'] < realtime.IDLE_THRESHOLD_MS,
            'last_ping': timezone.now(),
            'country': visitor.country if visitor else '',
            'city': visitor.city if visitor else '',
        },
    )
    payload = PresenceReadSerializer(presence).data
    broadcast_presence(payload)
    return Response({'success': True, 'data': payload})


@csrf_exempt
@api_view(['POST'])
@permission_classes([AllowAny])
def presence_idle(request):
    serializer = IdleSerializer(data=request.data)
    if not serializer.is_valid():
        return error_response('Validation failed', status.HTTP_400_BAD_REQUEST, serializer.errors)

    try:
        presence = Presence.objects.get(user_id=serializer.validated_data['user_id'])
    except Presence.DoesNotExist:
        return error_response('Presence not found', status.HTTP_404_NOT_FOUND)

    presence.idle_time = serializer.validated_data['idle_time']
    presence.is_active = presence.idle_time < realtime.IDLE_THRESHOLD_MS
    presence.save(update_fields=['idle_time', 'is_active', 'updated_at'])
    payload = PresenceReadSerializer(presence).data
    broadcast_presence(payload)
    return Response({'success': True, 'data': payload})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def presence_active(request):
    presence = realtime.active_presence()
    return Response({
        'success': True,
        'count': presence.count(),
        'data': PresenceReadSerializer(presence[:500], many=True).data,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def presence_analytics(request):
    return Response({'success': True, 'data': realtime.presence_analytics()})


# ==============================================================================
# Status
# ==============================================================================


@api_view(['GET'])
@permission_classes([AllowAny])
def health(request):
    checks = {}
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
        checks['database'] = 'healthy'
    except DatabaseError as e:
        logger.error(f"Health check: database unavailable: {e}")
        checks['database'] = 'unhealthy'

    try:
        Redis.from_url(visits_setting('REDIS_URL'), socket_connect_timeout=1).ping()
        checks['redis'] = 'healthy'
    except RedisError as e:
        logger.warning(f"Health check: redis unavailable: {e}")
        checks['redis'] = 'unhealthy'

    database_ok = checks['database'] == 'healthy'
    if not database_ok:
        overall = 'unhealthy'
    elif checks['redis'] != 'healthy':
        overall = 'degraded'
    else:
        overall = 'healthy'
    return Response({
        'success': database_ok,
        'status': overall,
        'checks': checks,
        'timestamp': timezone.now(),
    }, status=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def metrics(request):
    return Response({'success': True, 'data': realtime.system_metrics()})
