"""
Derived analytics over the visitor, session and event stores.

Everything here is read-only except ``funnel_analytics``, which caches its
last result on the Funnel row.
"""
import logging
from collections import Counter, defaultdict
from datetime import timedelta

from django.db.models import Avg, Q
from django.utils import timezone

from .exceptions import ValidationFailed
from .models import CONVERSION_EVENT_TYPES, Event, Goal, Session, Visitor

logger = logging.getLogger(__name__)

TIMEFRAMES = {
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    '90d': timedelta(days=90),
    '1y': timedelta(days=365),
}

INTERACTION_EVENT_TYPES = ['click', 'form_submit', 'video_complete']


# ==============================================================================
# Engagement
# ==============================================================================


def session_engagement_score(events):
    """
    Score one session's events on a 0-100 scale.

    page_view is worth 10, click/form_start/form_submit 15, any video_* event
    20, plus 5 per point of the deepest scroll.
    """
    page_views = interactions = videos = 0
    scroll_depth = 0
    for event in events:
        event_type = event['event_type']
        if event_type == 'page_view':
            page_views += 1
        elif event_type in ('click', 'form_start', 'form_submit'):
            interactions += 1
        elif event_type.startswith('video_'):
            videos += 1
        elif event_type == 'scroll':
            depth = (event.get('metadata') or {}).get('scroll_depth') or 0
            try:
                scroll_depth = max(scroll_depth, float(depth))
            except (TypeError, ValueError):
                continue

    score = page_views * 10 + interactions * 15 + videos * 20 + scroll_depth * 5
    return max(0, min(100, round(score)))


def engagement_tier(score):
    if score < 40:
        return 'low'
    if score < 70:
        return 'medium'
    return 'high'


def engagement_recommendations(score, avg_duration, avg_pages, interactions):
    if score < 40:
        return [
            'Increase visit frequency to improve engagement',
            'Explore different sections of the website',
            'Complete interactive elements like forms or quizzes',
        ]
    if score < 70:
        recommendations = []
        if avg_duration < 180:
            recommendations.append('Spend more time on pages to deepen engagement')
        if avg_pages < 3:
            recommendations.append('Visit more pages per session to discover content')
        if interactions < 5:
            recommendations.append('Interact with more site elements like buttons and forms')
        return recommendations
    return [
        'Maintain current engagement level',
        'Share content with others to increase reach',
        'Provide feedback to help improve the experience',
    ]


def user_engagement(user_id, timeframe='30d', website_type=None, now=None):
    now = now or timezone.now()
    span = TIMEFRAMES.get(timeframe, TIMEFRAMES['30d'])
    start = now - span

    sessions = list(
        Session.objects.filter(visitor__user_id=user_id, start_time__gte=start, start_time__lte=now)
        .only('duration', 'page_sequence')
    )
    if not sessions:
        return {
            'user_id': user_id,
            'timeframe': timeframe,
            'score': 0,
            'tier': 'low',
            'trends': {},
            'metrics': {
                'total_sessions': 0,
                'avg_session_duration': 0,
                'avg_pages_per_session': 0,
                'total_interactions': 0,
            },
            'recommendations': ['Increase site visits', 'Explore more content'],
        }

    total_sessions = len(sessions)
    avg_duration = sum(s.duration for s in sessions) / total_sessions
    avg_pages = sum(len(s.page_sequence or []) for s in sessions) / total_sessions

    events = Event.objects.filter(
        user_id=user_id,
        timestamp__gte=start,
        timestamp__lte=now,
        event_type__in=INTERACTION_EVENT_TYPES,
    )
    if website_type:
        events = events.filter(website_type=website_type)
    interactions = events.count()

    score = (
        min(total_sessions / 10 * 30, 30)
        + min(avg_duration / 300 * 25, 25)
        + min(avg_pages / 5 * 20, 20)
        + min(interactions / 20 * 25, 25)
    )
    score = round(min(score, 100))

    previous_sessions = Session.objects.filter(
        visitor__user_id=user_id, start_time__gte=start - span, start_time__lt=start
    ).count()
    if previous_sessions:
        session_trend = (total_sessions - previous_sessions) / previous_sessions * 100
    else:
        session_trend = 100.0

    return {
        'user_id': user_id,
        'timeframe': timeframe,
        'score': score,
        'tier': engagement_tier(score),
        'trends': {
            'sessions': round(session_trend, 1),
            'duration': round(avg_duration, 1),
            'pages': round(avg_pages, 1),
        },
        'metrics': {
            'total_sessions': total_sessions,
            'avg_session_duration': round(avg_duration),
            'avg_pages_per_session': round(avg_pages, 1),
            'total_interactions': interactions,
        },
        'recommendations': engagement_recommendations(score, avg_duration, avg_pages, interactions),
    }


def session_engagement(session):
    events = list(Event.objects.filter(session_id=session.session_id).values('event_type', 'metadata'))
    counts = Counter(e['event_type'] for e in events)
    return {
        'session_id': session.session_id,
        'score': session_engagement_score(events),
        'duration': session.duration,
        'pages_viewed': len(session.page_sequence or []),
        'total_events': len(events),
        'event_breakdown': dict(counts),
        'session_class': session.session_class,
    }


# ==============================================================================
# Funnels
# ==============================================================================


def step_filter(step):
    condition = Q(event_type=step['event_type'])
    if step.get('event_name'):
        condition &= Q(event_name=step['event_name'])
    return condition


def summarize_funnel(steps, counts):
    """Conversion figures for a funnel, given the distinct-user count of each step"""
    rows = []
    drop_off_points = []
    for index, (step, count) in enumerate(zip(steps, counts)):
        if index == 0:
            conversion = 100.0
        else:
            previous = counts[index - 1]
            conversion = count / previous * 100 if previous else 0.0
        rows.append({
            'step': index + 1,
            'name': step['name'],
            'event_type': step.get('event_type'),
            'event_name': step.get('event_name'),
            'users': count,
            'conversion_rate': round(conversion, 2),
            'drop_off_rate': round(100 - conversion, 2),
        })
        if index > 0:
            drop_off_points.append({
                'from_step': steps[index - 1]['name'],
                'to_step': step['name'],
                'drop_off_rate': round(100 - conversion, 2),
                'lost_users': max(counts[index - 1] - count, 0),
            })

    entered = counts[0] if counts else 0
    completed = counts[-1] if counts else 0
    return {
        'total_entered': entered,
        'total_completed': completed,
        'conversion_rate': round(completed / entered * 100, 2) if entered else 0.0,
        'steps': rows,
        'drop_off_points': drop_off_points,
    }


def funnel_analytics(funnel, start=None, end=None, website_type=None, save=True):
    events = Event.objects.all()
    if start:
        events = events.filter(timestamp__gte=start)
    if end:
        events = events.filter(timestamp__lte=end)
    website_type = website_type or funnel.website_type
    if website_type:
        events = events.filter(website_type=website_type)

    counts = []
    first_reached = {}
    last_reached = {}
    for index, step in enumerate(funnel.steps):
        matching = events.filter(step_filter(step))
        counts.append(matching.values('user_id').distinct().count())
        if index == 0:
            for user_id, timestamp in matching.order_by('timestamp').values_list('user_id', 'timestamp'):
                first_reached.setdefault(user_id, timestamp)
        if index == len(funnel.steps) - 1:
            for user_id, timestamp in matching.order_by('timestamp').values_list('user_id', 'timestamp'):
                last_reached.setdefault(user_id, timestamp)

    durations = [
        (last_reached[user_id] - first_reached[user_id]).total_seconds()
        for user_id in last_reached
        if user_id in first_reached and last_reached[user_id] >= first_reached[user_id]
    ]

    result = summarize_funnel(funnel.steps, counts)
    result['average_time'] = round(sum(durations) / len(durations), 2) if durations else 0
    result['funnel_id'] = str(funnel.id)
    result['name'] = funnel.name

    if save:
        funnel.analytics = result
        funnel.analytics_updated_at = timezone.now()
        funnel.save(update_fields=['analytics', 'analytics_updated_at', 'updated_at'])
    return result


# ==============================================================================
# Cohorts
# ==============================================================================


def period_start(moment, period):
    moment = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == 'week':
        return moment - timedelta(days=moment.weekday())
    return moment.replace(day=1)


def shift_period(start, period, offset):
    if period == 'week':
        return start + timedelta(weeks=offset)
    month_index = start.month - 1 + offset
    return start.replace(year=start.year + month_index // 12, month=month_index % 12 + 1)


def cohort_label(start, period):
    if period == 'week':
        year, week, _ = start.isocalendar()
        return f"{year}-W{week:02d}"
    return start.strftime('%Y-%m')


def cohort_analysis(period='month', periods=6, now=None):
    """
    Group visitors by the period of their ``first_seen`` and measure, for
    each later period, how many of them started at least one session in it.
    """
    if period not in ('month', 'week'):
        raise ValidationFailed('period must be "month" or "week"')
    now = now or timezone.now()
    current = period_start(now, period)

    cohorts = []
    for index in range(periods - 1, -1, -1):
        start = shift_period(current, period, -index)
        end = shift_period(start, period, 1)
        members = list(
            Visitor.objects.filter(first_seen__gte=start, first_seen__lt=end).values_list('id', flat=True)
        )
        size = len(members)

        retention = []
        for offset in range(index + 1):
            window_start = shift_period(start, period, offset)
            window_end = shift_period(window_start, period, 1)
            retained = 0
            if members:
                retained = (
                    Session.objects.filter(
                        visitor_id__in=members,
                        start_time__gte=window_start,
                        start_time__lt=window_end,
                    )
                    .values('visitor_id').distinct().count()
                )
            retention.append({
                'period': offset,
                'retained_users': retained,
                'retention_rate': round(retained / size * 100, 1) if size else 0.0,
            })

        cohorts.append({
            'cohort_id': cohort_label(start, period),
            'cohort_start': start,
            'cohort_size': size,
            'period': period,
            'retention_data': retention,
        })

    return {
        'cohorts': cohorts,
        'retention_model': 'measured',
        'summary': cohort_summary(cohorts),
    }


def cohort_summary(cohorts):
    if not cohorts:
        return {'total_cohorts': 0, 'average_cohort_size': 0, 'insights': []}

    insights = []
    # Cohorts with a measured second period, oldest first
    comparable = [c for c in cohorts if len(c['retention_data']) > 1 and c['cohort_size']]
    if len(comparable) >= 2:
        older = comparable[0]['retention_data'][1]['retention_rate']
        recent = comparable[-1]['retention_data'][1]['retention_rate']
        if recent > older:
            insights.append('Recent cohorts show improved retention compared to older cohorts')
        elif recent < older:
            insights.append('Recent cohorts retain fewer visitors than older cohorts')
        else:
            insights.append('Retention rates have remained consistent across cohorts')
    insights.append('Focus on improving first-week retention for better long-term engagement')

    return {
        'total_cohorts': len(cohorts),
        'average_cohort_size': round(sum(c['cohort_size'] for c in cohorts) / len(cohorts)),
        'insights': insights,
    }


# ==============================================================================
# Paths
# ==============================================================================

DROP_OFF_SUGGESTIONS = [
    ('checkout', ['Reduce form fields', 'Add trust badges', 'Show shipping costs earlier']),
    ('cart', ['Show shipping costs earlier', 'Offer guest checkout', 'Highlight return policy']),
    ('product', ['Add more product images', 'Include customer reviews', 'Simplify add-to-cart process']),
    ('signup', ['Ask for fewer fields', 'Explain the benefit of signing up']),
]
DEFAULT_SUGGESTIONS = ['Add a clear next step', 'Link to related content']


def drop_off_suggestions(page_url):
    lowered = page_url.lower()
    for keyword, suggestions in DROP_OFF_SUGGESTIONS:
        if keyword in lowered:
            return suggestions
    return DEFAULT_SUGGESTIONS


def session_paths(start_page=None, end_page=None, max_path_length=5, website_type=None, sample_size=5000):
    events = Event.objects.filter(event_type='page_view').exclude(page_url='')
    if website_type:
        events = events.filter(website_type=website_type)
    rows = events.order_by('session_id', 'timestamp').values_list('session_id', 'page_url')[:sample_size]

    paths = defaultdict(list)
    for session_id, page_url in rows:
        path = paths[session_id]
        # Reloads are not steps
        if not path or path[-1] != page_url:
            path.append(page_url)

    trimmed = {}
    for session_id, path in paths.items():
        if start_page:
            if start_page not in path:
                continue
            path = path[path.index(start_page):]
        if end_page:
            if end_page not in path:
                continue
            path = path[:path.index(end_page) + 1]
        trimmed[session_id] = path[:max_path_length]
    return trimmed


def path_analysis(start_page=None, end_page=None, max_path_length=5, limit=10, website_type=None):
    paths = session_paths(start_page, end_page, max_path_length, website_type)
    total = len(paths)
    converting = set(
        Event.objects.filter(session_id__in=list(paths), event_type__in=CONVERSION_EVENT_TYPES)
        .values_list('session_id', flat=True)
    )

    path_counts = Counter(tuple(path) for path in paths.values())
    path_conversions = Counter(tuple(paths[s]) for s in converting if s in paths)

    common_paths = [
        {
            'path': list(path),
            'count': count,
            'percentage': round(count / total * 100, 2),
            'conversion_rate': round(path_conversions[path] / count * 100, 2),
        }
        for path, count in path_counts.most_common(limit)
    ]
    conversion_paths = [
        {
            'path': list(path),
            'conversions': count,
            'conversion_rate': round(count / path_counts[path] * 100, 2),
        }
        for path, count in path_conversions.most_common(limit)
    ]

    views = Counter()
    exits = Counter()
    for path in paths.values():
        for page_url in set(path):
            views[page_url] += 1
        exits[path[-1]] += 1
    drop_off_points = sorted(
        (
            {
                'page': page_url,
                'sessions': views[page_url],
                'exits': exits[page_url],
                'drop_off_rate': round(exits[page_url] / views[page_url] * 100, 2),
                'suggestions': drop_off_suggestions(page_url),
            }
            for page_url in views
        ),
        key=lambda item: (item['drop_off_rate'], item['sessions']),
        reverse=True,
    )[:limit]

    insights = []
    if conversion_paths:
        best = conversion_paths[0]
        insights.append(
            f"Best converting path: {' > '.join(best['path'])} ({best['conversion_rate']}% conversion)"
        )
    if drop_off_points:
        worst = drop_off_points[0]
        insights.append(f"Highest drop-off at: {worst['page']} ({worst['drop_off_rate']}% of sessions)")

    return {
        'total_sessions': total,
        'common_paths': common_paths,
        'conversion_paths': conversion_paths,
        'drop_off_points': drop_off_points,
        'insights': insights,
    }


# ==============================================================================
# Segments
# ==============================================================================

SEGMENT_TEXT_FIELDS = {
    'status', 'device_type', 'browser_name', 'os_name', 'screen_resolution', 'language',
    'country', 'city', 'region', 'time_zone', 'referrer_source', 'referrer_medium',
    'referrer_campaign',
}
SEGMENT_NUMERIC_FIELDS = {'total_sessions', 'total_time_spent', 'total_events', 'avg_session_time'}
SEGMENT_BOOLEAN_FIELDS = {'is_online', 'is_direct'}
SEGMENT_FIELDS = SEGMENT_TEXT_FIELDS | SEGMENT_NUMERIC_FIELDS | SEGMENT_BOOLEAN_FIELDS

SEGMENT_OPERATORS = [
    'equals', 'not_equals', 'contains', 'not_contains',
    'greater_than', 'less_than', 'exists', 'not_exists',
]


def coerce_rule_value(field, value):
    if field in SEGMENT_BOOLEAN_FIELDS:
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes')
        return bool(value)
    if field in SEGMENT_NUMERIC_FIELDS:
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationFailed(f"Rule on {field} needs a numeric value", {'value': value})
    return value


def rule_condition(rule):
    field = rule.get('field')
    operator = rule.get('operator')
    if field not in SEGMENT_FIELDS:
        raise ValidationFailed(f"Unsupported segment field: {field}")
    if operator not in SEGMENT_OPERATORS:
        raise ValidationFailed(f"Unsupported segment operator: {operator}")

    if operator in ('exists', 'not_exists'):
        present = Q(**{f'{field}__isnull': False})
        if field in SEGMENT_TEXT_FIELDS:
            present &= ~Q(**{field: ''})
        return present if operator == 'exists' else ~present

    value = coerce_rule_value(field, rule.get('value'))
    if operator == 'equals':
        return Q(**{field: value})
    if operator == 'not_equals':
        return ~Q(**{field: value})
    if operator == 'contains':
        return Q(**{f'{field}__icontains': value})
    if operator == 'not_contains':
        return ~Q(**{f'{field}__icontains': value})
    if operator == 'greater_than':
        return Q(**{f'{field}__gt': value})
    return Q(**{f'{field}__lt': value})


def segment_queryset(rules):
    """Visitors matching every rule"""
    condition = Q()
    for rule in rules or []:
        condition &= rule_condition(rule)
    return Visitor.objects.filter(condition)


def refresh_segment(segment):
    segment.member_count = segment_queryset(segment.rules).count()
    segment.save(update_fields=['member_count', 'updated_at'])
    return segment.member_count


# ==============================================================================
# Goals
# ==============================================================================


def visitor_goals(user_id):
    goals = Goal.objects.filter(user_id=user_id).order_by('-timestamp')
    totals = goals.aggregate(avg_value=Avg('value'))
    conversions = goals.filter(is_conversion=True)
    return {
        'user_id': user_id,
        'total_goals': goals.count(),
        'total_value': sum(goals.values_list('value', flat=True)),
        'avg_value': round(totals['avg_value'] or 0, 2),
        'conversions': conversions.count(),
        'conversion_value': sum(conversions.values_list('conversion_value', flat=True)),
        'goals': list(goals.values(
            'id', 'name', 'event_type', 'event_name', 'value',
            'is_conversion', 'conversion_value', 'funnel_id', 'funnel_step', 'timestamp',
        )[:100]),
    }
