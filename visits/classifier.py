"""
Session classification hook.

A real model plugs in by subclassing ``SessionClassifier`` and pointing
``VISITS['SESSION_CLASSIFIER']`` at it. The default heuristic only buckets
sessions by engagement score and conversions.
"""
from django.utils.module_loading import import_string

from .analytics import session_engagement_score
from .conf import visits_setting
from .models import CONVERSION_EVENT_TYPES, Event


class SessionClassifier:
    """Interface: ``classify(features) -> {'class': str, 'score': float}``"""

    def classify(self, features):
        raise NotImplementedError


class HeuristicSessionClassifier(SessionClassifier):

    def classify(self, features):
        if features.get('conversions'):
            return {'class': 'converter', 'score': 1.0}

        score = round(features.get('engagement_score', 0) / 100, 2)
        if score >= 0.7:
            label = 'engaged'
        elif score >= 0.4:
            label = 'browsing'
        elif features.get('page_views', 0) <= 1:
            label = 'bounce'
        else:
            label = 'casual'
        return {'class': label, 'score': score}


def session_features(session_id):
    events = list(Event.objects.filter(session_id=session_id).values('event_type', 'metadata'))
    return {
        'events': len(events),
        'page_views': sum(1 for e in events if e['event_type'] == 'page_view'),
        'conversions': sum(1 for e in events if e['event_type'] in CONVERSION_EVENT_TYPES),
        'engagement_score': session_engagement_score(events),
    }


def get_session_classifier():
    return import_string(visits_setting('SESSION_CLASSIFIER'))()
