from datetime import timedelta

from django.conf import settings

DEFAULTS = {
    'REDIS_URL': 'redis://localhost:6379/0',
    'SESSION_TIMEOUT': timedelta(minutes=30),
    'OFFLINE_THRESHOLD': timedelta(minutes=2),
    'PRESENCE_EXPIRY': timedelta(minutes=30),
    'ACTIVE_WINDOW_DEFAULT': '15m',
    'GEO_CACHE_TTL': 60 * 60 * 24,
    'GEO_TIMEOUT': 3,
    'BATCH_SIZE': 50,
    'BATCH_FLUSH_SECONDS': 5,
    'MAX_BATCH_EVENTS': 1000,
    'REAPER_INTERVAL_SECONDS': 120,
    'RETENTION_DAYS': 730,
    'SESSION_CLASSIFIER': 'visits.classifier.HeuristicSessionClassifier',
}


def visits_setting(name):
    """Look up a ``settings.VISITS`` entry, falling back to the app default"""
    overrides = getattr(settings, 'VISITS', {})
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
