"""
Django settings for footfall.

Values come from ``footfall.config`` (environment / .env); this module only
lays them out the way Django, DRF, Celery and Channels expect.
"""
from datetime import timedelta
from pathlib import Path

from .config import get_settings

BASE_DIR = Path(__file__).resolve().parent.parent

config = get_settings()
tracking = config.tracking

SECRET_KEY = config.secret_key
DEBUG = config.debug
ALLOWED_HOSTS = config.allowed_hosts

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'channels',
    'visits',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'visits.middleware.ClientContextMiddleware',
]

ROOT_URLCONF = 'footfall.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'footfall.wsgi.application'
ASGI_APPLICATION = 'footfall.asgi.application'

IPAPI_ACCESS_KEY = config.ipapi_access_key

DATABASES = {
    'default': config.database.django_config,
}
if DATABASES['default']['ENGINE'].endswith('sqlite3'):
    DATABASES['default']['NAME'] = BASE_DIR / DATABASES['default']['NAME']

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# Cache: process-local unless a shared redis cache is configured
if config.cache_url:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': config.cache_url,
            'TIMEOUT': tracking.cache_ttl_seconds,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'TIMEOUT': tracking.cache_ttl_seconds,
        }
    }

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'EXCEPTION_HANDLER': 'visits.exceptions.envelope_exception_handler',
    # ?format= is the export format, not a renderer override
    'URL_FORMAT_OVERRIDE': None,
}

CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels_redis.core.RedisChannelLayer',
        'CONFIG': {'hosts': [config.redis_url]},
    }
}

# Celery
CELERY_BROKER_URL = config.broker_url or config.redis_url
CELERY_RESULT_BACKEND = config.redis_url
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'flush-event-queue': {
        'task': 'visits.tasks.flush_event_queue',
        'schedule': timedelta(seconds=tracking.batch_flush_seconds),
    },
    'reap-inactive-sessions': {
        'task': 'visits.tasks.reap_inactive_sessions',
        'schedule': timedelta(seconds=tracking.reaper_interval_seconds),
    },
    'cleanup-old-data': {
        'task': 'visits.tasks.cleanup_old_data',
        'schedule': timedelta(days=1),
    },
}

VISITS = {
    'REDIS_URL': config.redis_url,
    'SESSION_TIMEOUT': timedelta(minutes=tracking.session_timeout_minutes),
    'OFFLINE_THRESHOLD': timedelta(minutes=tracking.offline_threshold_minutes),
    'PRESENCE_EXPIRY': timedelta(minutes=tracking.presence_expiry_minutes),
    'ACTIVE_WINDOW_DEFAULT': tracking.active_window_default,
    'GEO_CACHE_TTL': tracking.geo_cache_ttl_seconds,
    'GEO_TIMEOUT': tracking.geo_timeout_seconds,
    'BATCH_SIZE': tracking.batch_size,
    'BATCH_FLUSH_SECONDS': tracking.batch_flush_seconds,
    'MAX_BATCH_EVENTS': tracking.max_batch_events,
    'REAPER_INTERVAL_SECONDS': tracking.reaper_interval_seconds,
    'RETENTION_DAYS': tracking.retention_days,
    'SESSION_CLASSIFIER': tracking.session_classifier,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'visits': {
            'handlers': ['console'],
            'level': config.log_level,
            'propagate': False,
        },
    },
}
