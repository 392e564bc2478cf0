import os
from celery import Celery
from celery.signals import worker_shutting_down

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'footfall.settings')

app = Celery('footfall')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()


@worker_shutting_down.connect
def drain_event_queue(**kwargs):
    """Flush whatever is still queued before the worker exits"""
    from visits.batch_processor import BatchEventProcessor

    BatchEventProcessor().drain()
