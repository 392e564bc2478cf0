# ==============================================================================
# Shared Test Fixtures
# ==============================================================================
"""
Pytest fixtures shared across all test modules.

Provides:
- a fakeredis-backed BatchEventProcessor
- anonymous and authenticated DRF clients
- a VisitorAction factory for driving the session lifecycle
"""
from datetime import timedelta

import fakeredis
import pytest
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from visits.batch_processor import BatchEventProcessor
from visits.lifecycle import SessionLifecycle, VisitorAction


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture()
def fake_redis():
    """A clean fakeredis instance for each test, decoding like the real client"""
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    yield client
    client.flushall()
    client.close()


@pytest.fixture()
def processor(fake_redis):
    return BatchEventProcessor(redis_client=fake_redis, batch_size=3, flush_interval=60)


@pytest.fixture()
def api_client():
    return APIClient()


@pytest.fixture()
def auth_client(django_user_model):
    user = django_user_model.objects.create_user(username='analyst', password='secret')
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture()
def lifecycle():
    return SessionLifecycle()


@pytest.fixture()
def make_action():
    def factory(user_id='visitor-1', action_type='page_view', url='/home', **kwargs):
        current_page = kwargs.pop('current_page', {'url': url, 'title': url.strip('/').title() or 'Home'})
        return VisitorAction(user_id=user_id, action_type=action_type, current_page=current_page, **kwargs)
    return factory


@pytest.fixture()
def past():
    """A fixed reference time an hour ago, so offsets stay in the past"""
    return timezone.now() - timedelta(hours=1)
