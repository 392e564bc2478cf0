# ==============================================================================
# Tests for the HTTP API: views.py, ingestion.py, exceptions.py
# ==============================================================================
"""
End-to-end requests through DRF. The test client connects from 127.0.0.1,
so geolocation resolves to the loopback fallback without any network.
"""
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from visits.batch_processor import BatchEventProcessor
from visits.models import Event, Funnel, Goal, Presence, Session, StreamEvent, Visitor


def _event(event_id, session_id, event_type='click', **extra):
    payload = {
        'event_id': event_id,
        'user_id': 'visitor-1',
        'session_id': session_id,
        'event_type': event_type,
        'event_name': f"{event_type}-{event_id}",
    }
    payload.update(extra)
    return payload


@pytest.fixture()
def claimed(api_client):
    """A visitor with one open session, created through the claim endpoint"""
    response = api_client.post('/api/claim/', {
        'user_id': 'visitor-1',
        'current_page': {'url': '/home', 'title': 'Home'},
    }, format='json')
    assert response.status_code == 201
    return response.json()['data']


# ==============================================================================
# Claim
# ==============================================================================


@pytest.mark.django_db
class TestClaim:

    def test_first_claim_creates_visitor(self, api_client, claimed):
        session = Session.objects.get(visitor__user_id='visitor-1')
        assert claimed['session_id'] == session.session_id
        assert claimed['status'] == 'new'
        assert claimed['location']['city'] == 'Localhost'

    def test_repeat_claim_is_200(self, api_client, claimed):
        response = api_client.post('/api/claim/', {
            'user_id': 'visitor-1',
            'action_type': 'heartbeat',
        }, format='json')

        assert response.status_code == 200
        body = response.json()
        assert body['success'] is True
        assert body['data']['session_id'] == claimed['session_id']

    def test_referrer_is_attributed(self, api_client):
        api_client.post('/api/claim/', {
            'user_id': 'visitor-2',
            'referrer': 'https://www.google.com/search?q=shoes',
            'current_page': {'url': '/shoes'},
        }, format='json')

        visitor = Visitor.objects.get(user_id='visitor-2')
        assert visitor.referrer_source == 'google'
        assert visitor.referrer_campaign == 'search:shoes'

    def test_missing_user_id(self, api_client):
        response = api_client.post('/api/claim/', {'action_type': 'page_view'}, format='json')

        assert response.status_code == 400
        body = response.json()
        assert body['success'] is False
        assert body['error'] == 'Validation failed'
        assert 'user_id' in body['details']

    def test_bad_action_type(self, api_client):
        response = api_client.post('/api/claim/', {'user_id': 'x', 'action_type': 'teleport'}, format='json')
        assert response.status_code == 400


# ==============================================================================
# Events
# ==============================================================================


@pytest.mark.django_db
class TestSingleEvent:

    def test_event_for_unknown_session(self, api_client):
        response = api_client.post('/api/events/', _event('e1', 'missing'), format='json')

        assert response.status_code == 404
        assert response.json()['success'] is False

    def test_event_updates_session(self, api_client, claimed):
        response = api_client.post(
            '/api/events/',
            _event('e1', claimed['session_id'], 'page_view', page_url='/pricing'),
            format='json',
        )

        assert response.status_code == 201
        event = Event.objects.get(event_id='e1')
        session = Session.objects.get(session_id=claimed['session_id'])
        assert event.ingest_mode == 'single'
        assert event.device_fingerprint
        assert event.event_class
        assert session.total_events == 1
        assert session.session_class == event.event_class

    def test_invalid_event_type(self, api_client, claimed):
        response = api_client.post(
            '/api/events/', _event('e1', claimed['session_id'], 'teleport'), format='json'
        )

        assert response.status_code == 400
        assert 'event_type' in response.json()['details']

    def test_batch_mode_header_queues(self, api_client, fake_redis):
        processor = BatchEventProcessor(redis_client=fake_redis, batch_size=10, flush_interval=60)

        with patch('visits.ingestion.BatchEventProcessor', return_value=processor):
            response = api_client.post(
                '/api/events/', _event('q1', 'any-session'), format='json', HTTP_X_BATCH_MODE='true'
            )

        assert response.status_code == 202
        data = response.json()['data']
        assert data['status'] == 'queued'
        assert data['queue_size'] == 1
        assert not Event.objects.filter(event_id='q1').exists()


@pytest.mark.django_db
class TestBatchEvents:

    def test_partial_batch(self, api_client):
        events = [_event(f'b{i}', 'session-x') for i in range(3)]
        events.append({'user_id': 'visitor-1', 'session_id': 'session-x', 'event_name': 'no type'})

        response = api_client.post('/api/events/batch/', {'events': events}, format='json')

        assert response.status_code == 207
        data = response.json()['data']
        assert data['processed'] == 3
        assert data['failed'] == 1
        assert data['errors'][0]['event_index'] == 3
        assert 'event_type' in data['errors'][0]['details']
        assert Event.objects.filter(event_id__in=['b0', 'b1', 'b2'], ingest_mode='batch').count() == 3

    def test_full_batch_is_201(self, api_client):
        events = [_event(f'b{i}', 'session-x') for i in range(2)]

        response = api_client.post('/api/events/batch/', {'events': events}, format='json')

        assert response.status_code == 201
        batch_id = response.json()['data']['batch_id']
        assert Event.objects.get(event_id='b0').metadata['batch_id'] == batch_id

    def test_duplicates_are_reported_not_counted(self, api_client):
        api_client.post('/api/events/batch/', {'events': [_event('b0', 'session-x')]}, format='json')
        events = [_event('b0', 'session-x'), _event('b1', 'session-x'), _event('b1', 'session-x')]

        response = api_client.post('/api/events/batch/', {'events': events}, format='json')

        assert response.status_code == 207
        data = response.json()['data']
        assert data['processed'] == 1
        assert data['event_ids'] == ['b1']
        assert [error['event_index'] for error in data['errors']] == [0, 2]
        assert all(error['error'] == 'Duplicate event' for error in data['errors'])
        assert Event.objects.filter(event_id__in=['b0', 'b1']).count() == 2

    def test_empty_batch(self, api_client):
        response = api_client.post('/api/events/batch/', {'events': []}, format='json')
        assert response.status_code == 400


@pytest.mark.django_db
class TestExport:

    def test_csv(self, auth_client, api_client):
        api_client.post('/api/events/batch/', {'events': [_event('x1', 's')]}, format='json')

        response = auth_client.get('/api/events/export/', {'format': 'csv'})

        assert response.status_code == 200
        assert response['Content-Type'].startswith('text/csv')
        lines = response.content.decode().strip().splitlines()
        assert lines[0].startswith('event_id,user_id,session_id')
        assert lines[1].startswith('x1,visitor-1,s')

    def test_requires_login(self, api_client):
        response = api_client.get('/api/events/export/')

        assert response.status_code in (401, 403)
        assert response.json()['success'] is False


# ==============================================================================
# Stream buffer
# ==============================================================================


@pytest.mark.django_db
class TestStream:

    def test_stream_event_is_processed(self, api_client):
        response = api_client.post('/api/stream/events/', {
            'event_id': 'st1',
            'user_id': 'visitor-1',
            'event_type': 'click',
            'stream_source': 'kafka',
            'event_data': {'event_name': 'cta'},
        }, format='json')

        assert response.status_code == 202
        stream_event = StreamEvent.objects.get(event_id='st1')
        assert stream_event.processing_status == 'completed'
        assert stream_event.processed_at is not None
        event = Event.objects.get(event_id='st1')
        assert event.ingest_mode == 'stream'
        assert event.metadata['stream_source'] == 'kafka'

    def test_duplicate_stream_event(self, api_client):
        payload = {'event_id': 'st1', 'user_id': 'visitor-1', 'event_type': 'click'}
        api_client.post('/api/stream/events/', payload, format='json')

        response = api_client.post('/api/stream/events/', payload, format='json')

        assert response.status_code == 400

    def test_failure_is_recorded_and_retried(self, api_client, auth_client):
        api_client.post('/api/stream/events/', {
            'event_id': 'bad', 'user_id': 'visitor-1', 'event_type': 'teleport',
        }, format='json')
        stream_event = StreamEvent.objects.get(event_id='bad')
        assert stream_event.processing_status == 'failed'
        assert stream_event.error_message

        response = auth_client.post('/api/stream/retry/', {}, format='json')

        assert response.json()['data'] == {'total_retried': 1, 'successful': 0, 'failed': 1}
        assert StreamEvent.objects.get(event_id='bad').retry_count == 1

    def test_listing_needs_login(self, api_client, auth_client):
        assert api_client.get('/api/stream/events/').status_code in (401, 403)
        assert auth_client.get('/api/stream/events/').status_code == 200


# ==============================================================================
# Sessions, visitors and purges
# ==============================================================================


@pytest.mark.django_db
class TestSessionEndpoints:

    def test_end_session(self, api_client, claimed):
        response = api_client.post(f"/api/sessions/{claimed['session_id']}/end/", format='json')

        assert response.status_code == 200
        assert Session.objects.get(session_id=claimed['session_id']).is_active is False

    def test_end_unknown_session(self, api_client):
        assert api_client.post('/api/sessions/nope/end/', format='json').status_code == 404

    def test_start_session(self, api_client, claimed):
        response = api_client.post('/api/sessions/start/', {'user_id': 'visitor-1'}, format='json')

        assert response.status_code == 201
        assert response.json()['data']['session_id'] != claimed['session_id']
        assert Session.objects.filter(visitor__user_id='visitor-1', is_active=True).count() == 1

    def test_visitor_detail(self, auth_client, claimed):
        response = auth_client.get('/api/visitors/visitor-1/')

        assert response.status_code == 200
        data = response.json()['data']
        assert data['total_sessions'] == 1
        assert data['recent_sessions'][0]['session_id'] == claimed['session_id']

    def test_unknown_visitor(self, auth_client):
        assert auth_client.get('/api/visitors/nobody/').status_code == 404

    def test_bulk_delete_visitors_reports_missing(self, auth_client, claimed):
        response = auth_client.post(
            '/api/visitors/bulk-delete/', {'user_ids': ['visitor-1', 'ghost']}, format='json'
        )

        assert response.status_code == 404
        assert Visitor.objects.filter(user_id='visitor-1').exists()

    def test_delete_visitor(self, auth_client, claimed):
        response = auth_client.delete('/api/visitors/visitor-1/')

        assert response.status_code == 200
        assert response.json()['deleted_count'] == 1
        assert not Session.objects.exists()

    def test_purge_inactive(self, auth_client, api_client, claimed):
        api_client.post(f"/api/sessions/{claimed['session_id']}/end/", format='json')

        response = auth_client.delete('/api/sessions/purge/inactive/')

        body = response.json()
        assert response.status_code == 200
        assert body['deleted_count'] == 1
        assert body['total_before'] == 1
        assert Visitor.objects.get(user_id='visitor-1').total_sessions == 0

    def test_purge_date_range_needs_both_dates(self, auth_client):
        response = auth_client.delete('/api/sessions/purge/date-range/?start_date=2024-01-01')
        assert response.status_code == 400

    def test_unknown_purge_variant(self, auth_client):
        assert auth_client.delete('/api/sessions/purge/everything/').status_code == 404

    def test_reset_needs_confirmation(self, auth_client, claimed):
        response = auth_client.post('/api/analytics/reset/', {'confirmation': 'yes'}, format='json')

        assert response.status_code == 400
        assert Visitor.objects.exists()

    def test_reset(self, auth_client, claimed):
        response = auth_client.post('/api/analytics/reset/', {
            'confirmation': 'I understand this will delete all data',
        }, format='json')

        assert response.status_code == 200
        assert response.json()['statistics']['visitors'] == 1
        assert not Visitor.objects.exists()


# ==============================================================================
# Funnels, segments and goals
# ==============================================================================


@pytest.mark.django_db
class TestFunnelsSegmentsGoals:

    def test_funnel_needs_two_steps(self, auth_client):
        response = auth_client.post('/api/funnels/', {
            'name': 'Too short',
            'steps': [{'name': 'Only', 'event_type': 'page_view'}],
        }, format='json')

        assert response.status_code == 400
        assert response.json()['error'] == 'Validation failed'

    def test_funnel_create_and_analyse(self, auth_client, api_client):
        response = auth_client.post('/api/funnels/', {
            'name': 'Checkout',
            'steps': [
                {'name': 'View', 'event_type': 'page_view'},
                {'name': 'Buy', 'event_type': 'purchase'},
            ],
        }, format='json')
        assert response.status_code == 201
        funnel_id = response.json()['data']['id']
        api_client.post('/api/events/batch/', {'events': [
            _event('f1', 's', 'page_view'),
            _event('f2', 's', 'purchase'),
        ]}, format='json')

        response = auth_client.get(f'/api/funnels/{funnel_id}/analytics/')

        assert response.status_code == 200
        assert response.json()['data']['conversion_rate'] == 100.0
        assert Funnel.objects.get(id=funnel_id).analytics['total_completed'] == 1

    def test_segment_member_count(self, auth_client, claimed):
        response = auth_client.post('/api/segments/', {
            'name': 'Newcomers',
            'rules': [{'field': 'status', 'operator': 'equals', 'value': 'new'}],
        }, format='json')

        assert response.status_code == 201
        assert response.json()['data']['member_count'] == 1

    def test_segment_rejects_bad_rule(self, auth_client):
        response = auth_client.post('/api/segments/', {
            'name': 'Broken',
            'rules': [{'field': 'status', 'operator': 'resembles', 'value': 'new'}],
        }, format='json')

        assert response.status_code == 400

    def test_conversion_goal_value(self, api_client, auth_client):
        response = api_client.post('/api/goals/', {
            'name': 'Order', 'user_id': 'visitor-1', 'value': 49.5, 'is_conversion': True,
        }, format='json')

        assert response.status_code == 201
        assert Goal.objects.get().conversion_value == 49.5
        totals = auth_client.get('/api/visitors/visitor-1/goals/').json()['data']
        assert totals['conversions'] == 1


# ==============================================================================
# Presence
# ==============================================================================


@pytest.mark.django_db
class TestPresence:

    def test_ping_and_idle(self, api_client, auth_client):
        response = api_client.post('/api/presence/', {
            'user_id': 'visitor-1', 'page_url': '/home', 'idle_time': 1000,
        }, format='json')
        assert response.status_code == 200
        assert response.json()['data']['is_active'] is True

        response = api_client.post('/api/presence/idle/', {
            'user_id': 'visitor-1', 'idle_time': 400000,
        }, format='json')
        assert response.status_code == 200
        assert Presence.objects.get(user_id='visitor-1').is_active is False

        active = auth_client.get('/api/presence/active/').json()
        assert active['count'] == 0

    def test_idle_for_unknown_user(self, api_client):
        response = api_client.post('/api/presence/idle/', {'user_id': 'ghost', 'idle_time': 5}, format='json')
        assert response.status_code == 404

    @patch('visits.views.broadcast_presence')
    def test_ping_is_broadcast(self, mock_broadcast, api_client):
        api_client.post('/api/presence/', {'user_id': 'visitor-1', 'page_url': '/a'}, format='json')

        payload = mock_broadcast.call_args[0][0]
        assert payload['user_id'] == 'visitor-1'
        assert payload['page_url'] == '/a'


# ==============================================================================
# Status
# ==============================================================================


@pytest.mark.django_db
class TestStatus:

    @patch('visits.views.Redis')
    def test_health(self, mock_redis, api_client):
        mock_redis.from_url.return_value = MagicMock()

        response = api_client.get('/api/health/')

        assert response.status_code == 200
        assert response.json()['status'] == 'healthy'

    @patch('visits.views.Redis')
    def test_health_degraded_without_redis(self, mock_redis, api_client):
        mock_redis.from_url.return_value.ping.side_effect = RedisConnectionError('refused')

        response = api_client.get('/api/health/')

        body = response.json()
        assert response.status_code == 200
        assert body['status'] == 'degraded'
        assert body['checks']['redis'] == 'unhealthy'

    @patch('visits.realtime.batch_queue_size', return_value=0)
    def test_metrics(self, mock_queue_size, auth_client, claimed):
        response = auth_client.get('/api/metrics/')

        data = response.json()['data']
        assert response.status_code == 200
        assert data['active_sessions'] == 1
        assert data['batch_queue'] == 0
