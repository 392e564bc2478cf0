# ==============================================================================
# Tests for the geolocation resolver: geolocation.py
# ==============================================================================
"""
The resolver must never raise and never return a placeholder country; the
network is mocked throughout.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from visits.geolocation import (
    DEFAULT_LOCATION,
    GeolocationResolver,
    classify_ip,
    complete_location,
    intelligent_fallback,
    parse_location,
)


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


IPAPI_CO_PAYLOAD = {
    'country_name': 'Germany',
    'city': 'Berlin',
    'region': 'Berlin',
    'timezone': 'Europe/Berlin',
    'ip': '8.8.8.8',
    'latitude': 52.52,
    'longitude': 13.40,
}


# ==============================================================================
# IP classification and fallback
# ==============================================================================


class TestClassifyIp:

    @pytest.mark.parametrize('ip,kind', [
        ('', 'empty'),
        (None, 'empty'),
        ('Unknown', 'empty'),
        ('not-an-ip', 'invalid'),
        ('127.0.0.1', 'loopback'),
        ('::1', 'loopback'),
        ('192.168.1.20', 'private'),
        ('10.0.0.5', 'private'),
        ('8.8.8.8', 'public'),
    ])
    def test_kinds(self, ip, kind):
        assert classify_ip(ip) == kind


class TestIntelligentFallback:

    def test_loopback_is_localhost(self):
        location = intelligent_fallback('127.0.0.1')
        assert location['city'] == 'Localhost'
        assert location['region'] == 'Development'
        assert location['country'] == DEFAULT_LOCATION['country']
        assert location['ip'] == '127.0.0.1'

    def test_private_network(self):
        location = intelligent_fallback('192.168.0.4')
        assert location['city'] == 'Local Network'
        assert location['region'] == 'Private IP'

    def test_empty_ip_gets_default(self):
        assert intelligent_fallback('') == DEFAULT_LOCATION

    def test_public_ip_keeps_default_city(self):
        location = intelligent_fallback('8.8.4.4')
        assert location['city'] == DEFAULT_LOCATION['city']
        assert location['ip'] == '8.8.4.4'


class TestCompleteLocation:

    def test_placeholders_are_replaced(self):
        location = complete_location({'country': 'Unknown', 'city': 'Paris', 'region': None})
        assert location['country'] == DEFAULT_LOCATION['country']
        assert location['city'] == 'Paris'
        assert location['region'] == DEFAULT_LOCATION['region']

    def test_ip_filled_in(self):
        assert complete_location({'country': 'France'}, '1.2.3.4')['ip'] == '1.2.3.4'


# ==============================================================================
# GeolocationResolver
# ==============================================================================


class TestGeolocationResolver:

    @patch('visits.geolocation.requests.get')
    def test_loopback_never_touches_network(self, mock_get):
        location, resolved = GeolocationResolver().lookup('127.0.0.1')

        assert location['city'] == 'Localhost'
        assert resolved is False
        mock_get.assert_not_called()

    @patch('visits.geolocation.requests.get')
    def test_public_ip_resolved_and_cached(self, mock_get):
        mock_get.return_value = _response(payload=IPAPI_CO_PAYLOAD)
        resolver = GeolocationResolver()

        first = resolver.resolve('8.8.8.8')
        second = resolver.resolve('8.8.8.8')

        assert first['country'] == 'Germany'
        assert first['city'] == 'Berlin'
        assert second == first
        assert mock_get.call_count == 1

    @patch('visits.geolocation.requests.get')
    def test_falls_through_to_next_service(self, mock_get):
        mock_get.side_effect = [
            _response(status_code=429),
            _response(payload={
                'country': 'Japan', 'city': 'Tokyo', 'regionName': 'Tokyo',
                'timezone': 'Asia/Tokyo', 'query': '8.8.8.8', 'lat': 35.68, 'lon': 139.69,
            }),
        ]

        location = GeolocationResolver().resolve('8.8.8.8')

        assert location['country'] == 'Japan'
        assert location['latitude'] == 35.68

    @patch('visits.geolocation.requests.get')
    def test_placeholder_country_is_not_accepted(self, mock_get):
        mock_get.return_value = _response(payload=dict(IPAPI_CO_PAYLOAD, country_name='Reserved'))

        location, resolved = GeolocationResolver().lookup('8.8.8.8')

        assert resolved is False
        assert location['country'] == DEFAULT_LOCATION['country']

    @patch('visits.geolocation.requests.get')
    def test_all_services_failing_gives_fallback(self, mock_get, caplog):
        mock_get.side_effect = requests.ConnectionError('offline')

        location, resolved = GeolocationResolver().lookup('8.8.8.8')

        assert resolved is False
        assert location['ip'] == '8.8.8.8'
        assert location['country'] == DEFAULT_LOCATION['country']
        assert 'using fallback' in caplog.text

    @patch('visits.geolocation.requests.get')
    def test_bad_json_is_a_failed_lookup(self, mock_get):
        response = _response()
        response.json.side_effect = ValueError('not json')
        mock_get.return_value = response

        location = GeolocationResolver().resolve('8.8.8.8')

        assert location['country'] == DEFAULT_LOCATION['country']


# ==============================================================================
# parse_location
# ==============================================================================


class TestParseLocation:

    @patch('visits.geolocation.requests.get')
    def test_client_location_is_trusted(self, mock_get):
        location, precise = parse_location({'country': 'Canada', 'city': 'Toronto'}, {}, '8.8.8.8')

        assert precise is True
        assert location['country'] == 'Canada'
        assert location['city'] == 'Toronto'
        assert location['timezone'] == DEFAULT_LOCATION['timezone']
        mock_get.assert_not_called()

    @patch('visits.geolocation.requests.get')
    def test_placeholder_client_location_is_ignored(self, mock_get):
        location, precise = parse_location({'country': 'Unknown'}, {}, '127.0.0.1')

        assert precise is False
        assert location['city'] == 'Localhost'
        mock_get.assert_not_called()
