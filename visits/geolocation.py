"""
IP geolocation with an ordered chain of lookup services.

``GeolocationResolver.resolve`` never raises and never hands back a
placeholder country: every path ends in a complete location dict, either
from a lookup service, the cache, or the deterministic fallback below.
"""
import ipaddress
import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = {
    'country': 'India',
    'city': 'Mumbai',
    'region': 'Maharashtra',
    'timezone': 'Asia/Calcutta',
    'ip': 'Unknown',
    'latitude': 19.0760,
    'longitude': 72.8777,
}

PLACEHOLDER_VALUES = {'', 'Unknown', 'Reserved'}

LOOKUP_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
}


class GeoService:
    """One external lookup service and the mapper for its response shape"""

    def __init__(self, name, auto_url, ip_url, mapper):
        self.name = name
        self.auto_url = auto_url
        self.ip_url = ip_url
        self.mapper = mapper

    def url_for(self, ip=None):
        if ip:
            return self.ip_url.format(ip=ip)
        return self.auto_url

    def __repr__(self):
        return f"GeoService({self.name})"


def map_ipapi_co(data):
    return {
        'country': data.get('country_name'),
        'city': data.get('city'),
        'region': data.get('region'),
        'timezone': data.get('timezone'),
        'ip': data.get('ip'),
        'latitude': data.get('latitude'),
        'longitude': data.get('longitude'),
    }


def map_ip_api_com(data):
    return {
        'country': data.get('country'),
        'city': data.get('city'),
        'region': data.get('regionName'),
        'timezone': data.get('timezone'),
        'ip': data.get('query'),
        'latitude': data.get('lat'),
        'longitude': data.get('lon'),
    }


def map_ipapi_com(data):
    time_zone = data.get('time_zone') or {}
    return {
        'country': data.get('country_name'),
        'city': data.get('city'),
        'region': data.get('region_name'),
        'timezone': time_zone.get('id') if isinstance(time_zone, dict) else None,
        'ip': data.get('ip'),
        'latitude': data.get('latitude'),
        'longitude': data.get('longitude'),
    }


def default_services(ipapi_access_key=None):
    services = [
        GeoService('ipapi', 'https://ipapi.co/json/', 'https://ipapi.co/{ip}/json/', map_ipapi_co),
        GeoService('ip-api', 'http://ip-api.com/json/', 'http://ip-api.com/json/{ip}', map_ip_api_com),
    ]
    if ipapi_access_key:
        services.append(GeoService(
            'ipapi-com',
            f'https://api.ipapi.com/api/check?access_key={ipapi_access_key}',
            'https://api.ipapi.com/api/{ip}?access_key=' + ipapi_access_key,
            map_ipapi_com,
        ))
    return services


def classify_ip(ip):
    """Return one of ``empty``, ``invalid``, ``loopback``, ``private`` or ``public``"""
    if not ip or ip == 'Unknown':
        return 'empty'
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return 'invalid'
    if address.version == 6 and address.ipv4_mapped:
        address = address.ipv4_mapped
    if address.is_loopback:
        return 'loopback'
    if address.is_private:
        return 'private'
    return 'public'


def is_valid_location(location):
    """A lookup result counts only if it names a real country"""
    if not location:
        return False
    country = location.get('country')
    return bool(country) and country not in PLACEHOLDER_VALUES


def complete_location(location, ip=None):
    """Fill every missing field from the default location"""
    merged = dict(DEFAULT_LOCATION)
    for key, value in (location or {}).items():
        if key not in merged or value is None:
            continue
        if isinstance(value, str) and value in PLACEHOLDER_VALUES:
            continue
        merged[key] = value
    if ip and merged['ip'] in PLACEHOLDER_VALUES:
        merged['ip'] = ip
    return merged


def intelligent_fallback(ip):
    """
    Deterministic location derived from the literal IP string alone.

    - empty: the default urban location
    - loopback: "Localhost" / "Development"
    - RFC1918 private: "Local Network" / "Private IP"
    - anything else: the default location, tagged with the IP
    """
    kind = classify_ip(ip)
    if kind == 'empty':
        return dict(DEFAULT_LOCATION)
    location = dict(DEFAULT_LOCATION, ip=ip)
    if kind == 'loopback':
        location.update(city='Localhost', region='Development')
    elif kind == 'private':
        location.update(city='Local Network', region='Private IP')
    return location


class GeolocationResolver:
    """
    Resolve a client IP to ``{country, city, region, timezone, ip, latitude,
    longitude}``.

    Public IPs are looked up against each service in order, with a short
    timeout, and cached by IP for 24 hours. Absent or private IPs (and public
    IPs every service failed for) are retried in auto-detect mode. Whatever
    is still unresolved gets ``intelligent_fallback``. Loopback addresses
    skip the network entirely.
    """

    def __init__(self, services=None, cache=None, timeout=None):
        from django.conf import settings

        from .cache import LookupCache
        from .conf import visits_setting

        access_key = getattr(settings, 'IPAPI_ACCESS_KEY', None)
        self.services = services if services is not None else default_services(access_key)
        self.cache = cache or LookupCache()
        self.timeout = timeout or visits_setting('GEO_TIMEOUT')

    def resolve(self, ip):
        location, _ = self.lookup(ip)
        return location

    def lookup(self, ip):
        """
        Like ``resolve`` but also reports whether a real lookup (or cached
        lookup) produced the answer, as opposed to the fallback.
        """
        kind = classify_ip(ip)
        if kind == 'loopback':
            return intelligent_fallback(ip), False

        if kind == 'public':
            cached = self.cache.get_location(ip)
            if cached:
                return cached, True
            for service in self.services:
                location = self._query(service, ip)
                if location:
                    location = complete_location(location, ip)
                    self.cache.set_location(ip, location)
                    return location, True

        for service in self.services:
            location = self._query(service)
            if location:
                return complete_location(location, ip if kind == 'public' else None), True

        logger.warning(f"All geolocation services failed for ip={ip!r}, using fallback")
        return intelligent_fallback(ip), False

    def _query(self, service, ip=None):
        try:
            response = requests.get(
                service.url_for(ip), headers=LOOKUP_HEADERS, timeout=self.timeout
            )
            if response.status_code != 200:
                logger.warning(f"{service.name} returned {response.status_code} for ip={ip!r}")
                return None
            location = service.mapper(response.json())
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"{service.name} lookup failed for ip={ip!r}: {e}")
            return None

        if not is_valid_location(location):
            return None
        return location


LOCALE_HINTS = [
    # (language prefix, timezone prefix, location)
    ('en-US', 'America/', {
        'country': 'United States', 'city': 'New York', 'region': 'New York',
        'timezone': 'America/New_York', 'latitude': 40.7128, 'longitude': -74.0060,
    }),
    ('en-GB', 'Europe/London', {
        'country': 'United Kingdom', 'city': 'London', 'region': 'England',
        'timezone': 'Europe/London', 'latitude': 51.5074, 'longitude': -0.1278,
    }),
    ('en-IN', 'Asia/Kolkata', {
        'country': 'India', 'city': 'Mumbai', 'region': 'Maharashtra',
        'timezone': 'Asia/Calcutta', 'latitude': 19.0760, 'longitude': 72.8777,
    }),
]


def locale_location(language, time_zone):
    """Guess a coarse location from browser language and timezone headers"""
    if time_zone == 'Asia/Calcutta':
        time_zone = 'Asia/Kolkata'
    for language_prefix, zone_prefix, location in LOCALE_HINTS:
        if language.startswith(language_prefix) or time_zone.startswith(zone_prefix):
            hinted = dict(location)
            if time_zone and time_zone != 'Asia/Kolkata':
                hinted['timezone'] = time_zone
            return hinted
    return None


def has_client_location(location):
    if not isinstance(location, dict):
        return False
    if location.get('country') not in (None, *PLACEHOLDER_VALUES):
        return True
    if location.get('city') not in (None, *PLACEHOLDER_VALUES):
        return True
    return location.get('latitude') is not None and location.get('longitude') is not None


def parse_location(client_location, meta, client_ip, resolver=None):
    """
    Decide the location of a visitor action.

    1. A client-supplied location with a real country, city or coordinate
       pair is trusted and merged over the defaults.
    2. Otherwise the client IP is resolved.
    3. If resolution only reached the fallback, the Accept-Language and
       timezone headers may still point at a better default city.

    Returns ``(location, precise)``; ``precise`` is False when the answer
    came from a fallback or a locale guess.
    """
    if has_client_location(client_location):
        return complete_location(client_location, client_ip), True

    resolver = resolver or GeolocationResolver()
    location, resolved = resolver.lookup(client_ip)
    if resolved:
        return location, True

    language = (meta.get('HTTP_ACCEPT_LANGUAGE') or 'en-IN').split(',')[0].strip()
    time_zone = (
        meta.get('HTTP_TIMEZONE')
        or meta.get('HTTP_X_TIMEZONE')
        or meta.get('HTTP_UTC_OFFSET')
        or ''
    )
    hinted = locale_location(language, time_zone)
    if hinted and classify_ip(client_ip) not in ('loopback', 'private'):
        return complete_location(hinted, client_ip), False
    return location, False
