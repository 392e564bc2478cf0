from django.core.cache import cache

from .conf import visits_setting


class LookupCache:
    """Caching layer for expensive repeated lookups (geolocation)"""

    def __init__(self, timeout=None):
        self.location_timeout = timeout or visits_setting('GEO_CACHE_TTL')

    def get_location(self, ip):
        """Get a cached location for an IP, or None"""
        return cache.get(self._location_key(ip))

    def set_location(self, ip, location):
        cache.set(self._location_key(ip), location, self.location_timeout)

    def _location_key(self, ip):
        return f"geo:{ip or 'auto'}"
