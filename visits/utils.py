from user_agents import parse
from urllib.parse import urlparse, parse_qs
from django.utils import timezone
import hashlib
import secrets
import string

MAX_PAGE_SECONDS = 3600

SOCIAL_HOSTS = ['facebook', 'twitter', 'x.com', 'linkedin', 'instagram']
EMAIL_HOSTS = ['mail.', 'email', 'gmail']

FINGERPRINT_HEADERS = [
    'HTTP_USER_AGENT',
    'HTTP_ACCEPT_LANGUAGE',
    'HTTP_ACCEPT_ENCODING',
    None,  # resolved client IP goes here
    'HTTP_ACCEPT',
    'HTTP_CONNECTION',
]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def parse_user_agent(user_agent_string):
    """Parse user agent string to extract device/browser info"""
    user_agent = parse(user_agent_string or '')

    return {
        'device_type': get_device_type(user_agent),
        'browser_name': user_agent.browser.family,
        'browser_version': user_agent.browser.version_string,
        'os_name': user_agent.os.family,
        'os_version': user_agent.os.version_string,
    }


def get_device_type(user_agent):
    """Determine device type from user agent"""
    if user_agent.is_tablet:
        return 'tablet'
    elif user_agent.is_mobile:
        return 'mobile'
    return 'desktop'


def build_device_snapshot(device, user_agent_string):
    """
    Merge the client-reported device dict with what the user agent says.
    Client values win when present.
    """
    parsed = parse_user_agent(user_agent_string)
    device = device or {}
    device_type = device.get('device_type') or device.get('type') or parsed['device_type']
    if device_type not in ('desktop', 'mobile', 'tablet'):
        device_type = parsed['device_type']
    return {
        'device_type': device_type,
        'browser': device.get('browser') or parsed['browser_name'],
        'os': device.get('os') or parsed['os_name'],
        'screen_resolution': device.get('screen_resolution', ''),
        'language': device.get('language', ''),
    }


def direct_referrer(url='direct'):
    return {
        'url': url,
        'source': 'direct',
        'medium': 'none',
        'campaign': 'direct',
        'hostname': 'direct',
        'is_direct': True,
    }


def parse_referrer(referrer):
    """Attribute a referrer URL to a source/medium/campaign"""
    if isinstance(referrer, dict):
        referrer = referrer.get('url')
    if not referrer or referrer == 'direct':
        return direct_referrer()

    try:
        parsed = urlparse(referrer)
        hostname = (parsed.hostname or '').lower()
        query = parse_qs(parsed.query)
    except ValueError:
        return direct_referrer(referrer)

    if not hostname:
        return direct_referrer(referrer)
    if hostname.startswith('www.'):
        hostname = hostname[4:]

    source, medium, campaign = hostname, 'referral', 'referral'
    if 'google' in hostname:
        search_term = query.get('q', [''])[0]
        source, medium = 'google', 'organic'
        campaign = f"search:{search_term[:50]}" if search_term else 'organic'
    elif 'bing' in hostname:
        source, medium, campaign = 'bing', 'organic', 'organic'
    elif any(host in hostname for host in SOCIAL_HOSTS):
        source, medium, campaign = hostname.split('.')[0], 'social', 'social'
    elif any(host in hostname for host in EMAIL_HOSTS):
        source, medium, campaign = hostname, 'email', 'email'

    # Explicit UTM tags override the inferred attribution
    source = query.get('utm_source', [source])[0]
    medium = query.get('utm_medium', [medium])[0]
    campaign = query.get('utm_campaign', [campaign])[0]

    return {
        'url': referrer,
        'source': source,
        'medium': medium,
        'campaign': campaign,
        'hostname': hostname,
        'is_direct': False,
    }


def get_client_ip(request):
    """Get client IP address from request headers, proxies first"""
    meta = request.META
    x_forwarded_for = meta.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return (
        meta.get('HTTP_X_REAL_IP')
        or meta.get('HTTP_X_CLIENT_IP')
        or meta.get('REMOTE_ADDR')
        or ''
    )


def device_fingerprint(meta, client_ip):
    """MD5 over the request headers that tend to be stable per device"""
    parts = []
    for header in FINGERPRINT_HEADERS:
        if header is None:
            parts.append(client_ip or '')
        else:
            parts.append(meta.get(header, ''))
    return hashlib.md5('|'.join(parts).encode('utf-8')).hexdigest()


def generate_event_id(prefix='evt'):
    """``<prefix>_<ms-timestamp>_<random>``"""
    millis = int(timezone.now().timestamp() * 1000)
    suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{millis}_{suffix}"


def normalize_stay_duration(value):
    """
    Client stay durations arrive in either seconds or milliseconds.
    Anything >= 1000 is taken as milliseconds.
    """
    try:
        value = float(value or 0)
    except (TypeError, ValueError):
        return 0
    if value >= 1000:
        value = value / 1000
    return int(round(value))


def page_duration_in_bounds(seconds):
    return 0 < seconds <= MAX_PAGE_SECONDS
