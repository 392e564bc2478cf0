from django.db import models
from django.db.models import Q, Sum
from django.utils import timezone
import uuid
from datetime import timedelta

from .geolocation import DEFAULT_LOCATION

WEBSITE_TYPE_CHOICES = [
    ('ecommerce', 'E-commerce'),
    ('awareness', 'Awareness'),
]

DEVICE_TYPE_CHOICES = [
    ('desktop', 'Desktop'),
    ('mobile', 'Mobile'),
    ('tablet', 'Tablet'),
]

EVENT_TYPES = [
    'page_view', 'click', 'form_start', 'form_submit', 'scroll',
    'video_play', 'video_pause', 'video_complete', 'purchase',
    'newsletter_signup', 'download', 'custom',
]

CONVERSION_EVENT_TYPES = ['purchase', 'form_submit', 'newsletter_signup']


def generate_session_id():
    return str(uuid.uuid4())


class Visitor(models.Model):
    STATUS_CHOICES = [
        ('new', 'New'),
        ('returning', 'Returning'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(max_length=255, unique=True)
    anonymous_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    first_seen = models.DateTimeField(default=timezone.now, db_index=True)
    last_seen = models.DateTimeField(default=timezone.now)
    last_active_at = models.DateTimeField(default=timezone.now, db_index=True)
    is_online = models.BooleanField(default=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='new')

    # Device snapshot
    device_type = models.CharField(max_length=20, default='desktop')
    browser_name = models.CharField(max_length=100, blank=True, default='')
    os_name = models.CharField(max_length=100, blank=True, default='')
    screen_resolution = models.CharField(max_length=50, blank=True, default='')
    language = models.CharField(max_length=35, blank=True, default='')

    # Location (always populated, see geolocation.DEFAULT_LOCATION)
    country = models.CharField(max_length=100, default=DEFAULT_LOCATION['country'])
    city = models.CharField(max_length=100, default=DEFAULT_LOCATION['city'])
    region = models.CharField(max_length=100, default=DEFAULT_LOCATION['region'])
    time_zone = models.CharField(max_length=64, default=DEFAULT_LOCATION['timezone'])
    ip_address = models.CharField(max_length=64, default=DEFAULT_LOCATION['ip'])
    latitude = models.FloatField(default=DEFAULT_LOCATION['latitude'])
    longitude = models.FloatField(default=DEFAULT_LOCATION['longitude'])

    # Referrer attribution
    referrer_url = models.CharField(max_length=2048, default='direct')
    referrer_source = models.CharField(max_length=255, default='direct')
    referrer_medium = models.CharField(max_length=100, default='none')
    referrer_campaign = models.CharField(max_length=255, default='direct')
    is_direct = models.BooleanField(default=True)

    # Engagement aggregate
    total_sessions = models.IntegerField(default=0)
    total_time_spent = models.IntegerField(default=0)  # seconds
    total_events = models.IntegerField(default=0)
    avg_session_time = models.FloatField(default=0.0)  # seconds
    last_session_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['is_online', 'last_active_at']),
            models.Index(fields=['country', 'first_seen']),
            models.Index(fields=['device_type', 'first_seen']),
        ]

    def __str__(self):
        return f"{self.user_id} ({self.status})"

    @property
    def location(self):
        return {
            'country': self.country,
            'city': self.city,
            'region': self.region,
            'timezone': self.time_zone,
            'ip': self.ip_address,
            'latitude': self.latitude,
            'longitude': self.longitude,
        }

    @property
    def activity_status(self):
        if self.last_active_at >= timezone.now() - timedelta(minutes=5):
            return 'active'
        return 'offline'

    def apply_location(self, location):
        """Copy a resolved location onto the visitor, keeping known values for gaps"""
        if not location:
            return
        self.country = location.get('country') or self.country
        self.city = location.get('city') or self.city
        self.region = location.get('region') or self.region
        self.time_zone = location.get('timezone') or self.time_zone
        if location.get('ip') and location['ip'] != 'Unknown':
            self.ip_address = location['ip']
        if location.get('latitude') is not None and location.get('longitude') is not None:
            self.latitude = location['latitude']
            self.longitude = location['longitude']

    def apply_device(self, device):
        if not device:
            return
        self.device_type = device.get('device_type') or self.device_type
        self.browser_name = device.get('browser') or device.get('browser_name') or self.browser_name
        self.os_name = device.get('os') or device.get('os_name') or self.os_name
        self.screen_resolution = device.get('screen_resolution') or self.screen_resolution
        self.language = device.get('language') or self.language

    def apply_referrer(self, referrer):
        if not referrer:
            return
        self.referrer_url = referrer['url']
        self.referrer_source = referrer['source']
        self.referrer_medium = referrer['medium']
        self.referrer_campaign = referrer['campaign']
        self.is_direct = referrer['is_direct']

    def recompute_engagement(self, save=True):
        """
        Rebuild the engagement aggregate from the full session history.
        Always a full recomputation so concurrent writers converge.
        """
        sessions = self.sessions.all()
        totals = sessions.aggregate(time_spent=Sum('duration'))
        self.total_sessions = sessions.count()
        self.total_time_spent = totals['time_spent'] or 0
        self.total_events = Event.objects.filter(user_id=self.user_id).count()
        self.avg_session_time = (
            self.total_time_spent / self.total_sessions if self.total_sessions else 0.0
        )
        latest = sessions.order_by('-start_time').values_list('start_time', flat=True).first()
        if latest:
            self.last_session_at = latest
        if save:
            self.save(update_fields=[
                'total_sessions', 'total_time_spent', 'total_events',
                'avg_session_time', 'last_session_at', 'updated_at',
            ])


class Session(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    session_id = models.CharField(max_length=255, unique=True, default=generate_session_id)
    visitor = models.ForeignKey(Visitor, on_delete=models.CASCADE, related_name='sessions')
    start_time = models.DateTimeField(default=timezone.now, db_index=True)
    end_time = models.DateTimeField(null=True, blank=True)
    duration = models.IntegerField(default=0)  # seconds
    last_activity = models.DateTimeField(default=timezone.now)
    is_active = models.BooleanField(default=True)
    page_sequence = models.JSONField(default=list, blank=True)
    total_events = models.IntegerField(default=0)

    # Referrer
    referrer_url = models.CharField(max_length=2048, default='direct')
    referrer_source = models.CharField(max_length=255, default='direct')
    referrer_medium = models.CharField(max_length=100, default='none')
    referrer_campaign = models.CharField(max_length=255, default='direct')

    # Device snapshot
    user_agent = models.TextField(blank=True, default='')
    device_type = models.CharField(max_length=20, default='desktop')
    browser_name = models.CharField(max_length=100, blank=True, default='')
    os_name = models.CharField(max_length=100, blank=True, default='')
    screen_resolution = models.CharField(max_length=50, blank=True, default='')
    language = models.CharField(max_length=35, blank=True, default='')

    # Location snapshot
    ip_address = models.CharField(max_length=64, default=DEFAULT_LOCATION['ip'])
    country = models.CharField(max_length=100, default=DEFAULT_LOCATION['country'])
    region = models.CharField(max_length=100, default=DEFAULT_LOCATION['region'])
    city = models.CharField(max_length=100, default=DEFAULT_LOCATION['city'])
    time_zone = models.CharField(max_length=64, default=DEFAULT_LOCATION['timezone'])
    latitude = models.FloatField(default=DEFAULT_LOCATION['latitude'])
    longitude = models.FloatField(default=DEFAULT_LOCATION['longitude'])

    # Output of the classification hook
    session_class = models.CharField(max_length=50, blank=True, default='')
    class_score = models.FloatField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['visitor'],
                condition=Q(is_active=True),
                name='one_active_session_per_visitor',
            ),
        ]
        indexes = [
            models.Index(fields=['visitor', 'start_time']),
            models.Index(fields=['is_active', 'last_activity']),
            models.Index(fields=['device_type', 'start_time']),
            models.Index(fields=['country', 'start_time']),
        ]

    def __str__(self):
        return self.session_id

    def calculate_duration(self, now=None):
        end = self.end_time or now or timezone.now()
        return max(int(round((end - self.start_time).total_seconds())), 0)

    def save(self, *args, **kwargs):
        self.duration = self.calculate_duration()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and 'duration' not in update_fields:
            kwargs['update_fields'] = list(update_fields) + ['duration']
        super().save(*args, **kwargs)

    def close(self, now=None):
        self.is_active = False
        self.end_time = now or timezone.now()

    def apply_location(self, location):
        if not location:
            return
        self.country = location.get('country') or self.country
        self.city = location.get('city') or self.city
        self.region = location.get('region') or self.region
        self.time_zone = location.get('timezone') or self.time_zone
        if location.get('ip') and location['ip'] != 'Unknown':
            self.ip_address = location['ip']
        if location.get('latitude') is not None and location.get('longitude') is not None:
            self.latitude = location['latitude']
            self.longitude = location['longitude']

    @property
    def location(self):
        return {
            'country': self.country,
            'city': self.city,
            'region': self.region,
            'timezone': self.time_zone,
            'ip': self.ip_address,
            'latitude': self.latitude,
            'longitude': self.longitude,
        }


class Event(models.Model):
    INGEST_MODES = [
        ('claim', 'Visitor action'),
        ('single', 'Single'),
        ('batch', 'Batch'),
        ('queued', 'Queued'),
        ('stream', 'Stream'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event_id = models.CharField(max_length=255, unique=True)
    user_id = models.CharField(max_length=255, db_index=True)
    session_id = models.CharField(max_length=255, db_index=True)
    event_type = models.CharField(max_length=50, choices=[(t, t) for t in EVENT_TYPES])
    event_name = models.CharField(max_length=255)
    timestamp = models.DateTimeField(default=timezone.now, db_index=True)
    duration = models.IntegerField(default=0)
    page_url = models.CharField(max_length=2048, blank=True, default='')
    page_title = models.CharField(max_length=255, blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)

    website_type = models.CharField(max_length=20, choices=WEBSITE_TYPE_CHOICES, default='ecommerce')
    ingest_mode = models.CharField(max_length=20, choices=INGEST_MODES, default='single')
    device_fingerprint = models.CharField(max_length=64, blank=True, default='')
    country = models.CharField(max_length=100, blank=True, default='')
    city = models.CharField(max_length=100, blank=True, default='')

    # Output of the classification hook
    event_class = models.CharField(max_length=50, blank=True, default='')
    class_score = models.FloatField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['user_id', 'timestamp']),
            models.Index(fields=['session_id', 'timestamp']),
            models.Index(fields=['event_type', 'timestamp']),
            models.Index(fields=['event_type', 'event_name']),
        ]

    def __str__(self):
        return f"{self.event_type}:{self.event_name} ({self.event_id})"


class Presence(models.Model):
    user_id = models.CharField(max_length=255, unique=True)
    session_id = models.CharField(max_length=255, blank=True, default='')
    page_url = models.CharField(max_length=2048, blank=True, default='')
    last_ping = models.DateTimeField(default=timezone.now, db_index=True)
    is_active = models.BooleanField(default=True)
    idle_time = models.IntegerField(default=0)  # milliseconds
    device_type = models.CharField(max_length=20, choices=DEVICE_TYPE_CHOICES, default='desktop')
    country = models.CharField(max_length=100, blank=True, default='')
    city = models.CharField(max_length=100, blank=True, default='')
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user_id} @ {self.page_url}"


class StreamEvent(models.Model):
    STREAM_SOURCES = [
        ('kafka', 'Kafka'),
        ('kinesis', 'Kinesis'),
        ('pubsub', 'Pub/Sub'),
        ('direct', 'Direct'),
    ]
    PROCESSING_STATUSES = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event_id = models.CharField(max_length=255, unique=True)
    user_id = models.CharField(max_length=255, db_index=True)
    event_type = models.CharField(max_length=50)
    timestamp = models.DateTimeField(default=timezone.now, db_index=True)
    stream_source = models.CharField(max_length=20, choices=STREAM_SOURCES, default='direct')
    processing_status = models.CharField(
        max_length=20, choices=PROCESSING_STATUSES, default='pending', db_index=True
    )
    event_data = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True, default='')
    retry_count = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['processing_status', 'timestamp']),
            models.Index(fields=['stream_source', 'timestamp']),
        ]


class Page(models.Model):
    page_url = models.CharField(max_length=2048, unique=True)
    title = models.CharField(max_length=255, blank=True, default='Unknown Page')
    total_views = models.IntegerField(default=0)
    unique_users = models.IntegerField(default=0)
    total_time_spent = models.IntegerField(default=0)  # seconds
    avg_duration = models.FloatField(default=0.0)
    referrer_sources = models.JSONField(default=list, blank=True)
    last_viewed_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return self.page_url


class Funnel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    website_type = models.CharField(max_length=20, choices=WEBSITE_TYPE_CHOICES, default='ecommerce')
    steps = models.JSONField(default=list)
    is_active = models.BooleanField(default=True)

    # Last computed analytics
    analytics = models.JSONField(default=dict, blank=True)
    analytics_updated_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class Segment(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    website_type = models.CharField(max_length=20, choices=WEBSITE_TYPE_CHOICES, default='ecommerce')
    rules = models.JSONField(default=list)
    member_count = models.IntegerField(default=0)
    is_dynamic = models.BooleanField(default=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class Goal(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    website_type = models.CharField(max_length=20, choices=WEBSITE_TYPE_CHOICES, default='ecommerce')
    user_id = models.CharField(max_length=255, db_index=True)
    session_id = models.CharField(max_length=255, blank=True, default='')
    event_type = models.CharField(max_length=50, blank=True, default='')
    event_name = models.CharField(max_length=255, blank=True, default='')
    value = models.FloatField(default=0.0)
    funnel = models.ForeignKey(Funnel, on_delete=models.SET_NULL, null=True, blank=True, related_name='goals')
    funnel_step = models.IntegerField(null=True, blank=True)
    properties = models.JSONField(default=dict, blank=True)
    is_conversion = models.BooleanField(default=False)
    conversion_value = models.FloatField(default=0.0)
    timestamp = models.DateTimeField(default=timezone.now, db_index=True)

    def __str__(self):
        return f"{self.name} ({self.user_id})"


class PageVisitor(models.Model):
    """One row per (page, visitor) pair, backing ``Page.unique_users``"""
    page = models.ForeignKey(Page, on_delete=models.CASCADE, related_name='visitors')
    user_id = models.CharField(max_length=255)
    first_visit = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ['page', 'user_id']
