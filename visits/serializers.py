from rest_framework import serializers

from .analytics import rule_condition
from .exceptions import ValidationFailed
from .lifecycle import ACTION_TYPES
from .models import (
    DEVICE_TYPE_CHOICES, EVENT_TYPES, WEBSITE_TYPE_CHOICES,
    Event, Funnel, Goal, Presence, Segment, Session, StreamEvent, Visitor,
)


class ClaimSerializer(serializers.Serializer):
    """One visitor action: page view, heartbeat or page leave"""
    user_id = serializers.CharField(max_length=255)
    action_type = serializers.ChoiceField(choices=ACTION_TYPES, required=False, default='page_view')
    device = serializers.DictField(required=False, default=dict)
    location = serializers.DictField(required=False, allow_null=True)
    referrer = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    current_page = serializers.DictField(required=False, allow_null=True)
    page_stay_duration = serializers.FloatField(required=False, default=0, min_value=0)
    events = serializers.ListField(child=serializers.DictField(), required=False, default=list)
    is_after_reset = serializers.BooleanField(required=False, default=False)


class EventSerializer(serializers.Serializer):
    event_id = serializers.CharField(max_length=255, required=False, allow_blank=True)
    user_id = serializers.CharField(max_length=255)
    session_id = serializers.CharField(max_length=255)
    event_type = serializers.ChoiceField(choices=EVENT_TYPES)
    event_name = serializers.CharField(max_length=255)
    timestamp = serializers.DateTimeField(required=False)
    duration = serializers.IntegerField(required=False, min_value=0, default=0)
    page_url = serializers.CharField(max_length=2048, required=False, allow_blank=True)
    page_title = serializers.CharField(max_length=255, required=False, allow_blank=True)
    metadata = serializers.JSONField(required=False, default=dict)
    website_type = serializers.ChoiceField(choices=WEBSITE_TYPE_CHOICES, required=False, default='ecommerce')


class StreamEventSerializer(serializers.Serializer):
    event_id = serializers.CharField(max_length=255, required=False, allow_blank=True)
    user_id = serializers.CharField(max_length=255)
    event_type = serializers.CharField(max_length=50)
    timestamp = serializers.DateTimeField(required=False)
    stream_source = serializers.ChoiceField(
        choices=StreamEvent.STREAM_SOURCES, required=False, default='direct'
    )
    event_data = serializers.JSONField(required=False, default=dict)


class SessionStartSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=255)
    device = serializers.DictField(required=False, default=dict)
    location = serializers.DictField(required=False, allow_null=True)
    referrer = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    current_page = serializers.DictField(required=False, allow_null=True)


class PresenceSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=255)
    session_id = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    page_url = serializers.CharField(max_length=2048, required=False, allow_blank=True, default='')
    device_type = serializers.ChoiceField(choices=DEVICE_TYPE_CHOICES, required=False, default='desktop')
    idle_time = serializers.IntegerField(required=False, min_value=0, default=0)


class IdleSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=255)
    idle_time = serializers.IntegerField(min_value=0)


class FunnelStepSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    event_type = serializers.ChoiceField(choices=EVENT_TYPES)
    event_name = serializers.CharField(max_length=255, required=False, allow_blank=True)


class FunnelSerializer(serializers.ModelSerializer):
    steps = FunnelStepSerializer(many=True)

    class Meta:
        model = Funnel
        fields = [
            'id', 'name', 'description', 'website_type', 'steps', 'is_active',
            'analytics', 'analytics_updated_at', 'created_at', 'updated_at',
        ]
        read_only_fields = ['id', 'analytics', 'analytics_updated_at', 'created_at', 'updated_at']

    def validate_steps(self, steps):
        if not 2 <= len(steps) <= 10:
            raise serializers.ValidationError('A funnel needs between 2 and 10 steps')
        return steps

    def create(self, validated_data):
        validated_data['steps'] = [dict(step) for step in validated_data['steps']]
        return Funnel.objects.create(**validated_data)


class SegmentSerializer(serializers.ModelSerializer):

    class Meta:
        model = Segment
        fields = [
            'id', 'name', 'description', 'website_type', 'rules', 'member_count',
            'is_dynamic', 'is_active', 'created_at', 'updated_at',
        ]
        read_only_fields = ['id', 'member_count', 'created_at', 'updated_at']

    def validate_rules(self, rules):
        if not isinstance(rules, list):
            raise serializers.ValidationError('rules must be a list')
        for rule in rules:
            if not isinstance(rule, dict):
                raise serializers.ValidationError('every rule must be an object')
            try:
                rule_condition(rule)
            except ValidationFailed as e:
                raise serializers.ValidationError(str(e))
        return rules


class GoalSerializer(serializers.ModelSerializer):

    class Meta:
        model = Goal
        fields = [
            'id', 'name', 'description', 'website_type', 'user_id', 'session_id',
            'event_type', 'event_name', 'value', 'funnel', 'funnel_step', 'properties',
            'is_conversion', 'conversion_value', 'timestamp',
        ]
        read_only_fields = ['id']


class VisitorSerializer(serializers.ModelSerializer):
    location = serializers.DictField(read_only=True)
    activity_status = serializers.CharField(read_only=True)

    class Meta:
        model = Visitor
        fields = [
            'user_id', 'status', 'is_online', 'activity_status', 'first_seen', 'last_seen',
            'last_active_at', 'device_type', 'browser_name', 'os_name', 'screen_resolution',
            'language', 'location', 'referrer_source', 'referrer_medium', 'referrer_campaign',
            'is_direct', 'total_sessions', 'total_time_spent', 'total_events',
            'avg_session_time', 'last_session_at',
        ]


class SessionSerializer(serializers.ModelSerializer):
    user_id = serializers.CharField(source='visitor.user_id', read_only=True)
    location = serializers.DictField(read_only=True)

    class Meta:
        model = Session
        fields = [
            'session_id', 'user_id', 'start_time', 'end_time', 'duration', 'last_activity',
            'is_active', 'page_sequence', 'total_events', 'referrer_source', 'referrer_medium',
            'referrer_campaign', 'device_type', 'browser_name', 'os_name', 'location',
            'session_class', 'class_score',
        ]


class EventReadSerializer(serializers.ModelSerializer):

    class Meta:
        model = Event
        fields = [
            'event_id', 'user_id', 'session_id', 'event_type', 'event_name', 'timestamp',
            'duration', 'page_url', 'page_title', 'metadata', 'website_type', 'ingest_mode',
            'country', 'city', 'event_class', 'class_score',
        ]


class StreamEventReadSerializer(serializers.ModelSerializer):

    class Meta:
        model = StreamEvent
        fields = [
            'event_id', 'user_id', 'event_type', 'timestamp', 'stream_source',
            'processing_status', 'event_data', 'processed_at', 'error_message',
            'retry_count', 'created_at',
        ]


class PresenceReadSerializer(serializers.ModelSerializer):

    class Meta:
        model = Presence
        fields = [
            'user_id', 'session_id', 'page_url', 'last_ping', 'is_active',
            'idle_time', 'device_type', 'country', 'city',
        ]
