from django.contrib import admin

from .models import Event, Funnel, Goal, Page, Presence, Segment, Session, StreamEvent, Visitor


@admin.register(Visitor)
class VisitorAdmin(admin.ModelAdmin):
    list_display = ['user_id', 'status', 'is_online', 'country', 'device_type', 'total_sessions', 'last_active_at']
    list_filter = ['status', 'is_online', 'device_type', 'country']
    search_fields = ['user_id', 'anonymous_id', 'city']
    readonly_fields = ['first_seen', 'created_at', 'updated_at']


@admin.register(Session)
class SessionAdmin(admin.ModelAdmin):
    list_display = ['session_id', 'visitor', 'is_active', 'device_type', 'country', 'start_time', 'duration']
    list_filter = ['is_active', 'device_type', 'browser_name', 'country', 'start_time']
    search_fields = ['session_id', 'visitor__user_id']
    readonly_fields = ['start_time', 'duration']


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ['event_id', 'event_type', 'event_name', 'user_id', 'ingest_mode', 'timestamp']
    list_filter = ['event_type', 'ingest_mode', 'website_type', 'timestamp']
    search_fields = ['event_id', 'user_id', 'session_id', 'event_name', 'page_url']


@admin.register(StreamEvent)
class StreamEventAdmin(admin.ModelAdmin):
    list_display = ['event_id', 'event_type', 'stream_source', 'processing_status', 'retry_count', 'created_at']
    list_filter = ['processing_status', 'stream_source']
    search_fields = ['event_id', 'user_id']


@admin.register(Presence)
class PresenceAdmin(admin.ModelAdmin):
    list_display = ['user_id', 'page_url', 'is_active', 'device_type', 'last_ping']
    list_filter = ['is_active', 'device_type']
    search_fields = ['user_id', 'page_url']


@admin.register(Page)
class PageAdmin(admin.ModelAdmin):
    list_display = ['page_url', 'title', 'total_views', 'unique_users', 'avg_duration']
    search_fields = ['page_url', 'title']


admin.site.register(Funnel)
admin.site.register(Segment)
admin.site.register(Goal)
