from django.urls import path
from . import views

urlpatterns = [
    # Visitor actions
    path('claim/', views.claim, name='claim'),

    # Visitors
    path('visitors/', views.visitor_list, name='visitor_list'),
    path('visitors/bulk-delete/', views.visitor_bulk_delete, name='visitor_bulk_delete'),
    path('visitors/<str:user_id>/', views.visitor_detail, name='visitor_detail'),
    path('visitors/<str:user_id>/sessions/', views.visitor_sessions, name='visitor_sessions'),
    path('visitors/<str:user_id>/engagement/', views.visitor_engagement, name='visitor_engagement'),
    path('visitors/<str:user_id>/goals/', views.visitor_goals, name='visitor_goals'),

    # Sessions
    path('sessions/stats/', views.session_stats, name='session_stats'),
    path('sessions/start/', views.start_session, name='start_session'),
    path('sessions/bulk-delete/', views.session_bulk_delete, name='session_bulk_delete'),
    path('sessions/purge/<str:variant>/', views.purge_sessions, name='purge_sessions'),
    path('sessions/<str:session_id>/end/', views.end_session, name='end_session'),
    path('sessions/<str:session_id>/events/', views.session_events, name='session_events'),
    path('sessions/<str:session_id>/engagement/', views.session_engagement, name='session_engagement'),

    # Events
    path('events/', views.ingest_event, name='ingest_event'),
    path('events/batch/', views.ingest_batch, name='ingest_batch'),
    path('events/export/', views.export_events, name='export_events'),

    # Stream buffer
    path('stream/events/', views.stream_events, name='stream_events'),
    path('stream/retry/', views.stream_retry, name='stream_retry'),
    path('stream/bulk-process/', views.stream_bulk_process, name='stream_bulk_process'),
    path('stream/analytics/', views.stream_analytics, name='stream_analytics'),

    # Funnels, segments, goals
    path('funnels/', views.funnel_list, name='funnel_list'),
    path('funnels/<uuid:funnel_id>/', views.funnel_detail, name='funnel_detail'),
    path('funnels/<uuid:funnel_id>/analytics/', views.funnel_analytics, name='funnel_analytics'),
    path('segments/', views.segment_list, name='segment_list'),
    path('segments/<uuid:segment_id>/', views.segment_detail, name='segment_detail'),
    path('segments/<uuid:segment_id>/members/', views.segment_members, name='segment_members'),
    path('goals/', views.create_goal, name='create_goal'),

    # Analytics endpoints
    path('analytics/reset/', views.reset_analytics, name='reset_analytics'),
    path('analytics/cohorts/', views.cohort_analysis, name='cohort_analysis'),
    path('analytics/paths/', views.path_analysis, name='path_analysis'),
    path('realtime/active-users/', views.active_users, name='active_users'),
    path('realtime/conversions/', views.conversion_feed, name='conversion_feed'),

    # Presence
    path('presence/', views.presence_ping, name='presence_ping'),
    path('presence/idle/', views.presence_idle, name='presence_idle'),
    path('presence/active/', views.presence_active, name='presence_active'),
    path('presence/analytics/', views.presence_analytics, name='presence_analytics'),

    # Status
    path('health/', views.health, name='health'),
    path('metrics/', views.metrics, name='metrics'),
]
