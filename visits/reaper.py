import logging

from django.db import transaction
from django.utils import timezone

from .conf import visits_setting
from .models import Presence, Session, Visitor

logger = logging.getLogger(__name__)


class PresenceReaper:
    """
    Periodic sweep closing sessions nobody is pinging any more.

    Runs from celery beat every couple of minutes and can race with request
    writes for the same visitor, so every session is re-checked under a row
    lock before it is closed.
    """

    def __init__(self, offline_threshold=None, presence_expiry=None):
        self.offline_threshold = offline_threshold or visits_setting('OFFLINE_THRESHOLD')
        self.presence_expiry = presence_expiry or visits_setting('PRESENCE_EXPIRY')

    def sweep(self, now=None):
        now = now or timezone.now()
        cutoff = now - self.offline_threshold

        affected = set()
        closed_sessions = 0
        candidates = Session.objects.filter(
            is_active=True, last_activity__lt=cutoff
        ).values_list('pk', flat=True)
        for pk in list(candidates):
            visitor_id = self.close_idle_session(pk, cutoff, now)
            if visitor_id is not None:
                closed_sessions += 1
                affected.add(visitor_id)

        offline_visitors = 0
        for visitor_id in affected:
            if self.settle_visitor(visitor_id):
                offline_visitors += 1

        # Online flags left behind without any session to back them
        offline_visitors += (
            Visitor.objects.filter(is_online=True, last_active_at__lt=cutoff)
            .exclude(sessions__is_active=True)
            .update(is_online=False)
        )

        expired_presence = Presence.objects.filter(
            is_active=True, last_ping__lt=now - self.presence_expiry
        ).update(is_active=False)

        logger.info(
            f"Reaper sweep: closed {closed_sessions} sessions, "
            f"{offline_visitors} visitors offline, {expired_presence} presence expired"
        )
        return {
            'closed_sessions': closed_sessions,
            'offline_visitors': offline_visitors,
            'expired_presence': expired_presence,
        }

    def close_idle_session(self, pk, cutoff, now):
        with transaction.atomic():
            session = (
                Session.objects.select_for_update()
                .filter(pk=pk, is_active=True, last_activity__lt=cutoff)
                .first()
            )
            if session is None:
                # Touched by a request since the candidate query
                return None
            session.close(now)
            session.save()
        logger.info(f"Reaped session {session.session_id} after {session.duration}s")
        return session.visitor_id

    def settle_visitor(self, visitor_id):
        """Mark offline unless a new session opened meanwhile; always recompute totals"""
        went_offline = False
        with transaction.atomic():
            visitor = Visitor.objects.select_for_update().filter(pk=visitor_id).first()
            if visitor is None:
                return False
            if visitor.is_online and not visitor.sessions.filter(is_active=True).exists():
                visitor.is_online = False
                visitor.save(update_fields=['is_online', 'updated_at'])
                went_offline = True
            visitor.recompute_engagement()
        return went_offline
