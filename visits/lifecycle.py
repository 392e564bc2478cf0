"""
Session lifecycle state machine.

Every visitor action (page view, heartbeat, page leave) is first classified
by ``decide`` into exactly one of the decision variants below, then handed
to the matching handler on ``SessionLifecycle``. ``decide`` is pure: it only
reads attributes off the visitor and session it is given, so the boundary
rules can be exercised without a database.

Heartbeats and page leaves from a visitor coming back online mark them as
returning but never open a session; only a page view starts the new visit.

Decision table, first match wins:

    reset flag set                                   -> NewVisitor(reset=True)
    no visitor row                                   -> NewVisitor
    heartbeat                                        -> Heartbeat
    page_leave                                       -> PageLeave
    page_view, visitor offline beyond the threshold  -> ReturningReactivation
    page_view, no active session or it timed out     -> PageViewNewSession
    page_view otherwise                              -> PageViewContinuation
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Union

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .conf import visits_setting
from .events import insert_new_events
from .exceptions import NotFound
from .geolocation import DEFAULT_LOCATION
from .models import EVENT_TYPES, Event, Session, Visitor
from .pages import record_page_time, record_page_view
from .utils import (
    direct_referrer,
    generate_event_id,
    normalize_stay_duration,
    page_duration_in_bounds,
)

logger = logging.getLogger(__name__)

ACTION_TYPES = ('page_view', 'heartbeat', 'page_leave')


@dataclass
class VisitorAction:
    """A single client ping, already enriched with location and device"""
    user_id: str
    action_type: str = 'page_view'
    device: dict = field(default_factory=dict)
    location: dict = field(default_factory=lambda: dict(DEFAULT_LOCATION))
    location_precise: bool = False
    referrer: dict = field(default_factory=direct_referrer)
    current_page: Optional[dict] = None
    page_stay_duration: float = 0
    events: list = field(default_factory=list)
    is_after_reset: bool = False
    user_agent: str = ''

    @property
    def page_url(self):
        return (self.current_page or {}).get('url')

    @property
    def page_title(self):
        return (self.current_page or {}).get('title') or 'Unknown'


# ==============================================================================
# Decisions
# ==============================================================================


@dataclass(frozen=True)
class NewVisitor:
    reset: bool = False


@dataclass(frozen=True)
class ReturningReactivation:
    previous_session: Optional[Session] = None


@dataclass(frozen=True)
class Heartbeat:
    session: Optional[Session] = None
    is_returning: bool = False


@dataclass(frozen=True)
class PageLeave:
    session: Optional[Session] = None
    is_returning: bool = False


@dataclass(frozen=True)
class PageViewNewSession:
    previous_session: Optional[Session] = None
    reason: str = 'no_active_session'


@dataclass(frozen=True)
class PageViewContinuation:
    session: Session


Decision = Union[
    NewVisitor,
    ReturningReactivation,
    Heartbeat,
    PageLeave,
    PageViewNewSession,
    PageViewContinuation,
]


def decide(action, visitor, active_session, now, session_timeout=None, offline_threshold=None):
    session_timeout = session_timeout or visits_setting('SESSION_TIMEOUT')
    offline_threshold = offline_threshold or visits_setting('OFFLINE_THRESHOLD')

    if action.is_after_reset:
        return NewVisitor(reset=True)
    if visitor is None:
        return NewVisitor()

    returning = not visitor.is_online and now - visitor.last_active_at > offline_threshold

    if action.action_type == 'heartbeat':
        return Heartbeat(session=active_session, is_returning=returning)
    if action.action_type == 'page_leave':
        return PageLeave(session=active_session, is_returning=returning)

    if returning:
        return ReturningReactivation(previous_session=active_session)

    if active_session is None:
        return PageViewNewSession()
    if now - active_session.last_activity > session_timeout:
        return PageViewNewSession(previous_session=active_session, reason='timeout')
    return PageViewContinuation(session=active_session)


# ==============================================================================
# Outcome
# ==============================================================================


@dataclass
class ActionOutcome:
    visitor: Visitor
    session: Optional[Session]
    decision: Decision
    message: str
    created: bool = False
    is_new_session: bool = False
    is_returning: bool = False
    events_recorded: int = 0

    def as_response(self, session_timeout_ms):
        visitor = self.visitor
        session_id = self.session.session_id if self.session else None
        return {
            'user_id': visitor.user_id,
            'status': visitor.status,
            'is_online': visitor.is_online,
            'total_sessions': visitor.total_sessions,
            'total_time_spent': visitor.total_time_spent,
            'total_time_spent_min': round(visitor.total_time_spent / 60),
            'total_events': visitor.total_events,
            'session_id': session_id,
            'current_session_id': session_id,
            'location': visitor.location,
            'last_active_at': visitor.last_active_at,
            'session_timeout': session_timeout_ms,
            'is_returning': self.is_returning,
            'is_new_session': self.is_new_session,
            'events_recorded': self.events_recorded,
        }


# ==============================================================================
# State machine
# ==============================================================================


class SessionLifecycle:
    """
    Applies visitor actions to the Visitor/Session/Event stores.

    Each action runs in one transaction with the visitor row locked, so the
    session save, visitor save and buffered-event insert either all land or
    none do, and two requests for the same visitor cannot both open a session.
    """

    def __init__(self, session_timeout=None, offline_threshold=None):
        self.session_timeout = session_timeout or visits_setting('SESSION_TIMEOUT')
        self.offline_threshold = offline_threshold or visits_setting('OFFLINE_THRESHOLD')
        self.handlers = {
            NewVisitor: self.handle_new_visitor,
            ReturningReactivation: self.handle_returning_reactivation,
            Heartbeat: self.handle_heartbeat,
            PageLeave: self.handle_page_leave,
            PageViewNewSession: self.handle_page_view_new_session,
            PageViewContinuation: self.handle_page_view_continuation,
        }

    @property
    def session_timeout_ms(self):
        return int(self.offline_threshold.total_seconds() * 1000)

    def record(self, action, now=None):
        now = now or timezone.now()

        with transaction.atomic():
            visitor = None
            active_session = None
            if action.is_after_reset:
                self.purge_visitor(action.user_id)
            else:
                visitor = Visitor.objects.select_for_update().filter(user_id=action.user_id).first()
            if visitor is not None:
                active_session = (
                    visitor.sessions.select_for_update()
                    .filter(is_active=True)
                    .order_by('-start_time')
                    .first()
                )

            decision = decide(
                action, visitor, active_session, now,
                session_timeout=self.session_timeout,
                offline_threshold=self.offline_threshold,
            )
            handler = self.handlers[type(decision)]
            outcome = handler(decision, action, visitor, now)

        logger.info(
            f"{type(decision).__name__} for {action.user_id}: "
            f"session={outcome.session.session_id if outcome.session else None}"
        )
        return outcome

    def start(self, action, now=None):
        """Explicitly open a session, closing whatever session is active"""
        now = now or timezone.now()

        with transaction.atomic():
            visitor = Visitor.objects.select_for_update().filter(user_id=action.user_id).first()
            if visitor is None:
                decision = NewVisitor()
            else:
                active_session = visitor.sessions.select_for_update().filter(is_active=True).first()
                decision = PageViewNewSession(previous_session=active_session, reason='explicit')
            outcome = self.handlers[type(decision)](decision, action, visitor, now)

        return outcome

    def end(self, session_id, now=None):
        """Explicitly close a session and refresh its visitor's totals"""
        now = now or timezone.now()

        with transaction.atomic():
            session = Session.objects.select_for_update().filter(session_id=session_id).first()
            if session is None:
                raise NotFound(f"Session {session_id} not found")
            if session.is_active:
                self.close_session(session, now)
            visitor = Visitor.objects.select_for_update().get(pk=session.visitor_id)
            visitor.recompute_engagement()

        return session, visitor

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def handle_new_visitor(self, decision, action, visitor, now):
        visitor = Visitor(
            user_id=action.user_id,
            first_seen=now,
            last_seen=now,
            last_active_at=now,
            is_online=True,
            status='new',
            total_sessions=1,
            last_session_at=now,
        )
        visitor.apply_device(action.device)
        visitor.apply_location(action.location)
        visitor.apply_referrer(action.referrer)
        visitor.save()

        session = self.open_session(visitor, action, now)
        self.append_page(session, action, visitor, now)
        recorded = self.record_events(action, visitor, session, now)
        session.save()
        visitor.recompute_engagement()

        return ActionOutcome(
            visitor=visitor,
            session=session,
            decision=decision,
            message='New visitor session started',
            created=True,
            is_new_session=True,
            events_recorded=recorded,
        )

    def handle_returning_reactivation(self, decision, action, visitor, now):
        visitor.status = 'returning'
        self.touch_visitor(visitor, action, now)
        session, recorded = self.start_new_session(decision.previous_session, action, visitor, now)
        return ActionOutcome(
            visitor=visitor,
            session=session,
            decision=decision,
            message='Welcome back, new session started',
            is_new_session=True,
            is_returning=True,
            events_recorded=recorded,
        )

    def handle_heartbeat(self, decision, action, visitor, now):
        if decision.is_returning:
            visitor.status = 'returning'
        self.touch_visitor(visitor, action, now)
        session = decision.session
        recorded = 0
        if session is not None:
            session.last_activity = now
            recorded = self.record_events(action, visitor, session, now)
            session.save()
        visitor.save()

        return ActionOutcome(
            visitor=visitor,
            session=session,
            decision=decision,
            message='Heartbeat received',
            events_recorded=recorded,
            is_returning=decision.is_returning,
        )

    def handle_page_leave(self, decision, action, visitor, now):
        if decision.is_returning:
            visitor.status = 'returning'
        session = decision.session
        stay = action.page_stay_duration or (action.current_page or {}).get('duration')
        seconds = normalize_stay_duration(stay)

        # After a sweep the leave still belongs to the page in the closed session
        target = session or visitor.sessions.order_by('-start_time').first()
        if target is not None and action.page_url:
            if page_duration_in_bounds(seconds):
                if self.finalize_page_duration(target, action.page_url, seconds):
                    record_page_time(action.page_url, seconds)
            else:
                logger.debug(f"Discarded stay duration {stay!r} for {action.page_url}")
            if session is not None:
                session.last_activity = now
            target.save()

        self.touch_visitor(visitor, action, now)
        visitor.save()

        return ActionOutcome(
            visitor=visitor,
            session=session,
            decision=decision,
            message='Page leave tracked',
            is_returning=decision.is_returning,
        )

    def handle_page_view_new_session(self, decision, action, visitor, now):
        if decision.previous_session is not None or visitor.sessions.exists():
            visitor.status = 'returning'
        self.touch_visitor(visitor, action, now)
        session, recorded = self.start_new_session(
            decision.previous_session, action, visitor, now
        )
        return ActionOutcome(
            visitor=visitor,
            session=session,
            decision=decision,
            message='New session started',
            is_new_session=True,
            events_recorded=recorded,
        )

    def handle_page_view_continuation(self, decision, action, visitor, now):
        session = decision.session
        self.touch_visitor(visitor, action, now)
        if action.location_precise:
            session.apply_location(action.location)
        session.last_activity = now
        self.append_page(session, action, visitor, now)
        recorded = self.record_events(action, visitor, session, now)
        session.save()
        visitor.save()
        visitor.recompute_engagement()

        return ActionOutcome(
            visitor=visitor,
            session=session,
            decision=decision,
            message='Page view tracked',
            events_recorded=recorded,
        )

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def purge_visitor(self, user_id):
        deleted, _ = Visitor.objects.filter(user_id=user_id).delete()
        if deleted:
            logger.info(f"Reset requested, removed visitor {user_id} and its sessions")

    def touch_visitor(self, visitor, action, now):
        visitor.is_online = True
        visitor.last_seen = now
        visitor.last_active_at = now
        visitor.apply_device(action.device)
        if action.location_precise:
            visitor.apply_location(action.location)

    def start_new_session(self, previous, action, visitor, now):
        if previous is not None:
            self.close_session(previous, now)

        session = self.open_session(visitor, action, now)
        self.append_page(session, action, visitor, now)
        recorded = self.record_events(action, visitor, session, now)
        session.save()
        visitor.last_session_at = now
        visitor.save()
        visitor.recompute_engagement()
        return session, recorded

    def open_session(self, visitor, action, now):
        referrer = action.referrer or direct_referrer()
        session = Session(
            visitor=visitor,
            start_time=now,
            last_activity=now,
            is_active=True,
            user_agent=action.user_agent,
            device_type=visitor.device_type,
            browser_name=visitor.browser_name,
            os_name=visitor.os_name,
            screen_resolution=visitor.screen_resolution,
            language=visitor.language,
            referrer_url=referrer['url'],
            referrer_source=referrer['source'],
            referrer_medium=referrer['medium'],
            referrer_campaign=referrer['campaign'],
        )
        session.apply_location(visitor.location)
        session.save()
        logger.info(f"Opened session {session.session_id} for {visitor.user_id}")
        return session

    def close_session(self, session, now):
        session.close(now)
        session.save()
        logger.info(f"Closed session {session.session_id} after {session.duration}s")

    def append_page(self, session, action, visitor, now):
        """
        Add the current page to the session's page sequence, back-filling the
        stay duration of the page before it.
        """
        if not action.page_url:
            return

        stamp = now
        if session.page_sequence:
            last = session.page_sequence[-1]
            last_stamp = parse_datetime(last['timestamp'])
            if last_stamp is not None:
                elapsed = int(round((now - last_stamp).total_seconds()))
                if not last.get('duration') and page_duration_in_bounds(elapsed):
                    last['duration'] = elapsed
                if stamp <= last_stamp:
                    stamp = last_stamp + timedelta(milliseconds=1)

        referrer = action.referrer or direct_referrer()
        session.page_sequence.append({
            'page_url': action.page_url,
            'page_title': action.page_title,
            'duration': 0,
            'timestamp': stamp.isoformat(),
            'referrer': {
                'url': referrer['url'],
                'source': referrer['source'],
                'medium': referrer['medium'],
                'campaign': referrer['campaign'],
            },
        })
        record_page_view(action.page_url, action.page_title, visitor.user_id, referrer, now)

    def finalize_page_duration(self, session, page_url, seconds):
        for entry in reversed(session.page_sequence):
            if entry['page_url'] == page_url:
                entry['duration'] = seconds
                return True
        return False

    def record_events(self, action, visitor, session, now):
        """Persist the events buffered in the action against ``session``"""
        if not action.events:
            return 0

        events = []
        for raw in action.events:
            if not isinstance(raw, dict):
                continue
            event_type = raw.get('event_type')
            if event_type not in EVENT_TYPES:
                event_type = 'custom'
            timestamp = raw.get('timestamp')
            if isinstance(timestamp, str):
                timestamp = parse_datetime(timestamp)
            if timestamp is None or timezone.is_naive(timestamp):
                timestamp = now
            metadata = raw.get('metadata') or {}
            events.append(Event(
                event_id=raw.get('event_id') or generate_event_id('event'),
                user_id=visitor.user_id,
                session_id=session.session_id,
                event_type=event_type,
                event_name=raw.get('event_name') or event_type,
                timestamp=timestamp,
                duration=int(raw.get('duration') or 0),
                page_url=raw.get('page_url') or action.page_url or '',
                page_title=raw.get('page_title') or '',
                metadata=metadata if isinstance(metadata, dict) else {'value': metadata},
                ingest_mode='claim',
                country=visitor.country,
                city=visitor.city,
            ))

        written = insert_new_events(events)
        session.total_events += len(written)
        return len(written)
