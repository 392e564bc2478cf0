# ==============================================================================
# Tests for the session lifecycle: lifecycle.py
# ==============================================================================
"""
``decide`` is exercised on plain stand-in objects; the handlers run against
the test database.
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest
from django.db import IntegrityError, transaction
from django.utils import timezone

from visits.exceptions import NotFound
from visits.lifecycle import (
    Heartbeat,
    NewVisitor,
    PageLeave,
    PageViewContinuation,
    PageViewNewSession,
    ReturningReactivation,
    VisitorAction,
    decide,
)
from visits.models import Event, Page, Session, Visitor
from visits.reaper import PresenceReaper

TIMEOUT = timedelta(minutes=30)
OFFLINE = timedelta(minutes=2)


def _decide(action, visitor, session, now):
    return decide(action, visitor, session, now, session_timeout=TIMEOUT, offline_threshold=OFFLINE)


# ==============================================================================
# decide (no database)
# ==============================================================================


class TestDecide:

    def setup_method(self):
        self.now = timezone.now()
        self.visitor = SimpleNamespace(is_online=True, last_active_at=self.now - timedelta(seconds=30))
        self.session = SimpleNamespace(last_activity=self.now - timedelta(seconds=30))

    def test_unknown_visitor(self):
        assert _decide(VisitorAction(user_id='a'), None, None, self.now) == NewVisitor()

    def test_reset_wins_over_everything(self):
        action = VisitorAction(user_id='a', is_after_reset=True)
        assert _decide(action, self.visitor, self.session, self.now) == NewVisitor(reset=True)

    def test_offline_visitor_is_reactivated(self):
        self.visitor.is_online = False
        self.visitor.last_active_at = self.now - timedelta(minutes=5)
        decision = _decide(VisitorAction(user_id='a'), self.visitor, self.session, self.now)
        assert isinstance(decision, ReturningReactivation)
        assert decision.previous_session is self.session

    def test_returning_heartbeat_stays_a_heartbeat(self):
        self.visitor.is_online = False
        self.visitor.last_active_at = self.now - timedelta(minutes=5)
        action = VisitorAction(user_id='a', action_type='heartbeat')
        assert _decide(action, self.visitor, None, self.now) == Heartbeat(is_returning=True)

    def test_returning_page_leave_stays_a_page_leave(self):
        self.visitor.is_online = False
        self.visitor.last_active_at = self.now - timedelta(minutes=5)
        action = VisitorAction(user_id='a', action_type='page_leave')
        decision = _decide(action, self.visitor, self.session, self.now)
        assert decision == PageLeave(session=self.session, is_returning=True)

    def test_offline_flag_inside_threshold_is_not_reactivation(self):
        self.visitor.is_online = False
        decision = _decide(VisitorAction(user_id='a'), self.visitor, self.session, self.now)
        assert isinstance(decision, PageViewContinuation)

    def test_heartbeat(self):
        action = VisitorAction(user_id='a', action_type='heartbeat')
        assert _decide(action, self.visitor, self.session, self.now) == Heartbeat(session=self.session)

    def test_page_leave(self):
        action = VisitorAction(user_id='a', action_type='page_leave')
        assert _decide(action, self.visitor, self.session, self.now) == PageLeave(session=self.session)

    def test_page_view_without_session(self):
        decision = _decide(VisitorAction(user_id='a'), self.visitor, None, self.now)
        assert decision == PageViewNewSession()

    def test_page_view_after_timeout(self):
        self.session.last_activity = self.now - timedelta(minutes=31)
        decision = _decide(VisitorAction(user_id='a'), self.visitor, self.session, self.now)
        assert isinstance(decision, PageViewNewSession)
        assert decision.reason == 'timeout'
        assert decision.previous_session is self.session

    def test_page_view_continues_session(self):
        decision = _decide(VisitorAction(user_id='a'), self.visitor, self.session, self.now)
        assert decision == PageViewContinuation(session=self.session)


# ==============================================================================
# SessionLifecycle.record
# ==============================================================================


@pytest.mark.django_db
class TestNewVisitor:

    def test_creates_visitor_and_session(self, lifecycle, make_action, past):
        outcome = lifecycle.record(make_action(), now=past)

        visitor = Visitor.objects.get(user_id='visitor-1')
        session = Session.objects.get(visitor=visitor)
        assert outcome.created is True
        assert outcome.is_new_session is True
        assert visitor.status == 'new'
        assert visitor.total_sessions == 1
        assert session.is_active is True
        assert session.page_sequence[0]['page_url'] == '/home'

        response = outcome.as_response(lifecycle.session_timeout_ms)
        assert response['session_id'] == session.session_id
        assert response['current_session_id'] == session.session_id
        assert response['session_timeout'] == 120000

    def test_page_metrics_are_recorded(self, lifecycle, make_action, past):
        lifecycle.record(make_action(url='/pricing'), now=past)
        lifecycle.record(make_action(user_id='visitor-2', url='/pricing'), now=past)

        page = Page.objects.get(page_url='/pricing')
        assert page.total_views == 2
        assert page.unique_users == 2

    def test_reset_replaces_visitor(self, lifecycle, make_action, past):
        lifecycle.record(make_action(), now=past)
        lifecycle.record(make_action(), now=past + timedelta(minutes=1))

        outcome = lifecycle.record(make_action(is_after_reset=True), now=past + timedelta(minutes=2))

        visitor = Visitor.objects.get(user_id='visitor-1')
        assert outcome.created is True
        assert visitor.status == 'new'
        assert visitor.sessions.count() == 1


@pytest.mark.django_db
class TestSessionBoundaries:

    def test_continuation_keeps_session(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(url='/a'), now=past)
        second = lifecycle.record(make_action(url='/b'), now=past + timedelta(minutes=5))

        assert second.session.session_id == first.session.session_id
        session = Session.objects.get(session_id=first.session.session_id)
        assert [page['page_url'] for page in session.page_sequence] == ['/a', '/b']
        # Stay on /a back-filled from the gap
        assert session.page_sequence[0]['duration'] == 300

    def test_timeout_opens_new_session(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(), now=past)
        second = lifecycle.record(make_action(), now=past + timedelta(minutes=31))

        old = Session.objects.get(session_id=first.session.session_id)
        visitor = Visitor.objects.get(user_id='visitor-1')
        assert second.session.session_id != old.session_id
        assert old.is_active is False
        assert old.end_time == past + timedelta(minutes=31)
        assert visitor.total_sessions == 2
        assert visitor.status == 'returning'

    def test_reactivation_forces_new_session(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(), now=past)
        Visitor.objects.filter(user_id='visitor-1').update(is_online=False)

        outcome = lifecycle.record(make_action(), now=past + timedelta(minutes=5))

        visitor = Visitor.objects.get(user_id='visitor-1')
        assert isinstance(outcome.decision, ReturningReactivation)
        assert outcome.is_returning is True
        assert outcome.session.session_id != first.session.session_id
        assert visitor.status == 'returning'
        assert visitor.is_online is True
        assert visitor.total_sessions == 2

    def test_only_one_active_session(self, lifecycle, make_action, past):
        lifecycle.record(make_action(), now=past)
        lifecycle.record(make_action(), now=past + timedelta(minutes=31))
        Visitor.objects.filter(user_id='visitor-1').update(is_online=False)
        lifecycle.record(make_action(), now=past + timedelta(minutes=40))
        lifecycle.record(make_action(action_type='heartbeat'), now=past + timedelta(minutes=41))

        assert Session.objects.filter(visitor__user_id='visitor-1', is_active=True).count() == 1
        assert Session.objects.filter(visitor__user_id='visitor-1').count() == 3

    def test_returning_heartbeat_opens_no_session(self, lifecycle, make_action, past):
        lifecycle.record(make_action(), now=past)
        PresenceReaper().sweep(past + timedelta(minutes=3))

        outcome = lifecycle.record(make_action(action_type='heartbeat'), now=past + timedelta(minutes=5))

        visitor = Visitor.objects.get(user_id='visitor-1')
        assert isinstance(outcome.decision, Heartbeat)
        assert outcome.session is None
        assert outcome.is_returning is True
        assert Session.objects.filter(visitor=visitor).count() == 1
        assert visitor.total_sessions == 1
        assert visitor.status == 'returning'
        assert visitor.is_online is True

    def test_returning_page_leave_keeps_its_stay(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(url='/pricing'), now=past)
        PresenceReaper().sweep(past + timedelta(minutes=3))

        lifecycle.record(
            make_action(action_type='page_leave', url='/pricing', page_stay_duration=150000),
            now=past + timedelta(minutes=5),
        )

        session = Session.objects.get(session_id=first.session.session_id)
        assert Session.objects.filter(visitor__user_id='visitor-1').count() == 1
        assert session.is_active is False
        assert session.duration == 180
        assert session.page_sequence[-1]['duration'] == 150
        assert Page.objects.get(page_url='/pricing').total_time_spent == 150
        assert Visitor.objects.get(user_id='visitor-1').status == 'returning'

    def test_page_view_after_returning_heartbeat_starts_the_visit(self, lifecycle, make_action, past):
        lifecycle.record(make_action(), now=past)
        PresenceReaper().sweep(past + timedelta(minutes=3))
        lifecycle.record(make_action(action_type='heartbeat'), now=past + timedelta(minutes=5))

        outcome = lifecycle.record(make_action(url='/blog'), now=past + timedelta(minutes=6))

        visitor = Visitor.objects.get(user_id='visitor-1')
        assert isinstance(outcome.decision, PageViewNewSession)
        assert outcome.session.page_sequence[0]['page_url'] == '/blog'
        assert visitor.total_sessions == 2
        assert visitor.status == 'returning'


@pytest.mark.django_db
class TestActiveSessionConstraint:

    def test_second_active_session_is_rejected(self):
        visitor = Visitor.objects.create(user_id='visitor-1')
        Session.objects.create(visitor=visitor, start_time=timezone.now(), is_active=True)

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                Session.objects.create(visitor=visitor, start_time=timezone.now(), is_active=True)

        assert Session.objects.filter(visitor=visitor).count() == 1

    def test_closed_sessions_do_not_count(self):
        visitor = Visitor.objects.create(user_id='visitor-1')
        now = timezone.now()
        first = Session.objects.create(visitor=visitor, start_time=now - timedelta(minutes=10), is_active=True)
        first.close(now)
        first.save()

        second = Session.objects.create(visitor=visitor, start_time=now, is_active=True)
        Session.objects.create(
            visitor=visitor, start_time=now - timedelta(hours=2),
            end_time=now - timedelta(hours=1), is_active=False,
        )

        active = Session.objects.filter(visitor=visitor, is_active=True)
        assert list(active.values_list('session_id', flat=True)) == [second.session_id]
        assert Session.objects.filter(visitor=visitor).count() == 3


@pytest.mark.django_db
class TestHeartbeatAndLeave:

    def test_heartbeat_moves_last_activity(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(), now=past)
        later = past + timedelta(minutes=10)

        outcome = lifecycle.record(make_action(action_type='heartbeat'), now=later)

        assert outcome.session.session_id == first.session.session_id
        assert Session.objects.get(session_id=first.session.session_id).last_activity == later
        assert Visitor.objects.get(user_id='visitor-1').last_active_at == later

    def test_page_leave_records_stay(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(url='/pricing'), now=past)

        lifecycle.record(
            make_action(action_type='page_leave', url='/pricing', page_stay_duration=45000),
            now=past + timedelta(seconds=45),
        )

        session = Session.objects.get(session_id=first.session.session_id)
        assert session.page_sequence[-1]['duration'] == 45
        assert Page.objects.get(page_url='/pricing').total_time_spent == 45

    def test_page_leave_out_of_bounds_is_discarded(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(url='/pricing'), now=past)

        lifecycle.record(
            make_action(action_type='page_leave', url='/pricing', page_stay_duration=4000000),
            now=past + timedelta(minutes=1),
        )

        session = Session.objects.get(session_id=first.session.session_id)
        assert session.page_sequence[-1]['duration'] == 0
        assert Page.objects.get(page_url='/pricing').total_time_spent == 0


@pytest.mark.django_db
class TestBufferedEvents:

    def test_events_are_stored_against_session(self, lifecycle, make_action, past):
        outcome = lifecycle.record(make_action(events=[
            {'event_type': 'click', 'event_name': 'cta', 'metadata': {'button': 'buy'}},
            {'event_type': 'mystery', 'event_name': 'odd'},
            'not-an-object',
        ]), now=past)

        events = Event.objects.filter(session_id=outcome.session.session_id).order_by('event_type')
        assert outcome.events_recorded == 2
        assert [e.event_type for e in events] == ['click', 'custom']
        assert all(e.ingest_mode == 'claim' for e in events)
        assert Session.objects.get(session_id=outcome.session.session_id).total_events == 2
        assert Visitor.objects.get(user_id='visitor-1').total_events == 2

    def test_repeated_event_ids_count_once(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(events=[
            {'event_id': 'evt-1', 'event_type': 'click', 'event_name': 'cta'},
            {'event_id': 'evt-1', 'event_type': 'click', 'event_name': 'cta'},
        ]), now=past)
        second = lifecycle.record(make_action(events=[
            {'event_id': 'evt-1', 'event_type': 'click', 'event_name': 'cta'},
            {'event_id': 'evt-2', 'event_type': 'scroll', 'event_name': 'half'},
        ]), now=past + timedelta(minutes=1))

        assert first.events_recorded == 1
        assert second.events_recorded == 1
        assert Session.objects.get(session_id=first.session.session_id).total_events == 2
        assert Event.objects.count() == 2


# ==============================================================================
# Explicit start / end
# ==============================================================================


@pytest.mark.django_db
class TestExplicitStartEnd:

    def test_start_closes_active_session(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(), now=past)

        outcome = lifecycle.start(make_action(), now=past + timedelta(minutes=1))

        assert outcome.session.session_id != first.session.session_id
        assert Session.objects.get(session_id=first.session.session_id).is_active is False
        assert Session.objects.filter(visitor__user_id='visitor-1', is_active=True).count() == 1

    def test_end_closes_and_recomputes(self, lifecycle, make_action, past):
        first = lifecycle.record(make_action(), now=past)

        session, visitor = lifecycle.end(first.session.session_id, now=past + timedelta(minutes=4))

        assert session.is_active is False
        assert session.duration == 240
        assert visitor.total_time_spent == 240

    def test_end_unknown_session(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.end('missing')
