# tests/test_scheduling.py
from datetime import date, time
from decimal import Decimal

import pytest

from gym_ledger.engine import ConflictError, LifecycleEvents, ValidationError
from gym_ledger.engine.scheduling import overlaps

SESSION_DAY = date(2024, 3, 5)


@pytest.fixture
def booking(make_member, make_package, make_membership, make_trainer, make_rule):
    member_id = make_member()
    package_id = make_package(name='PT Quarterly', price=3000, pt_sessions_included=10)
    membership_id = make_membership(member_id, package_id, pt_sessions_remaining=6, pt_sessions_used=4)
    trainer_id = make_trainer()
    make_rule(trainer_id, package_id, member_id, membership_id=membership_id)
    return {'member_id': member_id, 'membership_id': membership_id, 'trainer_id': trainer_id}


def _book(scheduler, booking, start, end, member_id=None):
    return scheduler.schedule_session(member_id or booking['member_id'], booking['trainer_id'], SESSION_DAY,
                                      start, end, membership_id=None if member_id else booking['membership_id'])


def test_overlaps_is_half_open():
    assert overlaps(time(10), time(11), time(10, 30), time(11, 30))
    assert not overlaps(time(10), time(11), time(11), time(12))


class TestScheduleSession:

    def test_booking_publishes_event(self, scheduler, event_bus, booking):
        seen = []
        event_bus.subscribe(LifecycleEvents.SESSION_SCHEDULED, seen.append)

        session = _book(scheduler, booking, time(10), time(11))

        assert session.trainer_id == booking['trainer_id']
        assert seen[0].payload['session_id'] == session.id

    def test_overlapping_booking_rejected(self, scheduler, booking, make_member):
        _book(scheduler, booking, time(10), time(11))

        with pytest.raises(ConflictError):
            _book(scheduler, booking, time(10, 30), time(11, 30), member_id=make_member(first_name='Other'))

    def test_back_to_back_allowed(self, scheduler, booking):
        _book(scheduler, booking, time(10), time(11))
        second = _book(scheduler, booking, time(11), time(12))

        assert second.start_time == time(11)

    def test_end_before_start(self, scheduler, booking):
        with pytest.raises(ValidationError):
            _book(scheduler, booking, time(11), time(10))

    def test_membership_without_sessions(self, scheduler, make_member, make_package, make_membership,
                                         make_trainer):
        member_id = make_member()
        membership_id = make_membership(member_id, make_package(), pt_sessions_remaining=0)

        with pytest.raises(ValidationError):
            scheduler.schedule_session(member_id, make_trainer(), SESSION_DAY, time(10), time(11),
                                       membership_id=membership_id)


class TestCompleteSession:

    def test_completion_consumes_session_and_pays_trainer(self, scheduler, store, booking):
        session = _book(scheduler, booking, time(10), time(11))

        outcome = scheduler.complete_session(session.id)

        assert outcome['session'].completed is True
        assert outcome['membership'].pt_sessions_remaining == 5
        assert outcome['membership'].pt_sessions_used == 5
        assert outcome['earning']['earning_type'] == 'session'
        assert Decimal(outcome['earning']['total_earning']) == Decimal('30.00')
        assert len(store.get_earnings(booking['trainer_id'])) == 1

    def test_cannot_complete_twice(self, scheduler, booking):
        session = _book(scheduler, booking, time(10), time(11))
        scheduler.complete_session(session.id)

        with pytest.raises(ValidationError):
            scheduler.complete_session(session.id)


class TestCancelSession:

    def test_cancel_frees_the_slot(self, scheduler, booking):
        session = _book(scheduler, booking, time(10), time(11))

        outcome = scheduler.cancel_session(session.id, reason='Sick')
        rebooked = _book(scheduler, booking, time(10), time(11))

        assert outcome['session'].cancelled is True
        assert outcome['payment'] is None
        assert rebooked.id != session.id

    def test_cancellation_fee_is_recorded(self, scheduler, booking):
        session = _book(scheduler, booking, time(10), time(11))

        outcome = scheduler.cancel_session(session.id, reason='No show', cancellation_fee=50)

        assert outcome['payment']['payment_type'] == 'cancellation_fee'
        assert outcome['payment']['amount'] == '50.00'

    def test_reason_required(self, scheduler, booking):
        session = _book(scheduler, booking, time(10), time(11))
        with pytest.raises(ValidationError):
            scheduler.cancel_session(session.id, reason='')
