"""
Personal-training sessions: booking with trainer conflict checks,
completion (session counters and trainer earning) and cancellation.
"""
import logging
from datetime import date, time
from typing import Callable, Optional

from gym_ledger.engine.commission import commission_for_rule
from gym_ledger.engine.errors import ConflictError, InvalidTransition, NotFound, ValidationError
from gym_ledger.engine.events import Event, EventBus, LifecycleEvents
from gym_ledger.engine.saga import Saga
from gym_ledger.engine.store import LedgerStore
from gym_ledger.engine.types import CommissionType, SessionRecord, money

logger = logging.getLogger(__name__)


def overlaps(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open [start, end) intervals; back-to-back sessions do not clash"""
    return start_a < end_b and start_b < end_a


class SessionScheduler:

    def __init__(self, store: LedgerStore, event_bus: Optional[EventBus] = None,
                 clock: Callable[[], date] = date.today):
        self.store = store
        self.event_bus = event_bus
        self.clock = clock

    def schedule_session(self, member_id, trainer_id, session_date: date, start_time: time, end_time: time,
                         membership_id=None, session_type='personal_training', notes=None) -> SessionRecord:
        if start_time >= end_time:
            raise ValidationError("'end_time' must be after 'start_time'")
        if not self.store.trainer_exists(trainer_id):
            raise NotFound(f"Trainer {trainer_id} not found")
        self.store.get_member(member_id)

        if membership_id is not None:
            membership = self.store.get_membership(membership_id)
            if membership.member_id != member_id:
                raise ValidationError(f"Membership {membership_id} belongs to another member")
            if membership.status.is_terminal:
                raise InvalidTransition(membership.status, 'schedule_session')
            if membership.pt_sessions_remaining <= 0:
                raise ValidationError(f"Membership {membership_id} has no personal-training sessions left")

        clashes = self.store.find_conflicting_sessions(trainer_id, session_date, start_time, end_time)
        if clashes:
            raise ConflictError(
                f"Trainer {trainer_id} is already booked on {session_date} {start_time:%H:%M}-{end_time:%H:%M}",
                details={'conflicts': [session.id for session in clashes]},
            )

        session = self.store.create_session({
            'member_id': member_id,
            'trainer_id': trainer_id,
            'membership_id': membership_id,
            'session_date': session_date,
            'start_time': start_time,
            'end_time': end_time,
            'session_type': session_type,
            'notes': notes,
        })
        logger.info(f"Session {session.id} booked: trainer {trainer_id}, {session_date} {start_time:%H:%M}")
        if self.event_bus is not None:
            self.event_bus.publish(Event(LifecycleEvents.SESSION_SCHEDULED, {
                'session_id': session.id,
                'trainer_id': trainer_id,
                'member_id': member_id,
            }))
        return session

    def complete_session(self, session_id, completed_on: Optional[date] = None):
        """Mark a session done, consume one membership session and pay the trainer"""
        session = self.store.get_session(session_id)
        if session.completed or session.cancelled:
            raise ValidationError(f"Session {session_id} is already {'completed' if session.completed else 'cancelled'}")
        on_date = completed_on or self.clock()

        membership = rule = commission = None
        if session.membership_id is not None:
            membership = self.store.get_membership(session.membership_id)
            if membership.pt_sessions_remaining <= 0:
                raise ValidationError(f"Membership {membership.id} has no personal-training sessions left")
            rule = self.store.get_active_commission_rule(session.trainer_id, membership.package_id,
                                                         membership.member_id)
            if rule is not None:
                commission = commission_for_rule(rule, membership.total_amount_due, membership.total_sessions)

        saga = Saga(f'complete_session:{session.id}')
        saga.step(
            'session',
            lambda ctx: self.store.update_session(session.id, {'completed': True}),
            lambda ctx, _: self.store.update_session(session.id, {'completed': False}),
        )
        if membership is not None:
            saga.step(
                'counters',
                lambda ctx: self.store.adjust_pt_sessions(membership.id, remaining_delta=-1, used_delta=1),
                lambda ctx, _: self.store.adjust_pt_sessions(membership.id, remaining_delta=1, used_delta=-1),
            )
        if commission is not None and commission.per_session > 0:
            rate = rule.commission_value if rule.commission_type == CommissionType.PERCENTAGE else None
            saga.step(
                'earning',
                lambda ctx: self.store.create_earning({
                    'trainer_id': session.trainer_id,
                    'member_id': session.member_id,
                    'membership_id': membership.id,
                    'commission_rule_id': rule.id,
                    'session_id': session.id,
                    'earning_type': 'session',
                    'base_amount': money(membership.total_amount_due),
                    'commission_rate': rate,
                    'commission_amount': commission.per_session,
                    'total_earning': commission.per_session,
                    'earning_date': on_date,
                }),
            )
        ctx = saga.run()

        logger.info(f"Session {session.id} completed")
        return {
            'session': ctx['session'],
            'membership': ctx.get('counters'),
            'earning': ctx.get('earning'),
        }

    def cancel_session(self, session_id, reason, cancellation_fee=0, payment_method='cash'):
        if not reason or not str(reason).strip():
            raise ValidationError("'reason' is required")
        session = self.store.get_session(session_id)
        if session.completed or session.cancelled:
            raise ValidationError(f"Session {session_id} is already {'completed' if session.completed else 'cancelled'}")
        fee = money(cancellation_fee)
        if fee < 0:
            raise ValidationError("'cancellation_fee' cannot be negative")

        saga = Saga(f'cancel_session:{session.id}')
        saga.step(
            'session',
            lambda ctx: self.store.update_session(session.id, {
                'cancelled': True,
                'cancellation_reason': reason,
                'cancellation_fee': fee,
            }),
            lambda ctx, _: self.store.update_session(session.id, {
                'cancelled': False,
                'cancellation_reason': None,
                'cancellation_fee': 0,
            }),
        )
        if fee > 0:
            saga.step(
                'fee',
                lambda ctx: self.store.create_payment({
                    'member_id': session.member_id,
                    'membership_id': session.membership_id,
                    'payment_type': 'cancellation_fee',
                    'amount': fee,
                    'payment_method': payment_method,
                    'payment_date': self.clock(),
                    'description': f'Late cancellation of session {session.id}',
                }),
            )
        ctx = saga.run()

        logger.info(f"Session {session.id} cancelled: {reason}")
        return {'session': ctx['session'], 'payment': ctx.get('fee')}
