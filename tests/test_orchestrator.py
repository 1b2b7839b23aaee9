# tests/test_orchestrator.py
"""
Lifecycle orchestrator against the SQLAlchemy store.

Every scenario starts from the quarterly_membership fixture: 3000 paid for
2024-01-01 .. 2024-03-31, evaluated on 2024-03-01 (30 days left).
"""
from datetime import date, time
from decimal import Decimal

import pytest

from gym_ledger import db
from gym_ledger.engine import (
    ConflictError, EngineSettings, InvalidCommission, InvalidTransition, LifecycleEvents,
    LifecycleOrchestrator, MembershipStatus, NotFound, PartiallyApplied, StoreError,
    TransitionFailed, ValidationError,
)
from gym_ledger.models import CommissionRule, Membership
from gym_ledger.store import SQLAlchemyLedgerStore

TODAY = date(2024, 3, 1)


def clock():
    return TODAY


class FailingStore(SQLAlchemyLedgerStore):
    """Store whose change-record write always fails; optionally voiding a membership fails too"""

    def __init__(self, fail_void=False):
        super().__init__(db.session)
        self.fail_void = fail_void

    def create_membership_change(self, data):
        raise StoreError('disk full')

    def update_membership(self, membership_id, patch, increments=None):
        if self.fail_void and patch.get('status') == 'cancelled':
            raise StoreError('connection lost')
        return super().update_membership(membership_id, patch, increments)


# =============================================================================
# PURCHASE
# =============================================================================

class TestPurchase:

    def test_partial_payment_is_active_with_pending(self, orchestrator, store, make_member, make_package):
        member_id = make_member()
        package_id = make_package(price=3000, duration_days=90)

        result = orchestrator.purchase(member_id, package_id, start_date=TODAY, amount_paid=1000)
        membership = result.successor

        assert membership.status == MembershipStatus.ACTIVE
        assert membership.amount_paid == Decimal('1000.00')
        assert membership.amount_pending == Decimal('2000.00')
        assert membership.end_date == date(2024, 5, 30)
        assert result.payments[0]['amount'] == '1000.00'
        assert [e.name for e in result.events] == [
            LifecycleEvents.MEMBERSHIP_CREATED, LifecycleEvents.PAYMENT_PLAN_REQUESTED,
        ]

    def test_unpaid_purchase_waits_for_payment(self, orchestrator, make_member, make_package):
        result = orchestrator.purchase(make_member(), make_package(), start_date=TODAY)
        assert result.successor.status == MembershipStatus.PENDING_PAYMENT

    def test_overpayment_rejected(self, orchestrator, make_member, make_package):
        with pytest.raises(ValidationError):
            orchestrator.purchase(make_member(), make_package(price=3000), amount_paid=3500)


# =============================================================================
# UPGRADE / DOWNGRADE
# =============================================================================

class TestUpgrade:

    def test_upgrade_creates_successor_and_change(self, orchestrator, store, event_bus,
                                                  quarterly_membership, make_package):
        """
        TEST: 30 days worth 1000 move onto a 6000/90 package; 1000 is owed.
        """
        published = []
        event_bus.subscribe(LifecycleEvents.MEMBERSHIP_CHANGED, published.append)
        gold_id = make_package(name='Gold', price=6000, duration_days=90)

        result = orchestrator.upgrade(quarterly_membership['membership_id'], gold_id, reason='Wants more')

        assert result.source.status == MembershipStatus.UPGRADED
        assert result.source.actual_end_date == TODAY

        successor = result.successor
        assert successor.package_id == gold_id
        assert successor.original_membership_id == quarterly_membership['membership_id']
        assert successor.start_date == TODAY
        assert successor.end_date == date(2024, 3, 31)
        assert successor.amount_pending == Decimal('1000.00')
        assert successor.amount_paid + successor.amount_pending == successor.total_amount_due

        assert result.change['change_type'] == 'upgrade'
        assert result.change['amount_difference'] == '1000.00'
        assert result.change['prorated_amount'] == '1000.00'
        assert result.change['remaining_days'] == 30

        assert [e.name for e in result.events] == [
            LifecycleEvents.MEMBERSHIP_CHANGED,
            LifecycleEvents.MEMBERSHIP_CREATED,
            LifecycleEvents.PAYMENT_PLAN_REQUESTED,
        ]
        assert len(published) == 1

    def test_same_package_rejected(self, orchestrator, quarterly_membership):
        with pytest.raises(ValidationError):
            orchestrator.upgrade(quarterly_membership['membership_id'], quarterly_membership['package_id'],
                                 reason='No change')

    def test_reason_required(self, orchestrator, quarterly_membership, make_package):
        with pytest.raises(ValidationError):
            orchestrator.upgrade(quarterly_membership['membership_id'], make_package(name='Gold', price=6000),
                                 reason='  ')

    def test_frozen_membership_cannot_upgrade(self, orchestrator, store, quarterly_membership, make_package):
        gold_id = make_package(name='Gold', price=6000)
        orchestrator.freeze(quarterly_membership['membership_id'], 10, reason='Travel')

        with pytest.raises(InvalidTransition):
            orchestrator.upgrade(quarterly_membership['membership_id'], gold_id, reason='Wants more')

        changes = store.list_membership_changes(quarterly_membership['member_id'])
        assert [c['change_type'] for c in changes] == ['freeze']

    def test_commission_moves_to_successor_package(self, orchestrator, store, quarterly_membership,
                                                   make_package, make_trainer, make_rule):
        trainer_id = make_trainer()
        old_rule = make_rule(trainer_id, quarterly_membership['package_id'], quarterly_membership['member_id'])
        store.update_member(quarterly_membership['member_id'], {'assigned_trainer_id': trainer_id})
        pt_package = make_package(name='Gold PT', price=6000, duration_days=90, pt_sessions_included=8)

        result = orchestrator.upgrade(quarterly_membership['membership_id'], pt_package, reason='Add PT')

        assert result.warnings == []
        new_rule = result.commission_rules[0]
        assert new_rule.package_id == pt_package
        assert new_rule.membership_id == result.successor.id
        assert new_rule.commission_value == Decimal('10.00')
        assert store.get_active_commission_rule(
            trainer_id, quarterly_membership['package_id'], quarterly_membership['member_id']) is None
        assert db.session.get(CommissionRule, old_rule).is_active is False

    def test_missing_commission_terms_is_a_warning(self, orchestrator, store, quarterly_membership,
                                                   make_package, make_trainer):
        trainer_id = make_trainer()
        store.update_member(quarterly_membership['member_id'], {'assigned_trainer_id': trainer_id})
        pt_package = make_package(name='Gold PT', price=6000, pt_sessions_included=8)

        result = orchestrator.upgrade(quarterly_membership['membership_id'], pt_package, reason='Add PT')

        assert result.successor.status == MembershipStatus.ACTIVE
        assert len(result.warnings) == 1
        assert result.commission_rules == []

    def test_rule_retired_when_new_package_has_no_pt(self, orchestrator, store, quarterly_membership,
                                                     make_package, make_trainer, make_rule):
        trainer_id = make_trainer()
        old_rule = make_rule(trainer_id, quarterly_membership['package_id'], quarterly_membership['member_id'])
        store.update_member(quarterly_membership['member_id'], {'assigned_trainer_id': trainer_id})
        gold_id = make_package(name='Gold', price=6000, duration_days=90)

        result = orchestrator.upgrade(quarterly_membership['membership_id'], gold_id, reason='Wants more')

        assert result.commission_rules == []
        assert result.warnings == []
        rule = db.session.get(CommissionRule, old_rule)
        assert rule.is_active is False
        assert rule.valid_until == TODAY

    def test_commission_terms_without_trainer_is_a_warning(self, orchestrator, quarterly_membership,
                                                           make_package):
        pt_package = make_package(name='Gold PT', price=6000, pt_sessions_included=8)

        result = orchestrator.upgrade(quarterly_membership['membership_id'], pt_package, reason='Add PT',
                                      commission={'commission_type': 'percentage', 'commission_value': 10})

        assert result.successor.status == MembershipStatus.ACTIVE
        assert result.commission_rules == []
        assert len(result.warnings) == 1
        assert 'no assigned trainer' in result.warnings[0]


class TestDowngrade:

    def test_refund_as_credit(self, orchestrator, store, quarterly_membership, make_package):
        basic_id = make_package(name='Basic', price=1500, duration_days=90)

        result = orchestrator.downgrade(quarterly_membership['membership_id'], basic_id, reason='Budget')

        assert result.source.status == MembershipStatus.DOWNGRADED
        assert result.successor.amount_pending == Decimal('0.00')
        assert result.successor.total_amount_due == Decimal('0.00')
        assert result.credit_transactions[0]['transaction_type'] == 'credit_from_downgrade'
        assert store.get_credit_balance(quarterly_membership['member_id']) == Decimal('500.00')
        assert store.get_member(quarterly_membership['member_id']).credit_balance == Decimal('500.00')
        assert LifecycleEvents.PAYMENT_PLAN_REQUESTED not in [e.name for e in result.events]

    def test_refund_in_cash(self, orchestrator, store, quarterly_membership, make_package):
        basic_id = make_package(name='Basic', price=1500, duration_days=90)

        result = orchestrator.downgrade(quarterly_membership['membership_id'], basic_id, reason='Budget',
                                        refund_method='cash')

        assert result.credit_transactions == []
        assert result.refund_requests[0]['amount'] == '500.00'
        assert result.refund_requests[0]['refund_method'] == 'cash'
        assert result.payments[0]['amount'] == '-500.00'
        assert store.get_credit_balance(quarterly_membership['member_id']) == Decimal('0.00')


# =============================================================================
# TRANSFER
# =============================================================================

class TestTransfer:

    def test_transfer_to_existing_member(self, orchestrator, store, quarterly_membership, make_member):
        """
        TEST: fee becomes the new holder's pending amount; paid minus fee is
        credited to the previous holder.
        """
        to_member = make_member(first_name='Khaled')

        result = orchestrator.transfer(quarterly_membership['membership_id'], reason='Moving away',
                                       to_member_id=to_member, transfer_fee=200)

        assert result.source.status == MembershipStatus.TRANSFERRED
        assert result.source.transferred_to_member_id == to_member

        successor = result.successor
        assert successor.member_id == to_member
        assert successor.transferred_from_member_id == quarterly_membership['member_id']
        assert successor.end_date == date(2024, 3, 31)
        assert successor.amount_pending == Decimal('200.00')

        assert result.payments[0]['payment_type'] == 'transfer_fee'
        assert result.change['amount_difference'] == '-200.00'
        assert store.get_credit_balance(quarterly_membership['member_id']) == Decimal('2800.00')
        assert LifecycleEvents.CREDIT_ISSUED in [e.name for e in result.events]

    def test_transfer_to_new_member(self, orchestrator, store, quarterly_membership):
        result = orchestrator.transfer(quarterly_membership['membership_id'], reason='Gift',
                                       new_member={'name': 'Sara Ali', 'phone': '0599999999'})

        new_member = store.get_member(result.successor.member_id)
        assert new_member.id != quarterly_membership['member_id']
        assert new_member.status == 'active'

    def test_transfer_releases_suspended_member(self, orchestrator, store, quarterly_membership, make_member):
        """
        TEST: a suspended membership can be transferred; the previous holder's
        suspension ends with it.
        """
        member_id = quarterly_membership['member_id']
        orchestrator.suspend(quarterly_membership['membership_id'], reason='Unpaid locker')
        assert store.get_member(member_id).status == 'suspended'

        result = orchestrator.transfer(quarterly_membership['membership_id'], reason='Moving away',
                                       to_member_id=make_member(first_name='Khaled'))

        assert result.source.status == MembershipStatus.TRANSFERRED
        member = store.get_member(member_id)
        assert member.status == 'active'
        assert member.status_membership_id is None

    def test_exactly_one_destination(self, orchestrator, quarterly_membership, make_member):
        with pytest.raises(ValidationError):
            orchestrator.transfer(quarterly_membership['membership_id'], reason='Gift',
                                  to_member_id=make_member(), new_member={'name': 'Sara', 'phone': '1'})
        with pytest.raises(ValidationError):
            orchestrator.transfer(quarterly_membership['membership_id'], reason='Gift')

    def test_transfer_to_self_rejected(self, orchestrator, quarterly_membership):
        with pytest.raises(ValidationError):
            orchestrator.transfer(quarterly_membership['membership_id'], reason='Gift',
                                  to_member_id=quarterly_membership['member_id'])

    def test_new_member_needs_phone(self, orchestrator, quarterly_membership):
        with pytest.raises(ValidationError):
            orchestrator.transfer(quarterly_membership['membership_id'], reason='Gift',
                                  new_member={'name': 'Sara Ali'})


# =============================================================================
# FREEZE / SUSPEND / CANCEL
# =============================================================================

class TestFreeze:

    def test_freeze_extends_end_date_and_holds_member(self, orchestrator, store, quarterly_membership):
        result = orchestrator.freeze(quarterly_membership['membership_id'], 10, reason='Travel')

        membership = result.source
        assert membership.status == MembershipStatus.FROZEN
        assert membership.freeze_start_date == TODAY
        assert membership.freeze_end_date == date(2024, 3, 11)
        assert membership.end_date == date(2024, 4, 10)
        assert membership.freeze_days_used == 10
        assert result.change['remaining_days'] == 10

        member = store.get_member(quarterly_membership['member_id'])
        assert member.status == 'frozen'
        assert member.status_membership_id == membership.id

    def test_unfreeze_releases_member(self, orchestrator, store, quarterly_membership):
        orchestrator.freeze(quarterly_membership['membership_id'], 10, reason='Travel')
        result = orchestrator.unfreeze(quarterly_membership['membership_id'])

        assert result.source.status == MembershipStatus.ACTIVE
        assert result.source.end_date == date(2024, 4, 10)
        assert store.get_member(quarterly_membership['member_id']).status == 'active'

    def test_cancelled_membership_cannot_freeze(self, orchestrator, store, make_member, make_package,
                                                make_membership):
        member_id = make_member()
        membership_id = make_membership(member_id, make_package(), status='cancelled')

        with pytest.raises(InvalidTransition) as exc_info:
            orchestrator.freeze(membership_id, 10, reason='Travel')

        assert exc_info.value.details == {'status': 'cancelled', 'action': 'freeze'}
        assert store.list_membership_changes(member_id) == []
        assert store.get_membership(membership_id).freeze_days_used == 0

    def test_duration_over_limit(self, store, quarterly_membership):
        orchestrator = LifecycleOrchestrator(store, EngineSettings(max_freeze_days=30), clock=clock)
        with pytest.raises(ValidationError):
            orchestrator.freeze(quarterly_membership['membership_id'], 31, reason='Travel')


class TestSuspendAndCancel:

    def test_suspend_then_reactivate(self, orchestrator, store, quarterly_membership):
        suspended = orchestrator.suspend(quarterly_membership['membership_id'], reason='Unpaid locker')

        assert suspended.source.status == MembershipStatus.SUSPENDED
        assert suspended.source.suspension_reason == 'Unpaid locker'
        assert suspended.source.suspended_at == TODAY
        assert store.get_member(quarterly_membership['member_id']).status == 'suspended'

        reactivated = orchestrator.reactivate(quarterly_membership['membership_id'], reason='Settled')

        assert reactivated.source.status == MembershipStatus.ACTIVE
        assert reactivated.source.suspension_reason is None
        assert store.get_member(quarterly_membership['member_id']).status == 'active'

    def test_cancel_frozen_membership_releases_member(self, orchestrator, store, quarterly_membership):
        orchestrator.freeze(quarterly_membership['membership_id'], 10, reason='Travel')

        result = orchestrator.cancel(quarterly_membership['membership_id'], reason='Relocating')

        assert result.source.status == MembershipStatus.CANCELLED
        assert result.source.cancellation_date == TODAY
        assert result.source.cancellation_reason == 'Relocating'
        assert store.get_member(quarterly_membership['member_id']).status == 'active'

    def test_cancelled_cannot_be_cancelled_again(self, orchestrator, quarterly_membership):
        orchestrator.cancel(quarterly_membership['membership_id'], reason='Relocating')
        with pytest.raises(InvalidTransition):
            orchestrator.cancel(quarterly_membership['membership_id'], reason='Again')

    def test_change_history_newest_first(self, orchestrator, store, quarterly_membership):
        orchestrator.suspend(quarterly_membership['membership_id'], reason='Locker')
        orchestrator.reactivate(quarterly_membership['membership_id'], reason='Settled')

        changes = store.list_membership_changes(quarterly_membership['member_id'])
        assert [c['change_type'] for c in changes] == ['reactivate', 'suspend']


# =============================================================================
# COMPENSATION
# =============================================================================

class TestCompensation:

    def test_failed_upgrade_is_rolled_back(self, quarterly_membership, make_package):
        store = FailingStore()
        orchestrator = LifecycleOrchestrator(store, clock=clock)
        gold_id = make_package(name='Gold', price=6000)

        with pytest.raises(TransitionFailed) as exc_info:
            orchestrator.upgrade(quarterly_membership['membership_id'], gold_id, reason='Wants more')

        assert exc_info.value.step == 'change'
        assert exc_info.value.compensated == ['successor', 'close_source']

        source = store.get_membership(quarterly_membership['membership_id'])
        assert source.status == MembershipStatus.ACTIVE
        assert source.actual_end_date is None

        successor = Membership.query.filter_by(original_membership_id=source.id).one()
        assert successor.status == 'cancelled'
        assert store.list_membership_changes(quarterly_membership['member_id']) == []

    def test_failed_freeze_restores_counters_and_member(self, quarterly_membership):
        store = FailingStore()
        orchestrator = LifecycleOrchestrator(store, clock=clock)

        with pytest.raises(TransitionFailed):
            orchestrator.freeze(quarterly_membership['membership_id'], 10, reason='Travel')

        source = store.get_membership(quarterly_membership['membership_id'])
        assert source.status == MembershipStatus.ACTIVE
        assert source.freeze_days_used == 0
        assert source.end_date == date(2024, 3, 31)
        assert store.get_member(quarterly_membership['member_id']).status == 'active'

    def test_failed_compensation_needs_manual_review(self, quarterly_membership, make_package):
        store = FailingStore(fail_void=True)
        orchestrator = LifecycleOrchestrator(store, clock=clock)
        gold_id = make_package(name='Gold', price=6000)

        with pytest.raises(PartiallyApplied) as exc_info:
            orchestrator.upgrade(quarterly_membership['membership_id'], gold_id, reason='Wants more')

        error = exc_info.value
        assert error.compensation_failed == ['successor']
        assert error.compensated == ['close_source']
        assert error.details['needs_manual_review'] is True


# =============================================================================
# TRAINERS
# =============================================================================

@pytest.fixture
def pt_membership(make_member, make_package, make_membership, make_trainer, make_rule):
    """3000 membership with 10 PT sessions (4 used) and a 10% rule for coach A"""
    member_id = make_member()
    package_id = make_package(name='PT Quarterly', price=3000, duration_days=90, pt_sessions_included=10)
    membership_id = make_membership(member_id, package_id, pt_sessions_remaining=6, pt_sessions_used=4)
    coach_a = make_trainer('Coach A')
    coach_b = make_trainer('Coach B')
    rule_id = make_rule(coach_a, package_id, member_id, membership_id=membership_id)
    return {
        'member_id': member_id, 'package_id': package_id, 'membership_id': membership_id,
        'coach_a': coach_a, 'coach_b': coach_b, 'rule_id': rule_id,
    }


class TestAssignTrainer:

    def test_assign_creates_rule_and_sets_member_trainer(self, orchestrator, store, make_member, make_package,
                                                         make_membership, make_trainer):
        member_id = make_member()
        package_id = make_package(pt_sessions_included=10)
        membership_id = make_membership(member_id, package_id, pt_sessions_remaining=10)
        trainer_id = make_trainer()

        result = orchestrator.assign_trainer(membership_id, trainer_id, 'percentage', 10)

        assert result.proration.commission == Decimal('300.00')
        assert result.proration.per_session == Decimal('30.00')
        assert result.commission_rules[0].trainer_id == trainer_id
        assert store.get_member(member_id).assigned_trainer_id == trainer_id

        with pytest.raises(ValidationError):
            orchestrator.assign_trainer(membership_id, trainer_id, 'percentage', 10)

    def test_no_sessions_is_invalid_commission(self, orchestrator, quarterly_membership, make_trainer):
        with pytest.raises(InvalidCommission):
            orchestrator.assign_trainer(quarterly_membership['membership_id'], make_trainer(), 'percentage', 10)


class TestChangeTrainer:

    def test_remaining_value_moves_between_trainers(self, orchestrator, store, scheduler, pt_membership):
        """
        TEST: 10% of 3000 over 10 sessions is 30 each; 6 left are worth 180.
        """
        p = pt_membership
        session = scheduler.schedule_session(p['member_id'], p['coach_a'], date(2024, 3, 5),
                                             time(10, 0), time(11, 0), membership_id=p['membership_id'])

        result = orchestrator.change_trainer(p['membership_id'], p['coach_a'], p['coach_b'], reason='Schedule')

        outgoing = store.get_earnings(p['coach_a'])
        incoming = store.get_earnings(p['coach_b'])
        assert [e['total_earning'] for e in outgoing] == ['-180.00']
        assert [e['total_earning'] for e in incoming] == ['180.00']
        assert sum(Decimal(e['total_earning']) for e in outgoing + incoming) == 0

        assert store.get_session(session.id).trainer_id == p['coach_b']
        assert store.get_member(p['member_id']).assigned_trainer_id == p['coach_b']
        assert store.get_active_commission_rule(p['coach_a'], p['package_id'], p['member_id']) is None
        assert result.commission_rules[0].trainer_id == p['coach_b']
        assert result.change['change_type'] == 'trainer_change'
        assert result.change['prorated_amount'] == '180.00'
        assert result.events[0].name == LifecycleEvents.COMMISSION_REASSIGNED

    def test_clash_with_new_trainer_writes_nothing(self, orchestrator, store, scheduler, pt_membership,
                                                   make_member):
        p = pt_membership
        scheduler.schedule_session(p['member_id'], p['coach_a'], date(2024, 3, 5),
                                   time(10, 0), time(11, 0), membership_id=p['membership_id'])
        scheduler.schedule_session(make_member(first_name='Other'), p['coach_b'], date(2024, 3, 5),
                                   time(10, 30), time(11, 30))

        with pytest.raises(ConflictError):
            orchestrator.change_trainer(p['membership_id'], p['coach_a'], p['coach_b'], reason='Schedule')

        assert store.get_active_commission_rule(p['coach_a'], p['package_id'], p['member_id']).id == p['rule_id']
        assert store.get_earnings(p['coach_b']) == []

    def test_same_trainer_rejected(self, orchestrator, pt_membership):
        with pytest.raises(ValidationError):
            orchestrator.change_trainer(pt_membership['membership_id'], pt_membership['coach_a'],
                                        pt_membership['coach_a'], reason='Schedule')

    def test_trainer_without_rule(self, orchestrator, pt_membership, make_trainer):
        with pytest.raises(NotFound):
            orchestrator.change_trainer(pt_membership['membership_id'], pt_membership['coach_b'],
                                        make_trainer('Coach C'), reason='Schedule')
