# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The app runs on TestingConfig (in-memory SQLite). Engine objects are bound
to a fixed clock so date arithmetic in tests is deterministic.

Run:
    pytest -v
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from gym_ledger import create_app, db
from gym_ledger.engine import (
    BillingService, EngineSettings, EventBus, LifecycleOrchestrator, SessionScheduler,
)
from gym_ledger.models import CommissionRule, Member, Membership, MembershipPackage, Trainer
from gym_ledger.store import SQLAlchemyLedgerStore

# =============================================================================
# CONSTANTS
# =============================================================================

TODAY = date(2024, 3, 1)
API_HEADERS = {'X-API-Key': 'test-api-key'}


def clock():
    return TODAY


# =============================================================================
# APP / DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def app():
    """Fresh app and schema for each test."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def api_headers():
    return dict(API_HEADERS)


@pytest.fixture
def store(app):
    return SQLAlchemyLedgerStore(db.session)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def orchestrator(store, event_bus):
    return LifecycleOrchestrator(store, EngineSettings(), event_bus=event_bus, clock=clock)


@pytest.fixture
def billing(store):
    return BillingService(store, EngineSettings(), clock=clock)


@pytest.fixture
def scheduler(store, event_bus):
    return SessionScheduler(store, event_bus=event_bus, clock=clock)


# =============================================================================
# FACTORY FIXTURES
# =============================================================================

@pytest.fixture
def make_member(app):
    """Insert a member, return its id."""
    counter = {'n': 0}

    def _make(first_name='Omar', last_name='Hassan', **kwargs):
        counter['n'] += 1
        member = Member(
            first_name=first_name,
            last_name=last_name,
            phone=kwargs.pop('phone', f"05000000{counter['n']:02d}"),
            **kwargs
        )
        db.session.add(member)
        db.session.commit()
        return member.id
    return _make


@pytest.fixture
def make_package(app):
    def _make(name='Quarterly', price=3000, duration_days=90, pt_sessions_included=0, transfer_fee=0):
        package = MembershipPackage(
            name=name,
            price=Decimal(str(price)),
            duration_days=duration_days,
            pt_sessions_included=pt_sessions_included,
            transfer_fee=Decimal(str(transfer_fee)),
        )
        db.session.add(package)
        db.session.commit()
        return package.id
    return _make


@pytest.fixture
def make_trainer(app):
    def _make(name='Coach Ali'):
        trainer = Trainer(name=name)
        db.session.add(trainer)
        db.session.commit()
        return trainer.id
    return _make


@pytest.fixture
def make_membership(app):
    """
    Insert a membership directly. total defaults to amount_paid + amount_pending
    so the amounts invariant holds for every fixture row.
    """
    def _make(member_id, package_id, start_date=date(2024, 1, 1), end_date=None, duration_days=90,
              amount_paid=3000, amount_pending=0, status='active', pt_sessions_remaining=0,
              pt_sessions_used=0, **kwargs):
        paid = Decimal(str(amount_paid))
        pending = Decimal(str(amount_pending))
        membership = Membership(
            member_id=member_id,
            package_id=package_id,
            start_date=start_date,
            end_date=end_date or start_date + timedelta(days=duration_days),
            status=status,
            original_amount=paid + pending,
            total_amount_due=paid + pending,
            amount_paid=paid,
            amount_pending=pending,
            pt_sessions_remaining=pt_sessions_remaining,
            pt_sessions_used=pt_sessions_used,
            **kwargs
        )
        db.session.add(membership)
        db.session.commit()
        return membership.id
    return _make


@pytest.fixture
def make_rule(app):
    def _make(trainer_id, package_id, member_id, commission_type='percentage', commission_value=10,
              membership_id=None, valid_from=date(2024, 1, 1), **kwargs):
        rule = CommissionRule(
            trainer_id=trainer_id,
            package_id=package_id,
            member_id=member_id,
            membership_id=membership_id,
            commission_type=commission_type,
            commission_value=Decimal(str(commission_value)),
            valid_from=valid_from,
            is_active=True,
            active_key=CommissionRule.make_active_key(trainer_id, package_id, member_id),
            **kwargs
        )
        db.session.add(rule)
        db.session.commit()
        return rule.id
    return _make


@pytest.fixture
def quarterly_membership(make_member, make_package, make_membership):
    """
    Member with a 90-day, 3000 membership (2024-01-01 .. 2024-03-31), fully
    paid. On TODAY (2024-03-01) 30 days remain.
    """
    member_id = make_member()
    package_id = make_package(name='Quarterly', price=3000, duration_days=90)
    membership_id = make_membership(member_id, package_id, amount_paid=3000)
    return {'member_id': member_id, 'package_id': package_id, 'membership_id': membership_id}
