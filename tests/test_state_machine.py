# tests/test_state_machine.py
import pytest

from gym_ledger.engine.errors import InvalidTransition, ValidationError
from gym_ledger.engine.state_machine import MembershipStateMachine
from gym_ledger.engine.types import MembershipStatus as S, TransitionAction as A

machine = MembershipStateMachine()


@pytest.mark.parametrize('status, action, target', [
    (S.ACTIVE, A.UPGRADE, S.UPGRADED),
    (S.TRIAL, A.UPGRADE, S.UPGRADED),
    (S.ACTIVE, A.DOWNGRADE, S.DOWNGRADED),
    (S.SUSPENDED, A.TRANSFER, S.TRANSFERRED),
    (S.TRIAL, A.FREEZE, S.FROZEN),
    (S.FROZEN, A.UNFREEZE, S.ACTIVE),
    (S.FROZEN, A.SUSPEND, S.SUSPENDED),
    (S.SUSPENDED, A.REACTIVATE, S.ACTIVE),
    (S.FROZEN, A.REACTIVATE, S.ACTIVE),
    (S.PENDING_PAYMENT, A.CANCEL, S.CANCELLED),
    (S.UPGRADED, A.CANCEL, S.CANCELLED),
])
def test_allowed(status, action, target):
    assert machine.check(status, action) == target


@pytest.mark.parametrize('status, action', [
    (S.CANCELLED, A.FREEZE),
    (S.FROZEN, A.FREEZE),
    (S.FROZEN, A.UPGRADE),
    (S.FROZEN, A.TRANSFER),
    (S.PENDING_PAYMENT, A.UPGRADE),
    (S.ACTIVE, A.UNFREEZE),
    (S.ACTIVE, A.REACTIVATE),
    (S.EXPIRED, A.CANCEL),
    (S.TRANSFERRED, A.CANCEL),
    (S.CANCELLED, A.CANCEL),
])
def test_rejected(status, action):
    with pytest.raises(InvalidTransition) as exc_info:
        machine.check(status, action)

    assert exc_info.value.details == {'status': status.value, 'action': action.value}


def test_accepts_raw_strings():
    assert machine.can('active', 'freeze')
    assert not machine.can('cancelled', 'freeze')


def test_unknown_status_is_validation_error():
    with pytest.raises(ValidationError):
        machine.check('paused', 'freeze')


def test_allowed_actions_from_frozen():
    assert machine.allowed_actions('frozen') == [A.UNFREEZE, A.SUSPEND, A.REACTIVATE, A.CANCEL]
