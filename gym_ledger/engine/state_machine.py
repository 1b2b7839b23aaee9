"""
Membership state machine.

TRANSITIONS is the single authority on which action may run from which
status. It does not decide financial consequences; it only gates the
orchestration routines.
"""
import logging

from gym_ledger.engine.errors import InvalidTransition
from gym_ledger.engine.types import MembershipStatus as S, TransitionAction as A, parse_enum

logger = logging.getLogger(__name__)

TRANSITIONS = {
    A.UPGRADE: frozenset({S.ACTIVE, S.TRIAL}),
    A.DOWNGRADE: frozenset({S.ACTIVE, S.TRIAL}),
    A.FREEZE: frozenset({S.ACTIVE, S.TRIAL}),
    A.TRANSFER: frozenset({S.ACTIVE, S.TRIAL, S.SUSPENDED}),
    A.UNFREEZE: frozenset({S.FROZEN}),
    A.SUSPEND: frozenset({S.ACTIVE, S.TRIAL, S.FROZEN}),
    A.REACTIVATE: frozenset({S.SUSPENDED, S.FROZEN}),
    A.CANCEL: frozenset(set(S) - {S.CANCELLED, S.EXPIRED, S.TRANSFERRED}),
}

# Status the source membership ends up in after a successful action
TARGET_STATUS = {
    A.UPGRADE: S.UPGRADED,
    A.DOWNGRADE: S.DOWNGRADED,
    A.TRANSFER: S.TRANSFERRED,
    A.FREEZE: S.FROZEN,
    A.UNFREEZE: S.ACTIVE,
    A.SUSPEND: S.SUSPENDED,
    A.REACTIVATE: S.ACTIVE,
    A.CANCEL: S.CANCELLED,
}


class MembershipStateMachine:
    """Validates status transitions against TRANSITIONS"""

    def __init__(self, transitions=None):
        self.transitions = transitions or TRANSITIONS

    def allowed_sources(self, action):
        return self.transitions[parse_enum(A, action, 'action')]

    def can(self, status, action) -> bool:
        status = parse_enum(S, status, 'status')
        return status in self.allowed_sources(action)

    def allowed_actions(self, status):
        """Actions that may run from status, in declaration order"""
        status = parse_enum(S, status, 'status')
        return [action for action, sources in self.transitions.items() if status in sources]

    def check(self, status, action):
        """Raise InvalidTransition unless action may run from status"""
        status = parse_enum(S, status, 'status')
        action = parse_enum(A, action, 'action')
        if status not in self.transitions[action]:
            logger.info(f"Rejected {action} from status {status}")
            raise InvalidTransition(status, action)
        return TARGET_STATUS[action]
