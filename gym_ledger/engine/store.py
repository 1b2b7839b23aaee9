"""
Ledger Store interface.

The engine only talks to storage through this interface. Each write is
assumed to commit on its own; multi-record consistency is the saga's job.
Fields that more than one transition kind updates (amounts, session
counters, credit balance) are only ever changed through the delta
operations, never by writing back a value read earlier.
"""
import functools
import logging
from abc import ABC, abstractmethod
from datetime import date, time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from gym_ledger.engine.errors import StoreError
from gym_ledger.engine.types import (
    CommissionRuleRecord, InstallmentRecord, MemberRecord, MembershipRecord,
    Package, PaymentPlanRecord, SessionRecord,
)

logger = logging.getLogger(__name__)


def idempotent_read(method):
    """Retry a read once when the store reports a retryable failure"""
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except StoreError as exc:
            if not exc.retryable:
                raise
            logger.warning(f"Retrying {method.__name__} after store error: {exc}")
            return method(*args, **kwargs)
    return wrapper


class LedgerStore(ABC):

    # Memberships

    @abstractmethod
    def get_membership(self, membership_id: int) -> MembershipRecord: ...

    @abstractmethod
    def create_membership(self, data: Mapping[str, Any]) -> MembershipRecord: ...

    @abstractmethod
    def update_membership(self, membership_id: int, patch: Mapping[str, Any],
                          increments: Optional[Mapping[str, int]] = None) -> MembershipRecord:
        """Overwrite the fields in patch; add each value in increments to its column"""

    @abstractmethod
    def adjust_membership_amounts(self, membership_id: int, paid_delta: Decimal = Decimal('0'),
                                  pending_delta: Decimal = Decimal('0'),
                                  total_delta: Decimal = Decimal('0')) -> MembershipRecord: ...

    @abstractmethod
    def adjust_pt_sessions(self, membership_id: int, remaining_delta: int = 0,
                           used_delta: int = 0) -> MembershipRecord: ...

    @abstractmethod
    def create_membership_change(self, data: Mapping[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def list_membership_changes(self, member_id: int) -> List[Dict[str, Any]]: ...

    # Members and packages

    @abstractmethod
    def get_member(self, member_id: int) -> MemberRecord: ...

    @abstractmethod
    def update_member(self, member_id: int, patch: Mapping[str, Any]) -> MemberRecord: ...

    @abstractmethod
    def create_member_identity(self, profile: Mapping[str, Any]) -> int: ...

    @abstractmethod
    def get_package(self, package_id: int) -> Package: ...

    @abstractmethod
    def trainer_exists(self, trainer_id: int) -> bool: ...

    # Commission

    @abstractmethod
    def get_active_commission_rule(self, trainer_id: int, package_id: int,
                                   member_id: int) -> Optional[CommissionRuleRecord]: ...

    @abstractmethod
    def deactivate_commission_rule(self, rule_id: int, until: date) -> None: ...

    @abstractmethod
    def reactivate_commission_rule(self, rule_id: int) -> None: ...

    @abstractmethod
    def create_commission_rule(self, data: Mapping[str, Any]) -> CommissionRuleRecord: ...

    @abstractmethod
    def create_earning(self, data: Mapping[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def get_earnings(self, trainer_id: int, member_id: Optional[int] = None) -> List[Dict[str, Any]]: ...

    # Money

    @abstractmethod
    def create_payment(self, data: Mapping[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def create_credit_transaction(self, member_id: int, amount: Decimal, transaction_type: str,
                                  reason: str, membership_id: Optional[int] = None) -> Dict[str, Any]: ...

    @abstractmethod
    def get_credit_balance(self, member_id: int) -> Decimal: ...

    @abstractmethod
    def create_refund_request(self, data: Mapping[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def update_refund_request(self, request_id: int, patch: Mapping[str, Any]) -> Dict[str, Any]: ...

    # Payment plans

    @abstractmethod
    def create_payment_plan(self, data: Mapping[str, Any]) -> PaymentPlanRecord: ...

    @abstractmethod
    def update_payment_plan(self, plan_id: int, patch: Mapping[str, Any]) -> PaymentPlanRecord: ...

    @abstractmethod
    def get_payment_plan(self, plan_id: int) -> PaymentPlanRecord: ...

    @abstractmethod
    def get_active_payment_plan(self, member_id: int) -> Optional[PaymentPlanRecord]: ...

    @abstractmethod
    def link_payment_plan_to_membership(self, membership_id: int, plan_id: Optional[int]) -> None: ...

    @abstractmethod
    def create_installments(self, plan_id: int, rows: List[Mapping[str, Any]]) -> List[InstallmentRecord]: ...

    @abstractmethod
    def get_installment(self, installment_id: int) -> InstallmentRecord: ...

    @abstractmethod
    def get_installments(self, plan_id: int) -> List[InstallmentRecord]: ...

    @abstractmethod
    def get_next_pending_installment(self, plan_id: int) -> Optional[InstallmentRecord]: ...

    @abstractmethod
    def update_installment(self, installment_id: int, patch: Mapping[str, Any]) -> InstallmentRecord: ...

    # Training sessions

    @abstractmethod
    def get_session(self, session_id: int) -> SessionRecord: ...

    @abstractmethod
    def find_conflicting_sessions(self, trainer_id: int, session_date: date, start_time: time,
                                  end_time: time, exclude_id: Optional[int] = None) -> List[SessionRecord]: ...

    @abstractmethod
    def find_future_sessions(self, member_id: int, trainer_id: int, from_date: date) -> List[SessionRecord]: ...

    @abstractmethod
    def create_session(self, data: Mapping[str, Any]) -> SessionRecord:
        """Insert a session; must raise ConflictError if the slot is taken"""

    @abstractmethod
    def update_session(self, session_id: int, patch: Mapping[str, Any]) -> SessionRecord: ...
