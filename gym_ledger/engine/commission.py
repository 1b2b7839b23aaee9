"""
Trainer commission calculator.

    percentage:   commission = base * value / 100, per_session = commission / sessions
    fixed_amount: commission = value,              per_session = commission / sessions
    per_session:  per_session = value,             commission = per_session * sessions
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from gym_ledger.engine.errors import InvalidCommission
from gym_ledger.engine.types import (
    ZERO, CommissionRuleRecord, CommissionType, money, parse_enum, to_decimal,
)


@dataclass(frozen=True)
class CommissionResult:
    commission_type: CommissionType
    base_amount: Decimal
    total_sessions: int
    commission: Decimal
    per_session: Decimal

    def value_of(self, sessions: int) -> Decimal:
        """Commission value of a number of sessions at this rate"""
        return money(self.per_session * sessions)

    def to_dict(self):
        return {
            'commission_type': self.commission_type.value,
            'base_amount': str(self.base_amount),
            'total_sessions': self.total_sessions,
            'commission': str(self.commission),
            'per_session': str(self.per_session),
        }


def calculate_commission(commission_type,
                         commission_value,
                         base_amount,
                         total_sessions: int,
                         min_amount=None,
                         max_amount=None) -> CommissionResult:
    commission_type = parse_enum(CommissionType, commission_type, 'commission_type')
    value = to_decimal(commission_value, 'commission_value')
    base = to_decimal(base_amount, 'base_amount')

    if value <= 0:
        raise InvalidCommission(f"Commission value must be positive (got {value})")
    if not total_sessions or total_sessions <= 0:
        raise InvalidCommission("Commission needs at least one session to spread over")

    sessions = Decimal(total_sessions)
    if commission_type == CommissionType.PERCENTAGE:
        commission = _bounded(base * value / Decimal(100), min_amount, max_amount)
        per_session = commission / sessions
    elif commission_type == CommissionType.FIXED_AMOUNT:
        commission = _bounded(value, min_amount, max_amount)
        per_session = commission / sessions
    else:
        per_session = value
        commission = per_session * sessions

    return CommissionResult(
        commission_type=commission_type,
        base_amount=money(base),
        total_sessions=int(total_sessions),
        commission=money(commission),
        per_session=money(per_session),
    )


def commission_for_rule(rule: CommissionRuleRecord, base_amount, total_sessions: int) -> CommissionResult:
    return calculate_commission(
        rule.commission_type,
        rule.commission_value,
        base_amount,
        total_sessions,
        min_amount=rule.min_amount,
        max_amount=rule.max_amount,
    )


def _bounded(amount: Decimal, min_amount: Optional[Decimal], max_amount: Optional[Decimal]) -> Decimal:
    if min_amount is not None and amount < to_decimal(min_amount):
        amount = to_decimal(min_amount)
    if max_amount is not None and amount > to_decimal(max_amount):
        amount = to_decimal(max_amount)
    return max(amount, ZERO)


class CommissionCalculator:
    """Object form of calculate_commission for callers that inject calculators"""

    calculate = staticmethod(calculate_commission)
    for_rule = staticmethod(commission_for_rule)
