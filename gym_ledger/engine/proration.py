"""
Proration calculator.

Pure functions: identical inputs always give identical outputs. Rates and
values are computed at full precision and rounded to the minor unit only on
output, so delta == new_cost - remaining_value exactly.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from gym_ledger.engine.errors import InvalidPackage, ValidationError
from gym_ledger.engine.types import (
    ZERO, MembershipRecord, Package, ProrationPolicy, TransitionAction,
    money, parse_enum, to_decimal,
)


@dataclass(frozen=True)
class ProrationResult:
    policy: ProrationPolicy
    total_days: int
    remaining_days: int
    old_daily_rate: Decimal
    remaining_value: Decimal
    new_daily_rate: Decimal
    new_cost: Decimal
    delta: Decimal
    new_end_date: date

    @property
    def additional_payment(self) -> Decimal:
        """Amount the member owes (positive delta)"""
        return max(self.delta, ZERO)

    @property
    def refund_amount(self) -> Decimal:
        """Amount returned to the member (negative delta)"""
        return max(-self.delta, ZERO)

    def to_dict(self):
        return {
            'policy': self.policy.value,
            'total_days': self.total_days,
            'remaining_days': self.remaining_days,
            'old_daily_rate': str(self.old_daily_rate),
            'remaining_value': str(self.remaining_value),
            'new_daily_rate': str(self.new_daily_rate),
            'new_cost': str(self.new_cost),
            'delta': str(self.delta),
            'additional_payment': str(self.additional_payment),
            'refund_amount': str(self.refund_amount),
            'new_end_date': self.new_end_date.isoformat(),
        }


def validate_package(package: Package):
    if package.duration_days is None or package.duration_days <= 0:
        raise InvalidPackage(
            f"Package '{package.name}' has non-positive duration ({package.duration_days} days)",
            details={'package_id': package.id},
        )
    if package.price is None or package.price <= 0:
        raise InvalidPackage(
            f"Package '{package.name}' has non-positive price ({package.price})",
            details={'package_id': package.id},
        )


def remaining_days(end_date: date, effective_date: date) -> int:
    """Days left on a membership, never negative"""
    return max(0, (end_date - effective_date).days)


def total_days(start_date: date, end_date: date) -> int:
    days = (end_date - start_date).days
    if days <= 0:
        raise InvalidPackage(
            f"Membership period {start_date} - {end_date} has no days to prorate over",
            details={'start_date': start_date.isoformat(), 'end_date': end_date.isoformat()},
        )
    return days


class ProrationCalculator:
    """Computes remaining value and the cost/refund of moving to another package"""

    def __init__(self, default_policy=ProrationPolicy.PROPORTIONAL):
        self.default_policy = parse_enum(ProrationPolicy, default_policy, 'policy')

    def calculate(self,
                  membership: MembershipRecord,
                  package: Package,
                  effective_date: date,
                  policy=None,
                  direction=TransitionAction.UPGRADE,
                  custom_amount=None,
                  ignore_previous_pending: bool = False) -> ProrationResult:
        policy = parse_enum(ProrationPolicy, policy or self.default_policy, 'policy')
        direction = parse_enum(TransitionAction, direction, 'direction')
        if direction not in (TransitionAction.UPGRADE, TransitionAction.DOWNGRADE):
            raise ValidationError(f"Proration direction must be upgrade or downgrade, not {direction}")

        validate_package(package)

        if policy == ProrationPolicy.CUSTOM:
            return self._custom(membership, custom_amount, ignore_previous_pending)

        days_total = total_days(membership.start_date, membership.end_date)
        days_left = remaining_days(membership.end_date, effective_date)

        old_rate = to_decimal(membership.amount_paid) / Decimal(days_total)
        remaining_value = money(old_rate * days_left)
        new_rate = package.price / Decimal(package.duration_days)

        if policy == ProrationPolicy.PROPORTIONAL:
            new_cost = money(new_rate * days_left)
            delta = new_cost - remaining_value
            new_end = membership.end_date
        else:
            new_cost = money(package.price)
            raw = new_cost - remaining_value
            if direction == TransitionAction.UPGRADE:
                delta = max(raw, ZERO)
            else:
                delta = min(raw, ZERO)
            new_end = effective_date + timedelta(days=package.duration_days)

        return ProrationResult(
            policy=policy,
            total_days=days_total,
            remaining_days=days_left,
            old_daily_rate=money(old_rate),
            remaining_value=remaining_value,
            new_daily_rate=money(new_rate),
            new_cost=new_cost,
            delta=delta,
            new_end_date=new_end,
        )

    @staticmethod
    def _custom(membership: MembershipRecord, custom_amount, ignore_previous_pending: bool) -> ProrationResult:
        if custom_amount is None or custom_amount == '':
            raise ValidationError("'custom_amount' is required for the custom policy")
        amount = money(custom_amount)
        if amount < 0:
            raise ValidationError("'custom_amount' cannot be negative")

        delta = amount
        if not ignore_previous_pending:
            delta += money(membership.amount_pending)

        return ProrationResult(
            policy=ProrationPolicy.CUSTOM,
            total_days=membership.total_days,
            remaining_days=0,
            old_daily_rate=ZERO,
            remaining_value=ZERO,
            new_daily_rate=ZERO,
            new_cost=delta,
            delta=delta,
            new_end_date=membership.end_date,
        )


def calculate_proration(membership: MembershipRecord,
                        package: Package,
                        effective_date: date,
                        policy=ProrationPolicy.PROPORTIONAL,
                        direction=TransitionAction.UPGRADE,
                        custom_amount=None,
                        ignore_previous_pending: bool = False) -> ProrationResult:
    """Functional shortcut for one-off previews"""
    return ProrationCalculator(policy).calculate(
        membership, package, effective_date,
        direction=direction,
        custom_amount=custom_amount,
        ignore_previous_pending=ignore_previous_pending,
    )


def freeze_window(start: date, duration_days: int, end_date: date, max_days: int = 365):
    """Return (freeze_end_date, new_end_date) for a freeze of duration_days"""
    if duration_days is None or not (1 <= int(duration_days) <= max_days):
        raise ValidationError(f"Freeze duration must be between 1 and {max_days} days")
    extension = timedelta(days=int(duration_days))
    return start + extension, end_date + extension
