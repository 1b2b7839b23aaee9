"""
Installment planner.

Installment i (0-indexed) of a periodic plan falls due on
first_date + i periods. Months are added to the first date each time
rather than chained, so a plan starting on the 31st lands on the last day
of shorter months and returns to the 31st afterwards.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence

from dateutil.relativedelta import relativedelta

from gym_ledger.engine.errors import ValidationError
from gym_ledger.engine.types import InstallmentFrequency, money, parse_enum

PERIODS = {
    InstallmentFrequency.WEEKLY: lambda i: timedelta(days=7 * i),
    InstallmentFrequency.MONTHLY: lambda i: relativedelta(months=i),
    InstallmentFrequency.QUARTERLY: lambda i: relativedelta(months=3 * i),
}


@dataclass(frozen=True)
class InstallmentSchedule:
    total_amount: Decimal
    down_payment: Decimal
    remaining_amount: Decimal
    installment_count: int
    installment_amount: Decimal
    frequency: str
    due_dates: List[date] = field(default_factory=list)

    @property
    def first_installment_date(self) -> date:
        return self.due_dates[0]

    @property
    def last_installment_date(self) -> date:
        return self.due_dates[-1]

    @property
    def installments(self):
        """(number, amount, due_date) triples, numbered from 1"""
        return [(i + 1, self.installment_amount, due) for i, due in enumerate(self.due_dates)]

    def to_dict(self):
        return {
            'total_amount': str(self.total_amount),
            'down_payment': str(self.down_payment),
            'remaining_amount': str(self.remaining_amount),
            'installment_count': self.installment_count,
            'installment_amount': str(self.installment_amount),
            'frequency': self.frequency,
            'first_installment_date': self.first_installment_date.isoformat(),
            'last_installment_date': self.last_installment_date.isoformat(),
            'due_dates': [d.isoformat() for d in self.due_dates],
        }


def due_date(first_date: date, index: int, frequency) -> date:
    frequency = parse_enum(InstallmentFrequency, frequency, 'frequency')
    return first_date + PERIODS[frequency](index)


def generate_due_dates(first_date: date, count: int, frequency) -> List[date]:
    if first_date is None:
        raise ValidationError("'first_installment_date' is required for a periodic plan")
    _check_count(count)
    return [due_date(first_date, i, frequency) for i in range(count)]


def resize_due_dates(current: Sequence[date], count: int, first_date: date, frequency) -> List[date]:
    """
    Change the number of installments while keeping already entered dates.

    Dates at indices that still exist are preserved as-is; only the new tail
    entries are generated from first_date and frequency.
    """
    _check_count(count)
    kept = list(current[:count])
    tail = [due_date(first_date, i, frequency) for i in range(len(kept), count)]
    return kept + tail


def plan_installments(total_amount,
                      down_payment,
                      installment_count: int,
                      frequency=None,
                      first_date: Optional[date] = None,
                      custom_dates: Optional[Sequence[date]] = None) -> InstallmentSchedule:
    total = money(total_amount)
    down = money(down_payment)
    _check_count(installment_count)

    if total < 0:
        raise ValidationError("'total_amount' cannot be negative")
    if down < 0 or down > total:
        raise ValidationError("'down_payment' must be between 0 and the total amount")

    if custom_dates:
        dates = list(custom_dates)
        if len(dates) != installment_count:
            raise ValidationError(
                f"Expected {installment_count} due dates, got {len(dates)}"
            )
        if any(later < earlier for earlier, later in zip(dates, dates[1:])):
            raise ValidationError("Custom due dates must be in ascending order")
        frequency_label = 'custom'
    elif frequency is not None:
        frequency = parse_enum(InstallmentFrequency, frequency, 'frequency')
        dates = generate_due_dates(first_date, installment_count, frequency)
        frequency_label = frequency.value
    else:
        raise ValidationError("Either 'frequency' or 'custom_dates' is required")

    remaining = total - down
    return InstallmentSchedule(
        total_amount=total,
        down_payment=down,
        remaining_amount=remaining,
        installment_count=installment_count,
        installment_amount=money(remaining / Decimal(installment_count)),
        frequency=frequency_label,
        due_dates=dates,
    )


def late_fee(amount, due: date, paid_on: date, grace_period_days: int, late_fee_percentage) -> Decimal:
    """Late fee owed when paid_on is past due + grace period"""
    days_late = (paid_on - due).days - int(grace_period_days or 0)
    if days_late <= 0:
        return money(0)
    return money(money(amount) * Decimal(str(late_fee_percentage)) / Decimal(100))


def _check_count(count):
    if not isinstance(count, int) or count < 1:
        raise ValidationError("'installment_count' must be at least 1")


class InstallmentPlanner:
    """Object form of the planner functions"""

    plan = staticmethod(plan_installments)
    due_dates = staticmethod(generate_due_dates)
    resize = staticmethod(resize_due_dates)
    late_fee = staticmethod(late_fee)
