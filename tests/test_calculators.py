# tests/test_calculators.py
"""
Tests for the commission calculator and the installment planner.
"""
from datetime import date
from decimal import Decimal

import pytest

from gym_ledger.engine.commission import calculate_commission
from gym_ledger.engine.errors import InvalidCommission, ValidationError
from gym_ledger.engine.installments import (
    generate_due_dates, late_fee, plan_installments, resize_due_dates,
)


# =============================================================================
# COMMISSION
# =============================================================================

class TestCommission:

    def test_percentage(self):
        """
        TEST: base 10000, 10%, 20 sessions -> 1000 total, 50 per session.
        """
        result = calculate_commission('percentage', 10, 10000, 20)

        assert result.commission == Decimal('1000.00')
        assert result.per_session == Decimal('50.00')

    def test_fixed_amount(self):
        result = calculate_commission('fixed_amount', 600, 10000, 12)

        assert result.commission == Decimal('600.00')
        assert result.per_session == Decimal('50.00')

    def test_per_session(self):
        result = calculate_commission('per_session', 40, 0, 12)

        assert result.per_session == Decimal('40.00')
        assert result.commission == Decimal('480.00')

    def test_value_of_remaining_sessions(self):
        result = calculate_commission('percentage', 10, 10000, 20)
        assert result.value_of(8) == Decimal('400.00')

    def test_max_bound_applied_before_per_session(self):
        result = calculate_commission('percentage', 10, 10000, 20, max_amount=800)

        assert result.commission == Decimal('800.00')
        assert result.per_session == Decimal('40.00')

    def test_min_bound(self):
        result = calculate_commission('percentage', 1, 1000, 10, min_amount=50)
        assert result.commission == Decimal('50.00')

    @pytest.mark.parametrize('value', [0, -5])
    def test_non_positive_value(self, value):
        with pytest.raises(InvalidCommission):
            calculate_commission('percentage', value, 10000, 20)

    def test_zero_sessions(self):
        with pytest.raises(InvalidCommission):
            calculate_commission('per_session', 40, 1000, 0)

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            calculate_commission('bonus', 10, 1000, 10)


# =============================================================================
# INSTALLMENTS
# =============================================================================

class TestInstallmentPlan:

    def test_monthly_plan(self):
        """
        TEST: 12000 total, 2000 down, 5 monthly installments from 2025-01-15.
        """
        schedule = plan_installments(12000, 2000, 5, frequency='monthly', first_date=date(2025, 1, 15))

        assert schedule.installment_amount == Decimal('2000.00')
        assert schedule.remaining_amount == Decimal('10000.00')
        assert schedule.due_dates == [
            date(2025, 1, 15), date(2025, 2, 15), date(2025, 3, 15), date(2025, 4, 15), date(2025, 5, 15),
        ]
        assert schedule.last_installment_date == date(2025, 5, 15)

    def test_weekly_and_quarterly(self):
        assert generate_due_dates(date(2025, 1, 1), 3, 'weekly') == [
            date(2025, 1, 1), date(2025, 1, 8), date(2025, 1, 15),
        ]
        assert generate_due_dates(date(2025, 1, 1), 3, 'quarterly') == [
            date(2025, 1, 1), date(2025, 4, 1), date(2025, 7, 1),
        ]

    def test_month_end_dates_do_not_drift(self):
        dates = generate_due_dates(date(2025, 1, 31), 4, 'monthly')
        assert dates == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)]

    def test_custom_dates(self):
        dates = [date(2025, 2, 1), date(2025, 2, 20), date(2025, 4, 1)]
        schedule = plan_installments(900, 0, 3, custom_dates=dates)

        assert schedule.frequency == 'custom'
        assert schedule.due_dates == dates
        assert schedule.installment_amount == Decimal('300.00')

    def test_custom_dates_count_mismatch(self):
        with pytest.raises(ValidationError):
            plan_installments(900, 0, 3, custom_dates=[date(2025, 2, 1)])

    def test_custom_dates_out_of_order(self):
        with pytest.raises(ValidationError):
            plan_installments(900, 0, 2, custom_dates=[date(2025, 3, 1), date(2025, 2, 1)])

    def test_down_payment_larger_than_total(self):
        with pytest.raises(ValidationError):
            plan_installments(1000, 1500, 2, frequency='monthly', first_date=date(2025, 1, 1))

    def test_zero_installments(self):
        with pytest.raises(ValidationError):
            plan_installments(1000, 0, 0, frequency='monthly', first_date=date(2025, 1, 1))

    def test_resize_keeps_entered_dates(self):
        current = [date(2025, 1, 15), date(2025, 2, 20)]
        resized = resize_due_dates(current, 4, date(2025, 1, 15), 'monthly')

        assert resized == [date(2025, 1, 15), date(2025, 2, 20), date(2025, 3, 15), date(2025, 4, 15)]
        assert resize_due_dates(resized, 1, date(2025, 1, 15), 'monthly') == [date(2025, 1, 15)]


class TestLateFee:

    def test_within_grace_period(self):
        assert late_fee(1000, date(2025, 1, 15), date(2025, 1, 22), 7, 2) == Decimal('0.00')

    def test_after_grace_period(self):
        assert late_fee(1000, date(2025, 1, 15), date(2025, 1, 23), 7, 2) == Decimal('20.00')
