"""
Billing: payments against a membership, credit redemption, installment
plans and per-member payment summaries.

Membership amounts only move through LedgerStore.adjust_membership_amounts,
so amount_paid + amount_pending == total_amount_due holds after every
payment, late fee and redemption.
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

from gym_ledger.engine.errors import InvalidTransition, ValidationError
from gym_ledger.engine.installments import late_fee, plan_installments
from gym_ledger.engine.saga import Saga
from gym_ledger.engine.store import LedgerStore
from gym_ledger.engine.types import (
    ZERO, EngineSettings, InstallmentRecord, MembershipStatus as S,
    PaymentPlanRecord, money,
)

logger = logging.getLogger(__name__)

# Memberships that no longer accept payments
CLOSED_STATUSES = frozenset({S.CANCELLED, S.TRANSFERRED, S.UPGRADED, S.DOWNGRADED})


@dataclass
class PaymentResult:
    payment: Dict[str, Any]
    membership: Any
    installment: Optional[InstallmentRecord] = None
    payment_plan: Optional[PaymentPlanRecord] = None
    late_fee: Decimal = ZERO
    credit_transaction: Optional[Dict[str, Any]] = None

    def to_dict(self):
        return {
            'payment': self.payment,
            'membership_id': self.membership.id,
            'amount_paid': str(self.membership.amount_paid),
            'amount_pending': str(self.membership.amount_pending),
            'status': self.membership.status.value,
            'installment_id': self.installment.id if self.installment else None,
            'installment_status': self.installment.status if self.installment else None,
            'payment_plan_status': self.payment_plan.status if self.payment_plan else None,
            'late_fee': str(self.late_fee),
            'credit_transaction': self.credit_transaction,
        }


class BillingService:

    def __init__(self, store: LedgerStore, settings: Optional[EngineSettings] = None,
                 clock: Callable[[], date] = date.today):
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(self, membership_id, amount, payment_method='cash', payment_date=None,
                       description=None, installment_id=None) -> PaymentResult:
        """
        Record money received against a membership.

        When the membership has an active payment plan, the payment settles
        installment_id if given, otherwise the next pending installment. A
        late fee for that installment is added to the amount due first.
        """
        return self._pay(membership_id, amount, payment_method, payment_date, description, installment_id)

    def apply_credit(self, membership_id, amount, description=None) -> PaymentResult:
        """Redeem the member's store credit against a membership's pending amount"""
        membership = self.store.get_membership(membership_id)
        requested = money(amount)
        balance = self.store.get_credit_balance(membership.member_id)
        if requested > balance:
            raise ValidationError(
                f"Credit balance {balance} is less than the requested {requested}",
                details={'credit_balance': str(balance)},
            )
        return self._pay(membership_id, requested, 'credit', None,
                         description or 'Paid from credit balance', None, redeem_credit=True)

    def pay_installment(self, installment_id, amount=None, payment_method='cash', paid_on=None) -> PaymentResult:
        """Pay one installment; amount defaults to the installment's remaining amount"""
        installment = self.store.get_installment(installment_id)
        plan = self.store.get_payment_plan(installment.payment_plan_id)
        if plan.membership_id is None:
            raise ValidationError(f"Payment plan {plan.id} is not linked to a membership")
        if amount is None:
            amount = money(installment.amount) - money(installment.paid_amount)
        return self._pay(plan.membership_id, amount, payment_method, paid_on,
                         f'Installment {installment.installment_number}', installment.id)

    def _pay(self, membership_id, amount, payment_method, payment_date, description, installment_id,
             redeem_credit=False) -> PaymentResult:
        amount = money(amount)
        if amount <= 0:
            raise ValidationError("'amount' must be positive")

        membership = self.store.get_membership(membership_id)
        if membership.status in CLOSED_STATUSES:
            raise InvalidTransition(membership.status, 'payment')
        on_date = payment_date or self.clock()

        installment, plan = self._installment_for(membership, installment_id)
        fee = ZERO
        if installment is not None:
            fee = late_fee(installment.amount, installment.due_date, on_date,
                           plan.grace_period_days, plan.late_fee_percentage)
            fee = max(ZERO, fee - money(installment.late_fee))

        outstanding = money(membership.amount_pending) + fee
        if amount > outstanding:
            raise ValidationError(
                f"Payment {amount} exceeds the pending amount {outstanding}",
                details={'amount_pending': str(outstanding)},
            )

        saga = Saga(f'payment:{membership.id}')
        if redeem_credit:
            saga.step(
                'credit',
                lambda ctx: self.store.create_credit_transaction(
                    membership.member_id, -amount, 'credit_redeemed', description,
                    membership_id=membership.id),
                lambda ctx, txn: self.store.create_credit_transaction(
                    membership.member_id, amount, 'reversal',
                    f"Reversal of credit transaction {txn['id']}", membership_id=membership.id),
            )
        if fee > 0:
            saga.step(
                'late_fee',
                lambda ctx: self.store.adjust_membership_amounts(
                    membership.id, pending_delta=fee, total_delta=fee),
                lambda ctx, _: self.store.adjust_membership_amounts(
                    membership.id, pending_delta=-fee, total_delta=-fee),
            )
        saga.step(
            'payment',
            lambda ctx: self.store.create_payment({
                'member_id': membership.member_id,
                'membership_id': membership.id,
                'installment_id': installment.id if installment else None,
                'payment_plan_id': plan.id if plan else None,
                'payment_type': 'membership_fee',
                'amount': amount,
                'payment_method': payment_method,
                'payment_date': on_date,
                'description': description,
            }),
            lambda ctx, payment: self.store.create_payment({
                'member_id': membership.member_id,
                'membership_id': membership.id,
                'payment_type': 'reversal',
                'amount': -amount,
                'payment_method': payment_method,
                'payment_date': self.clock(),
                'description': f"Reversal of payment {payment['id']}",
            }),
        )
        saga.step(
            'amounts',
            lambda ctx: self.store.adjust_membership_amounts(
                membership.id, paid_delta=amount, pending_delta=-amount),
            lambda ctx, _: self.store.adjust_membership_amounts(
                membership.id, paid_delta=-amount, pending_delta=amount),
        )
        if installment is not None:
            saga.step(
                'installment',
                lambda ctx: self._settle_installment(installment, amount, fee, payment_method, on_date),
                lambda ctx, _: self.store.update_installment(installment.id, {
                    'paid_amount': installment.paid_amount,
                    'late_fee': installment.late_fee,
                    'paid_date': installment.paid_date,
                    'status': installment.status,
                }),
            )
            saga.step(
                'plan',
                lambda ctx: self._refresh_plan(plan),
                lambda ctx, _: self.store.update_payment_plan(plan.id, {
                    'remaining_amount': plan.remaining_amount,
                    'status': plan.status,
                }),
            )
        if membership.status == S.PENDING_PAYMENT and outstanding == amount:
            saga.step('activate', lambda ctx: self.store.update_membership(membership.id, {'status': S.ACTIVE.value}))
        ctx = saga.run()

        logger.info(f"Payment of {amount} recorded for membership {membership.id}"
                    + (f" (installment {installment.installment_number})" if installment else ''))
        return PaymentResult(
            payment=ctx['payment'],
            membership=ctx.get('activate') or ctx['amounts'],
            installment=ctx.get('installment'),
            payment_plan=ctx.get('plan'),
            late_fee=fee,
            credit_transaction=ctx.get('credit'),
        )

    def _installment_for(self, membership, installment_id):
        if installment_id is not None:
            installment = self.store.get_installment(installment_id)
            plan = self.store.get_payment_plan(installment.payment_plan_id)
            if plan.membership_id not in (None, membership.id):
                raise ValidationError(f"Installment {installment_id} belongs to another membership")
            if installment.status in ('paid', 'cancelled'):
                raise ValidationError(f"Installment {installment_id} is already {installment.status}")
            return installment, plan

        if not membership.payment_plan_id:
            return None, None
        plan = self.store.get_payment_plan(membership.payment_plan_id)
        if plan.status != 'active':
            return None, None
        return self.store.get_next_pending_installment(plan.id), plan

    def _settle_installment(self, installment, amount, fee, payment_method, on_date):
        paid = money(installment.paid_amount) + amount
        return self.store.update_installment(installment.id, {
            'paid_amount': paid,
            'late_fee': money(installment.late_fee) + fee,
            'paid_date': on_date,
            'payment_method': payment_method,
            'status': 'paid' if paid >= money(installment.amount) else 'adjusted',
        })

    def _refresh_plan(self, plan):
        paid = sum((money(i.paid_amount) for i in self.store.get_installments(plan.id)), ZERO)
        remaining = max(ZERO, money(plan.total_amount) - money(plan.down_payment) - paid)
        return self.store.update_payment_plan(plan.id, {
            'remaining_amount': remaining,
            'status': 'completed' if remaining == 0 else plan.status,
        })

    # ------------------------------------------------------------------
    # Payment plans
    # ------------------------------------------------------------------

    def create_payment_plan(self, member_id, total_amount, down_payment, installment_count,
                            frequency=None, first_date=None, custom_dates: Optional[Sequence[date]] = None,
                            membership_id=None) -> PaymentPlanRecord:
        schedule = plan_installments(total_amount, down_payment, installment_count,
                                     frequency, first_date, custom_dates)
        self.store.get_member(member_id)

        saga = Saga(f'payment_plan:{member_id}')
        saga.step(
            'plan',
            lambda ctx: self.store.create_payment_plan({
                'member_id': member_id,
                'membership_id': membership_id,
                'total_amount': schedule.total_amount,
                'down_payment': schedule.down_payment,
                'remaining_amount': schedule.remaining_amount,
                'number_of_installments': schedule.installment_count,
                'installment_amount': schedule.installment_amount,
                'installment_frequency': schedule.frequency,
                'first_installment_date': schedule.first_installment_date,
                'last_installment_date': schedule.last_installment_date,
                'late_fee_percentage': self.settings.late_fee_percentage,
                'grace_period_days': self.settings.grace_period_days,
            }),
            lambda ctx, plan: self.store.update_payment_plan(plan.id, {'status': 'cancelled'}),
        )
        saga.step(
            'installments',
            lambda ctx: self.store.create_installments(ctx['plan'].id, [
                {'installment_number': number, 'amount': amount, 'due_date': due}
                for number, amount, due in schedule.installments
            ]),
        )
        if membership_id is not None:
            saga.step(
                'link',
                lambda ctx: self.store.link_payment_plan_to_membership(membership_id, ctx['plan'].id),
            )
        ctx = saga.run()

        logger.info(f"Payment plan {ctx['plan'].id} created: {schedule.installment_count} x "
                    f"{schedule.installment_amount} ({schedule.frequency})")
        return ctx['plan']

    def create_payment_plan_for_membership(self, membership_id, installment_count=None, frequency='monthly',
                                           first_date=None, custom_dates=None,
                                           down_payment=None) -> PaymentPlanRecord:
        """Finance a membership's unpaid amount; an existing plan is returned unchanged"""
        membership = self.store.get_membership(membership_id)
        if membership.payment_plan_id:
            return self.store.get_payment_plan(membership.payment_plan_id)
        if membership.status in CLOSED_STATUSES:
            raise InvalidTransition(membership.status, 'payment_plan')
        if membership.is_trial:
            raise ValidationError("Trial memberships are not financed")
        if membership.amount_pending <= 0:
            raise ValidationError(f"Membership {membership.id} has nothing left to pay")

        count = installment_count or self.settings.default_installment_count
        first = first_date or membership.start_date + relativedelta(months=1)
        down = membership.amount_paid if down_payment is None else down_payment
        return self.create_payment_plan(
            membership.member_id, membership.total_amount_due, down, int(count),
            frequency=None if custom_dates else frequency, first_date=first,
            custom_dates=custom_dates, membership_id=membership.id,
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def payment_summary(self, member_id, today: Optional[date] = None) -> Dict[str, Any]:
        """Totals across a member's active payment plan and store credit"""
        today = today or self.clock()
        self.store.get_member(member_id)
        summary = {
            'member_id': member_id,
            'credit_balance': str(self.store.get_credit_balance(member_id)),
            'payment_plan': None,
            'total_paid': '0.00',
            'total_pending': '0.00',
            'installments_paid': 0,
            'installments_open': 0,
            'overdue_count': 0,
            'overdue_amount': '0.00',
            'next_installment': None,
        }
        plan = self.store.get_active_payment_plan(member_id)
        if plan is None:
            return summary

        installments: List[InstallmentRecord] = self.store.get_installments(plan.id)
        paid = sum((money(i.paid_amount) for i in installments), ZERO)
        open_items = [i for i in installments if i.status not in ('paid', 'cancelled')]
        overdue = [i for i in open_items if i.due_date < today]
        pending = sum((money(i.amount) - money(i.paid_amount) for i in open_items), ZERO)

        summary.update(
            payment_plan=plan.id,
            total_paid=str(money(plan.down_payment) + paid),
            total_pending=str(pending),
            installments_paid=sum(1 for i in installments if i.status == 'paid'),
            installments_open=len(open_items),
            overdue_count=len(overdue),
            overdue_amount=str(sum((money(i.amount) - money(i.paid_amount) for i in overdue), ZERO)),
        )
        if open_items:
            upcoming = open_items[0]
            summary['next_installment'] = {
                'id': upcoming.id,
                'installment_number': upcoming.installment_number,
                'amount': str(upcoming.amount),
                'due_date': upcoming.due_date.isoformat(),
            }
        return summary
