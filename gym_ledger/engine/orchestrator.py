"""
Lifecycle orchestrator.

Runs one membership transition as a saga: the state machine gates the
action, the calculators price it, and the ordered writes go to the Ledger
Store with a compensating write for each. Calculator and validation errors
are raised before the first write. The MembershipChange is always the last
write of a saga, so a change record exists only for a transition that
completed. Commission bookkeeping that trails an upgrade, downgrade or
transfer runs after the saga; its failures are returned as warnings.
"""
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from gym_ledger.engine.commission import calculate_commission, commission_for_rule
from gym_ledger.engine.errors import ConflictError, InvalidTransition, NotFound, ValidationError
from gym_ledger.engine.events import Event, EventBus, LifecycleEvents
from gym_ledger.engine.proration import ProrationCalculator, freeze_window, remaining_days
from gym_ledger.engine.saga import Saga
from gym_ledger.engine.state_machine import MembershipStateMachine
from gym_ledger.engine.store import LedgerStore
from gym_ledger.engine.types import (
    TRAINER_CHANGE, ZERO, CommissionType, EngineSettings, MembershipRecord,
    MembershipStatus, RefundMethod, TransitionAction, TransitionResult,
    money, parse_enum, to_decimal,
)

logger = logging.getLogger(__name__)

A = TransitionAction
S = MembershipStatus

# Member statuses a membership transition may set, and later undo
MEMBER_HOLD_STATUSES = {'frozen', 'suspended'}


def _require_reason(reason):
    if not reason or not str(reason).strip():
        raise ValidationError("'reason' is required")
    return str(reason).strip()


def _previous(record: MembershipRecord, keys):
    """Values of keys on record, in the shape update_membership accepts"""
    values = {}
    for key in keys:
        value = getattr(record, key)
        values[key] = value.value if isinstance(value, S) else value
    return values


class LifecycleOrchestrator:
    """Executes membership transitions against a LedgerStore"""

    def __init__(self,
                 store: LedgerStore,
                 settings: Optional[EngineSettings] = None,
                 event_bus: Optional[EventBus] = None,
                 state_machine: Optional[MembershipStateMachine] = None,
                 clock: Callable[[], date] = date.today):
        self.store = store
        self.settings = settings or EngineSettings()
        self.event_bus = event_bus
        self.state_machine = state_machine or MembershipStateMachine()
        self.proration = ProrationCalculator(self.settings.default_policy)
        self.clock = clock

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    def purchase(self, member_id, package_id, start_date=None, amount_paid=0,
                 discount=0, payment_method='cash', is_trial=False, actor=None) -> TransitionResult:
        """Create a first membership for a member from a package"""
        self.store.get_member(member_id)
        package = self.store.get_package(package_id)
        start = start_date or self.clock()
        total = money(package.price) - money(discount)
        paid = money(amount_paid)
        if total < 0:
            raise ValidationError("'discount' cannot exceed the package price")
        if paid < 0 or paid > total:
            raise ValidationError("'amount_paid' must be between 0 and the amount due")

        if is_trial:
            status = S.TRIAL
        elif paid > 0 or total == 0:
            status = S.ACTIVE
        else:
            status = S.PENDING_PAYMENT

        saga = Saga(f'purchase:{member_id}')
        saga.step(
            'membership',
            lambda ctx: self.store.create_membership({
                'member_id': member_id,
                'package_id': package.id,
                'start_date': start,
                'end_date': start + timedelta(days=package.duration_days),
                'status': status.value,
                'is_trial': bool(is_trial),
                'original_amount': money(package.price),
                'total_amount_due': total,
                'amount_paid': ZERO,
                'amount_pending': total,
                'pt_sessions_remaining': package.pt_sessions_included,
            }),
            lambda ctx, created: self._void_membership(created, 'purchase rolled back'),
        )
        if paid > 0:
            saga.step(
                'payment',
                lambda ctx: self.store.create_payment({
                    'member_id': member_id,
                    'membership_id': ctx['membership'].id,
                    'payment_type': 'membership_fee',
                    'amount': paid,
                    'payment_method': payment_method,
                    'payment_date': start,
                    'description': f'Purchase of {package.name}',
                }),
                lambda ctx, payment: self._reverse_payment(payment),
            )
            saga.step(
                'amounts',
                lambda ctx: self.store.adjust_membership_amounts(ctx['membership'].id, paid, -paid),
            )
        ctx = saga.run()

        membership = ctx.get('amounts') or ctx['membership']
        result = TransitionResult(action='purchase', source=membership, successor=membership)
        if 'payment' in ctx:
            result.payments.append(ctx['payment'])
        self._emit(result, LifecycleEvents.MEMBERSHIP_CREATED, membership_id=membership.id, member_id=member_id)
        if membership.amount_pending > 0:
            self._emit(result, LifecycleEvents.PAYMENT_PLAN_REQUESTED,
                       membership_id=membership.id, amount_pending=str(membership.amount_pending))
        return result

    # ------------------------------------------------------------------
    # Upgrade / downgrade
    # ------------------------------------------------------------------

    def preview_change(self, membership_id, package_id, effective_date=None, policy=None,
                       direction=A.UPGRADE, custom_amount=None, ignore_previous_pending=False):
        """Price an upgrade/downgrade without writing anything"""
        source = self.store.get_membership(membership_id)
        package = self.store.get_package(package_id)
        return self.proration.calculate(
            source, package, effective_date or self.clock(), policy,
            direction=direction, custom_amount=custom_amount,
            ignore_previous_pending=ignore_previous_pending,
        )

    def upgrade(self, membership_id, package_id, reason, effective_date=None, policy=None,
                custom_amount=None, ignore_previous_pending=False, refund_method=RefundMethod.CREDIT,
                commission: Optional[Mapping[str, Any]] = None, actor=None) -> TransitionResult:
        return self._change_package(A.UPGRADE, membership_id, package_id, reason, effective_date, policy,
                                    custom_amount, ignore_previous_pending, refund_method, commission, actor)

    def downgrade(self, membership_id, package_id, reason, effective_date=None, policy=None,
                  custom_amount=None, ignore_previous_pending=False, refund_method=RefundMethod.CREDIT,
                  commission: Optional[Mapping[str, Any]] = None, actor=None) -> TransitionResult:
        return self._change_package(A.DOWNGRADE, membership_id, package_id, reason, effective_date, policy,
                                    custom_amount, ignore_previous_pending, refund_method, commission, actor)

    def _change_package(self, action, membership_id, package_id, reason, effective_date, policy,
                        custom_amount, ignore_previous_pending, refund_method, commission, actor):
        reason = _require_reason(reason)
        if package_id is None:
            raise ValidationError("'package_id' (target package) is required")
        refund_method = parse_enum(RefundMethod, refund_method or RefundMethod.CREDIT, 'refund_method')

        source = self.store.get_membership(membership_id)
        target_status = self.state_machine.check(source.status, action)
        if package_id == source.package_id:
            raise ValidationError("Target package is the membership's current package")
        package = self.store.get_package(package_id)
        effective = effective_date or self.clock()

        proration = self.proration.calculate(
            source, package, effective, policy,
            direction=action, custom_amount=custom_amount,
            ignore_previous_pending=ignore_previous_pending,
        )
        owed = proration.additional_payment
        refund = proration.refund_amount
        closing = ['status', 'actual_end_date']

        saga = Saga(f'{action.value}:{source.id}')
        saga.step(
            'close_source',
            lambda ctx: self.store.update_membership(source.id, {
                'status': target_status.value,
                'actual_end_date': effective,
            }),
            lambda ctx, _: self.store.update_membership(source.id, _previous(source, closing)),
        )
        saga.step(
            'successor',
            lambda ctx: self.store.create_membership({
                'member_id': source.member_id,
                'package_id': package.id,
                'original_membership_id': source.id,
                'start_date': effective,
                'end_date': max(proration.new_end_date, effective),
                'status': S.ACTIVE.value,
                'original_amount': money(package.price),
                'total_amount_due': owed,
                'amount_paid': ZERO,
                'amount_pending': owed,
                'pt_sessions_remaining': package.pt_sessions_included,
            }),
            lambda ctx, successor: self._void_membership(successor, f'{action.value} rolled back'),
        )
        if refund > 0:
            self._refund_steps(saga, source, refund, refund_method, f'{action.value.capitalize()} refund: {reason}',
                               f'credit_from_{action.value}', effective)
        saga.step(
            'change',
            lambda ctx: self.store.create_membership_change({
                'member_id': source.member_id,
                'from_membership_id': source.id,
                'to_membership_id': ctx['successor'].id,
                'change_type': action.value,
                'change_date': effective,
                'amount_difference': proration.delta,
                'additional_payment': owed,
                'refund_amount': refund,
                'remaining_days': proration.remaining_days,
                'prorated_amount': proration.remaining_value,
                'reason': reason,
                'processed_by': actor,
            }),
        )
        ctx = saga.run()

        result = TransitionResult(
            action=action.value,
            source=ctx['close_source'],
            successor=ctx['successor'],
            change=ctx['change'],
            proration=proration,
        )
        self._collect_refund(result, ctx)
        logger.info(f"Membership {source.id} {target_status.value} to {ctx['successor'].id} "
                    f"(delta {proration.delta})")

        if package.pt_sessions_included > 0:
            self._carry_commission(result, source, ctx['successor'], effective, commission)
        else:
            self._retire_commission(result, source, effective)

        self._emit(result, LifecycleEvents.MEMBERSHIP_CHANGED, change_type=action.value,
                   from_membership_id=source.id, to_membership_id=ctx['successor'].id)
        self._emit(result, LifecycleEvents.MEMBERSHIP_CREATED,
                   membership_id=ctx['successor'].id, member_id=source.member_id)
        if owed > 0:
            self._emit(result, LifecycleEvents.PAYMENT_PLAN_REQUESTED,
                       membership_id=ctx['successor'].id, amount_pending=str(owed))
        return result

    def _refund_steps(self, saga, source, refund, refund_method, description, credit_type, on_date):
        if refund_method == RefundMethod.CREDIT:
            saga.step(
                'credit',
                lambda ctx: self.store.create_credit_transaction(
                    source.member_id, refund, credit_type, description, membership_id=source.id),
                lambda ctx, txn: self._reverse_credit(txn),
            )
            return

        saga.step(
            'refund_request',
            lambda ctx: self.store.create_refund_request({
                'member_id': source.member_id,
                'membership_id': source.id,
                'refund_type': 'partial_refund',
                'amount': refund,
                'refund_method': refund_method.value,
                'reason': description,
                'request_date': on_date,
            }),
            lambda ctx, request: self.store.update_refund_request(request['id'], {'status': 'cancelled'}),
        )
        saga.step(
            'refund_payment',
            lambda ctx: self.store.create_payment({
                'member_id': source.member_id,
                'membership_id': source.id,
                'payment_type': 'refund',
                'amount': -refund,
                'payment_method': refund_method.value,
                'payment_date': on_date,
                'description': description,
            }),
            lambda ctx, payment: self._reverse_payment(payment),
        )

    @staticmethod
    def _collect_refund(result, ctx):
        if 'credit' in ctx:
            result.credit_transactions.append(ctx['credit'])
        if 'refund_request' in ctx:
            result.refund_requests.append(ctx['refund_request'])
        if 'refund_payment' in ctx:
            result.payments.append(ctx['refund_payment'])

    def _carry_commission(self, result, source, successor, effective, commission):
        """Move the member's trainer commission onto the successor; failures become warnings"""
        try:
            member = self.store.get_member(source.member_id)
            if not member.assigned_trainer_id:
                if commission:
                    result.warnings.append(
                        f"Member {source.member_id} has no assigned trainer; "
                        f"commission terms for membership {successor.id} were not applied"
                    )
                return
            trainer_id = member.assigned_trainer_id
            current = self.store.get_active_commission_rule(trainer_id, source.package_id, source.member_id)
            if commission:
                terms = {
                    'commission_type': parse_enum(CommissionType, commission.get('commission_type'),
                                                  'commission_type'),
                    'commission_value': to_decimal(commission.get('commission_value'), 'commission_value'),
                    'min_amount': commission.get('min_amount'),
                    'max_amount': commission.get('max_amount'),
                }
            elif current is not None:
                terms = current.parameters()
            else:
                result.warnings.append(
                    f"Trainer {trainer_id} has no commission terms to carry to membership {successor.id}"
                )
                return

            if current is not None:
                self.store.deactivate_commission_rule(current.id, effective)
            existing = self.store.get_active_commission_rule(trainer_id, successor.package_id, successor.member_id)
            if existing is not None:
                self.store.deactivate_commission_rule(existing.id, effective)
            rule = self.store.create_commission_rule({
                'trainer_id': trainer_id,
                'package_id': successor.package_id,
                'member_id': successor.member_id,
                'membership_id': successor.id,
                'valid_from': effective,
                **{key: (value.value if isinstance(value, CommissionType) else value)
                   for key, value in terms.items()},
            })
            result.commission_rules.append(rule)
        except Exception as exc:
            message = f"Commission update for membership {successor.id} failed: {exc}"
            logger.warning(message)
            result.warnings.append(message)

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def transfer(self, membership_id, reason, to_member_id=None, new_member: Optional[Mapping[str, Any]] = None,
                 transfer_date=None, transfer_fee=None, payment_method='cash', actor=None) -> TransitionResult:
        reason = _require_reason(reason)
        if (to_member_id is None) == (not new_member):
            raise ValidationError("Give exactly one of 'to_member_id' or 'new_member'")

        source = self.store.get_membership(membership_id)
        self.state_machine.check(source.status, A.TRANSFER)

        if to_member_id is not None:
            if to_member_id == source.member_id:
                raise ValidationError("Cannot transfer a membership to its own member")
            self.store.get_member(to_member_id)
        else:
            new_member = self._validate_profile(new_member)

        package = self.store.get_package(source.package_id)
        fee = money(package.transfer_fee if transfer_fee is None else transfer_fee)
        if fee < 0:
            raise ValidationError("'transfer_fee' cannot be negative")

        on_date = transfer_date or self.clock()
        days = remaining_days(source.end_date, on_date)
        pending = max(ZERO, money(source.amount_pending) + fee)
        surplus = money(source.amount_paid) - fee
        closing = ['status', 'actual_end_date', 'transferred_to_member_id']

        saga = Saga(f'transfer:{source.id}')
        if new_member:
            saga.step(
                'destination',
                lambda ctx: self.store.create_member_identity(new_member),
                lambda ctx, member_id: self.store.update_member(member_id, {'status': 'inactive'}),
            )
        else:
            saga.step('destination', lambda ctx: to_member_id)
        saga.step(
            'close_source',
            lambda ctx: self.store.update_membership(source.id, {
                'status': S.TRANSFERRED.value,
                'actual_end_date': on_date,
                'transferred_to_member_id': ctx['destination'],
                'transfer_fee_paid': fee,
            }),
            lambda ctx, _: self.store.update_membership(
                source.id, dict(_previous(source, closing), transfer_fee_paid=None)),
        )
        self._release_member_step(saga, source)
        saga.step(
            'successor',
            lambda ctx: self.store.create_membership({
                'member_id': ctx['destination'],
                'package_id': source.package_id,
                'original_membership_id': source.id,
                'start_date': on_date,
                'end_date': on_date + timedelta(days=days),
                'status': S.ACTIVE.value,
                'original_amount': source.original_amount,
                'total_amount_due': pending,
                'amount_paid': ZERO,
                'amount_pending': pending,
                'pt_sessions_remaining': source.pt_sessions_remaining,
                'transferred_from_member_id': source.member_id,
            }),
            lambda ctx, successor: self._void_membership(successor, 'transfer rolled back'),
        )
        if fee > 0:
            saga.step(
                'transfer_fee',
                lambda ctx: self.store.create_payment({
                    'member_id': source.member_id,
                    'membership_id': source.id,
                    'payment_type': 'transfer_fee',
                    'amount': fee,
                    'payment_method': payment_method,
                    'payment_date': on_date,
                    'description': 'Transfer fee for membership transfer',
                }),
                lambda ctx, payment: self._reverse_payment(payment),
            )
        if surplus > 0:
            saga.step(
                'credit',
                lambda ctx: self.store.create_credit_transaction(
                    source.member_id, surplus, 'credit_from_transfer',
                    f'Credit from membership transfer: {reason}', membership_id=source.id),
                lambda ctx, txn: self._reverse_credit(txn),
            )
        saga.step(
            'change',
            lambda ctx: self.store.create_membership_change({
                'member_id': source.member_id,
                'from_membership_id': source.id,
                'to_membership_id': ctx['successor'].id,
                'change_type': A.TRANSFER.value,
                'change_date': on_date,
                'amount_difference': -fee,
                'additional_payment': fee,
                'remaining_days': days,
                'reason': reason,
                'processed_by': actor,
            }),
        )
        ctx = saga.run()

        result = TransitionResult(
            action=A.TRANSFER.value,
            source=ctx['close_source'],
            successor=ctx['successor'],
            change=ctx['change'],
        )
        if 'transfer_fee' in ctx:
            result.payments.append(ctx['transfer_fee'])
        if 'credit' in ctx:
            result.credit_transactions.append(ctx['credit'])
            self._emit(result, LifecycleEvents.CREDIT_ISSUED,
                       member_id=source.member_id, amount=str(surplus))
        logger.info(f"Membership {source.id} transferred to member {ctx['destination']}")

        self._retire_commission(result, source, on_date)
        self._emit(result, LifecycleEvents.MEMBERSHIP_CHANGED, change_type=A.TRANSFER.value,
                   from_membership_id=source.id, to_membership_id=ctx['successor'].id)
        self._emit(result, LifecycleEvents.MEMBERSHIP_CREATED,
                   membership_id=ctx['successor'].id, member_id=ctx['destination'])
        return result

    @staticmethod
    def _validate_profile(profile: Mapping[str, Any]) -> Dict[str, Any]:
        profile = dict(profile)
        name = (profile.pop('name', None) or '').strip()
        if name and not profile.get('first_name'):
            first, _, last = name.partition(' ')
            profile['first_name'] = first
            profile.setdefault('last_name', last or None)
        if not profile.get('first_name') or not profile.get('phone'):
            raise ValidationError("A new member needs a name and a phone number")
        return profile

    def _retire_commission(self, result, source, on_date):
        """Close the source member's trainer rule once the source membership is closed"""
        try:
            member = self.store.get_member(source.member_id)
            if not member.assigned_trainer_id:
                return
            rule = self.store.get_active_commission_rule(
                member.assigned_trainer_id, source.package_id, source.member_id)
            if rule is not None:
                self.store.deactivate_commission_rule(rule.id, on_date)
        except Exception as exc:
            message = f"Commission rule for closed membership {source.id} was not retired: {exc}"
            logger.warning(message)
            result.warnings.append(message)

    # ------------------------------------------------------------------
    # Freeze / unfreeze
    # ------------------------------------------------------------------

    def freeze(self, membership_id, duration_days, reason, start_date=None, actor=None) -> TransitionResult:
        reason = _require_reason(reason)
        try:
            duration = int(duration_days)
        except (TypeError, ValueError):
            raise ValidationError("'duration_days' must be a whole number of days")

        source = self.store.get_membership(membership_id)
        self.state_machine.check(source.status, A.FREEZE)
        start = start_date or self.clock()
        freeze_end, new_end = freeze_window(start, duration, source.end_date, self.settings.max_freeze_days)
        touched = ['status', 'freeze_start_date', 'freeze_end_date', 'freeze_reason', 'end_date']

        saga = Saga(f'freeze:{source.id}')
        saga.step(
            'membership',
            lambda ctx: self.store.update_membership(source.id, {
                'status': S.FROZEN.value,
                'freeze_start_date': start,
                'freeze_end_date': freeze_end,
                'freeze_reason': reason,
                'end_date': new_end,
            }, increments={'freeze_days_used': duration}),
            lambda ctx, _: self.store.update_membership(
                source.id, _previous(source, touched), increments={'freeze_days_used': -duration}),
        )
        self._hold_member_step(saga, source, 'frozen')
        saga.step('change', self._change_step(source, A.FREEZE, start, reason, actor, remaining_days=duration))
        return self._in_place_result(A.FREEZE, saga.run())

    def unfreeze(self, membership_id, reason=None, actor=None) -> TransitionResult:
        source = self.store.get_membership(membership_id)
        self.state_machine.check(source.status, A.UNFREEZE)
        today = self.clock()

        saga = Saga(f'unfreeze:{source.id}')
        saga.step(
            'membership',
            lambda ctx: self.store.update_membership(source.id, {
                'status': S.ACTIVE.value,
                'freeze_reason': None,
            }),
            lambda ctx, _: self.store.update_membership(source.id, _previous(source, ['status', 'freeze_reason'])),
        )
        self._release_member_step(saga, source)
        saga.step('change', self._change_step(source, A.UNFREEZE, today, reason or 'Unfrozen', actor))
        return self._in_place_result(A.UNFREEZE, saga.run())

    # ------------------------------------------------------------------
    # Suspend / reactivate / cancel
    # ------------------------------------------------------------------

    def suspend(self, membership_id, reason, actor=None) -> TransitionResult:
        reason = _require_reason(reason)
        source = self.store.get_membership(membership_id)
        self.state_machine.check(source.status, A.SUSPEND)
        today = self.clock()

        saga = Saga(f'suspend:{source.id}')
        saga.step(
            'membership',
            lambda ctx: self.store.update_membership(source.id, {
                'status': S.SUSPENDED.value,
                'suspension_reason': reason,
                'suspended_at': today,
            }),
            lambda ctx, _: self.store.update_membership(
                source.id, _previous(source, ['status', 'suspension_reason', 'suspended_at'])),
        )
        self._hold_member_step(saga, source, 'suspended')
        saga.step('change', self._change_step(source, A.SUSPEND, today, reason, actor))
        return self._in_place_result(A.SUSPEND, saga.run())

    def reactivate(self, membership_id, reason, actor=None) -> TransitionResult:
        reason = _require_reason(reason)
        source = self.store.get_membership(membership_id)
        self.state_machine.check(source.status, A.REACTIVATE)
        today = self.clock()
        touched = ['status', 'suspension_reason', 'suspended_at', 'freeze_reason']

        saga = Saga(f'reactivate:{source.id}')
        saga.step(
            'membership',
            lambda ctx: self.store.update_membership(source.id, {
                'status': S.ACTIVE.value,
                'suspension_reason': None,
                'suspended_at': None,
                'freeze_reason': None,
            }),
            lambda ctx, _: self.store.update_membership(source.id, _previous(source, touched)),
        )
        self._release_member_step(saga, source)
        saga.step('change', self._change_step(source, A.REACTIVATE, today, reason, actor))
        return self._in_place_result(A.REACTIVATE, saga.run())

    def cancel(self, membership_id, reason, cancellation_date=None, refund_eligible_amount=None,
               actor=None) -> TransitionResult:
        reason = _require_reason(reason)
        source = self.store.get_membership(membership_id)
        self.state_machine.check(source.status, A.CANCEL)
        on_date = cancellation_date or self.clock()
        refundable = None if refund_eligible_amount is None else money(refund_eligible_amount)
        touched = ['status', 'actual_end_date', 'cancellation_date', 'cancellation_reason']

        saga = Saga(f'cancel:{source.id}')
        saga.step(
            'membership',
            lambda ctx: self.store.update_membership(source.id, {
                'status': S.CANCELLED.value,
                'actual_end_date': on_date,
                'cancellation_date': on_date,
                'cancellation_reason': reason,
                'refund_eligible_amount': refundable,
            }),
            lambda ctx, _: self.store.update_membership(
                source.id, dict(_previous(source, touched), refund_eligible_amount=None)),
        )
        self._release_member_step(saga, source)
        saga.step('change', self._change_step(source, A.CANCEL, on_date, reason, actor))
        return self._in_place_result(A.CANCEL, saga.run())

    def _hold_member_step(self, saga, source, member_status):
        """Mirror a freeze/suspension onto the member when the member is otherwise active"""
        member = self.store.get_member(source.member_id)
        if member.status != 'active' and member.status_membership_id != source.id:
            return
        saga.step(
            'member',
            lambda ctx: self.store.update_member(member.id, {
                'status': member_status,
                'status_membership_id': source.id,
            }),
            lambda ctx, _: self.store.update_member(member.id, {
                'status': member.status,
                'status_membership_id': member.status_membership_id,
            }),
        )

    def _release_member_step(self, saga, source):
        """Restore the member to active if this membership put it on hold"""
        member = self.store.get_member(source.member_id)
        if member.status not in MEMBER_HOLD_STATUSES or member.status_membership_id != source.id:
            return
        saga.step(
            'member',
            lambda ctx: self.store.update_member(member.id, {
                'status': 'active',
                'status_membership_id': None,
            }),
            lambda ctx, _: self.store.update_member(member.id, {
                'status': member.status,
                'status_membership_id': member.status_membership_id,
            }),
        )

    def _change_step(self, source, action, on_date, reason, actor, remaining_days=None):
        def write_change(ctx):
            return self.store.create_membership_change({
                'member_id': source.member_id,
                'from_membership_id': source.id,
                'to_membership_id': source.id,
                'change_type': action.value,
                'change_date': on_date,
                'amount_difference': ZERO,
                'remaining_days': remaining_days,
                'reason': reason,
                'processed_by': actor,
            })
        return write_change

    def _in_place_result(self, action, ctx) -> TransitionResult:
        membership = ctx['membership']
        result = TransitionResult(action=action.value, source=membership, change=ctx['change'])
        logger.info(f"Membership {membership.id} {action.value}: now {membership.status.value}")
        self._emit(result, LifecycleEvents.MEMBERSHIP_CHANGED, change_type=action.value,
                   from_membership_id=membership.id, to_membership_id=membership.id)
        return result

    # ------------------------------------------------------------------
    # Trainers
    # ------------------------------------------------------------------

    def assign_trainer(self, membership_id, trainer_id, commission_type, commission_value,
                       min_amount=None, max_amount=None, valid_from=None) -> TransitionResult:
        """Attach a trainer to a membership with a new commission rule"""
        membership = self._open_membership(membership_id, 'assign_trainer')
        if not self.store.trainer_exists(trainer_id):
            raise NotFound(f"Trainer {trainer_id} not found")
        commission_type = parse_enum(CommissionType, commission_type, 'commission_type')
        value = to_decimal(commission_value, 'commission_value')
        # Fails with InvalidCommission before anything is written
        preview = calculate_commission(commission_type, value, membership.total_amount_due,
                                       membership.total_sessions, min_amount, max_amount)
        if self.store.get_active_commission_rule(trainer_id, membership.package_id, membership.member_id):
            raise ValidationError("This trainer already has an active commission rule for the member's package")

        member = self.store.get_member(membership.member_id)
        start = valid_from or self.clock()

        saga = Saga(f'assign_trainer:{membership.id}')
        saga.step(
            'rule',
            lambda ctx: self.store.create_commission_rule({
                'trainer_id': trainer_id,
                'package_id': membership.package_id,
                'member_id': membership.member_id,
                'membership_id': membership.id,
                'commission_type': commission_type.value,
                'commission_value': value,
                'min_amount': min_amount,
                'max_amount': max_amount,
                'valid_from': start,
            }),
            lambda ctx, rule: self.store.deactivate_commission_rule(rule.id, start),
        )
        saga.step(
            'member',
            lambda ctx: self.store.update_member(member.id, {'assigned_trainer_id': trainer_id}),
        )
        ctx = saga.run()

        result = TransitionResult(action='assign_trainer', source=membership)
        result.commission_rules.append(ctx['rule'])
        result.proration = preview
        return result

    def change_trainer(self, membership_id, current_trainer_id, new_trainer_id, reason,
                       change_date=None, reassign_sessions=True, actor=None) -> TransitionResult:
        """Move a member's commission and future sessions to another trainer"""
        reason = _require_reason(reason)
        if current_trainer_id == new_trainer_id:
            raise ValidationError("New trainer is the current trainer")
        membership = self._open_membership(membership_id, TRAINER_CHANGE)
        if not self.store.trainer_exists(new_trainer_id):
            raise NotFound(f"Trainer {new_trainer_id} not found")
        rule = self.store.get_active_commission_rule(current_trainer_id, membership.package_id, membership.member_id)
        if rule is None:
            raise NotFound(f"Trainer {current_trainer_id} has no active commission rule for this membership")

        on_date = change_date or self.clock()
        commission = commission_for_rule(rule, membership.total_amount_due, membership.total_sessions)
        remaining_value = commission.value_of(membership.pt_sessions_remaining)

        sessions = []
        if reassign_sessions:
            sessions = self.store.find_future_sessions(membership.member_id, current_trainer_id, on_date)
            for session in sessions:
                clashes = self.store.find_conflicting_sessions(
                    new_trainer_id, session.session_date, session.start_time, session.end_time)
                if clashes:
                    raise ConflictError(
                        f"Trainer {new_trainer_id} is already booked on {session.session_date} "
                        f"{session.start_time:%H:%M}-{session.end_time:%H:%M}",
                        details={'session_id': session.id, 'conflicts': [c.id for c in clashes]},
                    )
        member = self.store.get_member(membership.member_id)

        saga = Saga(f'trainer_change:{membership.id}')
        saga.step(
            'close_rule',
            lambda ctx: self.store.deactivate_commission_rule(rule.id, on_date),
            lambda ctx, _: self.store.reactivate_commission_rule(rule.id),
        )
        saga.step(
            'new_rule',
            lambda ctx: self.store.create_commission_rule(dict(
                trainer_id=new_trainer_id,
                package_id=membership.package_id,
                member_id=membership.member_id,
                membership_id=membership.id,
                valid_from=on_date,
                **{key: (value.value if isinstance(value, CommissionType) else value)
                   for key, value in rule.parameters().items()},
            )),
            lambda ctx, new_rule: self.store.deactivate_commission_rule(new_rule.id, on_date),
        )
        if remaining_value > 0:
            saga.step(
                'outgoing_earning',
                lambda ctx: self.store.create_earning(self._earning(
                    current_trainer_id, membership, rule.id, 'trainer_change_adjustment',
                    remaining_value, -remaining_value, on_date)),
                lambda ctx, earning: self._reverse_earning(earning),
            )
            saga.step(
                'incoming_earning',
                lambda ctx: self.store.create_earning(self._earning(
                    new_trainer_id, membership, ctx['new_rule'].id, 'trainer_change_transfer',
                    remaining_value, remaining_value, on_date)),
                lambda ctx, earning: self._reverse_earning(earning),
            )
        for session in sessions:
            saga.step(
                f'session_{session.id}',
                lambda ctx, session=session: self.store.update_session(session.id, {'trainer_id': new_trainer_id}),
                lambda ctx, _, session=session: self.store.update_session(session.id, {'trainer_id': current_trainer_id}),
            )
        if member.assigned_trainer_id in (None, current_trainer_id):
            saga.step(
                'member',
                lambda ctx: self.store.update_member(member.id, {'assigned_trainer_id': new_trainer_id}),
                lambda ctx, _: self.store.update_member(member.id, {'assigned_trainer_id': member.assigned_trainer_id}),
            )
        saga.step(
            'change',
            lambda ctx: self.store.create_membership_change({
                'member_id': membership.member_id,
                'from_membership_id': membership.id,
                'to_membership_id': membership.id,
                'change_type': TRAINER_CHANGE,
                'change_date': on_date,
                'amount_difference': ZERO,
                'prorated_amount': remaining_value,
                'remaining_days': remaining_days(membership.end_date, on_date),
                'old_trainer_id': current_trainer_id,
                'new_trainer_id': new_trainer_id,
                'reason': reason,
                'processed_by': actor,
            }),
        )
        ctx = saga.run()

        result = TransitionResult(action=TRAINER_CHANGE, source=membership, change=ctx['change'],
                                  proration=commission)
        result.commission_rules.append(ctx['new_rule'])
        for key in ('outgoing_earning', 'incoming_earning'):
            if key in ctx:
                result.earnings.append(ctx[key])
        logger.info(f"Membership {membership.id}: trainer {current_trainer_id} -> {new_trainer_id}, "
                    f"{membership.pt_sessions_remaining} sessions worth {remaining_value}, "
                    f"{len(sessions)} sessions reassigned")
        self._emit(result, LifecycleEvents.COMMISSION_REASSIGNED, membership_id=membership.id,
                   from_trainer_id=current_trainer_id, to_trainer_id=new_trainer_id,
                   remaining_value=str(remaining_value), sessions_reassigned=len(sessions))
        return result

    @staticmethod
    def _earning(trainer_id, membership, rule_id, earning_type, base, total, on_date):
        return {
            'trainer_id': trainer_id,
            'member_id': membership.member_id,
            'membership_id': membership.id,
            'commission_rule_id': rule_id,
            'earning_type': earning_type,
            'base_amount': base,
            'commission_rate': None,
            'commission_amount': total,
            'total_earning': total,
            'earning_date': on_date,
        }

    def _open_membership(self, membership_id, action) -> MembershipRecord:
        membership = self.store.get_membership(membership_id)
        if membership.status.is_terminal:
            raise InvalidTransition(membership.status, action)
        return membership

    # ------------------------------------------------------------------
    # Compensations
    # ------------------------------------------------------------------

    def _void_membership(self, membership, why):
        self.store.update_membership(membership.id, {
            'status': S.CANCELLED.value,
            'cancellation_date': self.clock(),
            'cancellation_reason': why,
        })

    def _reverse_payment(self, payment):
        self.store.create_payment({
            'member_id': payment['member_id'],
            'membership_id': payment.get('membership_id'),
            'payment_type': 'reversal',
            'amount': -to_decimal(payment['amount']),
            'payment_method': payment.get('payment_method') or 'cash',
            'payment_date': self.clock(),
            'description': f"Reversal of payment {payment['id']}",
        })

    def _reverse_credit(self, txn):
        self.store.create_credit_transaction(
            txn['member_id'], -to_decimal(txn['amount']), 'reversal',
            f"Reversal of credit transaction {txn['id']}", membership_id=txn.get('membership_id'))

    def _reverse_earning(self, earning):
        amount = -to_decimal(earning['total_earning'])
        self.store.create_earning({
            'trainer_id': earning['trainer_id'],
            'member_id': earning['member_id'],
            'membership_id': earning.get('membership_id'),
            'commission_rule_id': earning.get('commission_rule_id'),
            'earning_type': 'reversal',
            'base_amount': to_decimal(earning['base_amount']),
            'commission_rate': None,
            'commission_amount': amount,
            'total_earning': amount,
            'earning_date': self.clock(),
        })

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, result: TransitionResult, name: LifecycleEvents, **payload):
        event = Event(name, payload)
        result.events.append(event)
        if self.event_bus is not None:
            self.event_bus.publish(event)
