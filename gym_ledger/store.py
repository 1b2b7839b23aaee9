"""
SQLAlchemy implementation of the Ledger Store.

Every write commits on its own. Counters shared between transition kinds
are changed with `col = col + :delta` UPDATEs so concurrent writers never
overwrite each other. Uniqueness of a trainer's time slot and of the active
commission rule per (trainer, package, member) is enforced by unique keys
on the tables, not only by the checks that precede the inserts.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, date, time
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from gym_ledger import db
from gym_ledger.engine.errors import ConflictError, LedgerError, NotFound, StoreError, ValidationError
from gym_ledger.engine.scheduling import overlaps
from gym_ledger.engine.store import LedgerStore, idempotent_read
from gym_ledger.engine.types import (
    CommissionRuleRecord, CommissionType, InstallmentRecord, MemberRecord, MembershipRecord,
    Package, PaymentPlanRecord, SessionRecord, money, to_decimal,
)
from gym_ledger.models import (
    CommissionRule, CreditTransaction, Installment, Member, Membership, MembershipChange,
    MembershipPackage, Payment, PaymentPlan, RefundRequest, Trainer, TrainerEarning,
    TrainingSession,
)

logger = logging.getLogger(__name__)

OPEN_INSTALLMENT_STATUSES = ('pending', 'overdue', 'adjusted')
RULE_AMOUNT_FIELDS = ('commission_value', 'min_amount', 'max_amount')


def slot_key(trainer_id, session_date: date, start_time: time) -> str:
    return f'{trainer_id}:{session_date.isoformat()}:{start_time:%H%M}'


class SQLAlchemyLedgerStore(LedgerStore):

    def __init__(self, session=None):
        self.session = session or db.session

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _write(self, what, conflict=None):
        """Commit the enclosed writes; map database failures to StoreError"""
        try:
            yield
            self.session.commit()
        except LedgerError:
            self.session.rollback()
            raise
        except IntegrityError as exc:
            self.session.rollback()
            if conflict:
                raise ConflictError(conflict)
            raise StoreError(f"{what} violated a constraint: {exc.orig}")
        except OperationalError as exc:
            self.session.rollback()
            logger.error(f"{what} failed: {exc}")
            raise StoreError(f"{what} failed: {exc.orig}", retryable=True)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"{what} failed: {exc}")
            raise StoreError(f"{what} failed: {exc}")

    @contextmanager
    def _read(self, what):
        try:
            yield
        except OperationalError as exc:
            self.session.rollback()
            raise StoreError(f"Reading {what} failed: {exc.orig}", retryable=True)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"Reading {what} failed: {exc}")

    def _get(self, model, ident, label):
        with self._read(label):
            obj = self.session.get(model, ident)
        if obj is None:
            raise NotFound(f"{label} {ident} not found")
        return obj

    def _update_row(self, model, ident, label, patch, increments=None, floors=()):
        """
        Single UPDATE of one row: patch values are written as given, each
        increment is applied as col = col + delta. Columns in floors must
        stay non-negative; an update that would push one below zero matches
        no row and is rejected.
        """
        table = model.__table__
        values = dict(patch)
        stmt = table.update().where(table.c.id == ident)
        for column, delta in (increments or {}).items():
            if not delta:
                continue
            values[column] = table.c[column] + delta
            if column in floors and delta < 0:
                stmt = stmt.where(table.c[column] + delta >= 0)
        if not values:
            return
        if 'updated_at' in table.c:
            values['updated_at'] = datetime.utcnow()

        with self._write(f"Updating {label} {ident}"):
            result = self.session.execute(stmt.values(**values))
            if result.rowcount == 0:
                if self.session.get(model, ident) is None:
                    raise NotFound(f"{label} {ident} not found")
                raise ValidationError(
                    f"Update would make {', '.join(floors)} of {label} {ident} negative",
                    details={'increments': {k: str(v) for k, v in (increments or {}).items()}},
                )

    # ------------------------------------------------------------------
    # Record conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _membership(obj: Membership) -> MembershipRecord:
        data = {column.name: getattr(obj, column.name) for column in Membership.__table__.columns}
        data['is_trial'] = bool(obj.is_trial)
        return MembershipRecord.from_mapping(data)

    @staticmethod
    def _member(obj: Member) -> MemberRecord:
        return MemberRecord(
            id=obj.id,
            status=obj.status,
            status_membership_id=obj.status_membership_id,
            credit_balance=money(obj.credit_balance),
            assigned_trainer_id=obj.assigned_trainer_id,
        )

    @staticmethod
    def _rule(obj: CommissionRule) -> CommissionRuleRecord:
        return CommissionRuleRecord(
            id=obj.id,
            trainer_id=obj.trainer_id,
            package_id=obj.package_id,
            member_id=obj.member_id,
            membership_id=obj.membership_id,
            commission_type=CommissionType(obj.commission_type),
            commission_value=to_decimal(obj.commission_value),
            min_amount=None if obj.min_amount is None else to_decimal(obj.min_amount),
            max_amount=None if obj.max_amount is None else to_decimal(obj.max_amount),
            valid_from=obj.valid_from,
            valid_until=obj.valid_until,
            is_active=obj.is_active,
        )

    @staticmethod
    def _session_record(obj: TrainingSession) -> SessionRecord:
        return SessionRecord(
            id=obj.id,
            member_id=obj.member_id,
            trainer_id=obj.trainer_id,
            membership_id=obj.membership_id,
            session_date=obj.session_date,
            start_time=obj.start_time,
            end_time=obj.end_time,
            completed=bool(obj.completed),
            cancelled=bool(obj.cancelled),
        )

    @staticmethod
    def _installment(obj: Installment) -> InstallmentRecord:
        return InstallmentRecord(
            id=obj.id,
            payment_plan_id=obj.payment_plan_id,
            installment_number=obj.installment_number,
            amount=money(obj.amount),
            due_date=obj.due_date,
            paid_amount=money(obj.paid_amount),
            late_fee=money(obj.late_fee),
            status=obj.status,
            paid_date=obj.paid_date,
        )

    @staticmethod
    def _plan(obj: PaymentPlan) -> PaymentPlanRecord:
        return PaymentPlanRecord(
            id=obj.id,
            member_id=obj.member_id,
            membership_id=obj.membership_id,
            total_amount=money(obj.total_amount),
            down_payment=money(obj.down_payment),
            remaining_amount=money(obj.remaining_amount),
            number_of_installments=obj.number_of_installments,
            installment_amount=money(obj.installment_amount),
            installment_frequency=obj.installment_frequency,
            first_installment_date=obj.first_installment_date,
            last_installment_date=obj.last_installment_date,
            late_fee_percentage=to_decimal(obj.late_fee_percentage),
            grace_period_days=obj.grace_period_days or 0,
            status=obj.status,
        )

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    @idempotent_read
    def get_membership(self, membership_id):
        return self._membership(self._get(Membership, membership_id, 'Membership'))

    def create_membership(self, data):
        membership = Membership(**data)
        with self._write("Creating membership"):
            self.session.add(membership)
        logger.info(f"Membership {membership.id} created for member {membership.member_id}")
        return self._membership(membership)

    def update_membership(self, membership_id, patch, increments=None):
        self._update_row(Membership, membership_id, 'Membership', patch, increments)
        return self.get_membership(membership_id)

    def adjust_membership_amounts(self, membership_id, paid_delta=Decimal('0'), pending_delta=Decimal('0'),
                                  total_delta=Decimal('0')):
        self._update_row(Membership, membership_id, 'Membership', {}, {
            'amount_paid': money(paid_delta),
            'amount_pending': money(pending_delta),
            'total_amount_due': money(total_delta),
        }, floors=('amount_pending', 'amount_paid'))
        return self.get_membership(membership_id)

    def adjust_pt_sessions(self, membership_id, remaining_delta=0, used_delta=0):
        self._update_row(Membership, membership_id, 'Membership', {}, {
            'pt_sessions_remaining': int(remaining_delta),
            'pt_sessions_used': int(used_delta),
        }, floors=('pt_sessions_remaining', 'pt_sessions_used'))
        return self.get_membership(membership_id)

    def create_membership_change(self, data):
        change = MembershipChange(**data)
        with self._write("Writing membership change"):
            self.session.add(change)
        return change.to_dict()

    @idempotent_read
    def list_membership_changes(self, member_id):
        with self._read('membership changes'):
            changes = MembershipChange.query.filter_by(member_id=member_id)\
                .order_by(MembershipChange.created_at.desc(), MembershipChange.id.desc()).all()
        return [change.to_dict() for change in changes]

    # ------------------------------------------------------------------
    # Members and packages
    # ------------------------------------------------------------------

    @idempotent_read
    def get_member(self, member_id):
        return self._member(self._get(Member, member_id, 'Member'))

    def update_member(self, member_id, patch):
        member = self._get(Member, member_id, 'Member')
        with self._write(f"Updating member {member_id}"):
            for key, value in patch.items():
                setattr(member, key, value)
        return self._member(member)

    def create_member_identity(self, profile):
        member = Member(
            first_name=profile['first_name'],
            last_name=profile.get('last_name'),
            phone=profile['phone'],
            email=profile.get('email'),
            member_code=profile.get('member_code'),
            status='active',
        )
        with self._write("Creating member"):
            self.session.add(member)
            self.session.flush()
            if not member.member_code:
                member.member_code = f'M{member.id:06d}'
        logger.info(f"Member {member.id} created ({member.full_name})")
        return member.id

    @idempotent_read
    def get_package(self, package_id):
        package = self._get(MembershipPackage, package_id, 'Package')
        return Package(
            id=package.id,
            name=package.name,
            price=to_decimal(package.price),
            duration_days=package.duration_days,
            pt_sessions_included=package.pt_sessions_included or 0,
            transfer_fee=to_decimal(package.transfer_fee),
        )

    @idempotent_read
    def trainer_exists(self, trainer_id):
        with self._read('trainer'):
            trainer = self.session.get(Trainer, trainer_id)
        return trainer is not None and bool(trainer.is_active)

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    @idempotent_read
    def get_active_commission_rule(self, trainer_id, package_id, member_id):
        with self._read('commission rule'):
            rule = CommissionRule.query.filter_by(
                trainer_id=trainer_id, package_id=package_id, member_id=member_id, is_active=True,
            ).first()
        return self._rule(rule) if rule else None

    def deactivate_commission_rule(self, rule_id, until):
        rule = self._get(CommissionRule, rule_id, 'Commission rule')
        with self._write(f"Deactivating commission rule {rule_id}"):
            rule.is_active = False
            rule.valid_until = until
            rule.active_key = None

    def reactivate_commission_rule(self, rule_id):
        rule = self._get(CommissionRule, rule_id, 'Commission rule')
        with self._write(f"Reactivating commission rule {rule_id}"):
            rule.is_active = True
            rule.valid_until = None
            rule.active_key = CommissionRule.make_active_key(rule.trainer_id, rule.package_id, rule.member_id)

    def create_commission_rule(self, data):
        data = dict(data)
        for key in RULE_AMOUNT_FIELDS:
            if data.get(key) is not None:
                data[key] = to_decimal(data[key], key)
        rule = CommissionRule(
            is_active=True,
            active_key=CommissionRule.make_active_key(data['trainer_id'], data['package_id'], data['member_id']),
            **data,
        )
        conflict = (f"Trainer {data['trainer_id']} already has an active commission rule "
                    f"for member {data['member_id']} on package {data['package_id']}")
        with self._write("Creating commission rule", conflict=conflict):
            self.session.add(rule)
        return self._rule(rule)

    def create_earning(self, data):
        earning = TrainerEarning(**data)
        with self._write("Writing trainer earning"):
            self.session.add(earning)
        return earning.to_dict()

    @idempotent_read
    def get_earnings(self, trainer_id, member_id=None):
        with self._read('trainer earnings'):
            query = TrainerEarning.query.filter_by(trainer_id=trainer_id)
            if member_id is not None:
                query = query.filter_by(member_id=member_id)
            earnings = query.order_by(TrainerEarning.id).all()
        return [earning.to_dict() for earning in earnings]

    # ------------------------------------------------------------------
    # Money
    # ------------------------------------------------------------------

    def create_payment(self, data):
        payment = Payment(status='paid', **data)
        with self._write("Recording payment"):
            self.session.add(payment)
            self.session.flush()
            payment.receipt_number = f'RCP-{payment.payment_date:%Y%m%d}-{payment.id:05d}'
        logger.info(f"Payment {payment.receipt_number}: {payment.amount} ({payment.payment_type})")
        return payment.to_dict()

    def create_credit_transaction(self, member_id, amount, transaction_type, reason, membership_id=None):
        amount = money(amount)
        with self._write(f"Writing credit transaction for member {member_id}"):
            member = Member.query.filter_by(id=member_id).with_for_update().first()
            if member is None:
                raise NotFound(f"Member {member_id} not found")
            before = self._journal_balance(member_id)
            after = before + amount
            if after < 0 and transaction_type != 'reversal':
                raise ValidationError(
                    f"Credit balance {before} is insufficient for {-amount}",
                    details={'credit_balance': str(before)},
                )
            txn = CreditTransaction(
                member_id=member_id,
                membership_id=membership_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_before=before,
                balance_after=after,
                reason=reason,
            )
            self.session.add(txn)
        return txn.to_dict()

    def _journal_balance(self, member_id) -> Decimal:
        total = self.session.query(func.coalesce(func.sum(CreditTransaction.amount), 0))\
            .filter(CreditTransaction.member_id == member_id).scalar()
        return money(total)

    @idempotent_read
    def get_credit_balance(self, member_id):
        with self._read('credit balance'):
            return self._journal_balance(member_id)

    def create_refund_request(self, data):
        request = RefundRequest(**data)
        with self._write("Creating refund request"):
            self.session.add(request)
        return request.to_dict()

    def update_refund_request(self, request_id, patch):
        request = self._get(RefundRequest, request_id, 'Refund request')
        with self._write(f"Updating refund request {request_id}"):
            for key, value in patch.items():
                setattr(request, key, value)
        return request.to_dict()

    # ------------------------------------------------------------------
    # Payment plans
    # ------------------------------------------------------------------

    def create_payment_plan(self, data):
        plan = PaymentPlan(**data)
        with self._write("Creating payment plan"):
            self.session.add(plan)
        return self._plan(plan)

    def update_payment_plan(self, plan_id, patch):
        plan = self._get(PaymentPlan, plan_id, 'Payment plan')
        with self._write(f"Updating payment plan {plan_id}"):
            for key, value in patch.items():
                setattr(plan, key, value)
        return self._plan(plan)

    @idempotent_read
    def get_payment_plan(self, plan_id):
        return self._plan(self._get(PaymentPlan, plan_id, 'Payment plan'))

    @idempotent_read
    def get_active_payment_plan(self, member_id):
        with self._read('payment plan'):
            plan = PaymentPlan.query.filter_by(member_id=member_id, status='active')\
                .order_by(PaymentPlan.created_at.desc(), PaymentPlan.id.desc()).first()
        return self._plan(plan) if plan else None

    def link_payment_plan_to_membership(self, membership_id, plan_id):
        self._update_row(Membership, membership_id, 'Membership', {'payment_plan_id': plan_id})

    def create_installments(self, plan_id, rows):
        installments = [Installment(payment_plan_id=plan_id, **row) for row in rows]
        with self._write(f"Creating installments for plan {plan_id}"):
            self.session.add_all(installments)
        return [self._installment(installment) for installment in installments]

    @idempotent_read
    def get_installment(self, installment_id):
        return self._installment(self._get(Installment, installment_id, 'Installment'))

    @idempotent_read
    def get_installments(self, plan_id):
        with self._read('installments'):
            installments = Installment.query.filter_by(payment_plan_id=plan_id)\
                .order_by(Installment.installment_number).all()
        return [self._installment(installment) for installment in installments]

    @idempotent_read
    def get_next_pending_installment(self, plan_id):
        with self._read('installments'):
            installment = Installment.query.filter(
                Installment.payment_plan_id == plan_id,
                Installment.status.in_(OPEN_INSTALLMENT_STATUSES),
            ).order_by(Installment.installment_number).first()
        return self._installment(installment) if installment else None

    def update_installment(self, installment_id, patch):
        installment = self._get(Installment, installment_id, 'Installment')
        with self._write(f"Updating installment {installment_id}"):
            for key, value in patch.items():
                setattr(installment, key, value)
        return self._installment(installment)

    # ------------------------------------------------------------------
    # Training sessions
    # ------------------------------------------------------------------

    @idempotent_read
    def get_session(self, session_id):
        return self._session_record(self._get(TrainingSession, session_id, 'Session'))

    def _conflicts(self, trainer_id, session_date, start_time, end_time, exclude_id=None):
        query = TrainingSession.query.filter(
            TrainingSession.trainer_id == trainer_id,
            TrainingSession.session_date == session_date,
            TrainingSession.cancelled.is_(False),
        )
        if exclude_id is not None:
            query = query.filter(TrainingSession.id != exclude_id)
        return [s for s in query.all() if overlaps(start_time, end_time, s.start_time, s.end_time)]

    @idempotent_read
    def find_conflicting_sessions(self, trainer_id, session_date, start_time, end_time, exclude_id=None):
        with self._read('sessions'):
            clashes = self._conflicts(trainer_id, session_date, start_time, end_time, exclude_id)
        return [self._session_record(s) for s in clashes]

    @idempotent_read
    def find_future_sessions(self, member_id, trainer_id, from_date):
        with self._read('sessions'):
            sessions = TrainingSession.query.filter(
                TrainingSession.member_id == member_id,
                TrainingSession.trainer_id == trainer_id,
                TrainingSession.session_date >= from_date,
                TrainingSession.completed.is_(False),
                TrainingSession.cancelled.is_(False),
            ).order_by(TrainingSession.session_date, TrainingSession.start_time).all()
        return [self._session_record(s) for s in sessions]

    def create_session(self, data):
        conflict = (f"Trainer {data['trainer_id']} is already booked on {data['session_date']} "
                    f"{data['start_time']:%H:%M}")
        with self._write("Booking session", conflict=conflict):
            # Serializes bookings per trainer where the database supports row locks
            Trainer.query.filter_by(id=data['trainer_id']).with_for_update().first()
            if self._conflicts(data['trainer_id'], data['session_date'], data['start_time'], data['end_time']):
                raise ConflictError(conflict)
            session = TrainingSession(
                slot_key=slot_key(data['trainer_id'], data['session_date'], data['start_time']),
                completed=False,
                cancelled=False,
                **data,
            )
            self.session.add(session)
        return self._session_record(session)

    def update_session(self, session_id, patch):
        session = self._get(TrainingSession, session_id, 'Session')
        with self._write(f"Updating session {session_id}", conflict=f"Slot for session {session_id} is taken"):
            for key, value in patch.items():
                setattr(session, key, value)
            if session.cancelled:
                session.slot_key = None
            else:
                session.slot_key = slot_key(session.trainer_id, session.session_date, session.start_time)
        return self._session_record(session)
