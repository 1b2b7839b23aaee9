from datetime import datetime, date
from decimal import Decimal
from gym_ledger import db


class Membership(db.Model):
    """Membership model - one purchase of a package by a member"""
    __tablename__ = 'memberships'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey('membership_packages.id'), nullable=False)

    # Predecessor in an upgrade/downgrade/transfer chain
    original_membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'), nullable=True)

    # Dates
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    actual_end_date = db.Column(db.Date)

    # Status: trial, active, pending_payment, suspended, frozen,
    # expired, cancelled, transferred, upgraded, downgraded
    status = db.Column(db.String(20), default='active', nullable=False)
    is_trial = db.Column(db.Boolean, default=False)

    # Amounts (amount_paid + amount_pending == total_amount_due)
    original_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount_due = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    amount_pending = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    # Freeze
    freeze_start_date = db.Column(db.Date)
    freeze_end_date = db.Column(db.Date)
    freeze_reason = db.Column(db.Text)
    freeze_days_used = db.Column(db.Integer, nullable=False, default=0)

    # Suspension / cancellation
    suspension_reason = db.Column(db.Text)
    suspended_at = db.Column(db.Date)
    cancellation_date = db.Column(db.Date)
    cancellation_reason = db.Column(db.Text)
    refund_eligible_amount = db.Column(db.Numeric(10, 2))

    # Personal training
    pt_sessions_remaining = db.Column(db.Integer, nullable=False, default=0)
    pt_sessions_used = db.Column(db.Integer, nullable=False, default=0)

    payment_plan_id = db.Column(db.Integer, db.ForeignKey('payment_plans.id', use_alter=True))

    # Transfer
    transferred_to_member_id = db.Column(db.Integer, db.ForeignKey('members.id'))
    transferred_from_member_id = db.Column(db.Integer, db.ForeignKey('members.id'))
    transfer_fee_paid = db.Column(db.Numeric(10, 2))

    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    predecessor = db.relationship('Membership', remote_side=[id], backref='successors')
    payment_plan = db.relationship('PaymentPlan', foreign_keys=[payment_plan_id])

    def __repr__(self):
        return f'<Membership {self.id} - {self.status}>'

    @property
    def days_remaining(self):
        """Days remaining"""
        if self.end_date >= date.today():
            return (self.end_date - date.today()).days
        return 0

    @property
    def status_text(self):
        """Status in Arabic"""
        status_map = {
            'trial': 'تجريبي',
            'active': 'نشط',
            'pending_payment': 'بانتظار الدفع',
            'suspended': 'موقوف',
            'frozen': 'مجمد',
            'expired': 'منتهي',
            'cancelled': 'ملغي',
            'transferred': 'منقول',
            'upgraded': 'تمت الترقية',
            'downgraded': 'تم التخفيض',
        }
        return status_map.get(self.status, self.status)

    def to_dict(self):
        def _money(value):
            return str(Decimal(value or 0))

        def _date(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'member_id': self.member_id,
            'package_id': self.package_id,
            'original_membership_id': self.original_membership_id,
            'start_date': _date(self.start_date),
            'end_date': _date(self.end_date),
            'actual_end_date': _date(self.actual_end_date),
            'status': self.status,
            'original_amount': _money(self.original_amount),
            'total_amount_due': _money(self.total_amount_due),
            'amount_paid': _money(self.amount_paid),
            'amount_pending': _money(self.amount_pending),
            'freeze_start_date': _date(self.freeze_start_date),
            'freeze_end_date': _date(self.freeze_end_date),
            'freeze_reason': self.freeze_reason,
            'freeze_days_used': self.freeze_days_used or 0,
            'pt_sessions_remaining': self.pt_sessions_remaining or 0,
            'pt_sessions_used': self.pt_sessions_used or 0,
            'payment_plan_id': self.payment_plan_id,
            'transferred_to_member_id': self.transferred_to_member_id,
            'transferred_from_member_id': self.transferred_from_member_id,
        }


class MembershipChange(db.Model):
    """Audit record written once per lifecycle transition"""
    __tablename__ = 'membership_changes'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    from_membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'), nullable=False)
    to_membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))

    # Type: upgrade, downgrade, transfer, freeze, unfreeze, suspend,
    # reactivate, cancel, trainer_change
    change_type = db.Column(db.String(20), nullable=False)
    change_date = db.Column(db.Date, nullable=False)

    amount_difference = db.Column(db.Numeric(10, 2), default=0)
    remaining_days = db.Column(db.Integer)
    prorated_amount = db.Column(db.Numeric(10, 2))
    additional_payment = db.Column(db.Numeric(10, 2))
    refund_amount = db.Column(db.Numeric(10, 2))

    old_trainer_id = db.Column(db.Integer, db.ForeignKey('trainers.id'))
    new_trainer_id = db.Column(db.Integer, db.ForeignKey('trainers.id'))

    reason = db.Column(db.Text)
    processed_by = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<MembershipChange {self.change_type} {self.from_membership_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'from_membership_id': self.from_membership_id,
            'to_membership_id': self.to_membership_id,
            'change_type': self.change_type,
            'change_date': self.change_date.isoformat(),
            'amount_difference': str(self.amount_difference or 0),
            'remaining_days': self.remaining_days,
            'prorated_amount': str(self.prorated_amount) if self.prorated_amount is not None else None,
            'reason': self.reason,
            'processed_by': self.processed_by,
        }
