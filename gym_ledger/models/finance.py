from datetime import datetime, date
from gym_ledger import db


class Payment(db.Model):
    """Money received from (or returned to) a member"""
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))
    installment_id = db.Column(db.Integer, db.ForeignKey('installments.id'))
    payment_plan_id = db.Column(db.Integer, db.ForeignKey('payment_plans.id'))

    # Type: membership_fee, transfer_fee, refund, cancellation_fee, reversal
    payment_type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)

    # Method: cash, card, bank_transfer, credit
    payment_method = db.Column(db.String(20), default='cash')
    payment_date = db.Column(db.Date, nullable=False, default=date.today)
    status = db.Column(db.String(20), default='paid')
    receipt_number = db.Column(db.String(40))

    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Payment {self.amount} - {self.payment_type}>'

    @property
    def type_text(self):
        """Type in Arabic"""
        type_map = {
            'membership_fee': 'اشتراك',
            'transfer_fee': 'رسوم نقل',
            'refund': 'استرداد',
            'cancellation_fee': 'رسوم إلغاء',
            'reversal': 'عكس قيد',
        }
        return type_map.get(self.payment_type, self.payment_type)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'membership_id': self.membership_id,
            'installment_id': self.installment_id,
            'payment_type': self.payment_type,
            'amount': str(self.amount),
            'payment_method': self.payment_method,
            'payment_date': self.payment_date.isoformat(),
            'receipt_number': self.receipt_number,
        }


class CreditTransaction(db.Model):
    """Append-only journal of a member's store credit"""
    __tablename__ = 'credit_transactions'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))

    # Type: credit_from_transfer, credit_from_downgrade, credit_redeemed, reversal
    transaction_type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    balance_before = db.Column(db.Numeric(10, 2), nullable=False)
    balance_after = db.Column(db.Numeric(10, 2), nullable=False)

    reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<CreditTransaction {self.member_id} {self.amount}>'

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'membership_id': self.membership_id,
            'transaction_type': self.transaction_type,
            'amount': str(self.amount),
            'balance_before': str(self.balance_before),
            'balance_after': str(self.balance_after),
            'reason': self.reason,
        }


class RefundRequest(db.Model):
    """Cash or bank refund owed to a member"""
    __tablename__ = 'refund_requests'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'), nullable=False)

    # Type: partial_refund, full_refund
    refund_type = db.Column(db.String(20), default='partial_refund')
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    refund_method = db.Column(db.String(20), nullable=False)

    # Status: approved, processed, cancelled
    status = db.Column(db.String(20), default='approved')
    reason = db.Column(db.Text, nullable=False)

    request_date = db.Column(db.Date, nullable=False, default=date.today)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<RefundRequest {self.amount}>'

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'membership_id': self.membership_id,
            'amount': str(self.amount),
            'refund_method': self.refund_method,
            'status': self.status,
        }


class PaymentPlan(db.Model):
    """Installment plan covering the unpaid part of a membership"""
    __tablename__ = 'payment_plans'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))

    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    down_payment = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    remaining_amount = db.Column(db.Numeric(10, 2), nullable=False)
    number_of_installments = db.Column(db.Integer, nullable=False)
    installment_amount = db.Column(db.Numeric(10, 2), nullable=False)

    # Frequency: weekly, monthly, quarterly, custom
    installment_frequency = db.Column(db.String(20), nullable=False)
    first_installment_date = db.Column(db.Date, nullable=False)
    last_installment_date = db.Column(db.Date, nullable=False)

    late_fee_percentage = db.Column(db.Numeric(5, 2), default=2)
    grace_period_days = db.Column(db.Integer, default=7)

    # Status: active, completed, cancelled
    status = db.Column(db.String(20), default='active')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    installments = db.relationship('Installment', backref='payment_plan', lazy='dynamic',
                                   order_by='Installment.installment_number')

    def __repr__(self):
        return f'<PaymentPlan {self.id} {self.number_of_installments}x{self.installment_amount}>'

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'membership_id': self.membership_id,
            'total_amount': str(self.total_amount),
            'down_payment': str(self.down_payment),
            'remaining_amount': str(self.remaining_amount),
            'number_of_installments': self.number_of_installments,
            'installment_amount': str(self.installment_amount),
            'installment_frequency': self.installment_frequency,
            'first_installment_date': self.first_installment_date.isoformat(),
            'last_installment_date': self.last_installment_date.isoformat(),
            'status': self.status,
        }


class Installment(db.Model):
    """One scheduled installment of a payment plan"""
    __tablename__ = 'installments'

    id = db.Column(db.Integer, primary_key=True)
    payment_plan_id = db.Column(db.Integer, db.ForeignKey('payment_plans.id'), nullable=False)
    installment_number = db.Column(db.Integer, nullable=False)

    amount = db.Column(db.Numeric(10, 2), nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    paid_date = db.Column(db.Date)
    paid_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    late_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    # Status: pending, paid, overdue, cancelled, adjusted
    status = db.Column(db.String(20), default='pending')
    payment_method = db.Column(db.String(20))

    __table_args__ = (
        db.UniqueConstraint('payment_plan_id', 'installment_number', name='unique_installment'),
    )

    def __repr__(self):
        return f'<Installment {self.installment_number} {self.amount}>'

    def to_dict(self):
        return {
            'id': self.id,
            'payment_plan_id': self.payment_plan_id,
            'installment_number': self.installment_number,
            'amount': str(self.amount),
            'due_date': self.due_date.isoformat(),
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'paid_amount': str(self.paid_amount),
            'late_fee': str(self.late_fee),
            'status': self.status,
        }
