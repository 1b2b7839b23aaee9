from datetime import datetime
from gym_ledger import db


class CommissionRule(db.Model):
    """How a trainer earns from one member's package"""
    __tablename__ = 'trainer_commission_rules'

    id = db.Column(db.Integer, primary_key=True)
    trainer_id = db.Column(db.Integer, db.ForeignKey('trainers.id'), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey('membership_packages.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))

    # Type: percentage, fixed_amount, per_session
    commission_type = db.Column(db.String(20), nullable=False)
    commission_value = db.Column(db.Numeric(10, 2), nullable=False)
    min_amount = db.Column(db.Numeric(10, 2))
    max_amount = db.Column(db.Numeric(10, 2))

    valid_from = db.Column(db.Date, nullable=False)
    valid_until = db.Column(db.Date)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Populated while active; at most one active rule per triple
    active_key = db.Column(db.String(60), unique=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    trainer = db.relationship('Trainer', backref=db.backref('commission_rules', lazy='dynamic'))

    def __repr__(self):
        return f'<CommissionRule {self.commission_type} {self.commission_value}>'

    @staticmethod
    def make_active_key(trainer_id, package_id, member_id):
        return f'{trainer_id}:{package_id}:{member_id}'

    def to_dict(self):
        return {
            'id': self.id,
            'trainer_id': self.trainer_id,
            'package_id': self.package_id,
            'member_id': self.member_id,
            'membership_id': self.membership_id,
            'commission_type': self.commission_type,
            'commission_value': str(self.commission_value),
            'valid_from': self.valid_from.isoformat(),
            'valid_until': self.valid_until.isoformat() if self.valid_until else None,
            'is_active': self.is_active,
        }


class TrainerEarning(db.Model):
    """Trainer earning record; negative totals are reversals"""
    __tablename__ = 'trainer_earnings'

    id = db.Column(db.Integer, primary_key=True)
    trainer_id = db.Column(db.Integer, db.ForeignKey('trainers.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))
    commission_rule_id = db.Column(db.Integer, db.ForeignKey('trainer_commission_rules.id'))
    session_id = db.Column(db.Integer, db.ForeignKey('training_sessions.id'))

    # Type: session, trainer_change_adjustment, trainer_change_transfer
    earning_type = db.Column(db.String(40), nullable=False)
    base_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    commission_rate = db.Column(db.Numeric(10, 2))
    commission_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_earning = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    earning_date = db.Column(db.Date, nullable=False)
    is_paid = db.Column(db.Boolean, default=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<TrainerEarning {self.trainer_id} {self.total_earning}>'

    @property
    def earning_month(self):
        return self.earning_date.strftime('%Y-%m')

    def to_dict(self):
        return {
            'id': self.id,
            'trainer_id': self.trainer_id,
            'member_id': self.member_id,
            'membership_id': self.membership_id,
            'earning_type': self.earning_type,
            'base_amount': str(self.base_amount),
            'commission_amount': str(self.commission_amount),
            'total_earning': str(self.total_earning),
            'earning_date': self.earning_date.isoformat(),
            'is_paid': self.is_paid,
        }
