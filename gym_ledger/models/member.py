from datetime import datetime
from decimal import Decimal
from gym_ledger import db


class Member(db.Model):
    """Member model - Gym members/clients"""
    __tablename__ = 'members'

    id = db.Column(db.Integer, primary_key=True)
    member_code = db.Column(db.String(30), unique=True)

    # Identity / profile
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50))
    phone = db.Column(db.String(20), nullable=False)
    email = db.Column(db.String(100))

    # Status: active, frozen, suspended, inactive
    status = db.Column(db.String(20), default='active', nullable=False)
    # Membership whose transition put the member in a non-active status
    status_membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id', use_alter=True))

    # Store credit, maintained only through credit_transactions
    credit_balance = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    assigned_trainer_id = db.Column(db.Integer, db.ForeignKey('trainers.id'))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    memberships = db.relationship('Membership', backref='member', lazy='dynamic',
                                  foreign_keys='Membership.member_id',
                                  order_by='desc(Membership.created_at)')
    assigned_trainer = db.relationship('Trainer', foreign_keys=[assigned_trainer_id])

    def __repr__(self):
        return f'<Member {self.full_name}>'

    @property
    def full_name(self):
        """First and last name"""
        return ' '.join(part for part in (self.first_name, self.last_name) if part)

    @property
    def balance(self):
        return Decimal(self.credit_balance or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'member_code': self.member_code,
            'name': self.full_name,
            'phone': self.phone,
            'email': self.email,
            'status': self.status,
            'credit_balance': str(self.balance),
            'assigned_trainer_id': self.assigned_trainer_id,
        }
