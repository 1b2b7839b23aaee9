from datetime import datetime
from gym_ledger import db


class MembershipPackage(db.Model):
    """Membership package - what a member buys"""
    __tablename__ = 'membership_packages'

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(100), nullable=False)
    # Type: basic, premium, personal_training, trial
    package_type = db.Column(db.String(30), default='basic')
    description = db.Column(db.Text)

    duration_days = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)

    pt_sessions_included = db.Column(db.Integer, default=0)
    transfer_fee = db.Column(db.Numeric(10, 2), default=0)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    memberships = db.relationship('Membership', backref='package', lazy='dynamic')

    def __repr__(self):
        return f'<MembershipPackage {self.name}>'

    @property
    def duration_text(self):
        """Human readable duration"""
        if self.duration_days == 30:
            return 'شهر'
        elif self.duration_days == 90:
            return '3 شهور'
        elif self.duration_days == 180:
            return '6 شهور'
        elif self.duration_days == 365:
            return 'سنة'
        return f'{self.duration_days} يوم'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'package_type': self.package_type,
            'duration_days': self.duration_days,
            'price': str(self.price),
            'pt_sessions_included': self.pt_sessions_included or 0,
            'transfer_fee': str(self.transfer_fee or 0),
        }
