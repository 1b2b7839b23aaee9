from datetime import datetime, date
from gym_ledger import db


class Trainer(db.Model):
    """Personal trainer"""
    __tablename__ = 'trainers'

    id = db.Column(db.Integer, primary_key=True)
    employee_code = db.Column(db.String(30), unique=True)
    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(20))

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    sessions = db.relationship('TrainingSession', backref='trainer', lazy='dynamic')

    def __repr__(self):
        return f'<Trainer {self.name}>'


class TrainingSession(db.Model):
    """Personal training session booked with a trainer"""
    __tablename__ = 'training_sessions'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    trainer_id = db.Column(db.Integer, db.ForeignKey('trainers.id'), nullable=False)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id'))

    session_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    session_type = db.Column(db.String(30), default='personal_training')

    # Unique while the session holds the slot; cleared on cancel
    slot_key = db.Column(db.String(60), unique=True)

    completed = db.Column(db.Boolean, default=False)
    cancelled = db.Column(db.Boolean, default=False)
    cancellation_reason = db.Column(db.Text)
    cancellation_fee = db.Column(db.Numeric(10, 2), default=0)

    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    member = db.relationship('Member', backref=db.backref('training_sessions', lazy='dynamic'))

    def __repr__(self):
        return f'<TrainingSession {self.session_date} {self.start_time}>'

    @property
    def time_range(self):
        """Get time range as string"""
        return f"{self.start_time.strftime('%H:%M')} - {self.end_time.strftime('%H:%M')}"

    @property
    def is_upcoming(self):
        return self.session_date >= date.today() and not (self.completed or self.cancelled)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'trainer_id': self.trainer_id,
            'membership_id': self.membership_id,
            'session_date': self.session_date.isoformat(),
            'start_time': self.start_time.strftime('%H:%M'),
            'end_time': self.end_time.strftime('%H:%M'),
            'completed': bool(self.completed),
            'cancelled': bool(self.cancelled),
        }
