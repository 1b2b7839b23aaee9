#!/usr/bin/env python3
"""
Main entry point for the gym membership ledger
"""
import os
from gym_ledger import create_app, db
from gym_ledger.models import (
    Member, MembershipPackage, Membership, MembershipChange, Trainer, TrainingSession,
    CommissionRule, TrainerEarning, Payment, CreditTransaction, PaymentPlan, Installment,
)

# Create the Flask application
app = create_app(os.getenv('FLASK_ENV', 'development'))


@app.shell_context_processor
def make_shell_context():
    """Make database models available in flask shell"""
    return {
        'db': db,
        'Member': Member,
        'MembershipPackage': MembershipPackage,
        'Membership': Membership,
        'MembershipChange': MembershipChange,
        'Trainer': Trainer,
        'TrainingSession': TrainingSession,
        'CommissionRule': CommissionRule,
        'TrainerEarning': TrainerEarning,
        'Payment': Payment,
        'CreditTransaction': CreditTransaction,
        'PaymentPlan': PaymentPlan,
        'Installment': Installment,
    }


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5001, debug=True, use_reloader=False)
