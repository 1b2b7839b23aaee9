from flask import Blueprint, current_app, jsonify

from gym_ledger.services import get_billing, get_store
from gym_ledger.utils.decorators import require_api_key
from gym_ledger.utils.helpers import (
    format_currency, json_body, parse_date, parse_int, record_to_dict, require,
)

payments_bp = Blueprint('payments', __name__)


@payments_bp.route('/memberships/<int:membership_id>/payments', methods=['POST'])
@require_api_key
def record_payment(membership_id):
    """
    Request body:
    {
        "amount": 250,
        "payment_method": "cash",
        "payment_date": "2024-02-01",
        "installment_id": null
    }
    """
    data = json_body()
    installment_id = data.get('installment_id')

    result = get_billing().record_payment(
        membership_id,
        require(data, 'amount'),
        payment_method=data.get('payment_method') or 'cash',
        payment_date=parse_date(data.get('payment_date'), 'payment_date'),
        description=data.get('description'),
        installment_id=parse_int(installment_id, 'installment_id') if installment_id is not None else None,
    )
    return jsonify(result.to_dict()), 201


@payments_bp.route('/memberships/<int:membership_id>/credit', methods=['POST'])
@require_api_key
def apply_credit(membership_id):
    data = json_body()
    result = get_billing().apply_credit(membership_id, require(data, 'amount'),
                                        description=data.get('description'))
    return jsonify(result.to_dict()), 201


@payments_bp.route('/memberships/<int:membership_id>/payment-plan', methods=['POST'])
@require_api_key
def create_payment_plan(membership_id):
    """
    Request body (all optional):
    {
        "installment_count": 12,
        "frequency": "monthly",
        "first_installment_date": "2024-02-01",
        "custom_dates": ["2024-02-01", "2024-03-15"],
        "down_payment": 200
    }
    """
    data = json_body()
    count = data.get('installment_count')
    custom_dates = data.get('custom_dates')
    if custom_dates:
        custom_dates = [parse_date(value, 'custom_dates') for value in custom_dates]

    billing = get_billing()
    plan = billing.create_payment_plan_for_membership(
        membership_id,
        installment_count=parse_int(count, 'installment_count') if count is not None else None,
        frequency=data.get('frequency') or 'monthly',
        first_date=parse_date(data.get('first_installment_date'), 'first_installment_date'),
        custom_dates=custom_dates,
        down_payment=data.get('down_payment'),
    )
    installments = billing.store.get_installments(plan.id)
    return jsonify({
        'payment_plan': record_to_dict(plan),
        'installments': [record_to_dict(installment) for installment in installments],
    }), 201


@payments_bp.route('/installments/<int:installment_id>/pay', methods=['POST'])
@require_api_key
def pay_installment(installment_id):
    data = json_body()
    result = get_billing().pay_installment(
        installment_id,
        amount=data.get('amount'),
        payment_method=data.get('payment_method') or 'cash',
        paid_on=parse_date(data.get('paid_date'), 'paid_date'),
    )
    return jsonify(result.to_dict()), 201


@payments_bp.route('/members/<int:member_id>/payment-summary')
@require_api_key
def payment_summary(member_id):
    return jsonify(get_billing().payment_summary(member_id))


@payments_bp.route('/members/<int:member_id>/credit')
@require_api_key
def credit_balance(member_id):
    store = get_store()
    store.get_member(member_id)
    balance = store.get_credit_balance(member_id)
    return jsonify({
        'member_id': member_id,
        'credit_balance': str(balance),
        'display': format_currency(balance, current_app.config.get('CURRENCY', 'ر.س')),
    })
