from flask import Blueprint, jsonify

from gym_ledger.services import get_orchestrator, get_store
from gym_ledger.utils.decorators import require_api_key
from gym_ledger.utils.helpers import (
    json_body, parse_date, parse_int, record_to_dict, require, result_to_dict,
)

memberships_bp = Blueprint('memberships', __name__)


@memberships_bp.route('', methods=['POST'])
@require_api_key
def purchase():
    """Sell a package to a member"""
    data = json_body()
    member_id, package_id = require(data, 'member_id', 'package_id')

    result = get_orchestrator().purchase(
        parse_int(member_id, 'member_id'),
        parse_int(package_id, 'package_id'),
        start_date=parse_date(data.get('start_date'), 'start_date'),
        amount_paid=data.get('amount_paid') or 0,
        discount=data.get('discount') or 0,
        payment_method=data.get('payment_method') or 'cash',
        is_trial=bool(data.get('is_trial')),
        actor=data.get('processed_by'),
    )
    return jsonify(result_to_dict(result)), 201


@memberships_bp.route('/<int:membership_id>')
@require_api_key
def get_membership(membership_id):
    return jsonify(record_to_dict(get_store().get_membership(membership_id)))


def _package_change(membership_id, direction):
    data = json_body()
    orchestrator = get_orchestrator()
    change = orchestrator.upgrade if direction == 'upgrade' else orchestrator.downgrade

    result = change(
        membership_id,
        parse_int(require(data, 'package_id'), 'package_id'),
        data.get('reason'),
        effective_date=parse_date(data.get('effective_date'), 'effective_date'),
        policy=data.get('policy'),
        custom_amount=data.get('custom_amount'),
        ignore_previous_pending=bool(data.get('ignore_previous_pending')),
        refund_method=data.get('refund_method') or 'credit',
        commission=data.get('commission'),
        actor=data.get('processed_by'),
    )
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/upgrade', methods=['POST'])
@require_api_key
def upgrade(membership_id):
    """
    Request body:
    {
        "package_id": 3,
        "reason": "Wants PT sessions",
        "effective_date": "2024-01-21",
        "policy": "proportional",
        "commission": {"commission_type": "percentage", "commission_value": 20}
    }
    """
    return _package_change(membership_id, 'upgrade')


@memberships_bp.route('/<int:membership_id>/downgrade', methods=['POST'])
@require_api_key
def downgrade(membership_id):
    """Same body as upgrade, plus "refund_method": credit | cash | bank_transfer"""
    return _package_change(membership_id, 'downgrade')


@memberships_bp.route('/<int:membership_id>/transfer', methods=['POST'])
@require_api_key
def transfer(membership_id):
    """
    Request body (exactly one of to_member_id / new_member):
    {
        "to_member_id": 7,
        "new_member": {"first_name": "Sara", "last_name": "Ali", "phone": "0500000000"},
        "reason": "Moving abroad",
        "transfer_date": "2024-02-01",
        "transfer_fee": 50
    }
    """
    data = json_body()
    to_member_id = data.get('to_member_id')

    result = get_orchestrator().transfer(
        membership_id,
        data.get('reason'),
        to_member_id=parse_int(to_member_id, 'to_member_id') if to_member_id is not None else None,
        new_member=data.get('new_member'),
        transfer_date=parse_date(data.get('transfer_date'), 'transfer_date'),
        transfer_fee=data.get('transfer_fee'),
        payment_method=data.get('payment_method') or 'cash',
        actor=data.get('processed_by'),
    )
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/freeze', methods=['POST'])
@require_api_key
def freeze(membership_id):
    data = json_body()
    result = get_orchestrator().freeze(
        membership_id,
        require(data, 'duration_days'),
        data.get('reason'),
        start_date=parse_date(data.get('start_date'), 'start_date'),
        actor=data.get('processed_by'),
    )
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/unfreeze', methods=['POST'])
@require_api_key
def unfreeze(membership_id):
    data = json_body()
    result = get_orchestrator().unfreeze(membership_id, reason=data.get('reason'),
                                         actor=data.get('processed_by'))
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/suspend', methods=['POST'])
@require_api_key
def suspend(membership_id):
    data = json_body()
    result = get_orchestrator().suspend(membership_id, data.get('reason'), actor=data.get('processed_by'))
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/reactivate', methods=['POST'])
@require_api_key
def reactivate(membership_id):
    data = json_body()
    result = get_orchestrator().reactivate(membership_id, data.get('reason'), actor=data.get('processed_by'))
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/cancel', methods=['POST'])
@require_api_key
def cancel(membership_id):
    data = json_body()
    result = get_orchestrator().cancel(
        membership_id,
        data.get('reason'),
        cancellation_date=parse_date(data.get('cancellation_date'), 'cancellation_date'),
        refund_eligible_amount=data.get('refund_eligible_amount'),
        actor=data.get('processed_by'),
    )
    return jsonify(result_to_dict(result))


@memberships_bp.route('/<int:membership_id>/changes')
@require_api_key
def changes(membership_id):
    """Audit chain of the membership's member, newest first"""
    store = get_store()
    membership = store.get_membership(membership_id)
    return jsonify({'changes': store.list_membership_changes(membership.member_id)})
