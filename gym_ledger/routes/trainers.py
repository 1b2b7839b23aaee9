from flask import Blueprint, jsonify

from gym_ledger.services import get_orchestrator, get_scheduler, get_store
from gym_ledger.utils.decorators import require_api_key
from gym_ledger.utils.helpers import (
    json_body, parse_date, parse_int, parse_time, record_to_dict, require, result_to_dict,
)

trainers_bp = Blueprint('trainers', __name__)


@trainers_bp.route('/trainers/assign', methods=['POST'])
@require_api_key
def assign_trainer():
    """
    Request body:
    {
        "membership_id": 12,
        "trainer_id": 2,
        "commission_type": "percentage",
        "commission_value": 20,
        "min_amount": null,
        "max_amount": null
    }
    """
    data = json_body()
    membership_id, trainer_id, commission_type, commission_value = require(
        data, 'membership_id', 'trainer_id', 'commission_type', 'commission_value')

    result = get_orchestrator().assign_trainer(
        parse_int(membership_id, 'membership_id'),
        parse_int(trainer_id, 'trainer_id'),
        commission_type,
        commission_value,
        min_amount=data.get('min_amount'),
        max_amount=data.get('max_amount'),
        valid_from=parse_date(data.get('valid_from'), 'valid_from'),
    )
    return jsonify(result_to_dict(result)), 201


@trainers_bp.route('/trainers/change', methods=['POST'])
@require_api_key
def change_trainer():
    """
    Request body:
    {
        "membership_id": 12,
        "current_trainer_id": 2,
        "new_trainer_id": 5,
        "reason": "Schedule conflict",
        "change_date": "2024-02-01",
        "reassign_sessions": true
    }
    """
    data = json_body()
    membership_id, current_trainer_id, new_trainer_id = require(
        data, 'membership_id', 'current_trainer_id', 'new_trainer_id')

    result = get_orchestrator().change_trainer(
        parse_int(membership_id, 'membership_id'),
        parse_int(current_trainer_id, 'current_trainer_id'),
        parse_int(new_trainer_id, 'new_trainer_id'),
        data.get('reason'),
        change_date=parse_date(data.get('change_date'), 'change_date'),
        reassign_sessions=data.get('reassign_sessions', True) is not False,
        actor=data.get('processed_by'),
    )
    return jsonify(result_to_dict(result))


@trainers_bp.route('/trainers/<int:trainer_id>/earnings')
@require_api_key
def earnings(trainer_id):
    return jsonify({'earnings': get_store().get_earnings(trainer_id)})


@trainers_bp.route('/sessions', methods=['POST'])
@require_api_key
def schedule_session():
    """
    Request body:
    {
        "member_id": 4,
        "trainer_id": 2,
        "membership_id": 12,
        "session_date": "2024-02-03",
        "start_time": "10:00",
        "end_time": "11:00"
    }
    """
    data = json_body()
    member_id, trainer_id, session_date = require(data, 'member_id', 'trainer_id', 'session_date')
    membership_id = data.get('membership_id')

    session = get_scheduler().schedule_session(
        parse_int(member_id, 'member_id'),
        parse_int(trainer_id, 'trainer_id'),
        parse_date(session_date, 'session_date'),
        parse_time(data.get('start_time'), 'start_time'),
        parse_time(data.get('end_time'), 'end_time'),
        membership_id=parse_int(membership_id, 'membership_id') if membership_id is not None else None,
        session_type=data.get('session_type') or 'personal_training',
        notes=data.get('notes'),
    )
    return jsonify(record_to_dict(session)), 201


@trainers_bp.route('/sessions/<int:session_id>/complete', methods=['POST'])
@require_api_key
def complete_session(session_id):
    data = json_body()
    result = get_scheduler().complete_session(
        session_id, completed_on=parse_date(data.get('completed_on'), 'completed_on'))
    return jsonify({
        'session': record_to_dict(result['session']),
        'membership': record_to_dict(result['membership']),
        'earning': result['earning'],
    })


@trainers_bp.route('/sessions/<int:session_id>/cancel', methods=['POST'])
@require_api_key
def cancel_session(session_id):
    data = json_body()
    result = get_scheduler().cancel_session(
        session_id,
        data.get('reason'),
        cancellation_fee=data.get('cancellation_fee') or 0,
        payment_method=data.get('payment_method') or 'cash',
    )
    return jsonify({
        'session': record_to_dict(result['session']),
        'payment': result['payment'],
    })
