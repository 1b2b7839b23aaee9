from flask import Blueprint, jsonify
from datetime import datetime

from gym_ledger.engine.commission import calculate_commission
from gym_ledger.engine.installments import plan_installments
from gym_ledger.services import get_orchestrator
from gym_ledger.utils.decorators import require_api_key
from gym_ledger.utils.helpers import json_body, parse_date, parse_int, require

api_bp = Blueprint('api', __name__)


@api_bp.route('/health')
@require_api_key
def health():
    """Health check endpoint"""
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.utcnow().isoformat()
    })


@api_bp.route('/preview/proration', methods=['POST'])
@require_api_key
def preview_proration():
    """
    Price moving a membership to another package, without writing anything

    Request body:
    {
        "membership_id": 12,
        "package_id": 3,
        "effective_date": "2024-01-21",
        "policy": "proportional",
        "direction": "upgrade",
        "custom_amount": null,
        "ignore_previous_pending": false
    }
    """
    data = json_body()
    membership_id, package_id = require(data, 'membership_id', 'package_id')

    result = get_orchestrator().preview_change(
        parse_int(membership_id, 'membership_id'),
        parse_int(package_id, 'package_id'),
        effective_date=parse_date(data.get('effective_date'), 'effective_date'),
        policy=data.get('policy'),
        direction=data.get('direction') or 'upgrade',
        custom_amount=data.get('custom_amount'),
        ignore_previous_pending=bool(data.get('ignore_previous_pending')),
    )
    return jsonify(result.to_dict())


@api_bp.route('/preview/commission', methods=['POST'])
@require_api_key
def preview_commission():
    """
    Request body:
    {
        "commission_type": "percentage",
        "commission_value": 20,
        "base_amount": 1000,
        "total_sessions": 10,
        "min_amount": null,
        "max_amount": null
    }
    """
    data = json_body()
    commission_type, commission_value, total_sessions = require(
        data, 'commission_type', 'commission_value', 'total_sessions')

    result = calculate_commission(
        commission_type,
        commission_value,
        data.get('base_amount'),
        parse_int(total_sessions, 'total_sessions'),
        min_amount=data.get('min_amount'),
        max_amount=data.get('max_amount'),
    )
    return jsonify(result.to_dict())


@api_bp.route('/preview/installments', methods=['POST'])
@require_api_key
def preview_installments():
    """
    Request body:
    {
        "total_amount": 1200,
        "down_payment": 200,
        "installment_count": 4,
        "frequency": "monthly",
        "first_installment_date": "2024-02-01",
        "custom_dates": null
    }
    """
    data = json_body()
    total_amount, installment_count = require(data, 'total_amount', 'installment_count')

    custom_dates = data.get('custom_dates')
    if custom_dates:
        custom_dates = [parse_date(value, 'custom_dates') for value in custom_dates]

    schedule = plan_installments(
        total_amount,
        data.get('down_payment') or 0,
        parse_int(installment_count, 'installment_count'),
        frequency=None if custom_dates else (data.get('frequency') or 'monthly'),
        first_date=parse_date(data.get('first_installment_date'), 'first_installment_date'),
        custom_dates=custom_dates,
    )
    return jsonify(schedule.to_dict())
