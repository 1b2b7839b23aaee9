from datetime import datetime, date, time

from flask import request

from gym_ledger.engine.errors import ValidationError


def json_body():
    """Request JSON as a dict; a missing or non-object body is a validation error"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('No data provided')
    return data


def require(data, *keys):
    """Values of keys in data, raising ValidationError naming the first one missing"""
    values = []
    for key in keys:
        if data.get(key) in (None, ''):
            raise ValidationError(f"'{key}' is required")
        values.append(data[key])
    return values[0] if len(values) == 1 else values


def parse_date(value, field_name='date'):
    """Parse a YYYY-MM-DD string; None stays None"""
    if value in (None, ''):
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a date in YYYY-MM-DD format")


def parse_time(value, field_name='time'):
    """Parse an HH:MM string"""
    if isinstance(value, time):
        return value
    try:
        return datetime.strptime(value, '%H:%M').time()
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a time in HH:MM format")


def parse_int(value, field_name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a whole number")


def format_currency(amount, currency='ر.س'):
    """Format amount as currency"""
    if amount is None:
        return f"0 {currency}"
    return f"{float(amount):,.2f} {currency}"


def record_to_dict(value):
    """JSON shape of an engine record (dataclass); dicts pass through"""
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    data = {}
    for key, item in vars(value).items():
        if isinstance(item, (date, time)):
            item = item.isoformat()
        elif hasattr(item, 'value'):
            item = item.value
        elif item is not None and not isinstance(item, (int, str, bool)):
            item = str(item)
        data[key] = item
    return data


def result_to_dict(result):
    """JSON shape of a TransitionResult"""
    return {
        'action': result.action,
        'source': record_to_dict(result.source),
        'successor': record_to_dict(result.successor),
        'change': result.change,
        'proration': result.proration.to_dict() if result.proration is not None else None,
        'payments': result.payments,
        'credit_transactions': result.credit_transactions,
        'refund_requests': result.refund_requests,
        'commission_rules': [record_to_dict(rule) for rule in result.commission_rules],
        'earnings': result.earnings,
        'warnings': result.warnings,
        'events': [{'name': event.name.value, 'payload': event.payload} for event in result.events],
    }
