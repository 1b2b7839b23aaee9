from functools import wraps
from flask import current_app, jsonify, request


def require_api_key(f):
    """
    Decorator to require the ledger API key

    Usage:
        @require_api_key
        def my_view():
            ...
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = request.headers.get('X-API-Key')
        expected_key = current_app.config.get('LEDGER_API_KEY')

        if not api_key or api_key != expected_key:
            return jsonify({'error': 'Invalid API key', 'code': 'unauthorized'}), 401

        return f(*args, **kwargs)
    return decorated
