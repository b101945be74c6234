"""
Error Logger Utility
Captures application errors to the error_logs table with request context.
"""

import json
import logging
import traceback
from datetime import datetime
from flask import request, has_request_context
from flask_login import current_user

logger = logging.getLogger(__name__)

# Keys to redact from request data
SENSITIVE_KEYS = {
    'password', 'token', 'csrf_token', 'secret', 'api_key', 'activation_key',
    'authorization', 'cookie', 'session', 'card_number', 'pin'
}


def _sanitize_data(data):
    """Redact sensitive keys from a dict."""
    if isinstance(data, list):
        return [_sanitize_data(value) for value in data[:50]]
    if not isinstance(data, dict):
        return str(data)[:500]
    sanitized = {}
    for key, value in data.items():
        if any(s in str(key).lower() for s in SENSITIVE_KEYS):
            sanitized[key] = '[REDACTED]'
        else:
            sanitized[key] = _sanitize_data(value)
    return sanitized


def _request_details():
    """Request fields stored next to an error, empty outside a request"""
    if not has_request_context():
        return {}

    details = {
        'request_url': request.url[:512] if request.url else None,
        'request_method': request.method,
        'ip_address': request.remote_addr,
        'user_agent': str(request.user_agent)[:512] if request.user_agent else None,
        'blueprint': request.blueprints[0] if request.blueprints else None,
        'endpoint': request.endpoint,
    }

    raw_data = {}
    if request.args:
        raw_data['args'] = dict(request.args)
    payload = request.get_json(silent=True) if request.is_json else None
    if payload:
        raw_data['json'] = payload
    if raw_data:
        details['request_data'] = json.dumps(_sanitize_data(raw_data))[:4000]

    if current_user and current_user.is_authenticated:
        details['merchant_id'] = current_user.id

    return details


def log_error(error, status_code=500):
    """
    Store an error in the database.

    Safe to call from error handlers: failures while logging are written
    to the application log and never raised.

    Args:
        error: The exception or error object
        status_code: HTTP status code (default 500)

    Returns:
        ErrorLog or None
    """
    from app.models import db, ErrorLog

    tb = traceback.format_exc()
    try:
        error_log = ErrorLog(
            timestamp=datetime.utcnow(),
            error_type=type(error).__name__,
            error_message=str(error)[:2000],
            traceback=tb if tb != 'NoneType: None\n' else None,
            status_code=status_code,
            is_resolved=False,
            **_request_details()
        )
        db.session.add(error_log)
        db.session.commit()
        return error_log
    except Exception as e:
        db.session.rollback()
        logger.error(f"Could not store error log entry: {str(e)}")
        return None
