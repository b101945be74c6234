"""
Settings Routes
Budget alerts, Loyverse webhook credentials, store details and cutoff time
"""

import re
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required, current_user
from app.models import db, BudgetAlert, BudgetAlertSetting, WebhookConfig
from app.routes.auth import log_activity
from app.services.zimra_client import ZimraValidationError
from app.utils.helpers import (
    VALID_STRUCTURE, check_description_structure, extract_store_email,
    extract_store_tin, extract_store_vat, get_time_check_details
)

bp = Blueprint('settings', __name__)

TARGET_PERIODS = ['Hourly', 'Daily', 'Weekly', 'Monthly']
CALCULATION_BASES = ['By Tax', 'By SalesExc', 'By SalesInc']
WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']
TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')

DEFAULT_TIME_RULES = {
    'hourly': {'frequency': 'every'},
    'daily': {'time': '20:00'},
    'weekly': {'day': 'Sunday', 'time': '20:00'},
    'monthly': {'day': 'last', 'time': '20:00'},
}

DEFAULT_BUDGET_SETTINGS = {
    'enabled': False,
    'target_period': 'Hourly',
    'calculation_basis': 'By Tax',
    'target_min': 0.01,
    'target_max': 0.5,
    'hourly_target': None,
    'time_rules': DEFAULT_TIME_RULES,
}


def _optional_float(data, key):
    value = data.get(key)
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ZimraValidationError(f"{key} must be a number")


def validate_time_rules(time_rules):
    """
    Check the per-period schedule of a budget alert

    Raises:
        ZimraValidationError: on an unknown period or malformed time/day
    """
    if not isinstance(time_rules, dict):
        raise ZimraValidationError("time_rules must be an object")

    for period, rule in time_rules.items():
        if period not in DEFAULT_TIME_RULES or not isinstance(rule, dict):
            raise ZimraValidationError(f"Unknown time rule: {period}")
        if 'time' in rule and not TIME_PATTERN.match(str(rule['time'])):
            raise ZimraValidationError(f"{period} time must be HH:MM")
        if period == 'weekly' and rule.get('day') not in WEEKDAYS:
            raise ZimraValidationError("weekly day must be a weekday name")
        if period == 'monthly':
            day = str(rule.get('day'))
            if day != 'last' and not (day.isdigit() and 1 <= int(day) <= 31):
                raise ZimraValidationError("monthly day must be 1-31 or 'last'")
    return time_rules


# ----------------------------------------------------------------------
# Budget alerts
# ----------------------------------------------------------------------

@bp.route('/budget-alerts')
@login_required
def get_budget_alerts():
    setting = current_user.budget_alert_setting
    if setting is None:
        return jsonify(DEFAULT_BUDGET_SETTINGS)
    return jsonify(setting.to_dict())


@bp.route('/budget-alerts', methods=['PUT'])
@login_required
def update_budget_alerts():
    """Create or replace the merchant's budget alert settings"""
    data = request.get_json(silent=True) or {}

    target_period = data.get('target_period', 'Hourly')
    if target_period not in TARGET_PERIODS:
        raise ZimraValidationError(f"target_period must be one of {', '.join(TARGET_PERIODS)}")

    calculation_basis = data.get('calculation_basis', 'By Tax')
    if calculation_basis not in CALCULATION_BASES:
        raise ZimraValidationError(f"calculation_basis must be one of {', '.join(CALCULATION_BASES)}")

    target_min = _optional_float(data, 'target_min')
    target_max = _optional_float(data, 'target_max')
    if target_min is not None and target_max is not None and target_min > target_max:
        raise ZimraValidationError("target_min cannot be greater than target_max")

    time_rules = validate_time_rules(data.get('time_rules') or DEFAULT_TIME_RULES)

    setting = current_user.budget_alert_setting
    if setting is None:
        setting = BudgetAlertSetting(merchant_id=current_user.id)
        db.session.add(setting)

    setting.enabled = bool(data.get('enabled'))
    setting.target_period = target_period
    setting.calculation_basis = calculation_basis
    setting.target_min = target_min
    setting.target_max = target_max
    setting.hourly_target = _optional_float(data, 'hourly_target')
    setting.time_rules = time_rules
    db.session.commit()

    log_activity(current_user.id, 'update_budget_alerts', 'budget_alert_setting', setting.id,
                 f'{target_period} {calculation_basis} alerts {"enabled" if setting.enabled else "disabled"}')

    return jsonify({'success': True, 'settings': setting.to_dict()})


@bp.route('/budget-alerts/history')
@login_required
def budget_alert_history():
    alerts = BudgetAlert.query.filter_by(merchant_id=current_user.id)\
        .order_by(BudgetAlert.triggered_at.desc()).limit(100).all()
    return jsonify([alert.to_dict() for alert in alerts])


# ----------------------------------------------------------------------
# Loyverse webhook
# ----------------------------------------------------------------------

@bp.route('/webhook')
@login_required
def get_webhook():
    config = WebhookConfig.query.filter_by(merchant_id=current_user.id).first()
    return jsonify(config.to_dict() if config else None)


@bp.route('/webhook', methods=['PUT'])
@login_required
def update_webhook():
    """Store the Loyverse webhook app ID and secret"""
    data = request.get_json(silent=True) or {}
    app_id = (data.get('app_id') or '').strip()
    app_secret = (data.get('app_secret') or '').strip()
    if not app_id or not app_secret:
        raise ZimraValidationError("app_id and app_secret are required")

    config = WebhookConfig.query.filter_by(merchant_id=current_user.id).first()
    if config is None:
        config = WebhookConfig(merchant_id=current_user.id)
        db.session.add(config)
    config.app_id = app_id
    config.app_secret = app_secret
    config.active = data.get('active', True) is not False
    db.session.commit()

    log_activity(current_user.id, 'update_webhook', 'webhook_config', config.id, f'Webhook app {app_id}')
    return jsonify({'success': True, 'webhook': config.to_dict()})


# ----------------------------------------------------------------------
# Store details
# ----------------------------------------------------------------------

@bp.route('/store')
@login_required
def get_store():
    description = current_user.store_description or ''
    return jsonify({
        'store_name': current_user.store_name,
        'store_address': current_user.store_address,
        'store_city': current_user.store_city,
        'store_contact_number': current_user.store_contact_number,
        'store_description': description,
        'description_valid': check_description_structure(description) == VALID_STRUCTURE,
    })


@bp.route('/store', methods=['PUT'])
@login_required
def update_store():
    """
    Update store details

    The description must follow 'Email: x, TIN: y, VAT: z, Province: p'
    because receipts take the store's tax numbers from it.
    """
    data = request.get_json(silent=True) or {}
    description = data.get('store_description')
    if description is not None:
        if check_description_structure(description) != VALID_STRUCTURE:
            raise ZimraValidationError(
                "Invalid store description. Use 'Email: x, TIN: 200..., VAT: 220..., Province: p'")
        current_user.store_description = description
        current_user.tin = extract_store_tin(description) or current_user.tin
        current_user.vat = extract_store_vat(description) or current_user.vat

    for field in ('store_name', 'store_address', 'store_city', 'store_contact_number'):
        if field in data:
            setattr(current_user, field, data[field])
    db.session.commit()

    return jsonify({
        'success': True,
        'merchant': current_user.to_dict(),
        'store_email': extract_store_email(current_user.store_description or ''),
    })


# ----------------------------------------------------------------------
# Cutoff time
# ----------------------------------------------------------------------

@bp.route('/cutoff')
@login_required
def cutoff_status():
    details = get_time_check_details(
        cutoff_hour=current_app.config['CUTOFF_HOUR'],
        testing_mode=current_app.config['CUTOFF_TESTING_MODE']
    )
    details['enforced'] = bool(current_app.config.get('ENFORCE_CUTOFF'))
    return jsonify(details)
