"""
Authentication Routes
Merchants sign in with their Loyverse access token
"""

import logging
import requests
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_user, logout_user, current_user, login_required
from flask_wtf.csrf import generate_csrf
from datetime import datetime
from app import limiter
from app.models import db, Merchant, ActivityLog
from app.services.webhook_queue_service import LoyverseClient

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__)


def _login_rate_limit():
    return current_app.config.get('LOGIN_RATE_LIMIT', '10 per minute')


def _merchant_from_loyverse(token):
    """
    Look the token up with Loyverse and create or refresh the merchant it belongs to

    Returns:
        Merchant or None if Loyverse rejects the token
    """
    client = LoyverseClient(token, base_url=current_app.config['LOYVERSE_API_URL'])
    try:
        account = client.get_merchant()
    except requests.HTTPError as e:
        logger.info(f"Loyverse rejected login token: {e}")
        return None

    merchant_id = account.get('id')
    if not merchant_id:
        return None

    merchant = Merchant.query.filter_by(merchant_id=merchant_id).first()
    if merchant is None:
        merchant = Merchant(merchant_id=merchant_id)
        db.session.add(merchant)
        logger.info(f"Created merchant {merchant_id}")
    merchant.loyverse_token = token
    merchant.merchant_name = account.get('business_name') or merchant.merchant_name
    db.session.commit()
    return merchant


@bp.route('/login', methods=['POST'])
@limiter.limit(_login_rate_limit)
def login():
    """Merchant login with a Loyverse token"""
    data = request.get_json(silent=True) or {}
    token = (data.get('token') or '').strip()
    if not token:
        return jsonify({'error': 'Token is required'}), 400

    merchant = Merchant.query.filter_by(loyverse_token=token).first()
    if merchant is None:
        try:
            merchant = _merchant_from_loyverse(token)
        except requests.RequestException as e:
            logger.error(f"Could not verify token with Loyverse: {e}")
            return jsonify({'error': 'Could not reach Loyverse to verify the token'}), 502

    if merchant is None:
        log_activity(None, 'failed_login', 'merchant', None, 'Failed login attempt with unknown token')
        return jsonify({'error': 'Invalid token'}), 401

    if not merchant.is_active:
        return jsonify({'error': 'This merchant account has been deactivated'}), 403

    login_user(merchant, remember=bool(data.get('remember')))
    merchant.last_login = datetime.utcnow()
    db.session.commit()

    log_activity(merchant.id, 'login', 'merchant', merchant.merchant_id, 'Merchant logged in')

    return jsonify({'success': True, 'merchant': merchant.to_dict()})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Merchant logout"""
    log_activity(current_user.id, 'logout', 'merchant', current_user.merchant_id, 'Merchant logged out')
    logout_user()
    return jsonify({'success': True})


@bp.route('/me')
@login_required
def me():
    return jsonify(current_user.to_dict())


@bp.route('/accept-terms', methods=['POST'])
@login_required
def accept_terms():
    """Record that the merchant accepted the terms of use"""
    if not current_user.has_accepted_terms:
        current_user.terms_accepted_at = datetime.utcnow()
        db.session.commit()
        log_activity(current_user.id, 'accept_terms', 'merchant', current_user.merchant_id, 'Terms of use accepted')
    return jsonify({
        'success': True,
        'terms_accepted_at': current_user.terms_accepted_at.isoformat()
    })


@bp.route('/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


def log_activity(merchant_id, action, entity_type, entity_id, details):
    """Helper function to log merchant activities"""
    try:
        log = ActivityLog(
            merchant_id=merchant_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=details,
            ip_address=request.remote_addr if request else None
        )
        db.session.add(log)
        db.session.commit()
    except Exception as e:
        # Don't fail the request if logging fails
        db.session.rollback()
        logger.error(f"Error logging activity: {e}")
