"""
Webhook Routes
Receipt notifications posted by Loyverse
"""

import logging
from flask import Blueprint, current_app, jsonify, request
from app.services.webhook_queue_service import WebhookQueueService

logger = logging.getLogger(__name__)

bp = Blueprint('webhooks', __name__)


@bp.route('/loyverse', methods=['POST'])
def loyverse():
    """Queue a receipts webhook for background processing"""
    payload = request.get_json(silent=True)
    service = WebhookQueueService(current_app._get_current_object())

    try:
        item = service.queue_webhook(payload)
    except ValueError as e:
        logger.warning(f"Invalid webhook: {e}")
        return jsonify({'success': False, 'message': str(e)}), 400

    if item is None:
        return jsonify({'success': True, 'message': 'Receipt already processed'})
    return jsonify({'success': True, 'message': 'Webhook queued for processing', 'queue_id': item.id})
