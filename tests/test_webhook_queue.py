"""
Tests for app/services/webhook_queue_service.py and the Loyverse webhook route
"""

import pytest
import requests
from datetime import datetime
from unittest.mock import Mock, patch

from conftest import make_sale, mock_response
from app.models import db, Sale, WebhookQueue
from app.services.webhook_queue_service import (
    LoyverseClient, WebhookProcessingError, WebhookQueueService,
    build_sale_from_receipt, map_payment_type, payment_currency
)

LOYVERSE_CLIENT = 'app.services.webhook_queue_service.LoyverseClient'
NOW = datetime(2024, 3, 5, 12, 0)


def _receipt(number='R-2001', **overrides):
    receipt = {
        'receipt_number': number,
        'receipt_type': 'SALE',
        'receipt_date': '2024-03-05T10:15:00.000Z',
        'cancelled_at': None,
        'store_id': 'store-1',
        'line_items': [{
            'item_id': 'item-1',
            'item_name': 'Phone Charger',
            'quantity': 2,
            'price': 10,
            'total_money': 20,
            'line_taxes': [{'name': 'VAT', 'money_amount': 2.61}],
        }],
        'payments': [{'type': 'CASH', 'name': 'Cash USD', 'money_amount': 20}],
    }
    receipt.update(overrides)
    return receipt


def _loyverse(category='85044000 Chargers', customer=None):
    loyverse = Mock()
    loyverse.get_item_category_name.return_value = category
    loyverse.get_customer.return_value = customer or {}
    return loyverse


@pytest.fixture
def service(fresh_app):
    return WebhookQueueService(fresh_app)


# ============================================================================
# Payment mapping
# ============================================================================

class TestPaymentMapping:
    """Tests for map_payment_type and payment_currency"""

    @pytest.mark.parametrize('payment, expected', [
        ({'type': 'CASH', 'name': 'Cash'}, 'Cash'),
        ({'type': 'NONINTEGRATEDCARD', 'name': 'Swipe'}, 'Card'),
        ({'type': 'CHECK', 'name': 'Cheque'}, 'BankTransfer'),
        ({'type': 'OTHER', 'name': 'Voucher'}, 'Other'),
        ({'type': 'OTHER', 'name': 'Account Sale'}, 'Credit'),
        ({'type': 'OTHER', 'name': 'EcoCash USD'}, 'MobileWallet'),
        ({'type': 'SOMETHING', 'name': 'Barter'}, 'Other'),
    ])
    def test_payment_types(self, payment, expected):
        assert map_payment_type(payment) == expected

    def test_currency_from_name(self):
        assert payment_currency({'name': 'Cash ZiG'}) == 'ZWG'
        assert payment_currency({'name': 'ZWG Swipe'}) == 'ZWG'
        assert payment_currency({'name': 'Cash'}) == 'USD'
        assert payment_currency({}) == 'USD'


# ============================================================================
# Loyverse client
# ============================================================================

class TestLoyverseClient:
    """Tests for LoyverseClient"""

    def test_bearer_token(self):
        with patch('app.services.webhook_queue_service.requests.get',
                   return_value=mock_response(json_data={'id': 'm-1'})) as mock_get:
            assert LoyverseClient('tok', base_url='https://lv.test/').get_merchant() == {'id': 'm-1'}

        args, kwargs = mock_get.call_args
        assert args == ('https://lv.test/merchant/',)
        assert kwargs['headers'] == {'Authorization': 'Bearer tok'}

    def test_item_category_name(self):
        responses = [
            mock_response(json_data={'id': 'item-1', 'category_id': 'cat-1'}),
            mock_response(json_data={'id': 'cat-1', 'name': '85044000 Chargers'}),
        ]
        with patch('app.services.webhook_queue_service.requests.get', side_effect=responses) as mock_get:
            assert LoyverseClient('tok').get_item_category_name('item-1') == '85044000 Chargers'

        assert mock_get.call_args_list[1][0][0].endswith('/categories/cat-1')

    def test_item_without_category(self):
        with patch('app.services.webhook_queue_service.requests.get',
                   return_value=mock_response(json_data={'id': 'item-1'})) as mock_get:
            assert LoyverseClient('tok').get_item_category_name('item-1') == ''

        assert mock_get.call_count == 1


# ============================================================================
# Receipt conversion
# ============================================================================

class TestBuildSaleFromReceipt:
    """Tests for build_sale_from_receipt"""

    def test_fiscal_invoice(self, merchant):
        sale = build_sale_from_receipt(merchant, _receipt(), _loyverse(), now=NOW)

        assert sale.receipt == 'R-2001'
        assert sale.receipt_type == 'FiscalInvoice'
        assert sale.notes == 'OG Date 3/5/2024'
        assert sale.timestamp == NOW
        assert sale.total_inc == 20.0
        assert sale.vat_amount == 2.61
        assert sale.total == 17.39
        assert sale.customer_name == 'Cash Sale'

        item = sale.items[0]
        assert (item.name, item.hs_code, item.quantity) == ('Phone Charger', '85044000', 2.0)
        assert (item.price_inc, item.total_inc, item.vat_amount) == (10.0, 20.0, 2.61)
        assert item.tax_name == 'VAT'

        payment = sale.payments[0]
        assert (payment.amount, payment.currency, payment.payment_type) == (20.0, 'USD', 'Cash')

    def test_store_details_from_description(self, merchant):
        sale = build_sale_from_receipt(merchant, _receipt(), _loyverse(), now=NOW)

        assert sale.store_name == 'Test Traders Harare'
        assert sale.store_tin_number == '2001234567'
        assert sale.store_vat_number == '220123456'
        assert sale.store_email == 'shop@example.com'
        assert sale.store_province == 'Harare'

    def test_refund_becomes_credit_note(self, merchant):
        receipt = _receipt('R-2002', receipt_type='REFUND', refund_for='R-2001')
        sale = build_sale_from_receipt(merchant, receipt, _loyverse(), now=NOW)

        assert sale.receipt_type == 'CreditNote'
        assert sale.refund_for == 'R-2001'
        assert sale.notes == 'Error in Sale'
        assert sale.total_inc == -20.0
        assert sale.vat_amount == -2.61
        assert sale.items[0].price_inc == -10.0
        assert sale.payments[0].amount == -20.0

    def test_cancelled_sale_becomes_credit_note(self, merchant):
        receipt = _receipt(cancelled_at='2024-03-05T11:00:00.000Z')
        assert build_sale_from_receipt(merchant, receipt, _loyverse()).receipt_type == 'CreditNote'

    def test_modifiers_use_line_total(self, merchant):
        receipt = _receipt()
        receipt['line_items'][0].update(total_money=25, line_modifiers=[{'name': 'Gift wrap', 'price': 5}])
        sale = build_sale_from_receipt(merchant, receipt, _loyverse(), now=NOW)

        assert sale.items[0].price_inc == 12.5

    def test_vat_wins_over_other_taxes(self, merchant):
        receipt = _receipt()
        receipt['line_items'][0]['line_taxes'] = [
            {'name': 'EXEMPT', 'money_amount': 0},
            {'name': 'VAT', 'money_amount': 2.61},
        ]
        item = build_sale_from_receipt(merchant, receipt, _loyverse(), now=NOW).items[0]
        assert (item.vat_amount, item.tax_name) == (2.61, 'VAT')

    def test_customer_from_loyverse(self, merchant):
        customer = {
            'name': 'Acme Ltd',
            'phone_number': '0772000000',
            'city': 'Harare',
            'note': 'TIN: 2009876543, VAT: 220987654, Bal: 150, Tax: 30',
        }
        receipt = _receipt(customer_id='cust-1')
        sale = build_sale_from_receipt(merchant, receipt, _loyverse(customer=customer), now=NOW)

        assert sale.customer_name == 'Acme Ltd'
        assert sale.customer_contact == '0772000000'
        assert sale.customer_tin == '2009876543'
        assert sale.customer_vat == '220987654'
        assert sale.customer_balance == 150
        assert sale.customer_tax_money == 30

    def test_invalid_customer_note(self, merchant):
        customer = {'name': 'Acme Ltd', 'note': 'regular customer'}
        with pytest.raises(WebhookProcessingError):
            build_sale_from_receipt(merchant, _receipt(customer_id='cust-1'), _loyverse(customer=customer))

    def test_missing_price(self, merchant):
        receipt = _receipt()
        receipt['line_items'][0]['price'] = None
        with pytest.raises(WebhookProcessingError):
            build_sale_from_receipt(merchant, receipt, _loyverse())

    @pytest.mark.parametrize('category', ['', 'Chargers'])
    def test_missing_hs_code(self, merchant, category):
        with pytest.raises(WebhookProcessingError):
            build_sale_from_receipt(merchant, _receipt(), _loyverse(category=category))

    def test_no_loyverse_client_means_no_hs_code(self, merchant):
        with pytest.raises(WebhookProcessingError):
            build_sale_from_receipt(merchant, _receipt())


# ============================================================================
# Queue
# ============================================================================

class TestQueueWebhook:
    """Tests for WebhookQueueService.queue_webhook"""

    def test_queues_payload(self, service, merchant):
        item = service.queue_webhook({'merchant_id': 'merchant-001', 'receipts': [_receipt()]})

        assert item.status == 'pending'
        assert item.attempts == 0
        assert WebhookQueue.query.count() == 1

    @pytest.mark.parametrize('payload', [None, {}, {'merchant_id': 'merchant-001'},
                                         {'merchant_id': 'merchant-001', 'receipts': []},
                                         {'merchant_id': 'merchant-001', 'receipts': [None, None]},
                                         {'merchant_id': 'merchant-001', 'receipts': 'R-2001'},
                                         {'merchant_id': 'merchant-001', 'receipts': [_receipt(), 'R-2002']}])
    def test_invalid_payload(self, service, payload):
        with pytest.raises(ValueError):
            service.queue_webhook(payload)
        assert WebhookQueue.query.count() == 0

    def test_stored_receipt_is_dropped(self, service, merchant):
        db.session.add(make_sale(merchant, receipt='R-2001'))
        db.session.commit()

        assert service.queue_webhook({'merchant_id': 'merchant-001', 'receipts': [_receipt()]}) is None
        assert WebhookQueue.query.count() == 0

    def test_receipt_already_queued_is_dropped(self, service, merchant):
        payload = {'merchant_id': 'merchant-001', 'receipts': [_receipt()]}
        service.queue_webhook(payload)

        assert service.queue_webhook(payload) is None
        assert WebhookQueue.query.count() == 1

    def test_batches_are_always_queued(self, service, merchant):
        payload = {'merchant_id': 'merchant-001', 'receipts': [_receipt('R-1'), _receipt('R-2')]}
        service.queue_webhook(payload)
        service.queue_webhook(payload)

        assert WebhookQueue.query.count() == 2

    def test_queue_status(self, service, merchant):
        service.queue_webhook({'merchant_id': 'merchant-001', 'receipts': [_receipt()]})
        assert service.get_queue_status('merchant-001') == {'pending': 1, 'processed': 0, 'failed': 0}


class TestProcessQueue:
    """Tests for WebhookQueueService.process_queue"""

    def _queue(self, receipts, merchant_id='merchant-001'):
        item = WebhookQueue(merchant_id=merchant_id, payload={'merchant_id': merchant_id, 'receipts': receipts},
                            status='pending', attempts=0)
        db.session.add(item)
        db.session.commit()
        return item.id

    def test_empty_queue(self, service):
        assert service.process_queue() == {'processed': 0, 'failed': 0}

    def test_stores_sales(self, service, merchant):
        item_id = self._queue([_receipt('R-1'), _receipt('R-2')])

        with patch(LOYVERSE_CLIENT) as mock_client_cls:
            mock_client_cls.return_value.get_item_category_name.return_value = '85044000 Chargers'
            assert service.process_queue() == {'processed': 1, 'failed': 0}

        db.session.expire_all()
        item = db.session.get(WebhookQueue, item_id)
        assert item.status == 'processed'
        assert item.attempts == 1
        assert item.processed_at is not None
        assert Sale.query.filter_by(merchant_id=merchant.id).count() == 2
        assert mock_client_cls.call_args[0][0] == 'test-loyverse-token'

    def test_existing_receipts_are_skipped(self, service, merchant):
        db.session.add(make_sale(merchant, receipt='R-1'))
        db.session.commit()
        self._queue([_receipt('R-1'), _receipt('R-2')])

        with patch(LOYVERSE_CLIENT) as mock_client_cls:
            mock_client_cls.return_value.get_item_category_name.return_value = '85044000 Chargers'
            service.process_queue()

        db.session.expire_all()
        assert Sale.query.filter_by(merchant_id=merchant.id).count() == 2

    def test_invalid_receipt_fails_immediately(self, service, merchant):
        item_id = self._queue([_receipt('R-1')])

        with patch(LOYVERSE_CLIENT) as mock_client_cls:
            mock_client_cls.return_value.get_item_category_name.return_value = 'Chargers'
            assert service.process_queue() == {'processed': 0, 'failed': 1}

        db.session.expire_all()
        item = db.session.get(WebhookQueue, item_id)
        assert item.status == 'failed'
        assert 'HS code not found' in item.error_message
        assert Sale.query.count() == 0

    def test_unknown_merchant_fails(self, service):
        item_id = self._queue([_receipt('R-1')], merchant_id='nobody')

        assert service.process_queue() == {'processed': 0, 'failed': 1}

        db.session.expire_all()
        assert db.session.get(WebhookQueue, item_id).status == 'failed'

    def test_network_errors_are_retried(self, service, merchant):
        item_id = self._queue([_receipt('R-1')])

        with patch(LOYVERSE_CLIENT) as mock_client_cls:
            mock_client_cls.return_value.get_item_category_name.side_effect = requests.ConnectionError('offline')
            service.process_queue()

        db.session.expire_all()
        item = db.session.get(WebhookQueue, item_id)
        assert item.status == 'pending'
        assert item.attempts == 1
        assert 'offline' in item.error_message

    def test_gives_up_after_max_attempts(self, fresh_app, service, merchant):
        fresh_app.config['WEBHOOK_MAX_ATTEMPTS'] = 2
        item_id = self._queue([_receipt('R-1')])

        with patch(LOYVERSE_CLIENT) as mock_client_cls:
            mock_client_cls.return_value.get_item_category_name.side_effect = requests.ConnectionError('offline')
            service.process_queue()
            service.process_queue()

        db.session.expire_all()
        item = db.session.get(WebhookQueue, item_id)
        assert item.status == 'failed'
        assert item.attempts == 2

    def test_malformed_item_does_not_block_later_items(self, service, merchant):
        bad_id = self._queue([None, None])
        good_id = self._queue([_receipt('R-9')])

        with patch(LOYVERSE_CLIENT) as mock_client_cls:
            mock_client_cls.return_value.get_item_category_name.return_value = '85044000 Chargers'
            assert service.process_queue() == {'processed': 1, 'failed': 1}

        db.session.expire_all()
        bad = db.session.get(WebhookQueue, bad_id)
        assert bad.status == 'failed'
        assert bad.attempts == 1
        assert db.session.get(WebhookQueue, good_id).status == 'processed'
        assert Sale.query.filter_by(merchant_id=merchant.id, receipt='R-9').count() == 1

    def test_unexpected_errors_are_retried(self, fresh_app, service, merchant):
        fresh_app.config['WEBHOOK_MAX_ATTEMPTS'] = 2
        bad_id = self._queue([_receipt('R-1')])
        good_id = self._queue([_receipt('R-2')])

        def build(owner, receipt, loyverse=None, now=None):
            if receipt['receipt_number'] == 'R-1':
                raise RuntimeError('boom')
            return make_sale(owner, receipt=receipt['receipt_number'])

        with patch('app.services.webhook_queue_service.build_sale_from_receipt', side_effect=build), \
                patch(LOYVERSE_CLIENT):
            assert service.process_queue() == {'processed': 1, 'failed': 1}

        db.session.expire_all()
        bad = db.session.get(WebhookQueue, bad_id)
        assert bad.status == 'pending'
        assert bad.attempts == 1
        assert 'boom' in bad.error_message
        assert db.session.get(WebhookQueue, good_id).status == 'processed'

        with patch('app.services.webhook_queue_service.build_sale_from_receipt', side_effect=RuntimeError('boom')), \
                patch(LOYVERSE_CLIENT):
            service.process_queue()

        db.session.expire_all()
        bad = db.session.get(WebhookQueue, bad_id)
        assert bad.status == 'failed'
        assert bad.attempts == 2


class TestScheduler:
    """Tests for the background scheduler"""

    def test_disabled_by_config(self, service):
        service.start_scheduler()
        assert service.scheduler is None

    def test_start(self, fresh_app, service):
        fresh_app.config['WEBHOOK_QUEUE_ENABLED'] = True

        with patch('app.services.webhook_queue_service.BackgroundScheduler') as mock_scheduler_cls:
            service.start_scheduler()

        mock_scheduler_cls.return_value.add_job.assert_called_once_with(
            func=service.process_queue, trigger='interval', seconds=30, id='webhook_queue'
        )


# ============================================================================
# Route
# ============================================================================

@pytest.mark.integration
class TestLoyverseWebhookRoute:
    """Tests for POST /webhooks/loyverse"""

    def test_queues_webhook(self, client, merchant):
        response = client.post('/webhooks/loyverse', json={'merchant_id': 'merchant-001', 'receipts': [_receipt()]})

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['message'] == 'Webhook queued for processing'
        assert data['queue_id']

    def test_duplicate_receipt(self, client, merchant):
        payload = {'merchant_id': 'merchant-001', 'receipts': [_receipt()]}
        client.post('/webhooks/loyverse', json=payload)

        response = client.post('/webhooks/loyverse', json=payload)

        assert response.status_code == 200
        assert response.get_json()['message'] == 'Receipt already processed'

    def test_invalid_payload(self, client):
        response = client.post('/webhooks/loyverse', json={'receipts': []})
        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_receipts_must_be_objects(self, client, merchant):
        response = client.post('/webhooks/loyverse', json={'merchant_id': 'merchant-001', 'receipts': [None, None]})

        assert response.status_code == 400
        assert WebhookQueue.query.count() == 0

    def test_no_login_required(self, client):
        response = client.post('/webhooks/loyverse', data='not json', content_type='text/plain')
        assert response.status_code == 400
