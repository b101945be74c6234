"""
Webhook Queue Service
Queues Loyverse receipt webhooks and turns them into stored fiscal sales
"""

import logging
import requests
from datetime import datetime
from apscheduler.schedulers.background import BackgroundScheduler
from app.models import db, Merchant, Sale, SaleItem, Payment, WebhookQueue
from app.utils.helpers import (
    DEFAULT_HS_CODE, VALID_STRUCTURE,
    check_note_structure, extract_customer_balance, extract_customer_tax_money,
    extract_customer_tin, extract_customer_vat,
    extract_hs_code, extract_store_email, extract_store_province,
    extract_store_tin, extract_store_vat
)

logger = logging.getLogger(__name__)

CASH_SALE = 'Cash Sale'

PAYMENT_TYPES = {
    'CASH': 'Cash',
    'OTHER': 'Other',
    'NONINTEGRATEDCARD': 'Card',
    'CHECK': 'BankTransfer',
}

TAX_NAMES = ('VAT', 'ZERO RATED', 'EXEMPT', 'WITHOLD VAT')


class WebhookProcessingError(Exception):
    """Receipt data that can never be fiscalised as sent"""
    pass


class LoyverseClient:
    """Minimal Loyverse API client for the lookups receipts need"""

    def __init__(self, token, base_url='https://api.loyverse.com/v1.0', timeout=30):
        self.token = token
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _get(self, path):
        response = requests.get(
            f"{self.base_url}{path}",
            headers={'Authorization': f'Bearer {self.token}'},
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def get_merchant(self):
        """Merchant account the token belongs to"""
        return self._get('/merchant/')

    def get_customer(self, customer_id):
        return self._get(f'/customers/{customer_id}')

    def get_item_category_name(self, item_id):
        """Category name of an item, '' when the item has no category"""
        item = self._get(f'/items/{item_id}')
        category_id = item.get('category_id')
        if not category_id:
            return ''
        return self._get(f'/categories/{category_id}').get('name') or ''


def map_payment_type(payment):
    """Loyverse payment type/name to the FDMS money type"""
    name = (payment.get('name') or '').upper()
    if name == 'ACCOUNT SALE':
        return 'Credit'
    if name.startswith('ECOCASH'):
        return 'MobileWallet'
    return PAYMENT_TYPES.get((payment.get('type') or '').upper(), 'Other')


def payment_currency(payment):
    name = (payment.get('name') or '').upper()
    if 'ZIG' in name or 'ZWG' in name:
        return 'ZWG'
    return 'USD'


def _parse_receipt_date(value):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


def _line_tax(line_item):
    """VAT amount and tax name of a line; VAT wins when several taxes apply"""
    taxes = line_item.get('line_taxes') or []
    if len(taxes) > 1:
        taxes = [tax for tax in taxes if tax.get('name') == 'VAT'][:1]

    amount = 0.0
    tax_name = ''
    for tax in taxes:
        if tax.get('name') in TAX_NAMES:
            tax_name = tax['name']
            amount += float(tax.get('money_amount') or 0)
    return amount, tax_name


def _customer_details(receipt, loyverse):
    details = {'customer_name': CASH_SALE}
    customer_id = receipt.get('customer_id')
    if not customer_id or loyverse is None:
        return details

    customer = loyverse.get_customer(customer_id)
    details.update({
        'customer_name': customer.get('name') or CASH_SALE,
        'customer_contact': customer.get('phone_number') or '',
        'customer_address': customer.get('address') or '',
        'customer_city': customer.get('city') or '',
        'customer_email': customer.get('email') or '',
    })

    note = customer.get('note')
    if note:
        if check_note_structure(note) != VALID_STRUCTURE:
            raise WebhookProcessingError(f"Invalid customer note structure for receipt {receipt.get('receipt_number')}")
        details['customer_tin'] = extract_customer_tin(note)
        details['customer_vat'] = extract_customer_vat(note)
        details['customer_balance'] = extract_customer_balance(note)
        details['customer_tax_money'] = extract_customer_tax_money(note)
    return details


def _store_details(merchant):
    details = {
        'store_name': merchant.store_name or merchant.merchant_name or '',
        'store_address': merchant.store_address,
        'store_city': merchant.store_city,
        'store_contact_number': merchant.store_contact_number,
    }
    if merchant.store_description:
        details.update({
            'store_tin_number': extract_store_tin(merchant.store_description),
            'store_vat_number': extract_store_vat(merchant.store_description),
            'store_email': extract_store_email(merchant.store_description),
            'store_province': extract_store_province(merchant.store_description),
        })
    return details


def build_sale_from_receipt(merchant, receipt, loyverse=None, now=None):
    """
    Convert one Loyverse receipt into an unsaved Sale

    Args:
        merchant: Merchant the receipt belongs to
        receipt: Loyverse receipt dict
        loyverse: LoyverseClient for customer and category lookups
        now: processing time, stored as the sale timestamp

    Returns:
        Sale

    Raises:
        WebhookProcessingError: if a line has no price or no HS code
    """
    receipt_number = receipt.get('receipt_number')
    if not receipt_number:
        raise WebhookProcessingError("Receipt has no receipt_number")

    is_sale = receipt.get('receipt_type') == 'SALE' and not receipt.get('cancelled_at')
    sign = 1 if is_sale else -1

    original_date = _parse_receipt_date(receipt.get('receipt_date'))
    if is_sale:
        notes = f"OG Date {original_date.month}/{original_date.day}/{original_date.year}" if original_date else None
    else:
        notes = 'Error in Sale'

    sale = Sale(
        merchant_id=merchant.id,
        receipt=receipt_number,
        receipt_type='FiscalInvoice' if is_sale else 'CreditNote',
        refund_for=receipt.get('refund_for'),
        cancelled_at=receipt.get('cancelled_at'),
        notes=notes,
        timestamp=now or datetime.now(),
        store_id=receipt.get('store_id'),
        footer_text='',
        **_store_details(merchant),
        **_customer_details(receipt, loyverse)
    )

    receipt_total = 0.0
    receipt_vat = 0.0
    for line in receipt.get('line_items') or []:
        if not line.get('price'):
            raise WebhookProcessingError(f"Missing price for {line.get('item_name')} on receipt {receipt_number}")

        category = ''
        if loyverse is not None and line.get('item_id'):
            category = loyverse.get_item_category_name(line['item_id'])
        hs_code = extract_hs_code(category)
        if not hs_code or hs_code == DEFAULT_HS_CODE:
            raise WebhookProcessingError(f"HS code not found for {line.get('item_name')} on receipt {receipt_number}")

        quantity = float(line.get('quantity') or 1)
        total_inc = float(line.get('total_money') or 0) * sign
        if line.get('line_modifiers') or line.get('line_discounts'):
            price_inc = total_inc / quantity
        else:
            price_inc = float(line['price']) * sign
        vat_amount, tax_name = _line_tax(line)
        vat_amount *= sign

        receipt_total += total_inc
        receipt_vat += vat_amount
        sale.items.append(SaleItem(
            name=line.get('item_name') or '',
            hs_code=hs_code,
            quantity=quantity,
            price_inc=round(price_inc, 2),
            total_inc=round(total_inc, 2),
            vat_amount=round(vat_amount, 2),
            tax_name=tax_name,
        ))

    for payment in receipt.get('payments') or []:
        sale.payments.append(Payment(
            amount=round(float(payment.get('money_amount') or 0) * sign, 2),
            currency=payment_currency(payment),
            payment_type=map_payment_type(payment),
        ))

    receipt_total = round(receipt_total, 2)
    receipt_vat = round(receipt_vat, 2)
    sale.total_inc = receipt_total
    sale.vat_amount = receipt_vat
    sale.total = round(receipt_total - receipt_vat, 2)
    return sale


def _receipt_exists(merchant, receipt_number):
    return Sale.query.filter_by(merchant_id=merchant.id, receipt=receipt_number).first() is not None


class WebhookQueueService:
    """Service for queueing and processing Loyverse receipt webhooks"""

    def __init__(self, app):
        self.app = app
        self.scheduler = None

    def queue_webhook(self, payload):
        """
        Queue a webhook payload

        A single-receipt payload whose receipt is already stored or queued
        is dropped.

        Args:
            payload: dict with merchant_id and receipts

        Returns:
            WebhookQueue or None when dropped

        Raises:
            ValueError: if merchant_id or receipts is missing, or receipts
                is not a list of receipt objects
        """
        merchant_id = payload.get('merchant_id') if isinstance(payload, dict) else None
        receipts = payload.get('receipts') if isinstance(payload, dict) else None
        if not merchant_id or not receipts:
            raise ValueError("Webhook payload requires merchant_id and receipts")
        if not isinstance(receipts, list) or not all(isinstance(receipt, dict) for receipt in receipts):
            raise ValueError("Webhook receipts must be a list of receipt objects")

        if len(receipts) == 1:
            receipt_number = receipts[0].get('receipt_number')
            merchant = Merchant.query.filter_by(merchant_id=merchant_id).first()
            if merchant and _receipt_exists(merchant, receipt_number):
                logger.info(f"[{merchant_id}] Receipt {receipt_number} already stored, skipping")
                return None
            for queued in WebhookQueue.query.filter_by(merchant_id=merchant_id, status='pending').all():
                queued_receipts = (queued.payload or {}).get('receipts') or []
                if (queued_receipts and isinstance(queued_receipts[0], dict)
                        and queued_receipts[0].get('receipt_number') == receipt_number):
                    logger.info(f"[{merchant_id}] Receipt {receipt_number} already in queue, skipping")
                    return None

        item = WebhookQueue(merchant_id=merchant_id, payload=payload, status='pending', attempts=0)
        db.session.add(item)
        db.session.commit()
        logger.info(f"[{merchant_id}] Queued webhook with {len(receipts)} receipt(s)")
        return item

    def _loyverse_client(self, merchant):
        return LoyverseClient(
            merchant.loyverse_token,
            base_url=self.app.config.get('LOYVERSE_API_URL', 'https://api.loyverse.com/v1.0'),
            timeout=self.app.config.get('ZIMRA_REQUEST_TIMEOUT', 30)
        )

    def process_item(self, item):
        """
        Store every new receipt of one queued payload

        Returns:
            int: number of sales created
        """
        merchant = Merchant.query.filter_by(merchant_id=item.merchant_id).first()
        if not merchant:
            raise WebhookProcessingError(f"Unknown merchant {item.merchant_id}")

        loyverse = self._loyverse_client(merchant)
        created = 0
        for receipt in (item.payload or {}).get('receipts') or []:
            if not isinstance(receipt, dict):
                raise WebhookProcessingError(f"Webhook {item.id} holds a receipt that is not an object")
            if _receipt_exists(merchant, receipt.get('receipt_number')):
                continue
            db.session.add(build_sale_from_receipt(merchant, receipt, loyverse))
            created += 1
        return created

    def process_queue(self):
        """Process all pending items in the webhook queue"""
        with self.app.app_context():
            pending_items = WebhookQueue.query.filter_by(status='pending')\
                .order_by(WebhookQueue.created_at).all()

            if not pending_items:
                logger.debug("No pending webhooks to process")
                return {'processed': 0, 'failed': 0}

            logger.info(f"Processing {len(pending_items)} pending webhooks")

            max_attempts = self.app.config.get('WEBHOOK_MAX_ATTEMPTS', 5)
            processed_count = 0
            failed_count = 0

            for item in pending_items:
                item_id = item.id
                attempts = (item.attempts or 0) + 1
                item.attempts = attempts
                try:
                    created = self.process_item(item)
                    item.status = 'processed'
                    item.processed_at = datetime.utcnow()
                    item.error_message = None
                    db.session.commit()
                    processed_count += 1
                    logger.info(f"[{item.merchant_id}] Webhook {item.id} stored {created} sale(s)")

                except WebhookProcessingError as e:
                    db.session.rollback()
                    self._mark_failed(item_id, attempts, str(e), final=True)
                    failed_count += 1
                    logger.error(f"Rejected webhook {item_id}: {e}")

                except (requests.RequestException, ValueError) as e:
                    db.session.rollback()
                    self._mark_failed(item_id, attempts, str(e), final=attempts >= max_attempts)
                    failed_count += 1
                    logger.error(f"Error processing webhook {item_id} (attempt {attempts}): {e}")

                except Exception as e:
                    db.session.rollback()
                    self._mark_failed(item_id, attempts, str(e), final=attempts >= max_attempts)
                    failed_count += 1
                    logger.exception(f"Unexpected error processing webhook {item_id} (attempt {attempts}): {e}")

            logger.info(f"Webhook queue done: {processed_count} processed, {failed_count} failed")
            return {'processed': processed_count, 'failed': failed_count}

    def _mark_failed(self, item_id, attempts, message, final):
        item = db.session.get(WebhookQueue, item_id)
        if item is None:
            return
        item.attempts = attempts
        item.error_message = message
        if final:
            item.status = 'failed'
        db.session.commit()

    def start_scheduler(self):
        """Start background scheduler for queue processing"""
        if self.scheduler:
            logger.warning("Webhook queue scheduler already running")
            return

        if not self.app.config.get('WEBHOOK_QUEUE_ENABLED'):
            logger.info("Webhook queue is disabled, not starting scheduler")
            return

        self.scheduler = BackgroundScheduler()

        interval = self.app.config.get('WEBHOOK_QUEUE_INTERVAL_SECONDS', 30)

        self.scheduler.add_job(
            func=self.process_queue,
            trigger='interval',
            seconds=interval,
            id='webhook_queue'
        )

        self.scheduler.start()
        logger.info(f"Webhook queue scheduler started. Processing every {interval} seconds")

    def stop_scheduler(self):
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self.scheduler = None
            logger.info("Webhook queue scheduler stopped")

    def get_queue_status(self, merchant_id=None):
        """Count queued webhooks by status"""
        query = WebhookQueue.query
        if merchant_id:
            query = query.filter_by(merchant_id=merchant_id)
        return {
            status: query.filter_by(status=status).count()
            for status in ('pending', 'processed', 'failed')
        }
