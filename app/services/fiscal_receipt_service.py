"""
Fiscal Receipt Service
Builds, signs and submits FDMS receipts for one fiscal device and keeps the
device's receipt counters and hash chain
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from app.models import db, Sale, SaleItem
from app.services.zimra_client import ZimraApiError, ZimraValidationError, convert_to_zimra_receipt, envelope_data
from app.utils.zimra_signing import qr_data_from_signature, sign_receipt

logger = logging.getLogger(__name__)

RECEIPT_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'
CASH_SALE = 'Cash Sale'

# Used when FDMS has not sent the device's applicable taxes yet
DEFAULT_TAXES = [
    {'taxID': 1, 'taxName': 'Standard rated 15%', 'taxPercent': 15.0},
    {'taxID': 2, 'taxName': 'Zero rated 0%', 'taxPercent': 0.0},
    {'taxID': 3, 'taxName': 'Exempt'},
]

COUNTER_PREFIXES = {
    'FiscalInvoice': 'Sale',
    'CreditNote': 'CreditNote',
    'DebitNote': 'DebitNote',
}


def applicable_taxes(device=None):
    """Device taxes sorted by tax ID, each given a tax code A, B, C..."""
    taxes = (device.applicable_taxes if device is not None else None) or DEFAULT_TAXES
    ordered = sorted(taxes, key=lambda tax: tax.get('taxID') or 0)
    return [dict(tax, taxCode=chr(ord('A') + index)) for index, tax in enumerate(ordered)]


def match_tax(tax_name, taxes):
    """
    Find the device tax for a receipt line's tax name

    VAT maps to the standard rated tax; EXEMPT, ZERO RATED and WITHOLD VAT map
    by keyword. A line without a tax name is zero rated.
    """
    name = (tax_name or '').lower() or 'zero rated'

    def find(*keywords):
        for tax in taxes:
            tax_label = (tax.get('taxName') or '').lower()
            if all(keyword in tax_label for keyword in keywords):
                return tax
        return None

    if 'exempt' in name:
        return find('exempt')
    if 'zero' in name:
        return find('zero')
    if 'withhold' in name or 'withold' in name or 'non' in name:
        return find('withhold') or find('non')
    if 'vat' in name:
        return find('standard', 'rated')
    return find(name)


def _sale_currency(sale):
    return (sale.payments[0].currency if sale.payments else None) or 'USD'


def build_receipt_lines(sale, taxes):
    lines = []
    for index, item in enumerate(sale.items, start=1):
        tax = match_tax(item.tax_name, taxes) or {}
        line = {
            'receiptLineType': 'Sale',
            'receiptLineNo': index,
            'receiptLineHSCode': item.hs_code or '',
            'receiptLineName': item.name,
            'receiptLinePrice': float(item.price_inc or 0),
            'receiptLineQuantity': float(item.quantity or 0),
            'receiptLineTotal': round(float(item.total_inc or 0), 2),
            'taxCode': tax.get('taxCode', ''),
            'taxID': tax.get('taxID', 0),
        }
        if tax.get('taxPercent') is not None:
            line['taxPercent'] = float(tax['taxPercent'])
        lines.append(line)
    return lines


def build_receipt_taxes(sale, taxes):
    """One entry per device tax used on the receipt, with its tax and tax-inclusive sales amounts"""
    totals = {}
    for item in sale.items:
        tax = match_tax(item.tax_name, taxes)
        if tax is None:
            continue
        tax_amount, sales_amount = totals.get(tax['taxID'], (Decimal('0'), Decimal('0')))
        totals[tax['taxID']] = (
            tax_amount + Decimal(str(item.vat_amount or 0)),
            sales_amount + Decimal(str(item.total_inc or 0)),
        )

    receipt_taxes = []
    for tax in taxes:
        if tax['taxID'] not in totals:
            continue
        tax_amount, sales_amount = totals[tax['taxID']]
        if sales_amount == 0:
            continue
        entry = {
            'taxCode': tax['taxCode'],
            'taxID': tax['taxID'],
            'taxAmount': round(float(tax_amount), 2),
            'salesAmountWithTax': round(float(sales_amount), 2),
        }
        if tax.get('taxPercent') is not None:
            entry['taxPercent'] = float(tax['taxPercent'])
        receipt_taxes.append(entry)
    return receipt_taxes


def _buyer_data(sale):
    if not sale.customer_name or sale.customer_name == CASH_SALE:
        return None
    return {
        'buyerRegisterName': sale.customer_name,
        'buyerTradeName': sale.customer_name,
        'vatNumber': sale.customer_vat or '',
        'buyerTIN': sale.customer_tin or '',
        'buyerContacts': {
            'phoneNo': sale.customer_contact or '',
            'email': sale.customer_email or '',
        },
        'buyerAddress': {
            'city': sale.customer_city or '',
            'street': sale.customer_address or '',
        },
    }


def build_fiscal_day_counters(sales, taxes):
    """
    Fiscal day counters for the accepted receipts of a day

    Sales (and credit/debit notes) by tax and their tax by tax, per currency,
    plus balances by money type.
    """
    values = {}
    details = {}

    def add(key, amount, **fields):
        values[key] = values.get(key, Decimal('0')) + Decimal(str(amount or 0))
        details.setdefault(key, fields)

    for sale in sales:
        prefix = COUNTER_PREFIXES.get(sale.receipt_type, 'Sale')
        currency = _sale_currency(sale)
        for item in sale.items:
            tax = match_tax(item.tax_name, taxes)
            if tax is None:
                continue
            percent = float(tax['taxPercent']) if tax.get('taxPercent') is not None else None
            add((f'{prefix}ByTax', currency, tax['taxID']), item.total_inc,
                fiscalCounterTaxID=tax['taxID'], fiscalCounterTaxPercent=percent)
            if percent is not None:
                add((f'{prefix}TaxByTax', currency, tax['taxID']), item.vat_amount,
                    fiscalCounterTaxID=tax['taxID'], fiscalCounterTaxPercent=percent)
        for payment in sale.payments:
            add(('BalanceByMoneyType', payment.currency or currency, payment.payment_type), payment.amount,
                fiscalCounterMoneyType=payment.payment_type)

    counters = []
    for key, value in values.items():
        counter_type, currency, _ = key
        counter = {'fiscalCounterType': counter_type, 'fiscalCounterCurrency': currency}
        counter.update(details[key])
        counter['fiscalCounterValue'] = round(float(value), 2)
        counters.append(counter)
    return counters


class FiscalReceiptService:
    """Submits a merchant's sales to FDMS through one fiscal device"""

    def __init__(self, client, merchant, device=None):
        self.client = client
        self.merchant = merchant
        self.device = device
        self.device_id = str(device.device_id) if device is not None else client.config.device_id
        self.taxes = applicable_taxes(device)

    def allocate_counters(self):
        """
        Receipt counter and global number for the next receipt

        Global numbers already printed on a sale of this device are skipped.
        """
        counter = (self.device.next_receipt_counter if self.device is not None else None) or 1
        global_no = (self.device.next_global_no if self.device is not None else None) or 1
        while Sale.query.filter_by(
            merchant_id=self.merchant.id,
            zimra_device_id=self.device_id,
            zimra_global_no=str(global_no)
        ).first() is not None:
            global_no += 1
            counter += 1
        return counter, global_no

    def previous_hash(self, counter):
        """Hash of the previous receipt of the fiscal day; empty for the first one"""
        if counter == 1 or self.device is None:
            return ''
        return self.device.last_receipt_hash or ''

    def _credit_debit_note(self, sale):
        if not sale.refund_for:
            if sale.is_credit_note:
                raise ZimraValidationError(f"Credit note {sale.receipt} has no original receipt")
            return None

        original = Sale.query.filter_by(merchant_id=self.merchant.id, receipt=sale.refund_for).first()
        if original is None or not original.zimra_receipt_id:
            raise ZimraValidationError(f"Original receipt {sale.refund_for} has not been fiscalised")
        return {'receiptID': int(original.zimra_receipt_id) if original.zimra_receipt_id.isdigit()
                else original.zimra_receipt_id}

    def build_receipt(self, sale, counter, global_no, previous_hash=''):
        """
        FDMS receipt body for a sale

        The summary fields of convert_to_zimra_receipt() are kept; the device
        signature is added when the device holds a private key.

        Raises:
            ZimraValidationError: if a credit note's original receipt is unknown
        """
        receipt = convert_to_zimra_receipt(sale, self.client.config.operator_id, self.device_id)
        notes = sale.notes or ''
        if sale.refund_for and sale.refund_for not in notes:
            notes = f"{notes} | Ref: {sale.refund_for}" if notes else f"Credit note for receipt: {sale.refund_for}"

        receipt.update({
            'receiptType': sale.receipt_type or 'FiscalInvoice',
            'receiptCurrency': _sale_currency(sale),
            'receiptCounter': counter,
            'receiptGlobalNo': global_no,
            'invoiceNo': sale.receipt,
            'receiptNotes': notes,
            'receiptDate': (sale.timestamp or datetime.now()).strftime(RECEIPT_DATE_FORMAT),
            'receiptLinesTaxInclusive': True,
            'receiptLines': build_receipt_lines(sale, self.taxes),
            'receiptTaxes': build_receipt_taxes(sale, self.taxes),
            'receiptPayments': [
                {'moneyTypeCode': payment.payment_type, 'paymentAmount': round(float(payment.amount or 0), 2)}
                for payment in sale.payments
            ],
            'receiptTotal': round(float(sale.total_inc or 0), 2),
        })

        buyer = _buyer_data(sale)
        if buyer:
            receipt['buyerData'] = buyer
        note_reference = self._credit_debit_note(sale)
        if note_reference:
            receipt['creditDebitNote'] = note_reference

        if self.device is not None and self.device.private_key:
            receipt['receiptDeviceSignature'] = sign_receipt(
                self.device_id, receipt, self.device.private_key, previous_hash)
        return receipt

    def _mark_submitted(self, sale, result, receipt, now):
        data = envelope_data(result) or (result if isinstance(result, dict) else {})
        signature = receipt.get('receiptDeviceSignature') or {}

        sale.zimra_submitted = True
        sale.zimra_submission_date = now
        sale.zimra_error = None
        sale.zimra_device_id = self.device_id
        sale.zimra_receipt_id = str(data.get('receiptID') or data.get('receiptId') or '') or sale.zimra_receipt_id
        sale.zimra_global_no = str(data.get('receiptGlobalNo') or receipt['receiptGlobalNo'])
        sale.receipt_counter = str(data.get('receiptCounter') or receipt['receiptCounter'])
        sale.zimra_qr_data = (data.get('receiptQrData') or data.get('qrData')
                              or qr_data_from_signature(signature.get('signature')) or sale.zimra_qr_data)
        sale.receipt_hash = signature.get('hash') or sale.receipt_hash
        fiscal_day_no = data.get('fiscalDayNo') or (self.device.fiscal_day_no if self.device is not None else None)
        sale.zimra_fiscal_day_no = str(fiscal_day_no or '') or sale.zimra_fiscal_day_no
        sale.zimra_operation_id = data.get('operationID') or sale.zimra_operation_id
        sale.submission_route = 'direct'

    def _advance_counters(self, counter, global_no, receipt_hash):
        """Move the device to the next receipt; only called once FDMS accepted a receipt"""
        if self.device is None:
            return
        self.device.next_receipt_counter = counter + 1
        self.device.next_global_no = global_no + 1
        self.device.last_receipt_hash = receipt_hash

    def submit(self, sale, now=None):
        """
        Submit one sale

        On success the sale is marked submitted and the device counters move
        on. On failure the error is stored on the sale, which stays pending,
        and the counters are left for the next receipt.

        Returns:
            the FDMS response

        Raises:
            ZimraApiError, ZimraValidationError: after the failure is recorded
        """
        now = now or datetime.utcnow()
        counter, global_no = self.allocate_counters()
        try:
            receipt = self.build_receipt(sale, counter, global_no, self.previous_hash(counter))
            result = self.client.submit_receipt(receipt)
        except (ZimraApiError, ZimraValidationError) as e:
            sale.zimra_submitted = False
            sale.zimra_submission_date = now
            sale.zimra_error = str(e)
            db.session.commit()
            raise

        self._mark_submitted(sale, result, receipt, now)
        self._advance_counters(counter, global_no, sale.receipt_hash)
        db.session.commit()
        return result

    def submit_sales(self, sales):
        """
        Submit sales in order, skipping those already accepted

        Returns:
            tuple: (successful, failed) lists for the JSON response
        """
        successful = []
        failed = []
        for sale in sales:
            if sale.zimra_submitted:
                successful.append({'receipt': sale.receipt, 'already_submitted': True})
                continue
            try:
                result = self.submit(sale)
            except (ZimraApiError, ZimraValidationError) as e:
                failed.append({'receipt': sale.receipt, 'error': str(e)})
                logger.warning(f"Receipt {sale.receipt} rejected by ZIMRA: {e}")
            else:
                successful.append({'receipt': sale.receipt, 'result': result})

        logger.info(f"Submitted {len(successful)} receipt(s), {len(failed)} failed for merchant {self.merchant.merchant_id}")
        return successful, failed

    def pending_sales(self):
        """Sales whose last submission failed, oldest first"""
        return Sale.query.filter(
            Sale.merchant_id == self.merchant.id,
            Sale.zimra_submitted.isnot(True),
            Sale.zimra_error.isnot(None)
        ).order_by(Sale.id).all()

    def resubmit_pending(self):
        """
        Resubmit every sale whose last submission failed

        Failed receipts never took a counter, so each is rebuilt and signed
        with the device's current counters.
        """
        sales = self.pending_sales()
        if not sales:
            logger.debug(f"No pending receipts for merchant {self.merchant.merchant_id}")
            return [], []
        logger.info(f"Resubmitting {len(sales)} pending receipt(s) for merchant {self.merchant.merchant_id}")
        return self.submit_sales(sales)


def build_debit_note(merchant, data, vat_rate=15.0, now=None):
    """
    Debit note Sale for a supplier

    Item prices are VAT exclusive; VAT is charged at the standard rate on the
    subtotal.

    Raises:
        ZimraValidationError: if the supplier, reason or items are missing
    """
    supplier_name = (data.get('supplier_name') or '').strip()
    reason = (data.get('reason') or '').strip()
    items = data.get('items')
    if not supplier_name or not reason:
        raise ZimraValidationError("supplier_name and reason are required")
    if not items or not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ZimraValidationError("At least one item is required")

    rate = Decimal(str(vat_rate)) / 100
    cents = Decimal('0.01')
    sale = Sale(
        merchant_id=merchant.id,
        receipt=f'DN-{uuid.uuid4().hex[:8].upper()}',
        receipt_type='DebitNote',
        notes=reason,
        timestamp=now or datetime.utcnow(),
        store_name=merchant.store_name or merchant.merchant_name or '',
        store_address=merchant.store_address,
        store_city=merchant.store_city,
        store_contact_number=merchant.store_contact_number,
        store_tin_number=merchant.tin,
        store_vat_number=merchant.vat,
        customer_name=supplier_name,
        customer_vat=data.get('supplier_vat'),
        customer_tin=data.get('supplier_tin'),
    )

    subtotal = Decimal('0')
    for item in items:
        try:
            price = Decimal(str(item.get('price') or 0))
            quantity = Decimal(str(item.get('quantity') or 0))
        except InvalidOperation:
            raise ZimraValidationError(f"Invalid price or quantity for item {item.get('name')}")
        if quantity <= 0:
            raise ZimraValidationError(f"Quantity must be positive for item {item.get('name')}")
        line_total = price * quantity
        subtotal += line_total
        sale.items.append(SaleItem(
            name=item.get('name') or item.get('sku') or 'Item',
            hs_code=item.get('hscode') or item.get('hs_code'),
            quantity=quantity,
            price_inc=(price * (1 + rate)).quantize(cents, rounding=ROUND_HALF_UP),
            total_inc=(line_total * (1 + rate)).quantize(cents, rounding=ROUND_HALF_UP),
            vat_amount=(line_total * rate).quantize(cents, rounding=ROUND_HALF_UP),
            tax_name='VAT',
        ))

    vat_amount = (subtotal * rate).quantize(cents, rounding=ROUND_HALF_UP)
    sale.total = subtotal.quantize(cents, rounding=ROUND_HALF_UP)
    sale.vat_amount = vat_amount
    sale.total_inc = sale.total + vat_amount
    return sale
