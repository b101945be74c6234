"""
PDF Generation Utilities
Functions for generating fiscal receipts and fiscal day reports
"""

import logging
from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.utils.helpers import format_amount
from app.utils.zimra_qr import build_sale_qr_payload, generate_qr_png

logger = logging.getLogger(__name__)

FONT = "Courier"
FONT_BOLD = "Courier-Bold"

NARROW_PAGE_HEIGHT = 1200

RECEIPT_SIZES = {
    'A4': {
        'width': 595,
        'height': 842,
        'margins': {'top': 30, 'right': 50, 'bottom': 60, 'left': 50},
        'fonts': {'header': 16, 'normal': 14, 'small': 12},
        'qr_size': 110,
    },
    '80mm': {
        'width': 230,
        'height': NARROW_PAGE_HEIGHT,
        'margins': {'top': 25, 'right': 20, 'bottom': 25, 'left': 20},
        'fonts': {'header': 20, 'normal': 14, 'small': 12},
        'qr_size': 100,
    },
    '50mm': {
        'width': 175,
        'height': NARROW_PAGE_HEIGHT,
        'margins': {'top': 20, 'right': 15, 'bottom': 20, 'left': 15},
        'fonts': {'header': 16, 'normal': 11, 'small': 9},
        'qr_size': 80,
    },
}

REPORT_CURRENCIES = ['USD', 'ZWG']
MONEY_TYPES = ['Cash', 'Card', 'MobileWallet', 'Coupon', 'Credit', 'BankTransfer', 'Other']
EXEMPT_TAX_ID = 3


class _PdfWriter:
    """Canvas wrapper tracking the write position and breaking pages"""

    def __init__(self, template):
        self.template = template
        self.width = template['width']
        self.height = template['height']
        self.margins = template['margins']
        self.fonts = template['fonts']
        self.line_height = self.fonts['normal'] * 1.2
        self.buffer = BytesIO()
        self.pdf = canvas.Canvas(self.buffer, pagesize=(self.width, self.height))
        self.y = self.height - self.margins['top']

    @property
    def left(self):
        return self.margins['left']

    @property
    def right(self):
        return self.width - self.margins['right']

    @property
    def is_narrow(self):
        return self.width < A4[0]

    def ensure_space(self, needed):
        if self.y - needed < self.margins['bottom']:
            self.pdf.showPage()
            self.y = self.height - self.margins['top']

    def text(self, value, size='normal', bold=False, x=None, advance=True):
        self.ensure_space(self.line_height)
        self.pdf.setFont(FONT_BOLD if bold else FONT, self.fonts[size])
        self.pdf.drawString(self.left if x is None else x, self.y, str(value))
        if advance:
            self.newline()

    def centred(self, value, size='normal', bold=False):
        self.ensure_space(self.line_height)
        self.pdf.setFont(FONT_BOLD if bold else FONT, self.fonts[size])
        self.pdf.drawCentredString(self.width / 2, self.y, str(value))
        self.newline()

    def amount_row(self, label, value, bold=False, size='normal'):
        """Label at the left margin, value right-aligned"""
        self.ensure_space(self.line_height)
        self.pdf.setFont(FONT_BOLD if bold else FONT, self.fonts[size])
        self.pdf.drawString(self.left, self.y, label)
        self.pdf.drawRightString(self.right, self.y, str(value))
        self.newline()

    def rule(self):
        self.ensure_space(self.line_height)
        self.pdf.setDash(2, 2)
        self.pdf.line(self.left, self.y, self.right, self.y)
        self.pdf.setDash()
        self.newline()

    def newline(self, lines=1):
        self.y -= self.line_height * lines

    def image(self, png_bytes, size):
        self.ensure_space(size)
        x = (self.width - size) / 2
        self.pdf.drawImage(ImageReader(BytesIO(png_bytes)), x, self.y - size, width=size, height=size)
        self.y -= size + self.line_height / 2

    def finish(self):
        self.pdf.save()
        return self.buffer.getvalue()


def _draw_fiscal_block(writer, sale, qr_url):
    """QR code and fiscal identifiers for submitted receipts"""
    payload = build_sale_qr_payload(sale, qr_url)
    try:
        writer.image(generate_qr_png(payload), writer.template['qr_size'])
    except Exception as e:
        logger.warning(f"Could not render QR code for receipt {sale.receipt}: {str(e)}")

    writer.centred("Verify at:", size='small')
    writer.centred(qr_url, size='small')
    if sale.zimra_qr_data:
        writer.centred(f"Verification Code: {sale.zimra_qr_data}", size='small')
    writer.centred(f"Invoice Number: {sale.receipt_counter or ''}/{sale.zimra_global_no or ''}", size='small')

    parts = []
    if sale.zimra_fiscal_day_no:
        parts.append(f"Fiscal Day: {sale.zimra_fiscal_day_no}")
    if sale.zimra_device_id:
        parts.append(f"Device ID: {sale.zimra_device_id}")
    if parts:
        writer.centred(" | ".join(parts), size='small')
    writer.rule()


def _draw_store_block(writer, sale):
    writer.centred(sale.store_name or '', size='header', bold=True)
    for line in (sale.store_address, sale.store_city, sale.store_email):
        if line:
            writer.centred(line, size='small')
    if sale.store_contact_number:
        writer.centred(f"Tel: {sale.store_contact_number}", size='small')
    if sale.store_tin_number:
        writer.centred(f"TIN No: {sale.store_tin_number}", size='small')
    if sale.store_vat_number:
        writer.centred(f"VAT No: {sale.store_vat_number}", size='small')
    writer.rule()


def _draw_customer_block(writer, sale):
    writer.text("Customer Details:", bold=True)
    writer.text(sale.customer_name or 'Cash Sale', size='small')
    if sale.customer_tin:
        writer.text(f"TIN: {sale.customer_tin}", size='small')
    if sale.customer_vat:
        writer.text(f"VAT: {sale.customer_vat}", size='small')
    if sale.customer_address:
        writer.text(sale.customer_address, size='small')
    if sale.customer_city:
        writer.text(sale.customer_city, size='small')
    if sale.customer_contact:
        writer.text(f"Tel: {sale.customer_contact}", size='small')
    writer.rule()


def _document_title(sale):
    if sale.is_credit_note:
        return "Credit Note"
    if sale.is_debit_note:
        return "Debit Note"
    return "Fiscal Tax Invoice"


def _draw_receipt_details(writer, sale):
    date_text = sale.timestamp.strftime('%Y-%m-%d') if sale.timestamp else ''
    time_text = sale.timestamp.strftime('%H:%M:%S') if sale.timestamp else ''

    if sale.is_credit_note:
        writer.text(f"CreditNote #: {sale.receipt}", size='small')
        writer.text(f"Refund For: #{sale.refund_for or ''}", size='small')
        if sale.notes:
            writer.text(f"Reason: {sale.notes}", size='small')
    elif sale.is_debit_note:
        writer.text(f"DebitNote #: {sale.receipt}", size='small')
        if sale.notes:
            writer.text(f"Reason: {sale.notes}", size='small')
    else:
        writer.text(f"Receipt #: {sale.receipt}", size='small')
        if sale.notes:
            writer.text(f"Ref: {sale.notes}", size='small')
    writer.text(f"Date: {date_text}", size='small')
    writer.text(f"Time: {time_text}", size='small')
    writer.rule()


def _draw_items(writer, sale, currency_symbol):
    if writer.is_narrow:
        for item in sale.items:
            writer.text(f"HSCode: {item.hs_code or ''}", size='small')
            writer.text(item.name, size='small', bold=True)
            quantity = float(item.quantity or 0)
            writer.text(f"{quantity:g} x {format_amount(item.price_inc, currency_symbol)}", size='small')
            writer.amount_row("VAT", format_amount(item.vat_amount, currency_symbol), size='small')
            writer.amount_row("Total", format_amount(item.total_inc, currency_symbol), size='small')
            writer.newline(0.5)
    else:
        columns = [writer.left, writer.left + 90, writer.right - 170]
        writer.ensure_space(writer.line_height)
        writer.pdf.setFont(FONT_BOLD, writer.fonts['small'])
        writer.pdf.drawString(columns[0], writer.y, "HSCode")
        writer.pdf.drawString(columns[1], writer.y, "Item")
        writer.pdf.drawString(columns[2], writer.y, "VAT")
        writer.pdf.drawRightString(writer.right, writer.y, "Total")
        writer.newline()

        for item in sale.items:
            writer.ensure_space(writer.line_height * 2)
            writer.pdf.setFont(FONT, writer.fonts['small'])
            name = item.name if len(item.name) <= 22 else item.name[:19] + "..."
            writer.pdf.drawString(columns[0], writer.y, item.hs_code or '')
            writer.pdf.drawString(columns[1], writer.y, name)
            writer.pdf.drawString(columns[2], writer.y, format_amount(item.vat_amount, currency_symbol))
            writer.pdf.drawRightString(writer.right, writer.y, format_amount(item.total_inc, currency_symbol))
            writer.newline()
            quantity = float(item.quantity or 0)
            writer.text(f"{quantity:g} x {format_amount(item.price_inc, currency_symbol)}",
                        size='small', x=columns[1])
    writer.rule()


def generate_receipt_pdf(sale, size='A4', qr_url='', currency_symbol='$', vat_rate=15):
    """
    Generate PDF receipt for a sale

    Args:
        sale: Sale object
        size: one of RECEIPT_SIZES (A4, 80mm, 50mm)
        qr_url: base verification URL for the QR code
        currency_symbol: symbol printed before amounts
        vat_rate: standard VAT rate shown on the totals line

    Returns:
        bytes: PDF document
    """
    if size not in RECEIPT_SIZES:
        raise ValueError(f"Unknown receipt size: {size}")

    writer = _PdfWriter(RECEIPT_SIZES[size])

    if sale.has_zimra_data:
        _draw_fiscal_block(writer, sale, qr_url)

    writer.centred(_document_title(sale), size='header', bold=True)
    writer.newline(0.5)

    _draw_store_block(writer, sale)
    _draw_customer_block(writer, sale)
    _draw_receipt_details(writer, sale)
    _draw_items(writer, sale, currency_symbol)

    # Totals
    writer.amount_row("Subtotal:", format_amount(sale.total, currency_symbol))
    writer.amount_row(f"VAT ({vat_rate:g}%):", format_amount(sale.vat_amount, currency_symbol))
    writer.amount_row("Total Inc VAT:", format_amount(sale.total_inc, currency_symbol), bold=True)
    writer.rule()

    # Payments
    writer.text("Payment Details:", bold=True)
    for payment in sale.payments:
        writer.text(f"Currency: {payment.currency} {format_amount(payment.amount, currency_symbol)}", size='small')

    if sale.footer_text:
        writer.newline()
        writer.centred(sale.footer_text, size='small')

    return writer.finish()


def summarize_fiscal_counters(counters, currency):
    """
    Summarize fiscal counters for one currency into report rows

    Args:
        counters: list of FDMS fiscal counter dicts
        currency: counter currency to report (USD, ZWG)

    Returns:
        list: (description, amount) tuples in print order
    """
    counters = [c for c in (counters or []) if c.get('fiscalCounterCurrency') == currency]

    rows = []
    standard_sales = zero_rated_sales = exempt_sales = taxation = 0.0

    for counter in counters:
        if counter.get('fiscalCounterType') != 'SaleByTax':
            continue
        value = float(counter.get('fiscalCounterValue') or 0)
        if counter.get('fiscalCounterTaxID') == EXEMPT_TAX_ID:
            exempt_sales += value
            rows.append(("Net Exempt Sales", value))
        elif counter.get('fiscalCounterTaxPercent') == 15:
            standard_sales += value
            rows.append(("Total Sales Inc @ Standard rated 15%", value))
        elif counter.get('fiscalCounterTaxPercent') == 0:
            zero_rated_sales += value
            rows.append(("Net Sales @ Zero rated 0%", value))

    rows.append(("Total Net Sales Inc", standard_sales + zero_rated_sales + exempt_sales))

    for counter in counters:
        if counter.get('fiscalCounterType') == 'SaleTaxByTax' and counter.get('fiscalCounterTaxPercent') == 15:
            value = float(counter.get('fiscalCounterValue') or 0)
            taxation += value
            rows.append(("Taxation @ Standard rated 15%", value))

    rows.append(("Total Taxation On Sales", taxation))

    standard_net = standard_sales - taxation
    if standard_sales > 0:
        rows.append(("Net Sales @ Standard rated 15%", standard_net))
    if zero_rated_sales > 0:
        rows.append(("Total Zero Rated Sales", zero_rated_sales))
    if exempt_sales > 0:
        rows.append(("Total Exempt Sales", exempt_sales))
    rows.append(("Total Net Sales Exc", standard_net + zero_rated_sales + exempt_sales))

    for money_type in MONEY_TYPES:
        for counter in counters:
            if (counter.get('fiscalCounterType') == 'BalanceByMoneyType'
                    and counter.get('fiscalCounterMoneyType') == money_type):
                rows.append((f"Payment Methods: {money_type}", float(counter.get('fiscalCounterValue') or 0)))

    return rows


def generate_fiscal_day_report_pdf(fiscal_day, merchant=None):
    """
    Generate the Z-report PDF for a fiscal day

    Args:
        fiscal_day: FiscalDay object
        merchant: Merchant object, used for the heading

    Returns:
        bytes: PDF document
    """
    writer = _PdfWriter(RECEIPT_SIZES['A4'])

    writer.centred("Fiscal Day Report", size='header', bold=True)
    if merchant is not None and (merchant.store_name or merchant.merchant_name):
        writer.centred(merchant.store_name or merchant.merchant_name, size='small')
    writer.rule()

    opened = fiscal_day.opened_at.strftime('%Y-%m-%d %H:%M:%S') if fiscal_day.opened_at else ''
    closed = fiscal_day.closed_at.strftime('%Y-%m-%d %H:%M:%S') if fiscal_day.closed_at else ''
    writer.text(f"Fiscal Day No: {fiscal_day.fiscal_day_no}")
    writer.text(f"Opened At: {opened}")
    writer.text(f"Closed At: {closed}")
    writer.text(f"Device ID: {fiscal_day.device_id}")
    writer.newline()

    for currency in REPORT_CURRENCIES:
        writer.text(f"{currency} Totals", bold=True)
        writer.amount_row("Description", "Amount", bold=True, size='small')
        for description, value in summarize_fiscal_counters(fiscal_day.fiscal_counters, currency):
            bold = description.startswith("Total")
            writer.amount_row(description, f"{value:.2f}", bold=bold, size='small')
        writer.rule()

    return writer.finish()
