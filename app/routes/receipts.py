"""
Receipt Routes
Receipt PDFs, CSV exports, QR codes and fiscal day reports
"""

from io import BytesIO
from flask import Blueprint, current_app, jsonify, request, send_file
from flask_login import login_required, current_user
from datetime import datetime, timedelta
from app.models import db, Sale, FiscalDay
from app.routes.auth import log_activity
from app.services.fiscal_receipt_service import build_debit_note
from app.utils.export import export_receipt_csv, export_tax_schedule
from app.utils.pdf_utils import RECEIPT_SIZES, generate_fiscal_day_report_pdf, generate_receipt_pdf
from app.utils.zimra_qr import build_sale_qr_payload, generate_qr_base64, generate_qr_png

bp = Blueprint('receipts', __name__)


def _get_sale(sale_id):
    return Sale.query.filter_by(id=sale_id, merchant_id=current_user.id).first_or_404()


def _qr_url(sale):
    """Verification URL of the device that signed the receipt"""
    device = None
    if sale.zimra_device_id:
        device = current_user.devices.filter_by(device_id=sale.zimra_device_id).first()
    if device is not None and device.qr_url:
        return device.qr_url
    return current_app.config['ZIMRA_QR_URL']


def _parse_date(value):
    if not value:
        return None
    try:
        return datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        return None


@bp.route('/<int:sale_id>')
@login_required
def get_receipt(sale_id):
    """Receipt details, with the verification QR code once fiscalised"""
    sale = _get_sale(sale_id)
    receipt = sale.to_dict()
    if sale.has_zimra_data:
        verification_url = build_sale_qr_payload(sale, _qr_url(sale))
        receipt['verification_url'] = verification_url
        receipt['qr_code'] = f'data:image/png;base64,{generate_qr_base64(verification_url)}'
    return jsonify(receipt)


@bp.route('/debit-notes', methods=['POST'])
@login_required
def create_debit_note():
    """Record a supplier debit note; it is fiscalised like any other receipt"""
    data = request.get_json(silent=True) or {}
    sale = build_debit_note(current_user, data, vat_rate=current_app.config.get('STANDARD_VAT_RATE', 15))
    db.session.add(sale)
    db.session.commit()

    log_activity(current_user.id, 'create_debit_note', 'sale', sale.receipt, f'Debit note for {sale.customer_name}')
    return jsonify({
        'success': True,
        'debit_note': sale.to_dict(),
        'message': 'Debit note created successfully',
    }), 201


@bp.route('/<int:sale_id>/pdf')
@login_required
def receipt_pdf(sale_id):
    """Receipt PDF in A4, 80mm or 50mm layout"""
    sale = _get_sale(sale_id)
    size = request.args.get('size', current_app.config.get('DEFAULT_RECEIPT_SIZE', 'A4'))
    if size not in RECEIPT_SIZES:
        return jsonify({'error': f'Unknown receipt size: {size}', 'sizes': list(RECEIPT_SIZES)}), 400

    pdf = generate_receipt_pdf(
        sale,
        size=size,
        qr_url=_qr_url(sale),
        currency_symbol=current_app.config.get('CURRENCY_SYMBOL', '$'),
        vat_rate=current_app.config.get('STANDARD_VAT_RATE', 15)
    )
    prefix = 'credit-note' if sale.is_credit_note else 'debit-note' if sale.is_debit_note else 'receipt'
    return send_file(
        BytesIO(pdf),
        mimetype='application/pdf',
        as_attachment=request.args.get('download') == '1',
        download_name=f'{prefix}-{sale.receipt}-{size}.pdf'
    )


@bp.route('/<int:sale_id>/csv')
@login_required
def receipt_csv(sale_id):
    sale = _get_sale(sale_id)
    return send_file(
        export_receipt_csv(sale),
        mimetype='text/csv',
        as_attachment=True,
        download_name=f'receipt-{sale.receipt}.csv'
    )


@bp.route('/<int:sale_id>/qr')
@login_required
def receipt_qr(sale_id):
    """QR code PNG for a fiscalised receipt"""
    sale = _get_sale(sale_id)
    if not sale.has_zimra_data:
        return jsonify({'error': 'Receipt has not been fiscalised'}), 404

    png = generate_qr_png(build_sale_qr_payload(sale, _qr_url(sale)))
    return send_file(BytesIO(png), mimetype='image/png', download_name=f'qr-{sale.receipt}.png')


@bp.route('/tax-schedule')
@login_required
def tax_schedule():
    """VAT tax schedule as CSV or Excel, optionally for a date range"""
    format_type = request.args.get('format', 'csv')
    date_from = _parse_date(request.args.get('from'))
    date_to = _parse_date(request.args.get('to'))
    # "to" covers its whole day
    date_until = date_to + timedelta(days=1) if date_to else None

    sales = current_user.sales.order_by(Sale.timestamp).all()
    output = export_tax_schedule(sales, format_type=format_type, date_from=date_from, date_until=date_until)

    if format_type == 'excel':
        return send_file(
            output,
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name='tax-schedule.xlsx'
        )
    return send_file(output, mimetype='text/csv', as_attachment=True, download_name='tax-schedule.csv')


@bp.route('/fiscal-days/<int:fiscal_day_id>/report')
@login_required
def fiscal_day_report(fiscal_day_id):
    """Z-report PDF for a fiscal day"""
    fiscal_day = FiscalDay.query.filter_by(id=fiscal_day_id, merchant_id=current_user.id).first_or_404()
    pdf = generate_fiscal_day_report_pdf(fiscal_day, current_user)
    return send_file(
        BytesIO(pdf),
        mimetype='application/pdf',
        as_attachment=request.args.get('download') == '1',
        download_name=f'fiscal-day-{fiscal_day.fiscal_day_no}.pdf'
    )
