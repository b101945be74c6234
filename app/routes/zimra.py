"""
ZIMRA Fiscal Device Routes
Device registration, fiscal day lifecycle and receipt submission
"""

import logging
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required, current_user
from datetime import datetime
from app.models import db, Sale, ZimraCredentials, FiscalDay
from app.routes.auth import log_activity
from app.services.fiscal_receipt_service import FiscalReceiptService, applicable_taxes, build_fiscal_day_counters
from app.services.zimra_client import (
    FiscalDayError, FiscalDayReportStatus, FiscalDayStatus, ZimraApiError,
    ZimraValidationError, envelope_data, get_zimra_client
)
from app.utils.zimra_signing import generate_key_and_csr, sign_fiscal_day

logger = logging.getLogger(__name__)

bp = Blueprint('zimra', __name__)


def _active_device():
    return current_user.devices.filter_by(active=True).order_by(ZimraCredentials.id).first()


def _client(device=None):
    return get_zimra_client(current_app.config, current_user, device or _active_device())


def _device_id(device):
    return device.device_id if device else current_app.config.get('ZIMRA_DEVICE_ID', '')


def _open_fiscal_day_record(device_id):
    return FiscalDay.query.filter_by(
        merchant_id=current_user.id,
        device_id=str(device_id),
        status=FiscalDayStatus.OPEN
    ).order_by(FiscalDay.opened_at.desc()).first()


def _latest_fiscal_day_record(device_id):
    return FiscalDay.query.filter_by(
        merchant_id=current_user.id,
        device_id=str(device_id)
    ).order_by(FiscalDay.opened_at.desc()).first()


# ----------------------------------------------------------------------
# Device
# ----------------------------------------------------------------------

@bp.route('/register', methods=['POST'])
@login_required
def register_device():
    """
    Register a fiscal device and store its credentials

    A new device key is generated and its CSR sent with the registration; the
    key and the certificate FDMS returns are kept on the device.
    """
    data = request.get_json(silent=True) or {}
    device_id = str(data.get('device_id') or '').strip()
    activation_key = data.get('activation_key') or ''
    serial_number = data.get('serial_number') or ''
    if not device_id or not activation_key:
        raise ZimraValidationError("device_id and activation_key are required")

    client = _client()
    private_key, certificate_request = generate_key_and_csr(serial_number, device_id)
    result = client.register_device(
        device_id,
        activation_key,
        serial_number,
        version=data.get('version') or 'v1',
        taxpayer_tin=data.get('taxpayer_tin') or current_user.tin,
        vat_number=data.get('vat_number') or current_user.vat,
        certificate_request=certificate_request
    )

    device = ZimraCredentials.query.filter_by(merchant_id=current_user.id, device_id=device_id).first()
    if device is None:
        device = ZimraCredentials(merchant_id=current_user.id, device_id=device_id)
        db.session.add(device)
    device.device_serial_no = serial_number
    device.operator_id = data.get('operator_id') or device.operator_id
    device.api_key = data.get('api_key') or device.api_key
    device.private_key = private_key
    device.certificate = result.get('certificate') or device.certificate
    device.operation_id = result.get('operationID')
    device.active = True
    db.session.commit()

    log_activity(current_user.id, 'register_device', 'device', device_id, f'Registered device {serial_number}')
    logger.info(f"Registered device {device_id} for merchant {current_user.merchant_id}")

    return jsonify({'success': True, 'device': device.to_dict(), 'result': result})


@bp.route('/config', methods=['POST'])
@login_required
def device_config():
    """Fetch taxpayer configuration from FDMS and store it on the device"""
    data = request.get_json(silent=True) or {}
    device = _active_device()
    device_id = data.get('device_id') or _device_id(device)
    if not device_id:
        raise ZimraValidationError("No fiscal device registered")

    response = _client(device).get_device_config(
        device_id,
        model_name=data.get('model_name') or 'Server',
        model_version=data.get('model_version') or 'v1'
    )
    config_data = envelope_data(response) or (response if isinstance(response, dict) else {})

    if device is not None:
        device.taxpayer_name = config_data.get('taxPayerName', device.taxpayer_name)
        device.taxpayer_tin = config_data.get('taxPayerTIN', device.taxpayer_tin)
        device.vat_number = config_data.get('vatNumber', device.vat_number)
        device.device_branch_name = config_data.get('deviceBranchName', device.device_branch_name)
        device.device_branch_address = config_data.get('deviceBranchAddress', device.device_branch_address)
        device.device_branch_contacts = config_data.get('deviceBranchContacts', device.device_branch_contacts)
        device.device_operating_mode = config_data.get('deviceOperatingMode', device.device_operating_mode)
        device.taxpayer_day_max_hrs = config_data.get('taxPayerDayMaxHrs', device.taxpayer_day_max_hrs)
        device.taxpayer_day_end_notification_hrs = config_data.get(
            'taxpayerDayEndNotificationHrs', device.taxpayer_day_end_notification_hrs)
        device.applicable_taxes = config_data.get('applicableTaxes', device.applicable_taxes)
        device.certificate_valid_till = config_data.get('certificateValidTill', device.certificate_valid_till)
        device.qr_url = config_data.get('qrUrl', device.qr_url)
        device.operation_id = config_data.get('operationID', device.operation_id)
        db.session.commit()

    return jsonify({'success': True, 'data': config_data})


@bp.route('/device/status')
@login_required
def device_status():
    return jsonify(_client().get_device_status())


@bp.route('/ping-all')
@login_required
def ping_all():
    """Ping every device of the merchant; failures are reported, not raised"""
    return jsonify(_client().ping_all_devices(current_user.merchant_id))


# ----------------------------------------------------------------------
# Fiscal day
# ----------------------------------------------------------------------

@bp.route('/status')
@login_required
def fiscal_day_status():
    """Refresh and return the fiscal day state"""
    device = _active_device()
    client = _client(device)
    data = client.get_fiscal_day_status()

    if device is not None:
        device.fiscal_day_status = client.fiscal_day_status
        if data.get('fiscalDayNo'):
            device.fiscal_day_no = str(data['fiscalDayNo'])
        db.session.commit()

    return jsonify({'success': True, 'data': data, 'state': client.state()})


@bp.route('/open-day', methods=['POST'])
@login_required
def open_day():
    """Open a fiscal day"""
    device = _active_device()
    device_id = _device_id(device)
    client = _client(device)

    data = client.open_fiscal_day() or {}
    fiscal_day_no = str(data.get('fiscalDayNo') or '')
    now = datetime.utcnow()

    fiscal_day = FiscalDay(
        merchant_id=current_user.id,
        device_id=str(device_id),
        device_serial_number=device.device_serial_no if device else None,
        fiscal_day_no=fiscal_day_no,
        operator_id=client.config.operator_id,
        opened_at=now,
        status=FiscalDayStatus.OPEN,
        report_status=FiscalDayReportStatus.PENDING,
        submission_attempts=0
    )
    db.session.add(fiscal_day)

    if device is not None:
        device.fiscal_day_status = FiscalDayStatus.OPEN
        device.fiscal_day_no = fiscal_day_no
        device.fiscal_opened_date = now
        # Receipt counters and the hash chain restart with each fiscal day
        device.next_receipt_counter = 1
        device.last_receipt_hash = None
    db.session.commit()

    log_activity(current_user.id, 'open_fiscal_day', 'fiscal_day', fiscal_day_no, f'Opened fiscal day on device {device_id}')
    return jsonify({'success': True, 'data': data, 'fiscal_day': fiscal_day.to_dict()})


@bp.route('/close-day', methods=['POST'])
@login_required
def close_day():
    """
    Close the fiscal day

    The stored fiscal day records the outcome either way; FDMS failures are
    re-raised after being recorded. When the device holds a private key the
    report is sent with its counters and device signature.
    """
    data = request.get_json(silent=True) or {}
    manual_closure = bool(data.get('manual_closure'))

    device = _active_device()
    device_id = _device_id(device)
    client = _client(device)
    fiscal_day = _open_fiscal_day_record(device_id)
    now = datetime.utcnow()

    sales = []
    if fiscal_day is not None:
        sales = Sale.query.filter_by(
            merchant_id=current_user.id,
            zimra_fiscal_day_no=fiscal_day.fiscal_day_no,
            zimra_submitted=True
        ).order_by(Sale.id).all()
    counters = build_fiscal_day_counters(sales, applicable_taxes(device))

    report = {}
    if device is not None and device.private_key and fiscal_day is not None:
        report = {
            'fiscal_day_no': fiscal_day.fiscal_day_no,
            'counters': counters,
            'signature': sign_fiscal_day(device_id, fiscal_day.fiscal_day_no, fiscal_day.opened_at,
                                         counters, device.private_key),
            'receipt_counter': (device.next_receipt_counter or 1) - 1,
        }

    try:
        response = client.close_fiscal_day(device_id=device_id, manual_closure=manual_closure, **report)
    except ZimraApiError as e:
        if fiscal_day is not None:
            fiscal_day.report_status = FiscalDayReportStatus.ERROR
            fiscal_day.error_details = str(e)
            fiscal_day.submission_attempts = (fiscal_day.submission_attempts or 0) + 1
            fiscal_day.last_submission_date = now
            db.session.commit()
        raise

    response_data = envelope_data(response) or {}
    if fiscal_day is not None:
        fiscal_day.status = FiscalDayStatus.CLOSED
        fiscal_day.report_status = client.report_status
        fiscal_day.closed_at = now
        fiscal_day.day_end_time = now
        fiscal_day.manual_closure = manual_closure
        fiscal_day.manual_closure_reason = data.get('reason') if manual_closure else None
        fiscal_day.fiscal_counters = (response_data.get('fiscalDayCounters') or counters
                                      or fiscal_day.fiscal_counters or [])
        fiscal_day.total_transactions = len(sales)
        fiscal_day.total_amount = sum(float(sale.total_inc or 0) for sale in sales)
        fiscal_day.total_vat = sum(float(sale.vat_amount or 0) for sale in sales)
        fiscal_day.submission_attempts = (fiscal_day.submission_attempts or 0) + 1
        fiscal_day.last_submission_date = now
        fiscal_day.error_details = None

    if device is not None:
        device.fiscal_day_status = FiscalDayStatus.CLOSED
    db.session.commit()

    log_activity(current_user.id, 'close_fiscal_day', 'fiscal_day',
                 fiscal_day.fiscal_day_no if fiscal_day else None,
                 'Manual closure' if manual_closure else 'Fiscal day closed')

    return jsonify({
        'success': True,
        'data': response_data,
        'state': client.state(),
        'fiscal_day': fiscal_day.to_dict() if fiscal_day else None
    })


@bp.route('/resubmit', methods=['POST'])
@login_required
def resubmit_report():
    """
    Resubmit a failed end-of-day report

    A failed report is known from the stored fiscal day as well as from the
    cached client, so a resubmission still works after the process restarts
    and the client cache is empty.
    """
    device = _active_device()
    client = _client(device)
    fiscal_day = _latest_fiscal_day_record(_device_id(device))

    # Stored Error status outlives the client cache
    if fiscal_day is not None and fiscal_day.report_status == FiscalDayReportStatus.ERROR:
        client.report_status = FiscalDayReportStatus.ERROR

    now = datetime.utcnow()
    try:
        data = client.resubmit_fiscal_day_report()
    except ZimraApiError as e:
        if fiscal_day is not None:
            fiscal_day.report_status = FiscalDayReportStatus.ERROR
            fiscal_day.error_details = str(e)
            fiscal_day.submission_attempts = (fiscal_day.submission_attempts or 0) + 1
            fiscal_day.last_submission_date = now
            db.session.commit()
        raise

    if fiscal_day is not None:
        fiscal_day.report_status = client.report_status
        fiscal_day.error_details = None
        fiscal_day.submission_attempts = (fiscal_day.submission_attempts or 0) + 1
        fiscal_day.last_submission_date = now
        db.session.commit()

    return jsonify({'success': True, 'data': data, 'state': client.state()})


@bp.route('/fiscal-days')
@login_required
def fiscal_days():
    """Fiscal day history, newest first"""
    page = request.args.get('page', 1, type=int)
    per_page = current_app.config.get('ITEMS_PER_PAGE', 50)
    query = current_user.fiscal_days.order_by(FiscalDay.opened_at.desc())
    pagination = query.paginate(page=page, per_page=per_page, error_out=False)
    return jsonify({
        'fiscal_days': [day.to_dict() for day in pagination.items],
        'page': pagination.page,
        'pages': pagination.pages,
        'total': pagination.total,
    })


# ----------------------------------------------------------------------
# Receipts
# ----------------------------------------------------------------------

def _receipt_service(device):
    client = _client(device)
    if client.fiscal_day_status != FiscalDayStatus.OPEN:
        raise FiscalDayError("Cannot submit receipt when fiscal day is not open")
    return FiscalReceiptService(client, current_user, device)


@bp.route('/submit-receipts', methods=['POST'])
@login_required
def submit_receipts():
    """Submit stored sales to FDMS and record the outcome on each"""
    data = request.get_json(silent=True) or {}
    sale_ids = data.get('sale_ids')
    if not sale_ids or not isinstance(sale_ids, list):
        raise ZimraValidationError("At least one sale ID is required")

    sales = Sale.query.filter(
        Sale.merchant_id == current_user.id,
        Sale.id.in_(sale_ids)
    ).order_by(Sale.id).all()
    if not sales:
        return jsonify({'success': False, 'error': 'No sales found with the provided IDs'}), 404

    service = _receipt_service(_active_device())
    successful, failed = service.submit_sales(sales)
    return jsonify({'success': True, 'data': {'successful': successful, 'failed': failed}})


@bp.route('/resubmit-pending', methods=['POST'])
@login_required
def resubmit_pending():
    """Resubmit every sale whose last submission failed"""
    service = _receipt_service(_active_device())
    successful, failed = service.resubmit_pending()
    if successful or failed:
        log_activity(current_user.id, 'resubmit_pending', 'sale', None,
                     f'{len(successful)} resubmitted, {len(failed)} failed')
    return jsonify({'success': True, 'data': {'successful': successful, 'failed': failed}})


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------

@bp.route('/validate-vat/<vat_number>')
@login_required
def validate_vat(vat_number):
    return jsonify(_client().validate_vat_number(vat_number))


@bp.route('/daily-totals')
@login_required
def daily_totals():
    date = request.args.get('date')
    if not date:
        raise ZimraValidationError("date is required")
    return jsonify(_client().get_daily_totals(date))
