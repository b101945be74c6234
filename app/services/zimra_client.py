"""
ZIMRA API Client
Talks to the ZIMRA Fiscal Device Management System (FDMS) REST API and keeps a
local mirror of the device's fiscal day state
"""

import re
import logging
from datetime import datetime
import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://fdmsapitest.zimra.co.zw'
SERIAL_NUMBER_LENGTH = 20


class FiscalDayStatus:
    """Fiscal day states reported by FDMS"""
    OPEN = 'Open'
    CLOSED = 'Closed'

    ALL = [OPEN, CLOSED]


class FiscalDayReportStatus:
    """Status of the end-of-day report submission"""
    PENDING = 'Pending'
    SUCCESS = 'Success'
    ERROR = 'Error'
    RESUBMITTED = 'Resubmitted'
    MANUAL_CLOSURE = 'ManualClosure'

    ALL = [PENDING, SUCCESS, ERROR, RESUBMITTED, MANUAL_CLOSURE]


class DeviceOperatingMode:
    ONLINE = 'Online'
    OFFLINE = 'Offline'


class ZimraApiError(Exception):
    """Raised when FDMS cannot be reached or answers with an error status"""

    def __init__(self, message, status_code=None, body=None, response_data=None):
        self.status_code = status_code
        self.body = body
        self.response_data = response_data
        super().__init__(message)


class FiscalDayError(Exception):
    """Raised when an operation is not allowed in the current fiscal day state"""


class ZimraValidationError(ValueError):
    """Raised when a request fails local validation"""


def envelope_data(response):
    """The envelope's data object, or None when it is missing or not an object"""
    data = response.get('data') if isinstance(response, dict) else None
    return data if isinstance(data, dict) else None


class ZimraConfig:
    """Connection settings for one fiscal device"""

    def __init__(self, base_url=DEFAULT_BASE_URL, api_key='', device_id='', operator_id='',
                 activation_key='', merchant_id=None, timeout=30):
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.api_key = api_key or ''
        self.device_id = str(device_id or '')
        self.operator_id = operator_id or ''
        self.activation_key = activation_key or ''
        self.merchant_id = merchant_id
        self.timeout = timeout

    @classmethod
    def from_app_config(cls, app_config, **overrides):
        """Build a config from Flask settings, letting per-device values win"""
        values = {
            'base_url': app_config.get('ZIMRA_API_URL', DEFAULT_BASE_URL),
            'api_key': app_config.get('ZIMRA_API_KEY', ''),
            'device_id': app_config.get('ZIMRA_DEVICE_ID', ''),
            'operator_id': app_config.get('ZIMRA_OPERATOR_ID', ''),
            'activation_key': app_config.get('ZIMRA_ACTIVATION_KEY', ''),
            'timeout': app_config.get('ZIMRA_REQUEST_TIMEOUT', 30),
        }
        values.update({key: value for key, value in overrides.items() if value})
        return cls(**values)


class ZimraApiClient:
    """
    Client for one fiscal device

    The fiscal day status, report status and submission attempt counter are a
    cache of what FDMS last told us. They are only refreshed by
    get_fiscal_day_status(); nothing here persists or reconciles them.
    """

    def __init__(self, config):
        self.config = config
        self.fiscal_day_status = FiscalDayStatus.CLOSED
        self.report_status = FiscalDayReportStatus.PENDING
        self.submission_attempts = 0

    def _headers(self):
        return {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.config.api_key}',
            'X-Device-ID': self.config.device_id,
            'X-Operator-ID': self.config.operator_id,
        }

    def _request(self, endpoint, method, data=None, params=None):
        """
        Send a request to FDMS and return the decoded response envelope

        Raises:
            ZimraApiError: on transport failure or a non-2xx status
        """
        url = f'{self.config.base_url}{endpoint}'
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(),
                json=data,
                params=params,
                timeout=self.config.timeout
            )
        except requests.RequestException as e:
            logger.error(f"ZIMRA API request error for {method} {endpoint}: {e}")
            raise ZimraApiError(f"ZIMRA API request failed: {e}") from e

        if not response.ok:
            error_text = response.text
            logger.error(f"ZIMRA API error for {method} {endpoint}: {response.status_code} - {error_text}")
            raise ZimraApiError(
                f"ZIMRA API Error: {response.status_code} - {error_text}",
                status_code=response.status_code,
                body=error_text
            )

        try:
            return response.json()
        except ValueError as e:
            raise ZimraApiError(
                f"ZIMRA API returned an invalid JSON body for {endpoint}",
                status_code=response.status_code,
                body=response.text
            ) from e

    # ------------------------------------------------------------------
    # Device registration
    # ------------------------------------------------------------------

    def register_device(self, device_id, activation_key, serial_number, version='v1',
                        taxpayer_tin=None, vat_number=None, certificate_request=None):
        """
        Register the device with FDMS and return its certificate details

        certificate_request is the PEM CSR FDMS signs into the device certificate.

        Raises:
            ZimraValidationError: if the serial number is not 20 characters
            ZimraApiError: if FDMS rejects the registration
        """
        if not serial_number or len(serial_number) != SERIAL_NUMBER_LENGTH:
            raise ZimraValidationError(f"Serial number must be {SERIAL_NUMBER_LENGTH} characters")

        payload = {
            'deviceId': str(device_id),
            'activationKey': activation_key,
            'serialNumber': serial_number,
            'version': version or 'v1',
            'taxPayerTIN': taxpayer_tin,
            'vatNumber': vat_number,
        }
        if certificate_request:
            payload['certificateRequest'] = certificate_request

        try:
            response = requests.post(
                f'{self.config.base_url}/api/v1/device/register',
                headers={'Content-Type': 'application/json'},
                json=payload,
                timeout=self.config.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Device registration request failed: {e}")
            raise ZimraApiError(f"Device Registration Failed: {e}") from e

        if not response.ok:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {'error': {'message': 'Unknown error', 'details': response.text}}

            error = error_data.get('error') if isinstance(error_data, dict) else None
            if error:
                if isinstance(error, dict):
                    message = error.get('details') or error.get('message') or 'Unknown error'
                else:
                    message = str(error)
                raise ZimraApiError(message, status_code=response.status_code,
                                    body=response.text, response_data=error_data)
            raise ZimraApiError(
                f"Device Registration Failed: {response.status_code} - {error_data}",
                status_code=response.status_code,
                body=response.text,
                response_data=error_data
            )

        result = response.json()
        logger.info(f"ZIMRA registration response for device {device_id}: {result.get('operationID')}")
        return result

    def get_device_config(self, device_id, model_name='Server', model_version='v1'):
        """Fetch the taxpayer and device configuration held by FDMS"""
        logger.info(f"Getting config for device: {device_id}")
        return self._request('/api/v1/device/config', 'POST', {
            'deviceId': str(device_id),
            'deviceModelName': model_name,
            'deviceModelVersion': model_version,
        })

    def get_device_status(self):
        return self._request('/api/v1/device/status', 'GET')

    # ------------------------------------------------------------------
    # Fiscal day lifecycle
    # ------------------------------------------------------------------

    def open_fiscal_day(self):
        """
        Open a new fiscal day

        Raises:
            FiscalDayError: if the day is already open (no request is sent)
        """
        if self.fiscal_day_status == FiscalDayStatus.OPEN:
            raise FiscalDayError("Fiscal day is already open")

        response = self._request('/api/v1/fiscal/day/open', 'POST')
        self.fiscal_day_status = FiscalDayStatus.OPEN
        self.report_status = FiscalDayReportStatus.PENDING
        self.submission_attempts = 0
        return envelope_data(response)

    def close_fiscal_day(self, device_id=None, manual_closure=False, fiscal_day_no=None,
                         counters=None, signature=None, receipt_counter=None):
        """
        Close the fiscal day

        The local state moves to Closed whatever it was before. Any request
        failure marks the report as Error and is re-raised.

        Args:
            fiscal_day_no, counters, signature, receipt_counter: signed
                fiscal day report, sent only when given
        """
        merchant_id = self.config.merchant_id
        logger.info(f"Closing fiscal day for merchant: {merchant_id}, device: {device_id}")
        body = {
            'deviceId': device_id or self.config.device_id,
            'manualClosure': bool(manual_closure),
            'merchantId': merchant_id,
        }
        if fiscal_day_no is not None:
            body['fiscalDayNo'] = fiscal_day_no
        if counters is not None:
            body['fiscalDayCounters'] = counters
        if signature is not None:
            body['fiscalDayDeviceSignature'] = signature
        if receipt_counter is not None:
            body['receiptCounter'] = receipt_counter

        try:
            response = self._request('/api/v1/fiscal/day/close', 'POST', body)
        except ZimraApiError:
            self.report_status = FiscalDayReportStatus.ERROR
            raise

        self.fiscal_day_status = FiscalDayStatus.CLOSED
        self.report_status = (FiscalDayReportStatus.MANUAL_CLOSURE if manual_closure
                              else FiscalDayReportStatus.SUCCESS)
        return response

    def get_fiscal_day_status(self):
        """Refresh the cached fiscal day state from FDMS"""
        response = self._request('/api/v1/fiscal/day/status', 'GET')
        data = envelope_data(response) or {}
        self.fiscal_day_status = data.get('status', self.fiscal_day_status)
        self.report_status = data.get('reportStatus') or FiscalDayReportStatus.PENDING
        self.submission_attempts = int(data.get('submissionAttempts') or 0)
        return data

    def resubmit_fiscal_day_report(self):
        """
        Resubmit a failed end-of-day report

        Raises:
            FiscalDayError: unless the report status is Error (no request is sent)
        """
        if self.report_status != FiscalDayReportStatus.ERROR:
            raise FiscalDayError("Can only resubmit failed reports")

        try:
            response = self._request('/api/v1/fiscal/day/report/resubmit', 'POST')
        except ZimraApiError:
            self.report_status = FiscalDayReportStatus.ERROR
            raise

        self.report_status = FiscalDayReportStatus.RESUBMITTED
        self.submission_attempts += 1
        return envelope_data(response)

    # ------------------------------------------------------------------
    # Receipts and reporting
    # ------------------------------------------------------------------

    def submit_receipt(self, receipt):
        """
        Submit a fiscal receipt

        Raises:
            FiscalDayError: if the fiscal day is not open (no request is sent)
        """
        if self.fiscal_day_status != FiscalDayStatus.OPEN:
            raise FiscalDayError("Cannot submit receipt when fiscal day is not open")
        return self._request('/api/v1/fiscal/receipt', 'POST', receipt)

    def validate_vat_number(self, vat_number):
        return self._request(f'/api/v1/validate/vat/{vat_number}', 'GET')

    def get_daily_totals(self, date):
        return self._request('/api/v1/fiscal/daily-totals', 'GET', params={'date': date})

    def ping_all_devices(self, merchant_id):
        """
        Ping every device registered to a merchant

        Never raises; failures are reported in the returned dict.
        """
        try:
            response = self._request('/api/v1/device/ping-all', 'GET', params={'merchantId': merchant_id})
            return {
                'success': True,
                'deviceStatuses': response.get('deviceStatuses') or (response.get('data') or []),
                'timestamp': datetime.utcnow().isoformat(),
            }
        except Exception as e:
            logger.error(f"Error pinging all ZIMRA devices for merchant {merchant_id}: {e}")
            return {
                'success': False,
                'deviceStatuses': [],
                'timestamp': datetime.utcnow().isoformat(),
                'error': str(e) or 'Unknown error occurred',
            }

    def state(self):
        return {
            'fiscal_day_status': self.fiscal_day_status,
            'report_status': self.report_status,
            'submission_attempts': self.submission_attempts,
        }


def extract_tax_numbers(header_text):
    """
    Pull TIN and VAT numbers out of a free-text receipt header

    Returns:
        dict with 'tin' and/or 'vat' keys for the values found
    """
    result = {}
    if not header_text:
        return result

    tin_match = re.search(r'TIN:\s*([^\s,]+)', header_text, re.IGNORECASE)
    if tin_match:
        result['tin'] = tin_match.group(1)

    vat_match = re.search(r'VAT:\s*([^\s,]+)', header_text, re.IGNORECASE)
    if vat_match:
        result['vat'] = vat_match.group(1)

    return result


def convert_to_zimra_receipt(sale, operator_id='', device_id=''):
    """
    Convert a stored Sale into the FDMS receipt payload

    Args:
        sale: Sale object with items and payments
        operator_id: operator submitting the receipt
        device_id: fiscal device identifier

    Returns:
        dict: receipt payload for submit_receipt()
    """
    items = []
    vat_total = 0.0
    for item in sale.items:
        line_total = float(item.total_inc or 0)
        line_vat = float(item.vat_amount or 0)
        vat_total += line_vat
        items.append({
            'description': item.name,
            'quantity': float(item.quantity or 0),
            'unitPrice': float(item.price_inc or 0),
            'vatRate': (line_vat / line_total) * 100 if line_total else 0.0,
            'lineTotal': line_total,
        })

    payment_method = sale.payments[0].payment_type if sale.payments else 'CASH'

    receipt = {
        'receiptNumber': sale.receipt,
        'items': items,
        'totalAmount': float(sale.total_inc or 0),
        'vatAmount': round(vat_total, 2),
        'paymentMethod': payment_method or 'CASH',
        'operatorId': operator_id or '',
        'deviceId': str(device_id or ''),
    }
    if sale.customer_vat:
        receipt['customerVatNumber'] = sale.customer_vat
    if sale.customer_tin:
        receipt['customerBpNumber'] = sale.customer_tin
    if sale.customer_name:
        receipt['customerName'] = sale.customer_name
    return receipt


# One client per (merchant, device) so the cached fiscal day state survives between requests
_clients = {}


def get_zimra_client(app_config, merchant, device=None):
    """
    Return the cached client for a merchant's fiscal device, creating it on first use

    Only the fiscal day state is cached; connection settings are rebuilt from
    the app config and the device row on every lookup.

    Args:
        app_config: Flask config mapping
        merchant: Merchant object
        device: ZimraCredentials object or None to use the configured default device
    """
    device_id = device.device_id if device else app_config.get('ZIMRA_DEVICE_ID', '')
    key = (merchant.merchant_id, str(device_id))
    config = ZimraConfig.from_app_config(
        app_config,
        device_id=device_id,
        api_key=device.api_key if device else None,
        operator_id=device.operator_id if device else None,
        merchant_id=merchant.merchant_id
    )

    client = _clients.get(key)
    if client is None:
        client = ZimraApiClient(config)
        if device and device.fiscal_day_status in FiscalDayStatus.ALL:
            client.fiscal_day_status = device.fiscal_day_status
        _clients[key] = client
        logger.debug(f"Created ZIMRA client for merchant {merchant.merchant_id}, device {device_id}")
    else:
        client.config = config
    return client


def clear_zimra_clients():
    _clients.clear()
