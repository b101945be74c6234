"""
ZIMRA device signatures
Device key/CSR generation and the hash/signature of receipts and fiscal day reports
"""

import base64
import hashlib
import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = logging.getLogger(__name__)

KEY_SIZE = 2048

# Order of fiscal counters in the fiscal day signature string
COUNTER_TYPE_ORDER = {
    'SaleByTax': 1,
    'SaleTaxByTax': 2,
    'CreditNoteByTax': 3,
    'CreditNoteTaxByTax': 4,
    'DebitNoteByTax': 5,
    'DebitNoteTaxByTax': 6,
    'BalanceByMoneyType': 7,
}


def to_cents(amount):
    """Amount in cents as a string, rounded half away from zero"""
    value = Decimal(str(amount or 0)) * 100
    return str(int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP)))


def _percent(value):
    return '' if value is None else f'{float(value):.2f}'


def generate_key_and_csr(serial_number, device_id):
    """
    Generate the device RSA key and its certificate signing request

    The CSR subject common name is ZIMRA-<serial>-<device ID padded to 10>.

    Returns:
        tuple: (private key PEM, CSR PEM)
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    common_name = f'ZIMRA-{serial_number}-{str(device_id).zfill(10)}'

    csr = x509.CertificateSigningRequestBuilder().subject_name(x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.COUNTRY_NAME, 'ZW'),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Zimbabwe Revenue Authority'),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, 'Zimbabwe'),
    ])).sign(private_key, hashes.SHA256())

    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('utf-8')
    csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode('utf-8')

    logger.info(f"Generated key and CSR for {common_name}")
    return private_key_pem, csr_pem


def hash_string(data):
    """Base64 SHA-256 digest of a signature string"""
    return base64.b64encode(hashlib.sha256(data.encode('utf-8')).digest()).decode('utf-8')


def sign_string(data, private_key_pem):
    """Base64 RSA PKCS#1 v1.5 SHA-256 signature of a signature string"""
    if isinstance(private_key_pem, str):
        private_key_pem = private_key_pem.encode('utf-8')
    key = serialization.load_pem_private_key(private_key_pem, password=None)
    signature = key.sign(data.encode('utf-8'), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode('utf-8')


def receipt_signature_string(device_id, receipt, previous_hash=''):
    """
    String a receipt's device signature is computed over

    deviceID, receiptType, receiptCurrency, receiptGlobalNo, receiptDate,
    receiptTotal in cents, then every receipt tax (sorted by tax ID and code)
    as taxCode, taxPercent, taxAmount and salesAmountWithTax in cents, then the
    previous receipt hash of the fiscal day.
    """
    taxes = sorted(
        receipt.get('receiptTaxes') or [],
        key=lambda tax: (tax.get('taxID') or 0, tax.get('taxCode') or '')
    )
    tax_string = ''.join(
        f"{tax.get('taxCode') or ''}{_percent(tax.get('taxPercent'))}"
        f"{to_cents(tax.get('taxAmount'))}{to_cents(tax.get('salesAmountWithTax'))}"
        for tax in taxes
    )
    return (
        f"{device_id}"
        f"{receipt['receiptType'].upper()}"
        f"{receipt['receiptCurrency'].upper()}"
        f"{receipt['receiptGlobalNo']}"
        f"{receipt['receiptDate']}"
        f"{to_cents(receipt['receiptTotal'])}"
        f"{tax_string}"
        f"{previous_hash or ''}"
    )


def fiscal_day_signature_string(device_id, fiscal_day_no, fiscal_day_date, counters):
    """
    String a fiscal day report signature is computed over

    Zero-valued counters are left out.
    """
    if isinstance(fiscal_day_date, (datetime, date)):
        fiscal_day_date = fiscal_day_date.strftime('%Y-%m-%d')

    ordered = sorted(
        (counter for counter in counters or []
         if Decimal(str(counter.get('fiscalCounterValue') or 0)) != 0),
        key=lambda counter: (
            COUNTER_TYPE_ORDER.get(counter.get('fiscalCounterType'), 99),
            counter.get('fiscalCounterCurrency') or '',
            counter.get('fiscalCounterTaxID') or 0,
            counter.get('fiscalCounterMoneyType') or '',
        )
    )
    counter_string = ''.join(
        f"{counter['fiscalCounterType'].upper()}"
        f"{(counter.get('fiscalCounterCurrency') or '').upper()}"
        f"{_percent(counter.get('fiscalCounterTaxPercent'))}"
        f"{(counter.get('fiscalCounterMoneyType') or '').upper()}"
        f"{to_cents(counter.get('fiscalCounterValue'))}"
        for counter in ordered
    )
    return f'{device_id}{fiscal_day_no}{fiscal_day_date}{counter_string}'


def _signature(data, private_key_pem):
    return {
        'hash': hash_string(data),
        'signature': sign_string(data, private_key_pem),
    }


def sign_receipt(device_id, receipt, private_key_pem, previous_hash=''):
    """Device signature ({hash, signature}) of a receipt"""
    return _signature(receipt_signature_string(device_id, receipt, previous_hash), private_key_pem)


def sign_fiscal_day(device_id, fiscal_day_no, fiscal_day_date, counters, private_key_pem):
    """Device signature ({hash, signature}) of a fiscal day report"""
    data = fiscal_day_signature_string(device_id, fiscal_day_no, fiscal_day_date, counters)
    return _signature(data, private_key_pem)


def qr_data_from_signature(signature):
    """First 16 hex characters (upper case) of the MD5 of the raw signature bytes"""
    if not signature:
        return ''
    return hashlib.md5(base64.b64decode(signature)).hexdigest().upper()[:16]
