"""
Helper Utilities
Parsing of the tax fields merchants type into Loyverse, plus small shared helpers
"""

import re
from datetime import datetime

VALID_STRUCTURE = 'ValidStructure'
INVALID_STRUCTURE = 'InvalidStructure'
DEFAULT_HS_CODE = '00000000'

TIN_PREFIXES = ('200', '100')
VAT_PREFIX = '220'

DEFAULT_CUTOFF_HOUR = 20


def _split_fields(text):
    """
    Split 'Key: value, Key: value' text into (key, value) pairs

    Missing values come back as empty strings.
    """
    fields = []
    for part in text.strip().split(','):
        key, _, value = part.strip().partition(':')
        fields.append((key.strip(), value.strip()))
    return fields


def _field_value(text, index):
    if not text:
        return ''
    fields = _split_fields(text)
    if index >= len(fields):
        return ''
    return fields[index][1]


# ----------------------------------------------------------------------
# Store description: "Email: a@b.com, TIN: 2001234567, VAT: 220123456, Province: Harare"
# ----------------------------------------------------------------------

def check_description_structure(store_description):
    """
    Check a store description against the expected
    'Email:, TIN:, VAT:, Province:' layout

    Returns:
        str: VALID_STRUCTURE or INVALID_STRUCTURE
    """
    if not store_description:
        return INVALID_STRUCTURE

    fields = _split_fields(store_description)
    if len(fields) != 4:
        return INVALID_STRUCTURE

    expected_keys = ['Email', 'TIN', 'VAT', 'Province']
    if [key for key, _ in fields] != expected_keys or not all(value for _, value in fields):
        return INVALID_STRUCTURE

    tin, vat = fields[1][1], fields[2][1]
    if tin.startswith(TIN_PREFIXES) and vat.startswith(VAT_PREFIX):
        return VALID_STRUCTURE
    return INVALID_STRUCTURE


def extract_store_tin(store_description):
    """Store TIN, or '' when shorter than 9 characters"""
    tin = _field_value(store_description, 1)
    return tin if len(tin) >= 9 else ''


def extract_store_vat(store_description):
    """Store VAT number, or '' when shorter than 9 characters"""
    vat = _field_value(store_description, 2)
    return vat if len(vat) > 8 else ''


def extract_store_email(store_description):
    return _field_value(store_description, 0)


def extract_store_province(store_description):
    return _field_value(store_description, 3)


# ----------------------------------------------------------------------
# Customer note: "TIN: 2001234567, VAT: 220123456, Bal: 0, Tax: 0"
# ----------------------------------------------------------------------

def check_note_structure(customer_note):
    """
    Check a customer note against the 'TIN:, VAT:, Bal:, Tax:' layout

    The VAT value may be empty. A TIN starting with 200/100 makes the note
    valid; otherwise a present VAT number must start with 220.

    Returns:
        str: VALID_STRUCTURE or INVALID_STRUCTURE
    """
    if not customer_note:
        return INVALID_STRUCTURE

    fields = _split_fields(customer_note)
    if len(fields) != 4:
        return INVALID_STRUCTURE

    (tin_key, tin), (vat_key, vat), (bal_key, bal), (tax_key, tax) = fields
    if (tin_key, vat_key, bal_key, tax_key) != ('TIN', 'VAT', 'Bal', 'Tax'):
        return INVALID_STRUCTURE
    if not tin or not bal or not tax:
        return INVALID_STRUCTURE

    if tin.startswith(TIN_PREFIXES):
        return VALID_STRUCTURE
    if vat and vat.startswith(VAT_PREFIX):
        return VALID_STRUCTURE
    return INVALID_STRUCTURE


def extract_customer_tin(customer_note):
    """Customer TIN, or '' when 9 characters or fewer"""
    tin = _field_value(customer_note, 0)
    return tin if len(tin) > 9 else ''


def extract_customer_vat(customer_note):
    vat = _field_value(customer_note, 1)
    return vat if len(vat) > 8 else ''


def _whole_number(value):
    if not value or not re.fullmatch(r'\d+', value):
        return 0
    return int(value)


def extract_customer_balance(customer_note):
    """Customer credit balance; 0 when missing or not a whole number"""
    return _whole_number(_field_value(customer_note, 2))


def extract_customer_tax_money(customer_note):
    """Customer tax amount; 0 when missing or not a whole number"""
    return _whole_number(_field_value(customer_note, 3))


# ----------------------------------------------------------------------
# Item category: "85176200 Mobile phones"
# ----------------------------------------------------------------------

def extract_hs_code(category):
    """
    HS code from the leading token of an item category name

    Returns:
        str: the 8-digit code, DEFAULT_HS_CODE when the token is not
        8 digits, or '' when there is no category at all
    """
    if not category or not category.strip():
        return ''

    candidate = category.strip().split(' ')[0]
    if len(candidate) == 8 and candidate.isdigit():
        return candidate
    return DEFAULT_HS_CODE


# ----------------------------------------------------------------------
# Cutoff time
# ----------------------------------------------------------------------

def is_after_cutoff_time(now=None, cutoff_hour=DEFAULT_CUTOFF_HOUR, testing_mode=False):
    """
    Check if the current time is at or past the cutoff hour

    Args:
        now: datetime to check (defaults to local now)
        cutoff_hour: hour of day, 24-hour clock
        testing_mode: always report being past the cutoff
    """
    if testing_mode:
        return True
    now = now or datetime.now()
    return now.hour >= cutoff_hour


def get_time_check_details(now=None, cutoff_hour=DEFAULT_CUTOFF_HOUR, testing_mode=False):
    """Details about the cutoff check, for debugging and the status endpoint"""
    now = now or datetime.now()
    return {
        'now': now.isoformat(),
        'hour': now.hour,
        'cutoff_hour': cutoff_hour,
        'is_after_cutoff': is_after_cutoff_time(now, cutoff_hour, testing_mode),
        'test_mode': testing_mode,
    }


# ----------------------------------------------------------------------
# Formatting
# ----------------------------------------------------------------------

def format_amount(amount, currency_symbol='$'):
    """
    Format an amount for a printed receipt

    Unparsable values print as zero.
    """
    try:
        value = float(amount)
    except (TypeError, ValueError):
        value = 0.0
    if value != value:  # NaN
        value = 0.0
    return f"{currency_symbol}{value:.2f}"
