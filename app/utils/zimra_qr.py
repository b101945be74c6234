"""
ZIMRA receipt QR codes
Format: qrUrl/deviceID(10)receiptDate(ddMMyyyy)receiptGlobalNo(10)receiptQrData(16)
"""

import base64
from io import BytesIO

import qrcode

DEVICE_ID_WIDTH = 10
GLOBAL_NO_WIDTH = 10
QR_DATA_WIDTH = 16


def format_receipt_date(receipt_date):
    if receipt_date is None:
        return '01011970'
    return receipt_date.strftime('%d%m%Y')


def build_qr_payload(qr_url, device_id, receipt_date, global_no, qr_data):
    """
    Build the verification URL encoded in a receipt's QR code

    Args:
        qr_url: base verification URL
        device_id: fiscal device ID, zero-padded to 10 digits
        receipt_date: datetime of the receipt
        global_no: global receipt number, zero-padded to 10 digits
        qr_data: opaque receipt QR data, cut or right-padded with '0' to 16 characters

    Returns:
        str: full verification URL
    """
    device_part = str(device_id if device_id is not None else '').zfill(DEVICE_ID_WIDTH)
    global_part = str(global_no if global_no is not None else '').zfill(GLOBAL_NO_WIDTH)
    data_part = (qr_data or '')[:QR_DATA_WIDTH].ljust(QR_DATA_WIDTH, '0')
    base = (qr_url or '').rstrip('/')
    return f"{base}/{device_part}{format_receipt_date(receipt_date)}{global_part}{data_part}"


def build_sale_qr_payload(sale, qr_url):
    """QR payload for a stored Sale"""
    return build_qr_payload(
        qr_url,
        sale.zimra_device_id,
        sale.timestamp,
        sale.zimra_global_no,
        sale.zimra_qr_data
    )


def generate_qr_png(payload, box_size=10, border=1):
    """Render a payload as PNG bytes"""
    qr = qrcode.QRCode(box_size=box_size, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image()
    buffer = BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


def generate_qr_base64(payload):
    if not payload:
        return ''
    return base64.b64encode(generate_qr_png(payload)).decode()
