"""
Export utilities for generating Excel and CSV exports of fiscal receipts
"""

from io import BytesIO, StringIO
from datetime import datetime
import csv

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.utils import get_column_letter

CASH_SALE = 'Cash Sale'

RECEIPT_CSV_HEADERS = ['Item Name', 'HSCode', 'Quantity', 'Price Inc', 'VAT Amount', 'Total Inc']

TAX_SCHEDULE_COLUMNS = {
    'date': 'Date',
    'invoice_number': 'Invoice Number',
    'customer': 'Customer',
    'tax_amount': 'Tax Amount',
    'total_inc': 'Invoice Total Inclusive',
}


def export_to_excel(data, columns, title="Report", sheet_name="Data"):
    """
    Export data to Excel format

    Args:
        data: List of dictionaries or list of lists containing the data
        columns: List of column headers or dict mapping keys to display names
        title: Report title for the header
        sheet_name: Name of the worksheet

    Returns:
        BytesIO object containing the Excel file
    """
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name

    # Styles
    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="3B82F6", end_color="3B82F6", fill_type="solid")
    title_font = Font(bold=True, size=14)
    date_font = Font(italic=True, size=10, color="666666")
    thin_border = Border(
        left=Side(style='thin'),
        right=Side(style='thin'),
        top=Side(style='thin'),
        bottom=Side(style='thin')
    )

    # Title
    ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(columns))
    title_cell = ws.cell(row=1, column=1, value=title)
    title_cell.font = title_font
    title_cell.alignment = Alignment(horizontal='center')

    # Date
    ws.merge_cells(start_row=2, start_column=1, end_row=2, end_column=len(columns))
    date_cell = ws.cell(row=2, column=1, value=f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    date_cell.font = date_font
    date_cell.alignment = Alignment(horizontal='center')

    # Headers
    header_row = 4
    headers, keys = _split_columns(columns)

    for col_idx, header in enumerate(headers, 1):
        cell = ws.cell(row=header_row, column=col_idx, value=header)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal='center')
        cell.border = thin_border

    # Data rows
    for row_idx, row_data in enumerate(data, header_row + 1):
        for col_idx, key in enumerate(keys, 1):
            if isinstance(row_data, dict):
                value = row_data.get(key, '')
            else:
                value = row_data[col_idx - 1] if col_idx - 1 < len(row_data) else ''

            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.border = thin_border

            # Numbers right-aligned
            if isinstance(value, (int, float)):
                cell.alignment = Alignment(horizontal='right')
                cell.number_format = '0.00'
            else:
                cell.alignment = Alignment(horizontal='left')

    # Adjust column widths
    for col_idx in range(1, len(headers) + 1):
        column_letter = get_column_letter(col_idx)
        max_length = max(
            (len(str(cell.value)) for cell in ws[column_letter][header_row - 1:] if cell.value is not None),
            default=0
        )
        ws.column_dimensions[column_letter].width = min(max_length + 2, 50)

    # Save to BytesIO
    output = BytesIO()
    wb.save(output)
    output.seek(0)
    return output


def export_to_csv(data, columns, include_header=True, quoting=csv.QUOTE_MINIMAL):
    """
    Export data to CSV format

    Args:
        data: List of dictionaries or list of lists containing the data
        columns: List of column headers or dict mapping keys to display names
        include_header: Whether to include header row
        quoting: csv module quoting mode

    Returns:
        BytesIO object containing the CSV file
    """
    headers, keys = _split_columns(columns)

    text_output = StringIO()
    writer = csv.writer(text_output, quoting=quoting, lineterminator='\n')

    if include_header:
        writer.writerow(headers)

    for row_data in data:
        if isinstance(row_data, dict):
            row = [row_data.get(key, '') for key in keys]
        else:
            row = row_data
        writer.writerow(row)

    output = BytesIO()
    output.write(text_output.getvalue().encode('utf-8-sig'))  # BOM for Excel compatibility
    output.seek(0)
    return output


def _split_columns(columns):
    if isinstance(columns, dict):
        return list(columns.values()), list(columns.keys())
    return columns, columns


def _money(value):
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):
        return "0.00"


def format_date(dt, format_str='%Y-%m-%d'):
    """Format a datetime object"""
    if dt:
        if isinstance(dt, str):
            return dt
        return dt.strftime(format_str)
    return ''


def _label_row(label, value='', last=''):
    return [label, value, '', '', '', last]


def receipt_csv_rows(sale):
    """
    Rows of the single-receipt CSV export: items, then receipt, customer,
    totals and payment sections
    """
    rows = []
    for item in sale.items:
        rows.append([
            item.name,
            item.hs_code or '',
            f"{float(item.quantity or 0):g}",
            _money(item.price_inc),
            _money(item.vat_amount),
            _money(item.total_inc),
        ])

    blank = _label_row('')
    rows.extend([
        blank,
        _label_row('Receipt Details'),
        _label_row('Receipt Number', sale.receipt),
        _label_row('Date', format_date(sale.timestamp, '%Y-%m-%d %H:%M:%S')),
        blank,
        _label_row('Customer Details'),
        _label_row('Customer Name', sale.customer_name or CASH_SALE),
        _label_row('Customer Address', sale.customer_address or ''),
        _label_row('Customer City', sale.customer_city or ''),
        _label_row('Customer Email', sale.customer_email or ''),
        _label_row('Customer Contact', sale.customer_contact or ''),
        _label_row('Customer TIN', sale.customer_tin or ''),
        _label_row('Customer VAT', sale.customer_vat or ''),
        blank,
        _label_row('Totals'),
        _label_row('Subtotal', last=_money(sale.total)),
        _label_row('VAT Amount', last=_money(sale.vat_amount)),
        _label_row('Total Inc VAT', last=_money(sale.total_inc)),
        blank,
        _label_row('Payment Details'),
    ])

    for payment in sale.payments:
        rows.append(['Payment', payment.currency, _money(payment.amount), '', '', ''])

    return rows


def export_receipt_csv(sale):
    """
    Export one receipt to CSV, every cell quoted

    Returns:
        BytesIO object containing the CSV file
    """
    return export_to_csv(receipt_csv_rows(sale), RECEIPT_CSV_HEADERS, quoting=csv.QUOTE_ALL)


def tax_schedule_rows(sales, date_from=None, date_until=None):
    """
    Tax schedule rows, one per sale, optionally limited to a date range

    Args:
        sales: iterable of Sale objects
        date_from: inclusive start datetime
        date_until: exclusive end datetime

    Returns:
        list: dicts keyed like TAX_SCHEDULE_COLUMNS
    """
    rows = []
    for sale in sales:
        if date_from and date_until and sale.timestamp and not (date_from <= sale.timestamp < date_until):
            continue
        rows.append({
            'date': format_date(sale.timestamp),
            'invoice_number': f"#{sale.receipt}",
            'customer': sale.customer_name or CASH_SALE,
            'tax_amount': float(sale.vat_amount or 0),
            'total_inc': float(sale.total_inc or 0),
        })
    return rows


def export_tax_schedule(sales, format_type='csv', date_from=None, date_until=None):
    """
    Export the VAT tax schedule

    Args:
        sales: iterable of Sale objects
        format_type: 'csv' or 'excel'

    Returns:
        BytesIO object with the file
    """
    data = tax_schedule_rows(sales, date_from, date_until)

    if format_type == 'excel':
        return export_to_excel(data, TAX_SCHEDULE_COLUMNS, title="Tax Schedule", sheet_name="Tax Schedule")

    csv_data = [
        {**row, 'tax_amount': _money(row['tax_amount']), 'total_inc': _money(row['total_inc'])}
        for row in data
    ]
    return export_to_csv(csv_data, TAX_SCHEDULE_COLUMNS)
