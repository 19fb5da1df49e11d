# fees/exports.py

from datetime import datetime
from decimal import Decimal

from django.http import HttpResponse
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side

HEADERS = [
    '#', 'Receipt No.', 'Payment Date', 'Admission No.', 'Student', 'Fee Term',
    'Fee Heads', 'Source', 'Payment Mode', 'Reference', 'Status', 'Amount',
]
COLUMN_WIDTHS = {
    'A': 5, 'B': 28, 'C': 18, 'D': 15, 'E': 25, 'F': 18,
    'G': 35, 'H': 12, 'I': 15, 'J': 22, 'K': 12, 'L': 14,
}


def build_payment_history_workbook(collections, title="Payment History", filters=None):
    """
    One row per collection, manual and gateway together, with totals per
    source at the bottom. `collections` is an iterable of FeeCollection
    with student, fee_term and items prefetched.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Payment History"

    header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
    header_font = Font(bold=True, color="FFFFFF", size=12)
    header_alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
    border_style = Border(
        left=Side(style='thin', color='000000'),
        right=Side(style='thin', color='000000'),
        top=Side(style='thin', color='000000'),
        bottom=Side(style='thin', color='000000')
    )

    last_col = chr(ord('A') + len(HEADERS) - 1)
    ws.merge_cells(f'A1:{last_col}1')
    title_cell = ws['A1']
    title_cell.value = title
    title_cell.font = Font(bold=True, size=16, color="4472C4")
    title_cell.alignment = Alignment(horizontal="center", vertical="center")

    ws.merge_cells(f'A2:{last_col}2')
    filter_text = f"Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M')}"
    for key, value in (filters or {}).items():
        if value:
            filter_text += f" | {key.replace('_', ' ').title()}: {value}"
    ws['A2'].value = filter_text
    ws['A2'].font = Font(size=10, italic=True)
    ws['A2'].alignment = Alignment(horizontal="center")

    ws.append([])
    ws.append(HEADERS)
    for cell in ws[4]:
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = header_alignment
        cell.border = border_style

    totals = {'Manual': Decimal('0.00'), 'Gateway': Decimal('0.00')}
    count = 0
    for idx, collection in enumerate(collections, start=1):
        source = 'Gateway' if collection.is_gateway_payment else 'Manual'
        if collection.status == 'COMPLETED':
            totals[source] += collection.total_amount
        ws.append([
            idx,
            collection.receipt_number,
            collection.payment_date.strftime('%Y-%m-%d %H:%M'),
            collection.student.admission_number,
            collection.student.get_full_name(),
            collection.fee_term.name if collection.fee_term_id else '',
            ', '.join(item.fee_head.name for item in collection.items.all()),
            source,
            collection.payment_mode,
            collection.transaction_reference or '',
            collection.get_status_display(),
            float(collection.total_amount),
        ])
        for cell in ws[ws.max_row]:
            cell.border = border_style
            cell.alignment = Alignment(vertical="center", wrap_text=True)
        ws.cell(row=ws.max_row, column=len(HEADERS)).number_format = '#,##0.00'
        count += 1

    for col, width in COLUMN_WIDTHS.items():
        ws.column_dimensions[col].width = width

    summary_row = ws.max_row + 2
    rows = [
        ('Total Collections:', count),
        ('Manual (completed):', float(totals['Manual'])),
        ('Gateway (completed):', float(totals['Gateway'])),
        ('Grand Total:', float(totals['Manual'] + totals['Gateway'])),
    ]
    for offset, (label, value) in enumerate(rows):
        ws[f'A{summary_row + offset}'] = label
        ws[f'B{summary_row + offset}'] = value
        ws[f'A{summary_row + offset}'].font = Font(bold=True)
        if offset:
            ws[f'B{summary_row + offset}'].number_format = '#,##0.00'

    ws.freeze_panes = 'A5'
    return wb


def payment_history_response(collections, filters=None):
    wb = build_payment_history_workbook(collections, filters=filters)
    response = HttpResponse(
        content_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    )
    filename = f"payment_history_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"
    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    wb.save(response)
    return response
