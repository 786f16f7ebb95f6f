"""
Three-way match of a purchase order against its goods received notes and
invoices.

``match`` is a pure read. ``reconcile`` persists its verdict and is re-run
whenever a receipt or invoice is recorded.
"""
import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from .audit import log_action
from .collaborators import authorize, notify_after_commit
from .exceptions import AccessDenied, NotFound, StateConflict, ValidationError
from .models import (
    GoodsReceivedNote, GRNItem, Invoice, InvoiceItem, PurchaseOrder,
)
from .utils import as_datetime, as_decimal, as_uuid

logger = logging.getLogger(__name__)

PENDING = PurchaseOrder.MATCH_PENDING
MATCHED = PurchaseOrder.MATCH_MATCHED
MISMATCHED = PurchaseOrder.MATCH_MISMATCHED
RESOLVED = PurchaseOrder.MATCH_RESOLVED

ZERO = Decimal('0')


def match(purchase_order):
    """Compare ordered, received and invoiced quantities and prices per PO line"""
    po_items = list(purchase_order.items.all())
    po_total = sum((item.total_price for item in po_items), Decimal('0.00'))

    grn_lines = list(
        GRNItem.objects.filter(grn__purchase_order=purchase_order)
        .values_list('po_item_id', 'quantity_received')
    )
    invoices = list(
        purchase_order.invoices.prefetch_related('items').order_by('submitted_at', 'created_at')
    )

    if not grn_lines or not invoices:
        return {
            'purchase_order_id': purchase_order.id,
            'status': PENDING,
            'quantity_match': False,
            'price_match': False,
            'po_total': po_total,
            'grn_total_quantity': sum((qty for _, qty in grn_lines), ZERO),
            'invoice_total': sum((inv.total_amount for inv in invoices), Decimal('0.00')),
            'invoice_total_quantity': ZERO,
            'items': [],
        }

    received = {}
    for po_item_id, quantity in grn_lines:
        received[po_item_id] = received.get(po_item_id, ZERO) + quantity

    invoiced = {}
    latest_price = {}
    invoice_total_quantity = ZERO
    # oldest first so the latest invoice's price wins
    for invoice in invoices:
        for line in invoice.items.all():
            invoiced[line.name] = invoiced.get(line.name, ZERO) + line.quantity
            latest_price[line.name] = line.unit_price
            invoice_total_quantity += line.quantity

    items = []
    for po_item in po_items:
        grn_quantity = received.get(po_item.id, ZERO)
        invoice_quantity = invoiced.get(po_item.name, ZERO)
        invoice_unit_price = latest_price.get(po_item.name)
        items.append({
            'po_item_id': po_item.id,
            'name': po_item.name,
            'po_quantity': po_item.quantity,
            'grn_quantity': grn_quantity,
            'invoice_quantity': invoice_quantity,
            'po_unit_price': po_item.unit_price,
            'invoice_unit_price': invoice_unit_price,
            'quantity_match': po_item.quantity == grn_quantity == invoice_quantity,
            'price_match': invoice_unit_price is not None and po_item.unit_price == invoice_unit_price,
        })

    quantity_match = bool(items) and all(item['quantity_match'] for item in items)
    price_match = bool(items) and all(item['price_match'] for item in items)

    return {
        'purchase_order_id': purchase_order.id,
        'status': MATCHED if quantity_match and price_match else MISMATCHED,
        'quantity_match': quantity_match,
        'price_match': price_match,
        'po_total': po_total,
        'grn_total_quantity': sum(received.values(), ZERO),
        'invoice_total': sum((inv.total_amount for inv in invoices), Decimal('0.00')),
        'invoice_total_quantity': invoice_total_quantity,
        'items': items,
    }


def _lock_purchase_order(purchase_order_id):
    purchase_order = (
        PurchaseOrder.objects.select_for_update()
        .filter(pk=purchase_order_id)
        .first()
    )
    if purchase_order is None:
        raise NotFound('Purchase order not found.', purchase_order_id=purchase_order_id)
    return purchase_order


def reconcile(purchase_order_id, actor=None):
    """Run ``match`` and store the verdict on the PO and its open invoices"""
    with transaction.atomic():
        purchase_order = _lock_purchase_order(purchase_order_id)
        result = match(purchase_order)
        previous = purchase_order.match_status

        purchase_order.match_status = result['status']
        purchase_order.save(update_fields=['match_status', 'updated_at'])

        if result['status'] != PENDING:
            invoice_status = 'MATCHED' if result['status'] == MATCHED else 'DISPUTED'
            purchase_order.invoices.filter(
                status__in=['SUBMITTED', 'MATCHED', 'DISPUTED']
            ).update(status=invoice_status)

        log_action(
            actor, 'THREE_WAY_MATCH', 'PurchaseOrder', purchase_order.id,
            object_repr=str(purchase_order),
            details=f'Three-way match: {result["status"]}',
            changes={
                'match_status': [previous, result['status']],
                'mismatched_items': [
                    item['name'] for item in result['items']
                    if not (item['quantity_match'] and item['price_match'])
                ],
            },
        )
        if result['status'] == MISMATCHED and previous != MISMATCHED:
            notify_after_commit('mismatch_detected', purchase_order)

    logger.info("%s reconciled: %s", purchase_order.po_number, result['status'])
    return result


def record_goods_receipt(purchase_order_id, actor, items, notes=''):
    """Record a delivery against PO lines and re-run the match"""
    authorize(actor, 'record_goods_receipt')

    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError({'items': ['At least one received line is required.']})

    with transaction.atomic():
        purchase_order = _lock_purchase_order(purchase_order_id)
        if purchase_order.status in ('CLOSED', 'CANCELLED'):
            raise StateConflict('Purchase order no longer accepts deliveries.', status=purchase_order.status)

        po_items = {item.id: item for item in purchase_order.items.all()}
        errors = {}
        lines = []
        seen = set()
        for index, entry in enumerate(items):
            path = f'items[{index}]'
            if not isinstance(entry, dict):
                errors[path] = ['Expected an object.']
                continue
            po_item = po_items.get(as_uuid(entry.get('po_item_id')))
            quantity = as_decimal(entry.get('quantity_received'))
            if po_item is None:
                errors[f'{path}.po_item_id'] = ['Item does not belong to this purchase order.']
            elif po_item.id in seen:
                errors[f'{path}.po_item_id'] = ['Item is listed more than once.']
            else:
                seen.add(po_item.id)
            if quantity is None or quantity < 0:
                errors[f'{path}.quantity_received'] = ['Quantity must be a non-negative number.']
            lines.append((po_item, quantity, str(entry.get('remarks') or '')))
        if errors:
            raise ValidationError(errors)

        grn = GoodsReceivedNote.objects.create(
            purchase_order=purchase_order,
            received_by=actor,
            notes=notes or '',
        )
        GRNItem.objects.bulk_create([
            GRNItem(grn=grn, po_item=po_item, quantity_received=quantity, remarks=remarks)
            for po_item, quantity, remarks in lines
        ])

        delivered = all(item.quantity_received >= item.quantity for item in po_items.values())
        previous = purchase_order.status
        purchase_order.status = 'DELIVERED' if delivered else 'PARTIALLY_DELIVERED'
        purchase_order.save(update_fields=['status', 'updated_at'])

        log_action(
            actor, 'RECEIVE_GOODS', 'GoodsReceivedNote', grn.id,
            object_repr=str(grn),
            details=f'Goods received against {purchase_order.po_number}',
            changes={
                'po_status': [previous, purchase_order.status],
                'lines': [{'item': po_item.name, 'quantity': str(qty)} for po_item, qty, _ in lines],
            },
        )

        reconcile(purchase_order.id, actor)

    return grn


def record_invoice(purchase_order_id, actor, items, invoice_date=None):
    """Record a vendor invoice; lines are keyed by PO item name"""
    authorize(actor, 'record_invoice')

    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError({'items': ['At least one invoice line is required.']})
    parsed_date = as_datetime(invoice_date)
    if invoice_date not in (None, '') and parsed_date is None:
        raise ValidationError({'invoice_date': ['Expected an ISO 8601 date.']})

    with transaction.atomic():
        purchase_order = _lock_purchase_order(purchase_order_id)
        if actor.role == 'VENDOR' and actor.vendor_id != purchase_order.vendor_id:
            raise AccessDenied('You may only invoice your own purchase orders.')

        names = {item.name for item in purchase_order.items.all()}
        errors = {}
        lines = []
        for index, entry in enumerate(items):
            path = f'items[{index}]'
            if not isinstance(entry, dict):
                errors[path] = ['Expected an object.']
                continue
            name = str(entry.get('name') or '').strip()
            quantity = as_decimal(entry.get('quantity'))
            unit_price = as_decimal(entry.get('unit_price'))
            if name not in names:
                errors[f'{path}.name'] = ['No purchase order line carries this name.']
            if quantity is None or quantity < 0:
                errors[f'{path}.quantity'] = ['Quantity must be a non-negative number.']
            if unit_price is None or unit_price < 0:
                errors[f'{path}.unit_price'] = ['Unit price must be a non-negative amount.']
            lines.append((name, quantity, unit_price))
        if errors:
            raise ValidationError(errors)

        invoice = Invoice.objects.create(
            purchase_order=purchase_order,
            vendor=purchase_order.vendor,
            invoice_date=parsed_date.date() if parsed_date else timezone.localdate(),
            submitted_at=timezone.now(),
            total_amount=sum((qty * price for _, qty, price in lines), Decimal('0.00')),
            submitted_by=actor,
        )
        for name, quantity, unit_price in lines:
            InvoiceItem.objects.create(invoice=invoice, name=name, quantity=quantity, unit_price=unit_price)

        log_action(
            actor, 'SUBMIT_INVOICE', 'Invoice', invoice.id,
            object_repr=str(invoice),
            details=f'Invoice against {purchase_order.po_number}',
            changes={'total_amount': str(invoice.total_amount), 'lines': len(lines)},
        )

        reconcile(purchase_order.id, actor)

    return invoice


def resolve_mismatch(purchase_order_id, actor, reason):
    """Operator override of a failed match"""
    authorize(actor, 'resolve_mismatch')

    reason = str(reason or '').strip()
    if not reason:
        raise ValidationError({'reason': ['A reason is required to resolve a mismatch.']})

    with transaction.atomic():
        purchase_order = _lock_purchase_order(purchase_order_id)
        if purchase_order.match_status != MISMATCHED:
            raise StateConflict(
                'Only a mismatched purchase order can be resolved manually.',
                match_status=purchase_order.match_status,
            )

        purchase_order.match_status = RESOLVED
        purchase_order.matching_notes = reason
        purchase_order.save(update_fields=['match_status', 'matching_notes', 'updated_at'])

        log_action(
            actor, 'MANUAL_MATCH', 'PurchaseOrder', purchase_order.id,
            object_repr=str(purchase_order),
            details=reason,
            changes={'match_status': [MISMATCHED, RESOLVED]},
        )

    logger.warning("%s mismatch resolved manually by %s", purchase_order.po_number, actor)
    return purchase_order


def export_matching_workbook(purchase_order, result=None):
    """Match breakdown as an openpyxl workbook"""
    result = result or match(purchase_order)

    wb = Workbook()
    ws = wb.active
    ws.title = 'Three-Way Match'

    header_fill = PatternFill(start_color='2563EB', end_color='2563EB', fill_type='solid')
    header_font = Font(bold=True, color='FFFFFF', size=12)
    bad_fill = PatternFill(start_color='FEE2E2', end_color='FEE2E2', fill_type='solid')
    border = Border(
        left=Side(style='thin'),
        right=Side(style='thin'),
        top=Side(style='thin'),
        bottom=Side(style='thin')
    )

    ws.append(['Purchase Order', purchase_order.po_number])
    ws.append(['Vendor', purchase_order.vendor.name])
    ws.append(['Match Status', result['status']])
    ws.append(['PO Total', float(result['po_total'])])
    ws.append(['Invoice Total', float(result['invoice_total'])])
    ws.append(['Received Quantity', float(result['grn_total_quantity'])])
    ws.append(['Invoiced Quantity', float(result['invoice_total_quantity'])])
    for row in ws.iter_rows(min_row=1, max_row=7, max_col=1):
        row[0].font = Font(bold=True)
    ws.append([])

    headers = ['Item', 'PO Qty', 'Received Qty', 'Invoiced Qty',
               'PO Unit Price', 'Invoice Unit Price', 'Quantity Match', 'Price Match']
    ws.append(headers)
    header_row = ws.max_row
    for col_num in range(1, len(headers) + 1):
        cell = ws.cell(row=header_row, column=col_num)
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal='center', vertical='center')
        cell.border = border

    for item in result['items']:
        ws.append([
            item['name'],
            float(item['po_quantity']),
            float(item['grn_quantity']),
            float(item['invoice_quantity']),
            float(item['po_unit_price']),
            None if item['invoice_unit_price'] is None else float(item['invoice_unit_price']),
            'Yes' if item['quantity_match'] else 'No',
            'Yes' if item['price_match'] else 'No',
        ])
        if not (item['quantity_match'] and item['price_match']):
            for cell in ws[ws.max_row]:
                cell.fill = bad_fill

    # Auto-size columns
    for col in ws.columns:
        lengths = [len(str(cell.value)) for cell in col if cell.value is not None]
        ws.column_dimensions[col[0].column_letter].width = min(max(lengths, default=0) + 2, 50)

    return wb
