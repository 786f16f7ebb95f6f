import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from .audit import log_action
from .collaborators import authorize
from .exceptions import AccessDenied, NotFound, StateConflict, ValidationError
from .models import (
    QUOTE_OPEN_STATUSES, Quotation, QuoteItem, Requisition, RequisitionStatus, Vendor,
)
from .utils import as_decimal, as_uuid

logger = logging.getLogger(__name__)


def _parse_items(items, requisition_items):
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError({'items': ['At least one quoted item is required.']})

    errors = {}
    parsed = []
    for index, entry in enumerate(items):
        path = f'items[{index}]'
        if not isinstance(entry, dict):
            errors[path] = ['Expected an object.']
            continue

        name = str(entry.get('name') or '').strip()
        quantity = as_decimal(entry.get('quantity'))
        unit_price = as_decimal(entry.get('unit_price'))
        lead_time = entry.get('lead_time_days', 0)
        requisition_item = None

        if entry.get('requisition_item_id'):
            requisition_item = requisition_items.get(as_uuid(entry['requisition_item_id']))
            if requisition_item is None:
                errors[f'{path}.requisition_item_id'] = ['Item does not belong to this requisition.']
            elif not name:
                name = requisition_item.name
        if not name:
            errors[f'{path}.name'] = ['Name is required.']
        if quantity is None or quantity <= 0:
            errors[f'{path}.quantity'] = ['Quantity must be greater than zero.']
        if unit_price is None or unit_price < 0:
            errors[f'{path}.unit_price'] = ['Unit price must be a non-negative amount.']
        if isinstance(lead_time, bool) or not isinstance(lead_time, int) or lead_time < 0:
            errors[f'{path}.lead_time_days'] = ['Lead time must be a whole number of days.']

        parsed.append({
            'requisition_item': requisition_item,
            'name': name,
            'quantity': quantity,
            'unit_price': unit_price,
            'lead_time_days': lead_time,
        })

    if errors:
        raise ValidationError(errors)
    return parsed


def submit_quotation(requisition_id, vendor_id, items, notes='', actor=None):
    """Vendor submits its single quotation for an open requisition"""
    if actor is not None:
        authorize(actor, 'submit_quotation')
        if not actor.is_superuser and str(actor.vendor_id) != str(vendor_id):
            raise AccessDenied('You may only quote for your own vendor account.')

    vendor = Vendor.objects.filter(pk=vendor_id, status='APPROVED').first()
    if vendor is None:
        raise NotFound('Approved vendor not found.', vendor_id=vendor_id)

    with transaction.atomic():
        requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
        if requisition is None:
            raise NotFound('Requisition not found.', requisition_id=requisition_id)
        if requisition.status not in QUOTE_OPEN_STATUSES:
            raise StateConflict('Requisition is not accepting quotations.', status=requisition.status)

        parsed = _parse_items(items, {item.id: item for item in requisition.items.all()})

        try:
            with transaction.atomic():
                quotation = Quotation.objects.create(
                    requisition=requisition,
                    vendor=vendor,
                    notes=notes or '',
                    submitted_at=timezone.now(),
                )
        except IntegrityError as exc:
            raise StateConflict(
                'This vendor has already quoted on the requisition.',
                vendor=vendor.name,
            ) from exc

        for entry in parsed:
            QuoteItem.objects.create(quotation=quotation, **entry)

        if requisition.status == RequisitionStatus.APPROVED:
            requisition.status = RequisitionStatus.RFQ_IN_PROGRESS
            requisition.save(update_fields=['status', 'updated_at'])

        log_action(
            actor, 'SUBMIT_QUOTATION', 'Quotation', quotation.id,
            object_repr=str(quotation),
            details=f'{vendor.name} quoted {quotation.total_price} on {requisition.requisition_number}',
            changes={'items': len(parsed), 'total_price': str(quotation.total_price)},
        )

    logger.info("%s submitted %s", vendor.name, quotation.quotation_number)
    return quotation
