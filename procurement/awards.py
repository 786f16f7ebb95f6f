"""
Award decisions: ranking, vendor responses and officer overrides.

Every operation here locks the requisition row first and runs inside one
``bounded_atomic`` block, so a requisition never shows a half-applied award.
Vendors hear of an award only once it is released for their response, and
notifications go out only after commit.
"""
import logging
from decimal import Decimal

from django.db import IntegrityError, transaction

from .audit import log_action
from .collaborators import authorize, notify_after_commit
from .conf import engine_setting
from .exceptions import (
    AccessDenied, AwardInProgress, DocumentNumberConflict, DuplicatePurchaseOrder,
    NoQuotesFound, NotFound, StateConflict, ValidationError,
)
from .models import (
    AWARD_LIVE_STATUSES, PurchaseOrder, PurchaseOrderItem, QUOTE_OPEN_STATUSES,
    Quotation, QuotationStatus, Requisition, RequisitionStatus,
)
from .routing import route_requisition
from .transactions import bounded_atomic
from .utils import as_datetime, as_uuid

logger = logging.getLogger(__name__)

ACCEPT = 'accept'
REJECT = 'reject'


def rank_quotations(quotations):
    """Best score first; earlier submission wins a tie, then id for a total order"""
    return sorted(quotations, key=lambda q: (-q.final_average_score, q.submitted_at, str(q.id)))


def _lock_requisition(requisition_id):
    requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
    if requisition is None:
        raise NotFound('Requisition not found.', requisition_id=requisition_id)
    return requisition


def _locked_quotations(requisition):
    return list(
        Quotation.objects.select_for_update()
        .filter(requisition=requisition)
        .select_related('vendor')
        .order_by('id')
    )


def _move(quotation, target, rank=None):
    quotation.transition_to(target, rank=rank)
    quotation.save(update_fields=['status', 'rank', 'updated_at'])


def _resolve_award_items(winner, quotations, award_map):
    """Validate the award map; return (awarded item ids, award value)"""
    if award_map is None:
        return [str(item.id) for item in winner.items.all()], winner.total_price

    if not isinstance(award_map, dict) or not award_map:
        raise ValidationError({'award_map': ['Expected a mapping of vendor id to quote item ids.']})

    by_vendor = {q.vendor_id: q for q in quotations}
    errors = {}
    awarded = []
    value = Decimal('0.00')

    for vendor_key, item_ids in award_map.items():
        path = f'award_map.{vendor_key}'
        quotation = by_vendor.get(as_uuid(vendor_key))
        if quotation is None:
            errors[path] = ['Vendor has no quotation on this requisition.']
            continue
        if quotation.pk != winner.pk:
            errors[path] = ['Items can only be awarded to the top-ranked quotation.']
            continue
        if not isinstance(item_ids, (list, tuple)) or not item_ids:
            errors[path] = ['Expected a non-empty list of quote item ids.']
            continue
        items = {item.id: item for item in quotation.items.all()}
        for index, raw_id in enumerate(item_ids):
            item = items.get(as_uuid(raw_id))
            if item is None:
                errors[f'{path}[{index}]'] = ["Item does not belong to this vendor's quotation."]
            elif str(item.id) in awarded:
                errors[f'{path}[{index}]'] = ['Item is listed more than once.']
            else:
                awarded.append(str(item.id))
                value += item.line_total

    if errors:
        raise ValidationError(errors)
    return awarded, value


# ============================================================================
# FINALIZE
# ============================================================================

def finalize_award(requisition_id, actor, award_map=None, award_response_deadline=None):
    """Rank the quotations, award the best and route the requisition for approval"""
    authorize(actor, 'finalize_award')

    deadline = as_datetime(award_response_deadline)
    if award_response_deadline not in (None, '') and deadline is None:
        raise ValidationError({'award_response_deadline': ['Expected an ISO 8601 timestamp.']})

    max_rank = engine_setting('MAX_STANDBY_RANK')

    with bounded_atomic('finalize_award'):
        requisition = _lock_requisition(requisition_id)
        quotations = _locked_quotations(requisition)
        if not quotations:
            raise NoQuotesFound(requisition=requisition.requisition_number)

        live = [q for q in quotations if q.status in AWARD_LIVE_STATUSES]
        if live:
            raise AwardInProgress(quotation=live[0].quotation_number, status=live[0].status)
        if requisition.status not in QUOTE_OPEN_STATUSES:
            raise StateConflict(
                'Requisition is not open for an award decision.',
                status=requisition.status,
            )

        ranked = rank_quotations(quotations)
        awarded_items, award_value = _resolve_award_items(ranked[0], quotations, award_map)

        for index, quotation in enumerate(ranked):
            if index == 0:
                _move(quotation, QuotationStatus.AWARDED, rank=1)
            elif index < max_rank:
                _move(quotation, QuotationStatus.STANDBY, rank=index + 1)
            else:
                _move(quotation, QuotationStatus.REJECTED)

        requisition.award_response_deadline = deadline
        requisition.awarded_quote_item_ids = awarded_items
        requisition.save(update_fields=['award_response_deadline', 'awarded_quote_item_ids', 'updated_at'])

        routing = route_requisition(requisition, award_value, actor)

        log_action(
            actor, 'FINALIZE_AWARD', 'Requisition', requisition.id,
            object_repr=str(requisition),
            details=f'Awarded {ranked[0].quotation_number} ({ranked[0].vendor.name})',
            changes={
                'ranking': [
                    {'quotation': q.quotation_number, 'score': str(q.final_average_score),
                     'status': q.status, 'rank': q.rank}
                    for q in ranked
                ],
                'award_value': str(award_value),
                'awarded_items': awarded_items,
            },
        )

    logger.info(
        "award finalized for %s: %s wins with %s",
        requisition.requisition_number, ranked[0].quotation_number, ranked[0].final_average_score,
    )
    return {'requisition': requisition, 'ranking': ranked, 'routing': routing}


# ============================================================================
# VENDOR RESPONSE
# ============================================================================

def _issue_purchase_order(requisition, quotation, actor):
    selected = set(requisition.awarded_quote_item_ids or [])
    items = list(quotation.items.all())
    lines = [item for item in items if str(item.id) in selected] if selected else items

    try:
        with transaction.atomic():
            purchase_order = PurchaseOrder.objects.create(
                requisition=requisition,
                quotation=quotation,
                vendor=quotation.vendor,
                total_amount=sum((item.line_total for item in lines), Decimal('0.00')),
                delivery_date=quotation.delivery_date,
                created_by=actor,
            )
    except IntegrityError as exc:
        if PurchaseOrder.objects.filter(quotation=quotation).exists():
            raise DuplicatePurchaseOrder(quotation=quotation.quotation_number) from exc
        raise DocumentNumberConflict(quotation=quotation.quotation_number) from exc

    for item in lines:
        PurchaseOrderItem.objects.create(
            purchase_order=purchase_order,
            quote_item=item,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
        )
    return purchase_order


def _restart_rfq(requisition, quotations, actor, action, details):
    for quotation in quotations:
        if quotation.status != QuotationStatus.SUBMITTED or quotation.rank is not None:
            _move(quotation, QuotationStatus.SUBMITTED)

    previous = requisition.status
    requisition.status = RequisitionStatus.APPROVED
    requisition.current_approver = None
    requisition.award_response_deadline = None
    requisition.awarded_quote_item_ids = []
    requisition.save(update_fields=[
        'status', 'current_approver', 'award_response_deadline', 'awarded_quote_item_ids', 'updated_at',
    ])

    log_action(
        actor, action, 'Requisition', requisition.id,
        object_repr=str(requisition),
        details=details,
        changes={'status': [previous, requisition.status], 'quotations_reset': len(quotations)},
    )


def respond_to_award(quotation_id, vendor_id, action, actor=None):
    """Vendor accepts or declines its award.

    Returns a dict with ``outcome`` plus ``purchase_order``/``created`` on
    accept and ``promoted`` on a decline that moved the next standby up.
    """
    if actor is not None:
        authorize(actor, 'respond_to_award')
        if not actor.is_superuser and str(actor.vendor_id) != str(vendor_id):
            raise AccessDenied('You may only respond for your own vendor account.')

    action = str(action or '').strip().lower()
    if action not in (ACCEPT, REJECT):
        raise ValidationError({'action': ["Action must be 'accept' or 'reject'."]})

    quotation = Quotation.objects.filter(pk=quotation_id, vendor_id=vendor_id).first()
    if quotation is None:
        raise NotFound('Quotation not found for this vendor.', quotation_id=quotation_id)

    with bounded_atomic('respond_to_award'):
        requisition = _lock_requisition(quotation.requisition_id)
        quotation = Quotation.objects.select_for_update().select_related('vendor').get(pk=quotation.pk)

        if action == ACCEPT and quotation.status == QuotationStatus.ACCEPTED:
            existing = PurchaseOrder.objects.filter(quotation=quotation).first()
            if existing is not None:
                logger.info("repeated accept of %s returns %s", quotation.quotation_number, existing.po_number)
                return {'outcome': 'accepted', 'purchase_order': existing, 'created': False}

        if requisition.status != RequisitionStatus.VENDOR_NOTIFIED:
            raise StateConflict(
                'The award has not been released to the vendor yet.',
                requisition=requisition.requisition_number, status=requisition.status,
            )

        if action == ACCEPT:
            if quotation.status != QuotationStatus.AWARDED:
                raise StateConflict(
                    'Only an awarded quotation can be accepted.',
                    quotation=quotation.quotation_number, status=quotation.status,
                )
            if PurchaseOrder.objects.filter(quotation=quotation).exists():
                raise DuplicatePurchaseOrder(quotation=quotation.quotation_number)

            _move(quotation, QuotationStatus.ACCEPTED, rank=quotation.rank)
            purchase_order = _issue_purchase_order(requisition, quotation, actor)

            previous = requisition.status
            requisition.status = RequisitionStatus.PO_CREATED
            requisition.current_approver = None
            requisition.save(update_fields=['status', 'current_approver', 'updated_at'])

            log_action(
                actor, 'ACCEPT_AWARD', 'Quotation', quotation.id,
                object_repr=str(quotation),
                details=f'Award accepted; {purchase_order.po_number} issued',
                changes={
                    'status': [QuotationStatus.AWARDED, QuotationStatus.ACCEPTED],
                    'requisition_status': [previous, requisition.status],
                    'purchase_order': purchase_order.po_number,
                },
            )
            notify_after_commit('purchase_order_issued', purchase_order)
            logger.info("%s accepted, %s issued", quotation.quotation_number, purchase_order.po_number)
            return {'outcome': 'accepted', 'purchase_order': purchase_order, 'created': True}

        if quotation.status != QuotationStatus.AWARDED:
            raise StateConflict(
                'Only an awarded quotation can be declined.',
                quotation=quotation.quotation_number, status=quotation.status,
            )

        current_rank = quotation.rank or 1
        _move(quotation, QuotationStatus.DECLINED, rank=quotation.rank)
        log_action(
            actor, 'REJECT_AWARD', 'Quotation', quotation.id,
            object_repr=str(quotation),
            details='Vendor declined the award',
            changes={'status': [QuotationStatus.AWARDED, QuotationStatus.DECLINED], 'rank': quotation.rank},
        )

        standby = (
            Quotation.objects.select_for_update()
            .filter(requisition=requisition, status=QuotationStatus.STANDBY, rank=current_rank + 1)
            .select_related('vendor')
            .first()
        )
        if standby is not None:
            _move(standby, QuotationStatus.AWARDED, rank=standby.rank)
            requisition.awarded_quote_item_ids = []
            requisition.save(update_fields=['awarded_quote_item_ids', 'updated_at'])
            log_action(
                actor, 'PROMOTE_STANDBY', 'Quotation', standby.id,
                object_repr=str(standby),
                details=f'Promoted after {quotation.quotation_number} declined',
                changes={'status': [QuotationStatus.STANDBY, QuotationStatus.AWARDED], 'rank': standby.rank},
            )
            notify_after_commit('award_offered', standby)
            logger.info("%s declined; %s promoted", quotation.quotation_number, standby.quotation_number)
            return {'outcome': 'declined', 'promoted': standby}

        _restart_rfq(
            requisition, _locked_quotations(requisition), actor, 'RESTART_RFQ',
            f'No standby left after {quotation.quotation_number} declined',
        )
        notify_after_commit('rfq_restarted', requisition)
        logger.info("%s declined with no standby; RFQ restarted", quotation.quotation_number)
        return {'outcome': 'rfq_restarted', 'promoted': None}


# ============================================================================
# OFFICER OVERRIDES
# ============================================================================

def change_award(requisition_id, actor):
    """Discard the award decision and reopen every quotation"""
    authorize(actor, 'change_award')

    with bounded_atomic('change_award'):
        requisition = _lock_requisition(requisition_id)
        quotations = _locked_quotations(requisition)

        accepted = [q for q in quotations if q.status == QuotationStatus.ACCEPTED]
        if accepted:
            raise StateConflict(
                'The award was already accepted and a purchase order issued.',
                quotation=accepted[0].quotation_number,
            )

        _restart_rfq(requisition, quotations, actor, 'RESET_AWARD', 'Award decision reset by officer')

    logger.info("award reset for %s", requisition.requisition_number)
    return requisition


def promote_standby(requisition_id, actor, rank, award_response_deadline=None):
    """Replace a failed awardee with the standby at ``rank``.

    A new ``award_response_deadline`` gives the promoted vendor its own
    window; without one the current deadline stands.
    """
    authorize(actor, 'promote_standby')

    deadline = as_datetime(award_response_deadline)
    if award_response_deadline not in (None, '') and deadline is None:
        raise ValidationError({'award_response_deadline': ['Expected an ISO 8601 timestamp.']})

    max_rank = engine_setting('MAX_STANDBY_RANK')
    try:
        rank = int(rank)
    except (TypeError, ValueError):
        rank = None
    if rank is None or not 2 <= rank <= max_rank:
        raise ValidationError({'rank': [f'Rank must be between 2 and {max_rank}.']})

    with bounded_atomic('promote_standby'):
        requisition = _lock_requisition(requisition_id)
        quotations = _locked_quotations(requisition)

        awarded = next((q for q in quotations if q.status == QuotationStatus.AWARDED), None)
        if awarded is None:
            raise StateConflict('There is no awarded quotation to replace.')
        standbys = {q.rank: q for q in quotations if q.status == QuotationStatus.STANDBY}
        target = standbys.get(rank)
        if target is None:
            raise StateConflict(f'No standby quotation holds rank {rank}.', rank=rank)

        _move(awarded, QuotationStatus.FAILED)
        _move(target, QuotationStatus.AWARDED, rank=1)

        # standbys ranked above the target are passed over, the rest move up
        shifted = []
        for standby_rank in sorted(standbys):
            standby = standbys[standby_rank]
            if standby is target:
                continue
            if standby_rank < rank:
                _move(standby, QuotationStatus.REJECTED)
            else:
                standby.rank = standby_rank - rank + 1
                standby.save(update_fields=['rank', 'updated_at'])
                shifted.append(standby.quotation_number)

        if deadline is not None:
            requisition.award_response_deadline = deadline
        requisition.awarded_quote_item_ids = []
        requisition.save(update_fields=['award_response_deadline', 'awarded_quote_item_ids', 'updated_at'])

        log_action(
            actor, 'HANDLE_AWARD_CHANGE', 'Requisition', requisition.id,
            object_repr=str(requisition),
            details=f'{awarded.quotation_number} failed; rank {rank} {target.quotation_number} promoted',
            changes={
                'failed': awarded.quotation_number,
                'promoted': target.quotation_number,
                'promoted_from_rank': rank,
                'shifted': shifted,
                'award_response_deadline': deadline.isoformat() if deadline else None,
            },
        )
        if requisition.status == RequisitionStatus.VENDOR_NOTIFIED:
            notify_after_commit('award_offered', target)

    return target
