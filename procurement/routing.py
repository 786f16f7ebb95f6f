"""
Approval routing by award value.

Tiers come from the active ``ApprovalThreshold`` rows. Ranges are inclusive
at both ends and a missing ``max_amount`` is unbounded. A value below every
tier goes straight to the manager role; a value in a gap or past the top tier
has no route and fails loudly.
"""
import logging

from .audit import log_action
from .collaborators import authorize, notify_after_commit
from .conf import engine_setting
from .exceptions import (
    AccessDenied, AmbiguousTier, NoApproverForRole, NoMatchingTier, NotFound,
    StateConflict, ValidationError,
)
from .models import (
    APPROVAL_STATUSES, ApprovalThreshold, CommitteeRecommendation, COMMITTEE_STATUSES,
    Quotation, QuotationStatus, ROUTABLE_STATUSES, Requisition, RequisitionStatus, User,
)
from .transactions import bounded_atomic
from .utils import as_decimal

logger = logging.getLogger(__name__)

ROLE_CODES = {code for code, _ in User.ROLE_CHOICES}


# ============================================================================
# THRESHOLD TABLE
# ============================================================================

def threshold_table_errors(tiers):
    """Path -> messages for a candidate tier table; empty when it is routable"""
    errors = {}
    usable = []

    for index, tier in enumerate(tiers):
        path = f'tiers[{index}]'
        low = tier.get('min_amount')
        high = tier.get('max_amount')

        if low is None or low < 0:
            errors[f'{path}.min_amount'] = ['Minimum must be a non-negative amount.']
        if high is not None and low is not None and high < low:
            errors[f'{path}.max_amount'] = ['Maximum cannot be below the minimum.']
        if tier.get('next_status') not in ROUTABLE_STATUSES:
            errors[f'{path}.next_status'] = ['Tiers must route to a review status or straight to the vendor.']
        role = tier.get('approver_role') or ''
        if role and role not in ROLE_CODES:
            errors[f'{path}.approver_role'] = ['Unknown role.']
        if not role and tier.get('next_status') in APPROVAL_STATUSES:
            errors[f'{path}.approver_role'] = ['Tiers routing to managerial or final approval need an approver role.']

        if f'{path}.min_amount' not in errors and f'{path}.max_amount' not in errors:
            usable.append((index, tier))

    usable.sort(key=lambda pair: pair[1]['min_amount'])
    for (prev_index, prev), (index, tier) in zip(usable, usable[1:]):
        if prev['max_amount'] is None or tier['min_amount'] <= prev['max_amount']:
            name = tier.get('name') or f'tier {index}'
            errors.setdefault(f'tiers[{index}]', []).append(
                f'{name} overlaps {prev.get("name") or f"tier {prev_index}"}.'
            )

    return errors


def validate_threshold_table(tiers):
    """Normalise a tier payload and raise ``ValidationError`` if it cannot route"""
    if not isinstance(tiers, (list, tuple)) or not tiers:
        raise ValidationError({'tiers': ['At least one tier is required.']})

    normalised = []
    errors = {}
    for index, tier in enumerate(tiers):
        if not isinstance(tier, dict):
            errors[f'tiers[{index}]'] = ['Expected an object.']
            continue
        raw_max = tier.get('max_amount')
        normalised.append({
            'name': str(tier.get('name') or f'Tier {index + 1}'),
            'min_amount': as_decimal(tier.get('min_amount')),
            'max_amount': None if raw_max in (None, '') else as_decimal(raw_max),
            'next_status': tier.get('next_status'),
            'approver_role': tier.get('approver_role') or '',
        })
        if raw_max not in (None, '') and normalised[-1]['max_amount'] is None:
            errors[f'tiers[{index}].max_amount'] = ['Maximum must be a number or null.']

    if errors:
        raise ValidationError(errors)
    errors = threshold_table_errors(normalised)
    if errors:
        raise ValidationError(errors)
    return normalised


def configure_thresholds(tiers, actor):
    """Replace the approval matrix in one transaction"""
    authorize(actor, 'configure_thresholds')
    normalised = validate_threshold_table(tiers)

    with bounded_atomic('configure_thresholds'):
        ApprovalThreshold.objects.all().delete()
        rows = ApprovalThreshold.objects.bulk_create([ApprovalThreshold(**tier) for tier in normalised])
        log_action(
            actor, 'CONFIGURE_THRESHOLDS', 'ApprovalThreshold', 'matrix',
            object_repr=f'{len(rows)} tiers',
            details='Approval matrix replaced',
            changes={'tiers': [
                {**tier, 'min_amount': str(tier['min_amount']),
                 'max_amount': None if tier['max_amount'] is None else str(tier['max_amount'])}
                for tier in normalised
            ]},
        )

    logger.info("approval matrix replaced with %d tiers", len(rows))
    return rows


# ============================================================================
# ROUTING
# ============================================================================

def select_tier(tiers, value):
    """Tier containing ``value``; None means below every tier"""
    matches = [tier for tier in tiers if tier.contains(value)]
    if len(matches) > 1:
        raise AmbiguousTier(
            f'Award value {value} falls inside {len(matches)} tiers.',
            tiers=', '.join(t.name for t in matches),
        )
    if matches:
        return matches[0]
    if not tiers or value < min(t.min_amount for t in tiers):
        return None
    raise NoMatchingTier(f'No approval tier covers an award value of {value}.', value=value)


def resolve_approver(role):
    approver = (
        User.objects
        .filter(role=role, is_active=True, is_active_user=True)
        .order_by('date_joined', 'username')
        .first()
    )
    if approver is None:
        raise NoApproverForRole(role)
    return approver


def route_requisition(requisition, total_award_value, actor=None):
    """Route an already locked requisition; the caller owns the transaction"""
    tiers = list(ApprovalThreshold.objects.filter(is_active=True).order_by('min_amount'))
    tier = select_tier(tiers, total_award_value)

    if tier is None:
        next_status = RequisitionStatus.PENDING_MANAGERIAL_APPROVAL
        approver = resolve_approver(engine_setting('MANAGER_ROLE'))
    else:
        next_status = tier.next_status
        approver = resolve_approver(tier.approver_role) if next_status in APPROVAL_STATUSES else None

    previous = requisition.status
    requisition.status = next_status
    requisition.current_approver = approver
    requisition.total_price = total_award_value
    requisition.save(update_fields=['status', 'current_approver', 'total_price', 'updated_at'])

    log_action(
        actor, 'ROUTE_APPROVAL', 'Requisition', requisition.id,
        object_repr=str(requisition),
        details=f'Routed award of {total_award_value} to {next_status}',
        changes={
            'status': [previous, next_status],
            'tier': tier.name if tier else None,
            'approver': str(approver.id) if approver else None,
            'total_award_value': str(total_award_value),
        },
    )
    if approver is not None:
        notify_after_commit('approval_requested', requisition, approver)
    if next_status == RequisitionStatus.VENDOR_NOTIFIED:
        offer_award(requisition)

    logger.info(
        "%s routed to %s (approver %s, value %s)",
        requisition.requisition_number, next_status, approver or 'committee', total_award_value,
    )
    return {
        'next_status': next_status,
        'next_approver_id': approver.id if approver else None,
        'tier': tier.name if tier else None,
    }


def route_for_approval(requisition_id, total_award_value, actor=None):
    if actor is not None:
        authorize(actor, 'route_for_approval')

    value = as_decimal(total_award_value)
    if value is None or value < 0:
        raise ValidationError({'total_award_value': ['A non-negative amount is required.']})

    with bounded_atomic('route_for_approval'):
        requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
        if requisition is None:
            raise NotFound('Requisition not found.', requisition_id=requisition_id)
        return route_requisition(requisition, value, actor)


# ============================================================================
# COMMITTEE RECOMMENDATION
# ============================================================================

def submit_recommendation(requisition_id, actor, recommendation):
    """Committee hands its recommendation to the manager for final approval"""
    authorize(actor, 'submit_recommendation')

    text = str(recommendation or '').strip()
    if not text:
        raise ValidationError({'recommendation': ['Recommendation text is required.']})

    with bounded_atomic('submit_recommendation'):
        requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
        if requisition is None:
            raise NotFound('Requisition not found.', requisition_id=requisition_id)

        committee_role = COMMITTEE_STATUSES.get(requisition.status)
        if committee_role is None:
            raise StateConflict(
                'Requisition is not awaiting a committee recommendation.',
                status=requisition.status,
            )
        if actor.role != committee_role and not actor.is_superuser:
            raise AccessDenied(
                f'Only {committee_role} members may recommend at this stage.',
                role=actor.role,
            )

        entry = CommitteeRecommendation.objects.create(
            requisition=requisition,
            user=actor,
            committee_role=committee_role,
            recommendation=text,
        )

        approver = resolve_approver(engine_setting('MANAGER_ROLE'))
        previous = requisition.status
        requisition.status = RequisitionStatus.PENDING_FINAL_APPROVAL
        requisition.current_approver = approver
        requisition.save(update_fields=['status', 'current_approver', 'updated_at'])

        log_action(
            actor, 'SUBMIT_RECOMMENDATION', 'Requisition', requisition.id,
            object_repr=str(requisition),
            details=text[:200],
            changes={'status': [previous, requisition.status], 'approver': str(approver.id)},
        )
        notify_after_commit('approval_requested', requisition, approver)

    return entry


# ============================================================================
# AWARD RELEASE
# ============================================================================

def offer_award(requisition):
    """Queue the award and standby notices for a released requisition"""
    live = (
        Quotation.objects
        .filter(requisition=requisition, status__in=[QuotationStatus.AWARDED, QuotationStatus.STANDBY])
        .select_related('vendor')
        .order_by('rank')
    )
    for quotation in live:
        event = 'award_offered' if quotation.status == QuotationStatus.AWARDED else 'standby_notice'
        notify_after_commit(event, quotation)


def approve_award(requisition_id, actor, comment=''):
    """The current approver signs off and the awarded vendor is told.

    Vendors cannot accept or decline until this has happened, unless the
    award value fell in a tier that releases it directly.
    """
    with bounded_atomic('approve_award'):
        requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
        if requisition is None:
            raise NotFound('Requisition not found.', requisition_id=requisition_id)
        authorize(actor, 'approve_award', requisition)

        if requisition.status not in APPROVAL_STATUSES:
            raise StateConflict('Requisition is not awaiting award approval.', status=requisition.status)
        awarded = Quotation.objects.filter(requisition=requisition, status=QuotationStatus.AWARDED).first()
        if awarded is None:
            raise StateConflict('There is no awarded quotation to release.',
                                requisition=requisition.requisition_number)

        previous = requisition.status
        requisition.status = RequisitionStatus.VENDOR_NOTIFIED
        requisition.current_approver = None
        requisition.save(update_fields=['status', 'current_approver', 'updated_at'])

        log_action(
            actor, 'APPROVE_AWARD', 'Requisition', requisition.id,
            object_repr=str(requisition),
            details=str(comment or '').strip()[:200] or f'Award to {awarded.quotation_number} approved',
            changes={'status': [previous, requisition.status], 'quotation': str(awarded.id)},
        )
        offer_award(requisition)

    logger.info("%s award approved by %s", requisition.requisition_number, actor)
    return requisition
