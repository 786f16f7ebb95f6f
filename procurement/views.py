import json
import logging
import uuid
from decimal import Decimal
from functools import wraps

from django.contrib.auth.decorators import login_required
from django.http import HttpResponse, JsonResponse
from django.views.decorators.http import require_http_methods

from .awards import change_award, finalize_award, promote_standby, respond_to_award
from .collaborators import authorize
from .committee import assign_committee, extend_scoring_deadline
from .exceptions import NotFound, ProcurementError, ValidationError
from .matching import export_matching_workbook, match, resolve_mismatch
from .models import PurchaseOrder
from .routing import approve_award, route_for_approval
from .scoring import submit_scores

logger = logging.getLogger(__name__)


def _plain(value):
    """Make engine results JSON friendly"""
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _payload(request):
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (TypeError, ValueError):
        raise ValidationError({'body': ['Request body must be valid JSON.']})
    if not isinstance(data, dict):
        raise ValidationError({'body': ['Request body must be a JSON object.']})
    return data


def engine_endpoint(view):
    """Translate engine errors into the JSON error envelope"""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except ProcurementError as e:
            logger.info("%s rejected: %s (%s)", view.__name__, e.code, e.message)
            body = {'success': False, **e.as_dict()}
            if e.retryable:
                body['retryable'] = True
            return JsonResponse(body, status=e.status_code)
        except Exception:
            correlation_id = uuid.uuid4().hex
            logger.exception("%s failed [%s]", view.__name__, correlation_id)
            return JsonResponse({
                'success': False,
                'error': 'An internal error occurred.',
                'correlation_id': correlation_id,
            }, status=500)
    return wrapper


def _purchase_order(po_id):
    purchase_order = PurchaseOrder.objects.select_related('vendor').filter(id=po_id).first()
    if purchase_order is None:
        raise NotFound('Purchase order not found.')
    return purchase_order


def _quotation_data(quotation):
    return {
        'id': str(quotation.id),
        'quotation_number': quotation.quotation_number,
        'vendor': quotation.vendor.name,
        'status': quotation.status,
        'rank': quotation.rank,
        'final_average_score': str(quotation.final_average_score),
    }


# ============================================================================
# AWARD DECISION
# ============================================================================

@login_required
@require_http_methods(["POST"])
@engine_endpoint
def submit_scores_view(request, quotation_id):
    """API: Submit committee scores for a quotation"""
    data = _payload(request)
    score_set = submit_scores(
        quotation_id,
        request.user.id,
        data.get('item_scores'),
        data.get('comment', ''),
    )
    return JsonResponse({
        'success': True,
        'message': 'Scores submitted successfully',
        'data': {
            'score_set_id': str(score_set.id),
            'final_score': str(score_set.final_score),
            'final_average_score': str(score_set.quotation.final_average_score),
        }
    })


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def finalize_award_view(request, requisition_id):
    """API: Rank quotations and award the requisition"""
    data = _payload(request)
    outcome = finalize_award(
        requisition_id,
        request.user,
        award_map=data.get('award_map'),
        award_response_deadline=data.get('award_response_deadline'),
    )
    requisition = outcome['requisition']
    return JsonResponse({
        'success': True,
        'message': 'Award finalized successfully',
        'data': {
            'requisition_status': requisition.status,
            'ranking': [_quotation_data(q) for q in outcome['ranking']],
            'routing': _plain(outcome['routing']),
        }
    })


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def respond_to_award_view(request, quotation_id):
    """API: Vendor accepts or declines an award"""
    data = _payload(request)
    vendor_id = request.user.vendor_id
    if vendor_id is None:
        return JsonResponse({'success': False, 'error': 'Only vendor accounts can respond to awards'}, status=403)

    outcome = respond_to_award(quotation_id, vendor_id, data.get('action'), actor=request.user)

    response = {'success': True, 'outcome': outcome['outcome']}
    if outcome.get('purchase_order') is not None:
        po = outcome['purchase_order']
        response['message'] = f'Award accepted. Purchase order {po.po_number} issued.'
        response['purchase_order'] = {
            'id': str(po.id),
            'po_number': po.po_number,
            'total_amount': str(po.total_amount),
            'created': outcome['created'],
        }
    elif outcome.get('promoted') is not None:
        response['message'] = 'Award declined. The next standby vendor has been promoted.'
    else:
        response['message'] = 'Award declined. The requisition has been reopened for a new RFQ round.'
    return JsonResponse(response)


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def change_award_view(request, requisition_id):
    """API: Reset the award decision"""
    requisition = change_award(requisition_id, request.user)
    return JsonResponse({
        'success': True,
        'message': 'Award has been reset; all quotations are back under evaluation',
        'data': {'requisition_status': requisition.status},
    })


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def promote_standby_view(request, requisition_id):
    """API: Promote a standby vendor over a failed awardee"""
    data = _payload(request)
    quotation = promote_standby(
        requisition_id,
        request.user,
        data.get('rank'),
        award_response_deadline=data.get('award_response_deadline'),
    )
    return JsonResponse({
        'success': True,
        'message': f'{quotation.vendor.name} promoted to awarded',
        'data': _quotation_data(quotation),
    })


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def route_for_approval_view(request, requisition_id):
    """API: Route a requisition by award value"""
    data = _payload(request)
    routing = route_for_approval(requisition_id, data.get('total_award_value'), actor=request.user)
    return JsonResponse({'success': True, 'data': _plain(routing)})


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def approve_award_view(request, requisition_id):
    """API: Approve the award and notify the vendor"""
    data = _payload(request)
    requisition = approve_award(requisition_id, request.user, data.get('comment', ''))
    return JsonResponse({
        'success': True,
        'message': 'Award approved; the vendor has been notified',
        'data': {'requisition_status': requisition.status},
    })


# ============================================================================
# EVALUATION COMMITTEE
# ============================================================================

@login_required
@require_http_methods(["POST"])
@engine_endpoint
def assign_committee_view(request, requisition_id):
    """API: Seat the evaluation committee of a requisition"""
    data = _payload(request)
    seats = assign_committee(
        requisition_id,
        request.user,
        data.get('member_ids'),
        scoring_deadline=data.get('scoring_deadline'),
        committee_name=data.get('committee_name', ''),
        committee_purpose=data.get('committee_purpose', ''),
    )
    return JsonResponse({
        'success': True,
        'message': f'{len(seats)} committee members assigned',
        'data': [
            {'member_id': str(seat.member_id), 'username': seat.member.username, 'has_scored': seat.has_scored}
            for seat in seats
        ],
    })


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def extend_scoring_deadline_view(request, requisition_id):
    """API: Move the committee scoring deadline"""
    data = _payload(request)
    requisition = extend_scoring_deadline(requisition_id, request.user, data.get('new_deadline'))
    return JsonResponse({
        'success': True,
        'message': 'Scoring deadline extended',
        'data': {'scoring_deadline': requisition.scoring_deadline.isoformat()},
    })


# ============================================================================
# THREE-WAY MATCH
# ============================================================================

@login_required
@require_http_methods(["GET"])
@engine_endpoint
def purchase_order_match(request, po_id):
    """API: Three-way match result of a purchase order"""
    authorize(request.user, 'view_matching')
    purchase_order = _purchase_order(po_id)
    return JsonResponse({'success': True, 'data': _plain(match(purchase_order))})


@login_required
@require_http_methods(["POST"])
@engine_endpoint
def resolve_mismatch_view(request, po_id):
    """API: Manually resolve a mismatched purchase order"""
    data = _payload(request)
    purchase_order = resolve_mismatch(po_id, request.user, data.get('reason'))
    return JsonResponse({
        'success': True,
        'message': f'{purchase_order.po_number} marked as manually resolved',
        'data': {'match_status': purchase_order.match_status},
    })


@login_required
@require_http_methods(["GET"])
@engine_endpoint
def export_match_excel(request, po_id):
    """Export the three-way match breakdown to Excel"""
    authorize(request.user, 'view_matching')
    purchase_order = _purchase_order(po_id)
    wb = export_matching_workbook(purchase_order)

    response = HttpResponse(
        content_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    )
    response['Content-Disposition'] = f'attachment; filename="{purchase_order.po_number}_match.xlsx"'
    wb.save(response)
    return response
