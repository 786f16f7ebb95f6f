"""
Evaluation committee of a requisition.

Only assigned members may score its quotations, and only until the
requisition's ``scoring_deadline`` when one is set.
"""
import logging

from django.db import transaction
from django.utils import timezone

from .audit import log_action
from .collaborators import authorize, get_access_policy, notify_after_commit
from .exceptions import AccessDenied, NotFound, StateConflict, ValidationError
from .models import CommitteeAssignment, QUOTE_OPEN_STATUSES, Requisition, User
from .utils import as_datetime, as_uuid

logger = logging.getLogger(__name__)


def _parse_deadline(field, value, required=False):
    if value in (None, ''):
        if required:
            raise ValidationError({field: ['A deadline is required.']})
        return None
    deadline = as_datetime(value)
    if deadline is None:
        raise ValidationError({field: ['Expected an ISO 8601 timestamp.']})
    if deadline <= timezone.now():
        raise ValidationError({field: ['The deadline must be in the future.']})
    return deadline


def _resolve_members(member_ids):
    if not isinstance(member_ids, (list, tuple)) or not member_ids:
        raise ValidationError({'member_ids': ['At least one committee member is required.']})

    policy = get_access_policy()
    errors = {}
    members = []
    for index, raw_id in enumerate(member_ids):
        path = f'member_ids[{index}]'
        user_id = as_uuid(raw_id)
        user = User.objects.filter(pk=user_id).first() if user_id else None
        if user is None:
            errors[path] = ['User not found.']
            continue
        try:
            policy.check(user, 'submit_scores')
        except AccessDenied:
            errors[path] = [f'{user.username} cannot score quotations.']
            continue
        if user in members:
            errors[path] = ['Member is listed more than once.']
            continue
        members.append(user)

    if errors:
        raise ValidationError(errors)
    return members


def _lock_open_requisition(requisition_id):
    requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
    if requisition is None:
        raise NotFound('Requisition not found.', requisition_id=requisition_id)
    if requisition.status not in QUOTE_OPEN_STATUSES:
        raise StateConflict('Requisition is no longer under evaluation.', status=requisition.status)
    return requisition


def assign_committee(requisition_id, actor, member_ids, scoring_deadline=None,
                     committee_name='', committee_purpose=''):
    """Set the members allowed to score a requisition's quotations.

    Members dropped from the list lose their seat unless they already scored.
    """
    authorize(actor, 'assign_committee')
    deadline = _parse_deadline('scoring_deadline', scoring_deadline)
    members = _resolve_members(member_ids)

    with transaction.atomic():
        requisition = _lock_open_requisition(requisition_id)

        requisition.committee_name = committee_name or ''
        requisition.committee_purpose = committee_purpose or ''
        if deadline is not None:
            requisition.scoring_deadline = deadline
        requisition.save(update_fields=[
            'committee_name', 'committee_purpose', 'scoring_deadline', 'updated_at',
        ])

        stale = requisition.committee_assignments.filter(last_scored_at__isnull=True).exclude(member__in=members)
        removed = list(stale.values_list('member__username', flat=True))
        stale.delete()

        existing = set(requisition.committee_assignments.values_list('member_id', flat=True))
        added = [member for member in members if member.id not in existing]
        CommitteeAssignment.objects.bulk_create([
            CommitteeAssignment(requisition=requisition, member=member, assigned_by=actor)
            for member in added
        ])

        log_action(
            actor, 'ASSIGN_COMMITTEE', 'Requisition', requisition.id,
            object_repr=str(requisition),
            details=f'Assigned committee "{requisition.committee_name}" with members: '
                    f'{", ".join(m.username for m in members)}',
            changes={
                'added': [m.username for m in added],
                'removed': removed,
                'scoring_deadline': deadline.isoformat() if deadline else None,
            },
        )
        if added:
            notify_after_commit('committee_assigned', requisition, added)

    logger.info("%s committee: %d members", requisition.requisition_number, len(members))
    return list(requisition.committee_assignments.select_related('member'))


def extend_scoring_deadline(requisition_id, actor, new_deadline):
    authorize(actor, 'extend_scoring_deadline')
    deadline = _parse_deadline('new_deadline', new_deadline, required=True)

    with transaction.atomic():
        requisition = _lock_open_requisition(requisition_id)
        previous = requisition.scoring_deadline
        requisition.scoring_deadline = deadline
        requisition.save(update_fields=['scoring_deadline', 'updated_at'])

        log_action(
            actor, 'EXTEND_SCORING_DEADLINE', 'Requisition', requisition.id,
            object_repr=str(requisition),
            details=f'Extended committee scoring deadline to {deadline:%Y-%m-%d %H:%M}',
            changes={
                'scoring_deadline': [previous.isoformat() if previous else None, deadline.isoformat()],
            },
        )

    return requisition
