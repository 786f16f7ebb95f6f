"""
Committee scoring.

Raw criterion scores become a weighted item score, item scores average into
the scorer's score, and scorers' scores average into the quotation's
``final_average_score``. Aggregates are always recomputed from the stored
rows, never adjusted incrementally.
"""
import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from .audit import log_action
from .collaborators import authorize
from .conf import engine_setting
from .exceptions import AccessDenied, MissingCriteria, NotFound, StateConflict, ValidationError
from .models import (
    CommitteeAssignment, CommitteeScoreSet, CriterionScore, EvaluationCriteria, ItemScore,
    Quotation, QuotationStatus, User,
)
from .utils import HUNDRED, as_decimal, as_uuid, mean, quantize_score

logger = logging.getLogger(__name__)


def compute_item_score(evaluation, raw_scores):
    """Weighted score of one item.

    ``raw_scores`` maps criterion -> raw score; unscored criteria add nothing.
    """
    total = Decimal('0')
    for criterion, raw in raw_scores.items():
        category_weight = evaluation.category_weight(criterion.category)
        total += raw * (criterion.weight / HUNDRED) * (category_weight / HUNDRED)
    return quantize_score(total)


def compute_scorer_score(item_final_scores, item_count):
    """Mean over every item of the quotation; items left unscored count as zero"""
    if not item_count:
        return Decimal('0')
    return quantize_score(sum(item_final_scores, Decimal('0')) / item_count)


def recompute_quotation_score(quotation):
    """Re-tally ``final_average_score`` from every score set of the quotation"""
    scores = quotation.score_sets.values_list('final_score', flat=True)
    quotation.final_average_score = quantize_score(mean(scores))
    quotation.save(update_fields=['final_average_score', 'updated_at'])
    return quotation.final_average_score


def _validate_item_scores(item_scores, quote_items, criteria_by_id):
    """Resolve request payload to [(quote_item, {criterion: (score, comment)})]"""
    if not isinstance(item_scores, (list, tuple)):
        raise ValidationError({'item_scores': ['Expected a list of item scores.']})

    scale_max = Decimal(str(engine_setting('SCORE_SCALE_MAX')))
    errors = {}
    resolved = []
    seen_items = set()

    for index, entry in enumerate(item_scores):
        path = f'item_scores[{index}]'
        if not isinstance(entry, dict):
            errors[path] = ['Expected an object.']
            continue

        item_id = as_uuid(entry.get('quote_item_id'))
        quote_item = quote_items.get(item_id)
        if quote_item is None:
            errors[f'{path}.quote_item_id'] = ['Item does not belong to this quotation.']
            continue
        if item_id in seen_items:
            errors[f'{path}.quote_item_id'] = ['Item is scored more than once.']
            continue
        seen_items.add(item_id)

        entries = entry.get('criterion_scores') or []
        if not isinstance(entries, (list, tuple)):
            errors[f'{path}.criterion_scores'] = ['Expected a list of criterion scores.']
            continue

        raw_scores = {}
        for c_index, c_entry in enumerate(entries):
            c_path = f'{path}.criterion_scores[{c_index}]'
            if not isinstance(c_entry, dict):
                errors[c_path] = ['Expected an object.']
                continue
            criterion = criteria_by_id.get(as_uuid(c_entry.get('criterion_id')))
            if criterion is None:
                errors[f'{c_path}.criterion_id'] = ['Unknown criterion for this requisition.']
                continue
            if criterion in raw_scores:
                errors[f'{c_path}.criterion_id'] = ['Criterion is scored more than once for this item.']
                continue
            score = as_decimal(c_entry.get('score'))
            if score is None or score < 0 or score > scale_max:
                errors[f'{c_path}.score'] = [f'Score must be a number between 0 and {scale_max}.']
                continue
            raw_scores[criterion] = (score, str(c_entry.get('comment') or ''))

        resolved.append((quote_item, raw_scores))

    if errors:
        raise ValidationError(errors)
    return resolved


def submit_scores(quotation_id, scorer_id, item_scores, comment=''):
    """Record (or replace) one committee member's scores for a quotation"""
    scorer = User.objects.filter(pk=scorer_id).first()
    if scorer is None:
        raise NotFound('Scorer not found.', scorer_id=scorer_id)
    authorize(scorer, 'submit_scores')

    quotation = Quotation.objects.select_related('requisition').filter(pk=quotation_id).first()
    if quotation is None:
        raise NotFound('Quotation not found.', quotation_id=quotation_id)

    requisition = quotation.requisition
    assignment = CommitteeAssignment.objects.filter(requisition=requisition, member=scorer).first()
    if assignment is None:
        raise AccessDenied(
            'Only members of the evaluation committee may score this requisition.',
            requisition=requisition.requisition_number,
        )
    if requisition.scoring_deadline and timezone.now() > requisition.scoring_deadline:
        raise StateConflict(
            'The scoring deadline has passed.',
            scoring_deadline=requisition.scoring_deadline.isoformat(),
        )

    evaluation = EvaluationCriteria.objects.filter(requisition_id=quotation.requisition_id).first()
    if evaluation is None:
        raise MissingCriteria(requisition=requisition.requisition_number)

    quote_items = {item.id: item for item in quotation.items.all()}
    criteria_by_id = {criterion.id: criterion for criterion in evaluation.criteria.all()}
    resolved = _validate_item_scores(item_scores, quote_items, criteria_by_id)

    with transaction.atomic():
        # serialise recomputes of the same quotation
        quotation = Quotation.objects.select_for_update().get(pk=quotation.pk)
        if quotation.status != QuotationStatus.SUBMITTED:
            raise StateConflict(
                'Scores can only be submitted while the quotation is under evaluation.',
                quotation=quotation.quotation_number, status=quotation.status,
            )

        score_set, created = CommitteeScoreSet.objects.get_or_create(
            quotation=quotation,
            scorer=scorer,
            defaults={'comment': comment or ''},
        )
        score_set.item_scores.all().delete()

        item_finals = []
        for quote_item, raw_scores in resolved:
            final = compute_item_score(evaluation, {c: score for c, (score, _) in raw_scores.items()})
            item_score = ItemScore.objects.create(
                score_set=score_set,
                quote_item=quote_item,
                final_score=final,
            )
            CriterionScore.objects.bulk_create([
                CriterionScore(item_score=item_score, criterion=criterion, score=score, comment=note)
                for criterion, (score, note) in raw_scores.items()
            ])
            item_finals.append(final)

        score_set.comment = comment or ''
        score_set.final_score = compute_scorer_score(item_finals, len(quote_items))
        score_set.save(update_fields=['comment', 'final_score', 'updated_at'])

        assignment.last_scored_at = timezone.now()
        assignment.save(update_fields=['last_scored_at'])

        average = recompute_quotation_score(quotation)

        log_action(
            scorer, 'SCORE_QUOTE', 'Quotation', quotation.id,
            object_repr=str(quotation),
            details=f'{"Scored" if created else "Re-scored"} quotation {quotation.quotation_number}',
            changes={
                'score_set': str(score_set.id),
                'final_score': str(score_set.final_score),
                'final_average_score': str(average),
            },
        )

    logger.info(
        "%s scored %s: %s (average %s)",
        scorer.username, quotation.quotation_number, score_set.final_score, average,
    )
    return score_set
