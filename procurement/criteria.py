"""
Evaluation criteria of a requisition.

A schema splits 100% between the financial and technical categories and,
inside each category, splits another 100% across its criteria.
"""
import logging
from decimal import Decimal

from django.db import transaction

from .audit import log_action
from .collaborators import authorize
from .exceptions import NotFound, StateConflict, ValidationError
from .models import (
    CommitteeScoreSet, EvaluationCriteria, EvaluationCriterion, Requisition,
)
from .utils import HUNDRED, as_decimal

logger = logging.getLogger(__name__)


def weight_errors(financial_weight, technical_weight, financial_weights=None, technical_weights=None):
    """Field -> messages for every broken weight rule; empty when the schema is sound.

    Pass ``None`` for a criterion list to skip its checks.
    """
    errors = {}

    for field, value in (('financial_weight', financial_weight), ('technical_weight', technical_weight)):
        if value is None:
            errors[field] = ['A numeric weight is required.']
        elif value < 0 or value > HUNDRED:
            errors[field] = ['Weight must be between 0 and 100.']

    if not errors and financial_weight + technical_weight != HUNDRED:
        errors['weights'] = [
            f'Financial and technical weights must total 100 '
            f'(got {financial_weight + technical_weight}).'
        ]

    for field, weights in (('financial_criteria', financial_weights), ('technical_criteria', technical_weights)):
        if weights is None:
            continue
        if not weights:
            errors[field] = ['At least one criterion is required.']
        elif any(w is None or w < 0 for w in weights):
            errors[field] = ['Criterion weights must be non-negative numbers.']
        else:
            total = sum(weights, Decimal('0'))
            if total != HUNDRED:
                errors[field] = [f'Criterion weights must total 100 (got {total}).']

    return errors


def _parse_criteria(field, entries, errors):
    if not isinstance(entries, (list, tuple)):
        errors[field] = ['Expected a list of criteria.']
        return None

    parsed = []
    for index, entry in enumerate(entries):
        path = f'{field}[{index}]'
        if not isinstance(entry, dict):
            errors[path] = ['Expected an object with name and weight.']
            continue
        name = str(entry.get('name') or '').strip()
        weight = as_decimal(entry.get('weight'))
        if not name:
            errors[f'{path}.name'] = ['Name is required.']
        if weight is None:
            errors[f'{path}.weight'] = ['A numeric weight is required.']
        parsed.append({'name': name, 'weight': weight})
    return parsed


def define_criteria(requisition_id, financial_weight, technical_weight,
                    financial_criteria, technical_criteria, actor):
    """Replace the evaluation schema of a requisition"""
    authorize(actor, 'define_criteria')

    errors = {}
    fin_weight = as_decimal(financial_weight)
    tech_weight = as_decimal(technical_weight)
    financial = _parse_criteria('financial_criteria', financial_criteria, errors)
    technical = _parse_criteria('technical_criteria', technical_criteria, errors)

    if not errors:
        errors.update(weight_errors(
            fin_weight,
            tech_weight,
            [c['weight'] for c in financial],
            [c['weight'] for c in technical],
        ))
    else:
        errors.update(weight_errors(fin_weight, tech_weight))
    if errors:
        raise ValidationError(errors)

    with transaction.atomic():
        requisition = Requisition.objects.select_for_update().filter(pk=requisition_id).first()
        if requisition is None:
            raise NotFound('Requisition not found.', requisition_id=requisition_id)

        if CommitteeScoreSet.objects.filter(quotation__requisition=requisition).exists():
            raise StateConflict(
                'Criteria cannot change once committee scoring has started.',
                requisition=requisition.requisition_number,
            )

        EvaluationCriteria.objects.filter(requisition=requisition).delete()
        criteria = EvaluationCriteria.objects.create(
            requisition=requisition,
            financial_weight=fin_weight,
            technical_weight=tech_weight,
        )

        rows = []
        for category, entries in ((EvaluationCriterion.FINANCIAL, financial),
                                  (EvaluationCriterion.TECHNICAL, technical)):
            for sequence, entry in enumerate(entries, 1):
                rows.append(EvaluationCriterion(
                    evaluation_criteria=criteria,
                    category=category,
                    name=entry['name'],
                    weight=entry['weight'],
                    sequence=sequence,
                ))
        EvaluationCriterion.objects.bulk_create(rows)

        log_action(
            actor, 'DEFINE_CRITERIA', 'EvaluationCriteria', criteria.id,
            object_repr=str(requisition),
            details=f'Evaluation criteria defined for {requisition.requisition_number}',
            changes={
                'financial_weight': str(fin_weight),
                'technical_weight': str(tech_weight),
                'financial_criteria': [{'name': c['name'], 'weight': str(c['weight'])} for c in financial],
                'technical_criteria': [{'name': c['name'], 'weight': str(c['weight'])} for c in technical],
            },
        )

    logger.info("criteria defined for %s (%s/%s)", requisition.requisition_number, fin_weight, tech_weight)
    return criteria
