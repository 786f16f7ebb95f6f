"""Committee scoring tests.

Criteria fixture: financial 60% (Price 70, Payment terms 30), technical 40%
(Quality 100). Raw scores Price 80 / Payment terms 50 / Quality 90 give
80*.7*.6 + 50*.3*.6 + 90*1*.4 = 78.6 for one item.
"""
import uuid
from decimal import Decimal

import pytest

from procurement.exceptions import AccessDenied, MissingCriteria, StateConflict, ValidationError
from procurement.models import (
    AuditLog, CommitteeScoreSet, CriterionScore, EvaluationCriterion, ItemScore,
)
from procurement.scoring import compute_item_score, recompute_quotation_score, submit_scores

pytestmark = pytest.mark.usefixtures('committee')


def _scores(item, criterion, price=80, terms=50, quality=90):
    return {
        'quote_item_id': str(item.id),
        'criterion_scores': [
            {'criterion_id': str(criterion('Price').id), 'score': price},
            {'criterion_id': str(criterion('Payment terms').id), 'score': terms},
            {'criterion_id': str(criterion('Quality').id), 'score': quality, 'comment': 'Solid build'},
        ],
    }


@pytest.mark.django_db
class TestComputeItemScore:

    def test_weighted_sum(self, criteria, criterion):
        raw = {criterion('Price'): Decimal('80'), criterion('Payment terms'): Decimal('50'),
               criterion('Quality'): Decimal('90')}
        assert compute_item_score(criteria, raw) == Decimal('78.6000')

    def test_unscored_criteria_contribute_nothing(self, criteria, criterion):
        assert compute_item_score(criteria, {criterion('Quality'): Decimal('50')}) == Decimal('20.0000')

    def test_category_weight_follows_criterion(self, criteria):
        lone = EvaluationCriterion(category=EvaluationCriterion.FINANCIAL, weight=Decimal('100'))
        assert compute_item_score(criteria, {lone: Decimal('100')}) == Decimal('60.0000')


@pytest.mark.django_db
class TestSubmitScores:

    def test_scores_every_item(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        items = list(quotation.items.all())

        score_set = submit_scores(quotation.id, scorer.id, [_scores(i, criterion) for i in items], 'Good offer')

        quotation.refresh_from_db()
        assert score_set.final_score == Decimal('78.6000')
        assert score_set.comment == 'Good offer'
        assert quotation.final_average_score == Decimal('78.6000')
        assert ItemScore.objects.filter(score_set=score_set).count() == 2
        assert CriterionScore.objects.filter(item_score__score_set=score_set).count() == 6

    def test_unscored_items_count_as_zero(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        first = quotation.items.first()

        score_set = submit_scores(quotation.id, scorer.id, [_scores(first, criterion)])

        assert score_set.final_score == Decimal('39.3000')

    def test_average_over_all_scorers(self, criteria, criterion, make_quotation, scorer, second_scorer):
        quotation = make_quotation()
        items = list(quotation.items.all())

        submit_scores(quotation.id, scorer.id, [_scores(i, criterion) for i in items])
        submit_scores(quotation.id, second_scorer.id,
                      [_scores(i, criterion, price=100, terms=100, quality=100) for i in items])

        quotation.refresh_from_db()
        assert quotation.final_average_score == Decimal('89.3000')

    def test_resubmission_is_idempotent(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        payload = [_scores(i, criterion) for i in quotation.items.all()]

        submit_scores(quotation.id, scorer.id, payload)
        quotation.refresh_from_db()
        first_average = quotation.final_average_score

        submit_scores(quotation.id, scorer.id, payload)
        quotation.refresh_from_db()

        assert quotation.final_average_score == first_average
        assert CommitteeScoreSet.objects.filter(quotation=quotation).count() == 1
        assert ItemScore.objects.filter(score_set__quotation=quotation).count() == 2

    def test_resubmission_replaces_prior_scores(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        items = list(quotation.items.all())

        submit_scores(quotation.id, scorer.id, [_scores(i, criterion) for i in items])
        score_set = submit_scores(quotation.id, scorer.id, [_scores(items[0], criterion)])

        assert score_set.final_score == Decimal('39.3000')
        assert ItemScore.objects.filter(score_set=score_set).count() == 1

    def test_each_submission_is_audited(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        payload = [_scores(i, criterion) for i in quotation.items.all()]

        submit_scores(quotation.id, scorer.id, payload)
        submit_scores(quotation.id, scorer.id, payload)

        entries = AuditLog.objects.filter(action='SCORE_QUOTE', object_id=str(quotation.id))
        assert entries.count() == 2
        assert all(entry.user == scorer for entry in entries)

    def test_missing_criteria(self, make_quotation, scorer):
        quotation = make_quotation()
        with pytest.raises(MissingCriteria):
            submit_scores(quotation.id, scorer.id, [])

    def test_unknown_item_reports_field_path(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        other = make_quotation()

        with pytest.raises(ValidationError) as exc:
            submit_scores(quotation.id, scorer.id, [_scores(other.items.first(), criterion)])

        assert 'item_scores[0].quote_item_id' in exc.value.errors
        assert not CommitteeScoreSet.objects.exists()

    def test_duplicate_item_rejected(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        item = quotation.items.first()

        with pytest.raises(ValidationError) as exc:
            submit_scores(quotation.id, scorer.id, [_scores(item, criterion), _scores(item, criterion)])
        assert 'item_scores[1].quote_item_id' in exc.value.errors

    def test_score_out_of_range(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()

        with pytest.raises(ValidationError) as exc:
            submit_scores(quotation.id, scorer.id, [_scores(quotation.items.first(), criterion, price=101)])
        assert 'item_scores[0].criterion_scores[0].score' in exc.value.errors

    def test_unknown_criterion(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        payload = _scores(quotation.items.first(), criterion)
        payload['criterion_scores'][1]['criterion_id'] = str(uuid.uuid4())

        with pytest.raises(ValidationError) as exc:
            submit_scores(quotation.id, scorer.id, [payload])
        assert 'item_scores[0].criterion_scores[1].criterion_id' in exc.value.errors

    def test_refused_after_award(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()
        quotation.status = 'AWARDED'
        quotation.save()

        with pytest.raises(StateConflict):
            submit_scores(quotation.id, scorer.id, [_scores(quotation.items.first(), criterion)])

    def test_vendor_cannot_score(self, criteria, criterion, make_quotation):
        quotation = make_quotation('Acme')
        vendor_user = quotation.vendor.users.get()

        with pytest.raises(AccessDenied):
            submit_scores(quotation.id, vendor_user.id, [_scores(quotation.items.first(), criterion)])


@pytest.mark.django_db
class TestRecompute:

    def test_zero_score_sets_is_zero(self, make_quotation):
        quotation = make_quotation(score=55)
        assert recompute_quotation_score(quotation) == Decimal('0')

    def test_zero_items_scores_zero(self, criteria, make_quotation, scorer):
        quotation = make_quotation()
        quotation.items.all().delete()

        score_set = submit_scores(quotation.id, scorer.id, [])

        assert score_set.final_score == Decimal('0')
