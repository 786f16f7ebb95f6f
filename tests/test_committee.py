"""Evaluation committee assignment and scoring deadline tests."""
from datetime import timedelta

import pytest
from django.utils import timezone

from procurement.committee import assign_committee, extend_scoring_deadline
from procurement.exceptions import AccessDenied, StateConflict, ValidationError
from procurement.models import (
    AuditLog, CommitteeAssignment, Notification, Requisition, RequisitionStatus,
)
from procurement.scoring import submit_scores


def _scores(quotation, criterion):
    return [
        {
            'quote_item_id': str(item.id),
            'criterion_scores': [{'criterion_id': str(criterion('Quality').id), 'score': 80}],
        }
        for item in quotation.items.all()
    ]


def _in(days):
    return (timezone.now() + timedelta(days=days)).replace(microsecond=0)


@pytest.mark.django_db
class TestAssignCommittee:

    def test_members_seated_and_audited(self, requisition, officer, scorer, second_scorer):
        deadline = _in(5)

        seats = assign_committee(
            requisition.id, officer, [str(scorer.id), str(second_scorer.id)],
            scoring_deadline=deadline.isoformat(), committee_name='Lab panel',
        )
        requisition.refresh_from_db()

        assert {seat.member for seat in seats} == {scorer, second_scorer}
        assert requisition.scoring_deadline == deadline
        assert requisition.committee_name == 'Lab panel'
        entry = AuditLog.objects.get(action='ASSIGN_COMMITTEE')
        assert entry.user == officer
        assert sorted(entry.changes['added']) == ['scorer', 'scorer2']

    def test_members_are_notified(self, requisition, officer, scorer, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            assign_committee(requisition.id, officer, [str(scorer.id)])

        assert Notification.objects.filter(user=scorer, title='Evaluation Committee Assignment').exists()

    def test_reassignment_keeps_members_who_scored(self, requisition, officer, scorer, second_scorer, make_user):
        third = make_user('scorer3', 'COMMITTEE_MEMBER')
        assign_committee(requisition.id, officer, [str(scorer.id), str(second_scorer.id)])
        CommitteeAssignment.objects.filter(member=scorer).update(last_scored_at=timezone.now())

        assign_committee(requisition.id, officer, [str(third.id)])

        seats = CommitteeAssignment.objects.filter(requisition=requisition)
        assert set(seats.values_list('member__username', flat=True)) == {'scorer', 'scorer3'}
        removed = [entry.changes['removed'] for entry in AuditLog.objects.filter(action='ASSIGN_COMMITTEE')]
        assert sorted(removed) == [[], ['scorer2']]

    def test_member_must_be_able_to_score(self, requisition, officer, make_vendor):
        vendor_user = make_vendor('Acme').users.get()

        with pytest.raises(ValidationError) as exc:
            assign_committee(requisition.id, officer, [str(vendor_user.id), 'not-a-uuid'])

        assert set(exc.value.errors) == {'member_ids[0]', 'member_ids[1]'}
        assert not CommitteeAssignment.objects.exists()

    def test_past_deadline_rejected(self, requisition, officer, scorer):
        with pytest.raises(ValidationError) as exc:
            assign_committee(requisition.id, officer, [str(scorer.id)], scoring_deadline=_in(-1).isoformat())
        assert 'scoring_deadline' in exc.value.errors

    def test_only_open_requisitions(self, requisition, officer, scorer):
        Requisition.objects.filter(pk=requisition.pk).update(status=RequisitionStatus.PENDING_MANAGERIAL_APPROVAL)

        with pytest.raises(StateConflict):
            assign_committee(requisition.id, officer, [str(scorer.id)])

    def test_scorer_cannot_assign(self, requisition, scorer):
        with pytest.raises(AccessDenied):
            assign_committee(requisition.id, scorer, [str(scorer.id)])


@pytest.mark.django_db
class TestScoringMembership:

    def test_unassigned_scorer_refused(self, criteria, criterion, make_quotation, scorer):
        quotation = make_quotation()

        with pytest.raises(AccessDenied):
            submit_scores(quotation.id, scorer.id, _scores(quotation, criterion))
        assert not quotation.score_sets.exists()

    def test_assigned_scorer_recorded(self, criteria, criterion, make_quotation, scorer, committee):
        quotation = make_quotation()

        submit_scores(quotation.id, scorer.id, _scores(quotation, criterion))

        seat = CommitteeAssignment.objects.get(member=scorer)
        assert seat.has_scored
        assert not CommitteeAssignment.objects.get(member__username='scorer2').has_scored

    def test_member_of_another_requisition_refused(self, criteria, criterion, make_quotation, scorer, officer):
        other = Requisition.objects.create(title='Office chairs', requested_by=officer,
                                           status=RequisitionStatus.RFQ_IN_PROGRESS)
        CommitteeAssignment.objects.create(requisition=other, member=scorer)
        quotation = make_quotation()

        with pytest.raises(AccessDenied):
            submit_scores(quotation.id, scorer.id, _scores(quotation, criterion))

    def test_scores_refused_after_deadline(self, requisition, criteria, criterion, make_quotation, scorer, committee):
        Requisition.objects.filter(pk=requisition.pk).update(scoring_deadline=timezone.now() - timedelta(minutes=1))
        quotation = make_quotation()

        with pytest.raises(StateConflict):
            submit_scores(quotation.id, scorer.id, _scores(quotation, criterion))
        assert not quotation.score_sets.exists()


@pytest.mark.django_db
class TestExtendScoringDeadline:

    def test_extension_reopens_scoring(self, requisition, criteria, criterion, make_quotation,
                                       scorer, committee, officer):
        Requisition.objects.filter(pk=requisition.pk).update(scoring_deadline=timezone.now() - timedelta(hours=1))
        quotation = make_quotation()
        new_deadline = _in(2)

        extend_scoring_deadline(requisition.id, officer, new_deadline.isoformat())
        submit_scores(quotation.id, scorer.id, _scores(quotation, criterion))

        requisition.refresh_from_db()
        assert requisition.scoring_deadline == new_deadline
        entry = AuditLog.objects.get(action='EXTEND_SCORING_DEADLINE')
        assert entry.changes['scoring_deadline'][1] == new_deadline.isoformat()

    def test_deadline_required(self, requisition, officer):
        with pytest.raises(ValidationError) as exc:
            extend_scoring_deadline(requisition.id, officer, None)
        assert 'new_deadline' in exc.value.errors

    def test_officer_only(self, requisition, scorer):
        with pytest.raises(AccessDenied):
            extend_scoring_deadline(requisition.id, scorer, _in(1).isoformat())
