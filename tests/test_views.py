"""JSON endpoint tests."""
import json
import uuid

import pytest
from django.urls import reverse

from procurement import views
from procurement.models import PurchaseOrder, Quotation, QuotationStatus


def _post(client, url, payload=None):
    return client.post(url, data=json.dumps(payload or {}), content_type='application/json')


@pytest.fixture
def ranked(make_quotation):
    return [make_quotation(f'Bidder{score}', score=score, submitted_offset=i) for i, score in enumerate([90, 80, 70])]


@pytest.mark.django_db
class TestAwardEndpoints:

    def test_finalize_award(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)

        response = _post(client, reverse('finalize_award', args=[requisition.id]))
        body = response.json()

        assert response.status_code == 200
        assert body['success'] is True
        assert [q['status'] for q in body['data']['ranking']] == ['AWARDED', 'STANDBY', 'STANDBY']
        assert body['data']['routing']['next_approver_id'] == str(manager.id)

    def test_award_in_progress_is_409(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)
        _post(client, reverse('finalize_award', args=[requisition.id]))

        response = _post(client, reverse('finalize_award', args=[requisition.id]))

        assert response.status_code == 409
        body = response.json()
        assert body['success'] is False
        assert body['code'] == 'award_in_progress'
        assert body['error'] == 'An award is already in progress for this requisition.'
        assert set(body['context']) == {'quotation', 'status'}

    def test_vendor_accepts(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)
        _post(client, reverse('finalize_award', args=[requisition.id]))
        client.force_login(manager)
        approval = _post(client, reverse('approve_award', args=[requisition.id]), {'comment': 'Approved.'})
        assert approval.json()['data']['requisition_status'] == 'VENDOR_NOTIFIED'

        client.force_login(ranked[0].vendor.users.get())
        response = _post(client, reverse('respond_to_award', args=[ranked[0].id]), {'action': 'accept'})
        body = response.json()

        assert response.status_code == 200
        assert body['outcome'] == 'accepted'
        assert body['purchase_order']['created'] is True
        assert PurchaseOrder.objects.filter(quotation=ranked[0]).exists()

    def test_response_before_approval_is_409(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)
        _post(client, reverse('finalize_award', args=[requisition.id]))

        client.force_login(ranked[0].vendor.users.get())
        response = _post(client, reverse('respond_to_award', args=[ranked[0].id]), {'action': 'accept'})

        assert response.status_code == 409
        assert not PurchaseOrder.objects.exists()

    def test_only_current_approver_may_approve(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)
        _post(client, reverse('finalize_award', args=[requisition.id]))

        response = _post(client, reverse('approve_award', args=[requisition.id]))

        assert response.status_code == 403

    def test_non_vendor_cannot_respond(self, client, officer, ranked):
        client.force_login(officer)
        response = _post(client, reverse('respond_to_award', args=[ranked[0].id]), {'action': 'accept'})
        assert response.status_code == 403

    def test_validation_errors_carry_fields(self, client, scorer, committee, criteria, ranked):
        client.force_login(scorer)
        payload = {'item_scores': [{'quote_item_id': str(uuid.uuid4()), 'criterion_scores': []}]}

        response = _post(client, reverse('submit_scores', args=[ranked[0].id]), payload)
        body = response.json()

        assert response.status_code == 400
        assert body['code'] == 'validation_error'
        assert 'item_scores[0].quote_item_id' in body['fields']

    def test_invalid_json(self, client, officer, requisition):
        client.force_login(officer)
        response = client.post(
            reverse('finalize_award', args=[requisition.id]), data='{not json', content_type='application/json',
        )
        assert response.status_code == 400

    def test_change_award(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)
        _post(client, reverse('finalize_award', args=[requisition.id]))

        response = _post(client, reverse('change_award', args=[requisition.id]))

        assert response.status_code == 200
        assert response.json()['data']['requisition_status'] == 'APPROVED'
        assert not Quotation.objects.exclude(status=QuotationStatus.SUBMITTED).exists()

    def test_promote_standby(self, client, officer, manager, requisition, ranked):
        client.force_login(officer)
        _post(client, reverse('finalize_award', args=[requisition.id]))

        response = _post(client, reverse('promote_standby', args=[requisition.id]), {
            'rank': 2, 'award_response_deadline': '2031-01-01T12:00:00+00:00',
        })

        assert response.status_code == 200
        assert response.json()['data']['quotation_number'] == ranked[1].quotation_number

    def test_assign_committee(self, client, officer, scorer, requisition):
        client.force_login(officer)

        response = _post(client, reverse('assign_committee', args=[requisition.id]), {
            'member_ids': [str(scorer.id)],
            'scoring_deadline': '2031-01-01T12:00:00+00:00',
            'committee_name': 'Lab panel',
        })

        assert response.status_code == 200
        assert response.json()['data'] == [{'member_id': str(scorer.id), 'username': 'scorer', 'has_scored': False}]

    def test_extend_scoring_deadline(self, client, officer, requisition):
        client.force_login(officer)

        response = _post(client, reverse('extend_scoring_deadline', args=[requisition.id]),
                         {'new_deadline': '2031-01-01T12:00:00+00:00'})

        assert response.status_code == 200
        assert response.json()['data']['scoring_deadline'] == '2031-01-01T12:00:00+00:00'

    def test_unassigned_scorer_is_403(self, client, scorer, criteria, ranked):
        client.force_login(scorer)

        response = _post(client, reverse('submit_scores', args=[ranked[0].id]), {'item_scores': []})

        assert response.status_code == 403

    def test_route(self, client, officer, requisition, committee_tiers):
        client.force_login(officer)
        response = _post(client, reverse('route_for_approval', args=[requisition.id]), {'total_award_value': 200000})

        assert response.json()['data']['next_status'] == 'PENDING_COMMITTEE_B_REVIEW'

    def test_anonymous_redirected_to_login(self, client, requisition):
        response = _post(client, reverse('finalize_award', args=[requisition.id]))
        assert response.status_code == 302

    def test_get_not_allowed(self, client, officer, requisition):
        client.force_login(officer)
        assert client.get(reverse('finalize_award', args=[requisition.id])).status_code == 405


@pytest.mark.django_db
class TestMatchEndpoints:

    def test_pending_match(self, client, finance, purchase_order):
        client.force_login(finance)

        response = client.get(reverse('purchase_order_match', args=[purchase_order.id]))
        body = response.json()

        assert response.status_code == 200
        assert body['data']['status'] == 'PENDING'
        assert body['data']['po_total'] == '50.00'

    def test_unknown_purchase_order(self, client, finance):
        client.force_login(finance)
        response = client.get(reverse('purchase_order_match', args=[uuid.uuid4()]))
        assert response.status_code == 404

    def test_vendor_cannot_view_match(self, client, purchase_order):
        client.force_login(purchase_order.vendor.users.get())
        response = client.get(reverse('purchase_order_match', args=[purchase_order.id]))
        assert response.status_code == 403

    def test_resolve_requires_mismatch(self, client, finance, purchase_order):
        client.force_login(finance)
        response = _post(client, reverse('resolve_mismatch', args=[purchase_order.id]), {'reason': 'ok'})
        assert response.status_code == 409

    def test_export(self, client, finance, purchase_order):
        client.force_login(finance)

        response = client.get(reverse('export_match_excel', args=[purchase_order.id]))

        assert response.status_code == 200
        assert response['Content-Type'] == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        assert purchase_order.po_number in response['Content-Disposition']

    def test_internal_errors_are_opaque(self, client, finance, purchase_order, monkeypatch):
        def broken(po):
            raise RuntimeError('secret connection string')
        monkeypatch.setattr(views, 'match', broken)
        client.force_login(finance)

        response = client.get(reverse('purchase_order_match', args=[purchase_order.id]))
        body = response.json()

        assert response.status_code == 500
        assert 'secret' not in json.dumps(body)
        assert len(body['correlation_id']) == 32
