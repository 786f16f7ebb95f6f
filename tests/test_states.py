"""Quotation state machine, immutable records and engine plumbing."""
from decimal import Decimal

import pytest
from django.db import OperationalError

from procurement.audit import log_action
from procurement.collaborators import InAppNotifier, RoleAccessPolicy
from procurement.exceptions import (
    AccessDenied, ImmutableRecord, InvalidTransition, TransactionTimeout,
)
from procurement.models import (
    AuditLog, Notification, QUOTATION_TRANSITIONS, QuotationStatus, can_transition,
)
from procurement.transactions import bounded_atomic, is_lock_timeout


class TestQuotationTransitions:

    @pytest.mark.parametrize('target', [QuotationStatus.AWARDED, QuotationStatus.STANDBY, QuotationStatus.REJECTED])
    def test_submitted_can_be_ranked(self, target):
        assert can_transition(QuotationStatus.SUBMITTED, target)

    def test_accepted_is_terminal(self):
        assert QUOTATION_TRANSITIONS[QuotationStatus.ACCEPTED] == set()
        assert not can_transition(QuotationStatus.ACCEPTED, QuotationStatus.SUBMITTED)

    def test_declined_only_reopens(self):
        assert can_transition(QuotationStatus.DECLINED, QuotationStatus.SUBMITTED)
        assert not can_transition(QuotationStatus.DECLINED, QuotationStatus.AWARDED)

    def test_standby_promotes(self):
        assert can_transition(QuotationStatus.STANDBY, QuotationStatus.AWARDED)
        assert not can_transition(QuotationStatus.STANDBY, QuotationStatus.ACCEPTED)

    def test_every_status_has_a_row(self):
        assert set(QUOTATION_TRANSITIONS) == set(QuotationStatus)

    def test_plain_strings_from_the_database_are_understood(self):
        assert can_transition('AWARDED', 'ACCEPTED')


@pytest.mark.django_db
class TestTransitionTo:

    def test_invalid_transition_raises_without_change(self, make_quotation):
        quotation = make_quotation()
        quotation.status = QuotationStatus.ACCEPTED
        quotation.save()

        with pytest.raises(InvalidTransition) as exc:
            quotation.transition_to(QuotationStatus.SUBMITTED)

        assert quotation.status == QuotationStatus.ACCEPTED
        assert exc.value.context['target'] == QuotationStatus.SUBMITTED

    def test_valid_transition_sets_rank(self, make_quotation):
        quotation = make_quotation()
        quotation.transition_to(QuotationStatus.STANDBY, rank=2)
        assert (quotation.status, quotation.rank) == (QuotationStatus.STANDBY, 2)

    def test_derived_totals(self, make_quotation):
        quotation = make_quotation(items=[('A', 2, '10.00', 5), ('B', 1, '7.50', 12)])

        assert quotation.total_price == Decimal('27.50')
        assert (quotation.delivery_date - quotation.created_at).days == 12


@pytest.mark.django_db
class TestImmutableRecords:

    def test_audit_entries_cannot_change(self, officer):
        entry = log_action(officer, 'TEST', 'Requisition', 'x')
        entry.details = 'edited'

        with pytest.raises(ImmutableRecord):
            entry.save()
        with pytest.raises(ImmutableRecord):
            entry.delete()
        assert AuditLog.objects.filter(pk=entry.pk, details='').exists()

    def test_purchase_order_items_cannot_change(self, purchase_order):
        item = purchase_order.items.get()
        item.quantity = Decimal('11')

        with pytest.raises(ImmutableRecord):
            item.save()

    def test_document_numbers_are_sequential(self, make_quotation):
        first = make_quotation()
        second = make_quotation()
        assert int(second.quotation_number.rsplit('-', 1)[1]) == int(first.quotation_number.rsplit('-', 1)[1]) + 1


@pytest.mark.django_db
class TestBoundedAtomic:

    def test_lock_errors_become_retryable_timeouts(self):
        with pytest.raises(TransactionTimeout):
            with bounded_atomic('test'):
                raise OperationalError('database is locked')

    def test_other_operational_errors_propagate(self):
        with pytest.raises(OperationalError):
            with bounded_atomic('test'):
                raise OperationalError('no such table: quotations')

    def test_lock_markers(self):
        assert is_lock_timeout(OperationalError('Lock wait timeout exceeded; try restarting transaction'))
        assert is_lock_timeout(OperationalError('canceling statement due to lock timeout'))
        assert not is_lock_timeout(OperationalError('syntax error'))

    def test_budget_overrun_rolls_back(self, officer, settings):
        settings.PROCUREMENT_ENGINE = {**settings.PROCUREMENT_ENGINE, 'STATEMENT_TIMEOUT': -1}

        with pytest.raises(TransactionTimeout):
            with bounded_atomic('test'):
                log_action(officer, 'TEST', 'Requisition', 'x')

        assert not AuditLog.objects.filter(action='TEST').exists()


@pytest.mark.django_db
class TestCollaborators:

    def test_in_app_notifier_reaches_vendor_users(self, purchase_order):
        InAppNotifier().purchase_order_issued(purchase_order)

        notification = Notification.objects.get()
        assert notification.user == purchase_order.vendor.users.get()
        assert purchase_order.po_number in notification.title

    def test_role_policy(self, officer, scorer):
        policy = RoleAccessPolicy()
        policy.check(officer, 'finalize_award')

        with pytest.raises(AccessDenied):
            policy.check(scorer, 'finalize_award')

    def test_unknown_action_denied(self, officer):
        with pytest.raises(AccessDenied):
            RoleAccessPolicy().check(officer, 'launch_rockets')

    def test_deactivated_user_denied(self, officer):
        officer.is_active_user = False
        with pytest.raises(AccessDenied):
            RoleAccessPolicy().check(officer, 'finalize_award')

    def test_superuser_allowed(self, make_user):
        root = make_user('root', 'REQUESTER', is_superuser=True)
        RoleAccessPolicy().check(root, 'configure_thresholds')

    def test_named_approver_only(self, requisition, manager, officer):
        requisition.current_approver = manager
        policy = RoleAccessPolicy()

        policy.check(manager, 'approve_award', requisition)
        with pytest.raises(AccessDenied):
            policy.check(officer, 'approve_award', requisition)
        with pytest.raises(AccessDenied):
            policy.check(manager, 'approve_award')
