"""Shared fixtures for the award and settlement engine tests."""
from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from procurement.models import (
    ApprovalThreshold, CommitteeAssignment, EvaluationCriteria, EvaluationCriterion, PurchaseOrder,
    PurchaseOrderItem, Quotation, QuoteItem, Requisition, RequisitionItem,
    RequisitionStatus, User, Vendor,
)


@pytest.fixture
def make_user(db):
    def _make(username, role, **extra):
        return User.objects.create_user(username=username, password='pass1234', role=role, **extra)
    return _make


@pytest.fixture
def officer(make_user):
    return make_user('officer', 'PROCUREMENT')


@pytest.fixture
def manager(make_user):
    return make_user('manager', 'PROCUREMENT_MANAGER')


@pytest.fixture
def scorer(make_user):
    return make_user('scorer', 'COMMITTEE_MEMBER')


@pytest.fixture
def second_scorer(make_user):
    return make_user('scorer2', 'COMMITTEE_MEMBER')


@pytest.fixture
def finance(make_user):
    return make_user('finance', 'FINANCE')


@pytest.fixture
def stores(make_user):
    return make_user('stores', 'STORES')


@pytest.fixture
def make_vendor(make_user):
    """Vendor plus its portal user"""
    def _make(name):
        vendor = Vendor.objects.create(name=name, email=f'{name.lower()}@example.com')
        make_user(f'{name.lower()}_user', 'VENDOR', vendor=vendor)
        return vendor
    return _make


@pytest.fixture
def requisition(db, officer):
    req = Requisition.objects.create(
        title='Laboratory equipment',
        requested_by=officer,
        status=RequisitionStatus.RFQ_IN_PROGRESS,
    )
    RequisitionItem.objects.create(requisition=req, name='Microscope', quantity=Decimal('2'))
    RequisitionItem.objects.create(requisition=req, name='Centrifuge', quantity=Decimal('1'))
    return req


@pytest.fixture
def committee(requisition, scorer, second_scorer, officer):
    """Both scorers seated on the requisition's evaluation committee"""
    return [
        CommitteeAssignment.objects.create(requisition=requisition, member=member, assigned_by=officer)
        for member in (scorer, second_scorer)
    ]


@pytest.fixture
def criteria(requisition):
    """60% financial (Price 70, Payment terms 30), 40% technical (Quality 100)"""
    evaluation = EvaluationCriteria.objects.create(
        requisition=requisition,
        financial_weight=Decimal('60'),
        technical_weight=Decimal('40'),
    )
    EvaluationCriterion.objects.create(
        evaluation_criteria=evaluation, category=EvaluationCriterion.FINANCIAL,
        name='Price', weight=Decimal('70'), sequence=1,
    )
    EvaluationCriterion.objects.create(
        evaluation_criteria=evaluation, category=EvaluationCriterion.FINANCIAL,
        name='Payment terms', weight=Decimal('30'), sequence=2,
    )
    EvaluationCriterion.objects.create(
        evaluation_criteria=evaluation, category=EvaluationCriterion.TECHNICAL,
        name='Quality', weight=Decimal('100'), sequence=1,
    )
    return evaluation


@pytest.fixture
def criterion(criteria):
    """Criterion by name"""
    by_name = {c.name: c for c in criteria.criteria.all()}
    return by_name.__getitem__


@pytest.fixture
def make_quotation(requisition, make_vendor):
    """Quotation with items ``[(name, qty, unit_price, lead_days)]``"""
    counter = {'n': 0}

    def _make(vendor_name=None, score=None, items=None, submitted_offset=0):
        counter['n'] += 1
        vendor = make_vendor(vendor_name or f'Vendor{counter["n"]}')
        quotation = Quotation.objects.create(
            requisition=requisition,
            vendor=vendor,
            submitted_at=timezone.now() - timedelta(hours=100) + timedelta(minutes=submitted_offset),
            final_average_score=Decimal(str(score)) if score is not None else Decimal('0'),
        )
        for name, qty, price, lead in items or [('Microscope', 2, '1500.00', 14), ('Centrifuge', 1, '3000.00', 30)]:
            QuoteItem.objects.create(
                quotation=quotation,
                name=name,
                quantity=Decimal(str(qty)),
                unit_price=Decimal(price),
                lead_time_days=lead,
            )
        return quotation
    return _make


@pytest.fixture
def committee_tiers(db):
    """Committee B up to 200000, Committee A above"""
    tier_b = ApprovalThreshold.objects.create(
        name='Committee B',
        min_amount=Decimal('10001'),
        max_amount=Decimal('200000'),
        next_status=RequisitionStatus.PENDING_COMMITTEE_B_REVIEW,
    )
    tier_a = ApprovalThreshold.objects.create(
        name='Committee A',
        min_amount=Decimal('200001'),
        max_amount=None,
        next_status=RequisitionStatus.PENDING_COMMITTEE_A_RECOMMENDATION,
    )
    return tier_b, tier_a


@pytest.fixture
def purchase_order(make_quotation, officer):
    """Issued PO with a single line: Widget, 10 @ 5.00"""
    quotation = make_quotation('Acme', items=[('Widget', 10, '5.00', 7)])
    quotation.status = 'ACCEPTED'
    quotation.save()
    po = PurchaseOrder.objects.create(
        requisition=quotation.requisition,
        quotation=quotation,
        vendor=quotation.vendor,
        total_amount=Decimal('50.00'),
        created_by=officer,
    )
    PurchaseOrderItem.objects.create(
        purchase_order=po,
        quote_item=quotation.items.get(),
        name='Widget',
        quantity=Decimal('10'),
        unit_price=Decimal('5.00'),
    )
    return po
