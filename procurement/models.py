from django.db import models
from django.contrib.auth.models import AbstractUser
from django.core.exceptions import NON_FIELD_ERRORS, ValidationError as ModelValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils import timezone
from datetime import timedelta
from decimal import Decimal
import uuid

from .exceptions import InvalidTransition, ImmutableRecord


def next_document_number(model, field, prefix, width=6):
    """Next sequential number of the form PREFIX-YYYY-000001"""
    year = timezone.now().year
    stem = f'{prefix}-{year}'
    last = model.objects.filter(
        **{f'{field}__startswith': stem}
    ).order_by(f'-{field}').values_list(field, flat=True).first()

    if last:
        new_number = int(last.split('-')[-1]) + 1
    else:
        new_number = 1

    return f'{stem}-{new_number:0{width}d}'


# ============================================================================
# 1. USER & ROLE MANAGEMENT
# ============================================================================

class User(AbstractUser):
    """User with a procurement role; vendor users are linked to their vendor"""
    ROLE_CHOICES = [
        ('REQUESTER', 'Requester'),
        ('APPROVER', 'Approver'),
        ('PROCUREMENT', 'Procurement Officer'),
        ('PROCUREMENT_MANAGER', 'Procurement Manager'),
        ('COMMITTEE_MEMBER', 'Evaluation Committee Member'),
        ('COMMITTEE_A', 'Committee A Member'),
        ('COMMITTEE_B', 'Committee B Member'),
        ('FINANCE', 'Finance Officer'),
        ('STORES', 'Stores Officer'),
        ('VENDOR', 'Vendor'),
        ('ADMIN', 'System Administrator'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    role = models.CharField(max_length=30, choices=ROLE_CHOICES, default='REQUESTER')
    vendor = models.ForeignKey('Vendor', on_delete=models.SET_NULL, null=True, blank=True, related_name='users')
    is_active_user = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.get_full_name() or self.username} ({self.get_role_display()})"


class AuditLog(models.Model):
    """Append-only audit trail; one row per state transition"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='audit_logs')
    action = models.CharField(max_length=40)
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=255)
    object_repr = models.CharField(max_length=500, blank=True)
    details = models.TextField(blank=True)
    changes = models.JSONField(null=True, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['-timestamp']),
            models.Index(fields=['model_name', 'object_id']),
            models.Index(fields=['action', '-timestamp']),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecord('Audit entries cannot be modified.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecord('Audit entries cannot be deleted.')

    def __str__(self):
        return f"{self.user or 'System'} - {self.action} - {self.model_name} at {self.timestamp}"


# ============================================================================
# 2. VENDORS
# ============================================================================

class Vendor(models.Model):
    """Vendor master record"""
    STATUS_CHOICES = [
        ('PENDING', 'Pending Verification'),
        ('APPROVED', 'Approved'),
        ('SUSPENDED', 'Suspended'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=300)
    contact_person = models.CharField(max_length=200, blank=True)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=50, blank=True)
    address = models.TextField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='APPROVED')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'vendors'
        ordering = ['name']

    def __str__(self):
        return self.name


# ============================================================================
# 3. REQUISITIONS
# ============================================================================

class RequisitionStatus(models.TextChoices):
    DRAFT = 'DRAFT', 'Draft'
    PENDING_APPROVAL = 'PENDING_APPROVAL', 'Pending Approval'
    APPROVED = 'APPROVED', 'Approved'
    REJECTED = 'REJECTED', 'Rejected'
    RFQ_IN_PROGRESS = 'RFQ_IN_PROGRESS', 'RFQ In Progress'
    PENDING_COMMITTEE_B_REVIEW = 'PENDING_COMMITTEE_B_REVIEW', 'Pending Committee B Review'
    PENDING_COMMITTEE_A_RECOMMENDATION = 'PENDING_COMMITTEE_A_RECOMMENDATION', 'Pending Committee A Recommendation'
    PENDING_MANAGERIAL_APPROVAL = 'PENDING_MANAGERIAL_APPROVAL', 'Pending Managerial Approval'
    PENDING_FINAL_APPROVAL = 'PENDING_FINAL_APPROVAL', 'Pending Final Approval'
    VENDOR_NOTIFIED = 'VENDOR_NOTIFIED', 'Vendor Notified'
    PO_CREATED = 'PO_CREATED', 'PO Created'
    FULFILLED = 'FULFILLED', 'Fulfilled'
    CLOSED = 'CLOSED', 'Closed'


# Requisition states that accept vendor quotations
QUOTE_OPEN_STATUSES = (RequisitionStatus.APPROVED, RequisitionStatus.RFQ_IN_PROGRESS)

# Committee review states an approval tier may route to
COMMITTEE_STATUSES = {
    RequisitionStatus.PENDING_COMMITTEE_A_RECOMMENDATION: 'COMMITTEE_A',
    RequisitionStatus.PENDING_COMMITTEE_B_REVIEW: 'COMMITTEE_B',
}

# Review states where a named user signs off before the vendor hears of the award
APPROVAL_STATUSES = (RequisitionStatus.PENDING_MANAGERIAL_APPROVAL, RequisitionStatus.PENDING_FINAL_APPROVAL)

REVIEW_STATUSES = tuple(COMMITTEE_STATUSES) + APPROVAL_STATUSES

# A tier routing straight to VENDOR_NOTIFIED releases the award without review
ROUTABLE_STATUSES = REVIEW_STATUSES + (RequisitionStatus.VENDOR_NOTIFIED,)


class Requisition(models.Model):
    """Purchase requisitions"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requisition_number = models.CharField(max_length=50, unique=True, editable=False)
    title = models.CharField(max_length=300)
    justification = models.TextField(blank=True)

    requested_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='requisitions_created')
    status = models.CharField(max_length=40, choices=RequisitionStatus.choices, default=RequisitionStatus.DRAFT)
    total_price = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))

    current_approver = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='requisitions_awaiting'
    )

    award_response_deadline = models.DateTimeField(null=True, blank=True)
    awarded_quote_item_ids = models.JSONField(default=list, blank=True)

    committee_name = models.CharField(max_length=200, blank=True)
    committee_purpose = models.TextField(blank=True)
    scoring_deadline = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'requisitions'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', '-created_at']),
        ]

    def save(self, *args, **kwargs):
        if not self.requisition_number:
            self.requisition_number = next_document_number(Requisition, 'requisition_number', 'REQ')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.requisition_number} - {self.title}"


class RequisitionItem(models.Model):
    """Line items in a requisition"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requisition = models.ForeignKey(Requisition, on_delete=models.CASCADE, related_name='items')
    name = models.CharField(max_length=300)
    description = models.TextField(blank=True)
    quantity = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    unit_price = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))

    class Meta:
        db_table = 'requisition_items'
        ordering = ['requisition', 'name']

    def __str__(self):
        return f"{self.requisition.requisition_number} - {self.name}"


# ============================================================================
# 4. EVALUATION CRITERIA
# ============================================================================

class EvaluationCriteria(models.Model):
    """Weighted evaluation schema of a requisition"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requisition = models.OneToOneField(Requisition, on_delete=models.CASCADE, related_name='evaluation_criteria')

    financial_weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    technical_weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'evaluation_criteria'
        verbose_name_plural = 'Evaluation Criteria'

    def clean(self):
        from .criteria import weight_errors

        # per-category criterion sums are checked by the admin inline formset
        errors = weight_errors(self.financial_weight, self.technical_weight)
        if 'weights' in errors:
            errors[NON_FIELD_ERRORS] = errors.pop('weights')
        if errors:
            raise ModelValidationError(errors)

    @property
    def financial_criteria(self):
        return self.criteria.filter(category=EvaluationCriterion.FINANCIAL)

    @property
    def technical_criteria(self):
        return self.criteria.filter(category=EvaluationCriterion.TECHNICAL)

    def category_weight(self, category):
        if category == EvaluationCriterion.FINANCIAL:
            return self.financial_weight
        return self.technical_weight

    def __str__(self):
        return f"{self.requisition.requisition_number} - {self.financial_weight}/{self.technical_weight}"


class EvaluationCriterion(models.Model):
    """A financial or technical criterion with its weight inside the category"""
    FINANCIAL = 'FINANCIAL'
    TECHNICAL = 'TECHNICAL'
    CATEGORY_CHOICES = [
        (FINANCIAL, 'Financial'),
        (TECHNICAL, 'Technical'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    evaluation_criteria = models.ForeignKey(EvaluationCriteria, on_delete=models.CASCADE, related_name='criteria')
    category = models.CharField(max_length=20, choices=CATEGORY_CHOICES)
    name = models.CharField(max_length=200)
    weight = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    sequence = models.IntegerField(default=1)

    class Meta:
        db_table = 'evaluation_criteria_items'
        ordering = ['evaluation_criteria', 'category', 'sequence']

    @property
    def is_financial(self):
        return self.category == self.FINANCIAL

    def __str__(self):
        return f"{self.get_category_display()} - {self.name} ({self.weight}%)"


# ============================================================================
# 5. QUOTATIONS & AWARD STATE MACHINE
# ============================================================================

class QuotationStatus(models.TextChoices):
    SUBMITTED = 'SUBMITTED', 'Submitted'
    AWARDED = 'AWARDED', 'Awarded'
    STANDBY = 'STANDBY', 'Standby'
    REJECTED = 'REJECTED', 'Rejected'
    ACCEPTED = 'ACCEPTED', 'Accepted'
    DECLINED = 'DECLINED', 'Declined'
    FAILED = 'FAILED', 'Failed'


QUOTATION_TRANSITIONS = {
    QuotationStatus.SUBMITTED: {
        QuotationStatus.SUBMITTED, QuotationStatus.AWARDED,
        QuotationStatus.STANDBY, QuotationStatus.REJECTED,
    },
    QuotationStatus.STANDBY: {
        QuotationStatus.AWARDED, QuotationStatus.REJECTED, QuotationStatus.SUBMITTED,
    },
    QuotationStatus.AWARDED: {
        QuotationStatus.ACCEPTED, QuotationStatus.DECLINED,
        QuotationStatus.FAILED, QuotationStatus.SUBMITTED,
    },
    QuotationStatus.DECLINED: {QuotationStatus.SUBMITTED},
    QuotationStatus.FAILED: {QuotationStatus.SUBMITTED},
    QuotationStatus.REJECTED: {QuotationStatus.SUBMITTED},
    QuotationStatus.ACCEPTED: set(),
}

# Statuses meaning a prior award decision is still live
AWARD_LIVE_STATUSES = (QuotationStatus.AWARDED, QuotationStatus.STANDBY, QuotationStatus.ACCEPTED)


def can_transition(current, target):
    return target in QUOTATION_TRANSITIONS.get(current, set())


class Quotation(models.Model):
    """Vendor quotation against a requisition"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    quotation_number = models.CharField(max_length=50, unique=True, editable=False)
    requisition = models.ForeignKey(Requisition, on_delete=models.CASCADE, related_name='quotations')
    vendor = models.ForeignKey(Vendor, on_delete=models.CASCADE, related_name='quotations')

    status = models.CharField(max_length=20, choices=QuotationStatus.choices, default=QuotationStatus.SUBMITTED)
    rank = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1)],
        help_text="1 for the award, up to MAX_STANDBY_RANK for standbys"
    )
    final_average_score = models.DecimalField(max_digits=9, decimal_places=4, default=Decimal('0'))

    notes = models.TextField(blank=True)

    submitted_at = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'quotations'
        ordering = ['requisition', '-final_average_score', 'submitted_at']
        unique_together = ['requisition', 'vendor']
        indexes = [
            models.Index(fields=['requisition', 'status']),
            models.Index(fields=['requisition', 'rank']),
        ]

    def save(self, *args, **kwargs):
        if not self.quotation_number:
            self.quotation_number = next_document_number(Quotation, 'quotation_number', 'QUO')
        super().save(*args, **kwargs)

    def clean(self):
        from .conf import engine_setting

        max_rank = engine_setting('MAX_STANDBY_RANK')
        if self.rank is not None and self.rank > max_rank:
            raise ModelValidationError({'rank': [f'Rank cannot exceed {max_rank}.']})

    def transition_to(self, target, rank=None):
        """Move to ``target`` if the state machine allows it; does not save"""
        if not can_transition(self.status, target):
            raise InvalidTransition('Quotation', self.status, target)
        self.status = target
        self.rank = rank

    @property
    def total_price(self):
        return sum((item.line_total for item in self.items.all()), Decimal('0.00'))

    @property
    def delivery_date(self):
        lead_times = [item.lead_time_days for item in self.items.all()]
        start = self.created_at or timezone.now()
        return start + timedelta(days=max(lead_times, default=0))

    def __str__(self):
        return f"{self.quotation_number} - {self.vendor.name}"


class QuoteItem(models.Model):
    """Line items in a quotation"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    quotation = models.ForeignKey(Quotation, on_delete=models.CASCADE, related_name='items')
    requisition_item = models.ForeignKey(
        RequisitionItem,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='quote_items'
    )
    name = models.CharField(max_length=300)
    quantity = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    unit_price = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])
    line_total = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    lead_time_days = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'quote_items'
        ordering = ['quotation', 'name']

    def save(self, *args, **kwargs):
        self.line_total = self.quantity * self.unit_price
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.quotation.quotation_number} - {self.name}"


# ============================================================================
# 6. COMMITTEE SCORING
# ============================================================================

class CommitteeAssignment(models.Model):
    """Member of a requisition's evaluation committee"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requisition = models.ForeignKey(Requisition, on_delete=models.CASCADE, related_name='committee_assignments')
    member = models.ForeignKey(User, on_delete=models.CASCADE, related_name='committee_assignments')
    assigned_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='committee_assignments_made'
    )
    last_scored_at = models.DateTimeField(null=True, blank=True)
    assigned_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'committee_assignments'
        ordering = ['requisition', 'assigned_at']
        constraints = [
            models.UniqueConstraint(fields=['requisition', 'member'], name='unique_committee_member'),
        ]

    @property
    def has_scored(self):
        return self.last_scored_at is not None

    def __str__(self):
        return f"{self.requisition.requisition_number} - {self.member.username}"


class CommitteeScoreSet(models.Model):
    """One committee member's scores for one quotation"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    quotation = models.ForeignKey(Quotation, on_delete=models.CASCADE, related_name='score_sets')
    scorer = models.ForeignKey(User, on_delete=models.CASCADE, related_name='score_sets')
    comment = models.TextField(blank=True)
    final_score = models.DecimalField(max_digits=9, decimal_places=4, default=Decimal('0'))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'committee_score_sets'
        ordering = ['quotation', 'created_at']
        constraints = [
            models.UniqueConstraint(fields=['quotation', 'scorer'], name='unique_score_set_per_scorer'),
        ]

    def __str__(self):
        return f"{self.quotation.quotation_number} - {self.scorer} - {self.final_score}"


class ItemScore(models.Model):
    """Weighted score of a single quote item by one scorer"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    score_set = models.ForeignKey(CommitteeScoreSet, on_delete=models.CASCADE, related_name='item_scores')
    quote_item = models.ForeignKey(QuoteItem, on_delete=models.CASCADE, related_name='item_scores')
    final_score = models.DecimalField(max_digits=9, decimal_places=4, default=Decimal('0'))

    class Meta:
        db_table = 'item_scores'
        unique_together = ['score_set', 'quote_item']

    def __str__(self):
        return f"{self.quote_item.name}: {self.final_score}"


class CriterionScore(models.Model):
    """Raw score given against one criterion"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item_score = models.ForeignKey(ItemScore, on_delete=models.CASCADE, related_name='criterion_scores')
    criterion = models.ForeignKey(EvaluationCriterion, on_delete=models.CASCADE, related_name='scores')
    score = models.DecimalField(
        max_digits=6,
        decimal_places=2,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    comment = models.TextField(blank=True)

    class Meta:
        db_table = 'criterion_scores'
        unique_together = ['item_score', 'criterion']

    def __str__(self):
        return f"{self.criterion.name}: {self.score}"


class CommitteeRecommendation(models.Model):
    """Recommendation recorded by a review committee"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requisition = models.ForeignKey(Requisition, on_delete=models.CASCADE, related_name='recommendations')
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='recommendations')
    committee_role = models.CharField(max_length=30)
    recommendation = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'committee_recommendations'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.requisition.requisition_number} - {self.committee_role}"


# ============================================================================
# 7. APPROVAL ROUTING
# ============================================================================

class ApprovalThreshold(models.Model):
    """Award value tier mapped to a review state or an approver role"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    min_amount = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])
    max_amount = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Leave blank for no upper bound"
    )
    next_status = models.CharField(max_length=40, choices=RequisitionStatus.choices)
    approver_role = models.CharField(
        max_length=30,
        choices=User.ROLE_CHOICES,
        blank=True,
        help_text="Role of the individual approver; blank for committee review or direct release"
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'approval_thresholds'
        ordering = ['min_amount']

    def clean(self):
        from .routing import threshold_table_errors

        others = ApprovalThreshold.objects.filter(is_active=True).exclude(pk=self.pk)
        if not self.is_active:
            others = others.none()
        tiers = [t.as_tier() for t in others] + [self.as_tier()]
        errors = threshold_table_errors(tiers)
        if errors:
            raise ModelValidationError({
                NON_FIELD_ERRORS: [msg for messages in errors.values() for msg in messages]
            })

    def contains(self, value):
        if value < self.min_amount:
            return False
        return self.max_amount is None or value <= self.max_amount

    def as_tier(self):
        return {
            'name': self.name,
            'min_amount': self.min_amount,
            'max_amount': self.max_amount,
            'next_status': self.next_status,
            'approver_role': self.approver_role,
        }

    def __str__(self):
        upper = self.max_amount if self.max_amount is not None else '∞'
        return f"{self.name} ({self.min_amount} - {upper})"


# ============================================================================
# 8. PURCHASE ORDERS
# ============================================================================

class PurchaseOrder(models.Model):
    """Purchase Orders generated from accepted quotations"""
    STATUS_CHOICES = [
        ('ISSUED', 'Issued'),
        ('ACKNOWLEDGED', 'Acknowledged by Vendor'),
        ('PARTIALLY_DELIVERED', 'Partially Delivered'),
        ('DELIVERED', 'Fully Delivered'),
        ('CLOSED', 'Closed'),
        ('CANCELLED', 'Cancelled'),
    ]

    MATCH_PENDING = 'PENDING'
    MATCH_MATCHED = 'MATCHED'
    MATCH_MISMATCHED = 'MISMATCHED'
    MATCH_RESOLVED = 'RESOLVED'
    MATCH_STATUS_CHOICES = [
        (MATCH_PENDING, 'Pending'),
        (MATCH_MATCHED, 'Matched'),
        (MATCH_MISMATCHED, 'Mismatched'),
        (MATCH_RESOLVED, 'Manually Resolved'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    po_number = models.CharField(max_length=50, unique=True, editable=False)
    requisition = models.ForeignKey(Requisition, on_delete=models.CASCADE, related_name='purchase_orders')
    quotation = models.OneToOneField(Quotation, on_delete=models.PROTECT, related_name='purchase_order')
    vendor = models.ForeignKey(Vendor, on_delete=models.PROTECT, related_name='purchase_orders')

    total_amount = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])
    delivery_date = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default='ISSUED')
    match_status = models.CharField(max_length=20, choices=MATCH_STATUS_CHOICES, default=MATCH_PENDING)
    matching_notes = models.TextField(blank=True)

    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='pos_created')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'purchase_orders'
        ordering = ['-created_at']

    def save(self, *args, **kwargs):
        if not self.po_number:
            self.po_number = next_document_number(PurchaseOrder, 'po_number', 'PO')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.po_number} - {self.vendor.name}"


class PurchaseOrderItem(models.Model):
    """Line items in purchase order; the reconciliation baseline"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name='items')
    quote_item = models.ForeignKey(QuoteItem, on_delete=models.SET_NULL, null=True, blank=True, related_name='po_items')

    name = models.CharField(max_length=300)
    quantity = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    unit_price = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])
    total_price = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])

    class Meta:
        db_table = 'purchase_order_items'
        ordering = ['purchase_order', 'name']

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecord(f'Purchase order item {self.name} cannot change once issued.')
        self.total_price = self.quantity * self.unit_price
        super().save(*args, **kwargs)

    @property
    def quantity_received(self):
        total = self.grn_items.aggregate(total=models.Sum('quantity_received'))['total']
        return total or Decimal('0')

    def __str__(self):
        return f"{self.purchase_order.po_number} - {self.name}"


# ============================================================================
# 9. GOODS RECEIPT
# ============================================================================

class GoodsReceivedNote(models.Model):
    """Goods Received Notes"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    grn_number = models.CharField(max_length=50, unique=True, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name='grns')

    received_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='grns_received')
    received_at = models.DateTimeField(default=timezone.now)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'goods_received_notes'
        ordering = ['-created_at']

    def save(self, *args, **kwargs):
        if not self.grn_number:
            self.grn_number = next_document_number(GoodsReceivedNote, 'grn_number', 'GRN')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.grn_number} - PO: {self.purchase_order.po_number}"


class GRNItem(models.Model):
    """Line items in GRN, keyed to the PO line"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    grn = models.ForeignKey(GoodsReceivedNote, on_delete=models.CASCADE, related_name='items')
    po_item = models.ForeignKey(PurchaseOrderItem, on_delete=models.CASCADE, related_name='grn_items')
    quantity_received = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    remarks = models.TextField(blank=True)

    class Meta:
        db_table = 'grn_items'
        ordering = ['grn', 'id']

    def __str__(self):
        return f"{self.grn.grn_number} - {self.po_item.name}"


# ============================================================================
# 10. INVOICES
# ============================================================================

class Invoice(models.Model):
    """Vendor invoices"""
    STATUS_CHOICES = [
        ('SUBMITTED', 'Submitted'),
        ('MATCHED', 'Matched'),
        ('DISPUTED', 'Disputed'),
        ('APPROVED', 'Approved for Payment'),
        ('PAID', 'Paid'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=100, unique=True, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name='invoices')
    vendor = models.ForeignKey(Vendor, on_delete=models.PROTECT, related_name='invoices')

    invoice_date = models.DateField(default=timezone.localdate)
    submitted_at = models.DateTimeField(default=timezone.now)
    total_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='SUBMITTED')

    submitted_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='invoices_submitted')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'invoices'
        ordering = ['-submitted_at']

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = next_document_number(Invoice, 'invoice_number', 'INV')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.invoice_number} - {self.vendor.name}"


class InvoiceItem(models.Model):
    """Line items in invoice; matched to PO lines by name"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='items')
    name = models.CharField(max_length=300)
    quantity = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    unit_price = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])
    total_price = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))

    class Meta:
        db_table = 'invoice_items'
        ordering = ['invoice', 'id']

    def save(self, *args, **kwargs):
        self.total_price = self.quantity * self.unit_price
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.invoice.invoice_number} - {self.name}"


# ============================================================================
# 11. NOTIFICATIONS
# ============================================================================

class Notification(models.Model):
    """In-app notifications"""
    NOTIFICATION_TYPES = [
        ('AWARD', 'Award'),
        ('APPROVAL', 'Approval'),
        ('PO', 'Purchase Order'),
        ('INVOICE', 'Invoice'),
        ('ALERT', 'Alert'),
    ]

    PRIORITY_LEVELS = [
        ('LOW', 'Low'),
        ('MEDIUM', 'Medium'),
        ('HIGH', 'High'),
        ('URGENT', 'Urgent'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='notifications')
    notification_type = models.CharField(max_length=20, choices=NOTIFICATION_TYPES)
    priority = models.CharField(max_length=10, choices=PRIORITY_LEVELS, default='MEDIUM')

    title = models.CharField(max_length=300)
    message = models.TextField()
    link_url = models.CharField(max_length=500, blank=True)

    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notifications'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', '-created_at']),
            models.Index(fields=['user', 'is_read']),
        ]

    def __str__(self):
        return f"{self.user.username} - {self.title}"
