from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.core.exceptions import ValidationError as ModelValidationError
from django.forms.models import BaseInlineFormSet

from .criteria import weight_errors
from .models import (
    # Users & Audit
    User, AuditLog,
    # Vendors & Requisitions
    Vendor, Requisition, RequisitionItem,
    # Evaluation & Scoring
    EvaluationCriteria, EvaluationCriterion, Quotation, QuoteItem,
    CommitteeAssignment, CommitteeScoreSet, CommitteeRecommendation,
    # Approval Routing
    ApprovalThreshold,
    # Settlement
    PurchaseOrder, PurchaseOrderItem, GoodsReceivedNote, GRNItem, Invoice, InvoiceItem,
    # Notifications
    Notification,
)


# ============================================================================
# 1. USERS & AUDIT
# ============================================================================

@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ['username', 'email', 'get_full_name', 'role', 'vendor', 'is_active', 'created_at']
    list_filter = ['role', 'is_active', 'is_staff', 'created_at']
    search_fields = ['username', 'email', 'first_name', 'last_name']
    ordering = ['-created_at']

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Procurement Role', {
            'fields': ('role', 'vendor')
        }),
        ('Status', {
            'fields': ('is_active_user',)
        }),
    )


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ['user', 'action', 'model_name', 'object_repr', 'timestamp']
    list_filter = ['action', 'model_name', 'timestamp']
    search_fields = ['user__username', 'object_repr', 'object_id']
    readonly_fields = ['user', 'action', 'model_name', 'object_id', 'object_repr', 'details', 'changes', 'timestamp']
    ordering = ['-timestamp']
    date_hierarchy = 'timestamp'

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


# ============================================================================
# 2. VENDORS & REQUISITIONS
# ============================================================================

@admin.register(Vendor)
class VendorAdmin(admin.ModelAdmin):
    list_display = ['name', 'contact_person', 'email', 'status', 'created_at']
    list_filter = ['status']
    search_fields = ['name', 'email']


class RequisitionItemInline(admin.TabularInline):
    model = RequisitionItem
    extra = 1


@admin.register(Requisition)
class RequisitionAdmin(admin.ModelAdmin):
    list_display = ['requisition_number', 'title', 'requested_by', 'status', 'total_price', 'current_approver', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['requisition_number', 'title', 'requested_by__username']
    ordering = ['-created_at']
    readonly_fields = ['requisition_number', 'created_at', 'updated_at']
    inlines = [RequisitionItemInline]


# ============================================================================
# 3. EVALUATION & SCORING
# ============================================================================

class CriterionFormSet(BaseInlineFormSet):
    """Criterion weights must total 100 inside each category"""

    def clean(self):
        super().clean()
        if any(self.errors):
            return

        weights = {EvaluationCriterion.FINANCIAL: [], EvaluationCriterion.TECHNICAL: []}
        for form in self.forms:
            if not form.cleaned_data or form.cleaned_data.get('DELETE'):
                continue
            weights[form.cleaned_data['category']].append(form.cleaned_data['weight'])

        errors = weight_errors(
            self.instance.financial_weight,
            self.instance.technical_weight,
            weights[EvaluationCriterion.FINANCIAL],
            weights[EvaluationCriterion.TECHNICAL],
        )
        messages = errors.get('financial_criteria', []) + errors.get('technical_criteria', [])
        if messages:
            raise ModelValidationError(messages)


class EvaluationCriterionInline(admin.TabularInline):
    model = EvaluationCriterion
    formset = CriterionFormSet
    extra = 0


@admin.register(EvaluationCriteria)
class EvaluationCriteriaAdmin(admin.ModelAdmin):
    list_display = ['requisition', 'financial_weight', 'technical_weight', 'created_at']
    search_fields = ['requisition__requisition_number']
    inlines = [EvaluationCriterionInline]


class QuoteItemInline(admin.TabularInline):
    model = QuoteItem
    extra = 0
    readonly_fields = ['line_total']


@admin.register(Quotation)
class QuotationAdmin(admin.ModelAdmin):
    list_display = ['quotation_number', 'requisition', 'vendor', 'status', 'rank', 'final_average_score', 'submitted_at']
    list_filter = ['status']
    search_fields = ['quotation_number', 'requisition__requisition_number', 'vendor__name']
    # status and rank only move through the award engine
    readonly_fields = ['quotation_number', 'status', 'rank', 'final_average_score', 'created_at', 'updated_at']
    inlines = [QuoteItemInline]


@admin.register(CommitteeAssignment)
class CommitteeAssignmentAdmin(admin.ModelAdmin):
    list_display = ['requisition', 'member', 'assigned_by', 'last_scored_at', 'assigned_at']
    search_fields = ['requisition__requisition_number', 'member__username']
    readonly_fields = ['last_scored_at', 'assigned_at']


@admin.register(CommitteeScoreSet)
class CommitteeScoreSetAdmin(admin.ModelAdmin):
    list_display = ['quotation', 'scorer', 'final_score', 'updated_at']
    search_fields = ['quotation__quotation_number', 'scorer__username']
    readonly_fields = ['quotation', 'scorer', 'final_score', 'comment', 'created_at', 'updated_at']


@admin.register(CommitteeRecommendation)
class CommitteeRecommendationAdmin(admin.ModelAdmin):
    list_display = ['requisition', 'committee_role', 'user', 'created_at']
    list_filter = ['committee_role']


# ============================================================================
# 4. APPROVAL ROUTING
# ============================================================================

@admin.register(ApprovalThreshold)
class ApprovalThresholdAdmin(admin.ModelAdmin):
    list_display = ['name', 'min_amount', 'max_amount', 'next_status', 'approver_role', 'is_active']
    list_filter = ['is_active', 'next_status']
    search_fields = ['name']
    ordering = ['min_amount']


# ============================================================================
# 5. SETTLEMENT
# ============================================================================

class PurchaseOrderItemInline(admin.TabularInline):
    model = PurchaseOrderItem
    extra = 0
    readonly_fields = ['name', 'quantity', 'unit_price', 'total_price', 'quote_item']
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(PurchaseOrder)
class PurchaseOrderAdmin(admin.ModelAdmin):
    list_display = ['po_number', 'vendor', 'requisition', 'total_amount', 'status', 'match_status', 'created_at']
    list_filter = ['status', 'match_status']
    search_fields = ['po_number', 'vendor__name', 'requisition__requisition_number']
    readonly_fields = ['po_number', 'quotation', 'total_amount', 'match_status', 'created_at', 'updated_at']
    inlines = [PurchaseOrderItemInline]


class GRNItemInline(admin.TabularInline):
    model = GRNItem
    extra = 0


@admin.register(GoodsReceivedNote)
class GoodsReceivedNoteAdmin(admin.ModelAdmin):
    list_display = ['grn_number', 'purchase_order', 'received_by', 'received_at']
    search_fields = ['grn_number', 'purchase_order__po_number']
    readonly_fields = ['grn_number', 'created_at']
    inlines = [GRNItemInline]


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0
    readonly_fields = ['total_price']


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'vendor', 'purchase_order', 'total_amount', 'status', 'submitted_at']
    list_filter = ['status']
    search_fields = ['invoice_number', 'vendor__name', 'purchase_order__po_number']
    readonly_fields = ['invoice_number', 'created_at']
    inlines = [InvoiceItemInline]


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ['user', 'notification_type', 'priority', 'title', 'is_read', 'created_at']
    list_filter = ['notification_type', 'priority', 'is_read']
    search_fields = ['user__username', 'title']
