from django.urls import path
from procurement import views

urlpatterns = [
    # Award Decision
    path('quotations/<uuid:quotation_id>/scores/', views.submit_scores_view, name='submit_scores'),
    path('quotations/<uuid:quotation_id>/respond/', views.respond_to_award_view, name='respond_to_award'),
    path('requisitions/<uuid:requisition_id>/finalize-award/', views.finalize_award_view, name='finalize_award'),
    path('requisitions/<uuid:requisition_id>/change-award/', views.change_award_view, name='change_award'),
    path('requisitions/<uuid:requisition_id>/promote-standby/', views.promote_standby_view, name='promote_standby'),

    # Evaluation Committee
    path('requisitions/<uuid:requisition_id>/committee/', views.assign_committee_view, name='assign_committee'),
    path('requisitions/<uuid:requisition_id>/scoring-deadline/', views.extend_scoring_deadline_view,
         name='extend_scoring_deadline'),

    # Approval Routing
    path('requisitions/<uuid:requisition_id>/route/', views.route_for_approval_view, name='route_for_approval'),
    path('requisitions/<uuid:requisition_id>/approve-award/', views.approve_award_view, name='approve_award'),

    # Three-Way Match
    path('purchase-orders/<uuid:po_id>/match/', views.purchase_order_match, name='purchase_order_match'),
    path('purchase-orders/<uuid:po_id>/match/export/', views.export_match_excel, name='export_match_excel'),
    path('purchase-orders/<uuid:po_id>/resolve/', views.resolve_mismatch_view, name='resolve_mismatch'),
]
