"""
External collaborators the engines call out to.

``Notifier`` delivers messages; ``AccessPolicy`` decides who may run an
operation. Both are swapped through ``PROCUREMENT_ENGINE['NOTIFIER']`` and
``PROCUREMENT_ENGINE['ACCESS_POLICY']``. The defaults here write in-app
notifications and check the user's role.
"""
import logging

from django.db import transaction

from .conf import get_access_policy, get_notifier
from .exceptions import AccessDenied
from .models import Notification, User

logger = logging.getLogger(__name__)


# ============================================================================
# NOTIFIER
# ============================================================================

class Notifier:
    """Base notifier; subclasses implement ``send``"""

    def send(self, users, notification_type, title, message, priority='MEDIUM', link_url=''):
        raise NotImplementedError

    def vendor_users(self, vendor):
        return list(User.objects.filter(vendor=vendor, role='VENDOR', is_active_user=True))

    def award_offered(self, quotation):
        requisition = quotation.requisition
        deadline = requisition.award_response_deadline
        message = f'Your quotation {quotation.quotation_number} for {requisition.title} has been awarded.'
        if deadline:
            message += f' Please respond by {deadline:%Y-%m-%d %H:%M}.'
        self.send(
            self.vendor_users(quotation.vendor), 'AWARD', 'Award Offered', message,
            priority='URGENT', link_url=f'/quotations/{quotation.id}/',
        )

    def standby_notice(self, quotation):
        self.send(
            self.vendor_users(quotation.vendor), 'AWARD', 'Standby Position',
            f'Your quotation {quotation.quotation_number} is on standby at rank {quotation.rank}.',
            link_url=f'/quotations/{quotation.id}/',
        )

    def rfq_restarted(self, requisition):
        if requisition.requested_by_id:
            self.send(
                [requisition.requested_by], 'ALERT', 'RFQ Restarted',
                f'All vendors declined the award for {requisition.requisition_number}. '
                f'The requisition is ready for a new RFQ round.',
                priority='HIGH', link_url=f'/requisitions/{requisition.id}/',
            )

    def approval_requested(self, requisition, approver):
        self.send(
            [approver], 'APPROVAL', 'Award Approval Required',
            f'Requisition {requisition.requisition_number} awaits your approval '
            f'({requisition.get_status_display()}).',
            priority='HIGH', link_url=f'/requisitions/{requisition.id}/',
        )

    def committee_assigned(self, requisition, members):
        message = f'You have been assigned to evaluate quotations for {requisition.requisition_number}.'
        if requisition.scoring_deadline:
            message += f' Scores are due by {requisition.scoring_deadline:%Y-%m-%d %H:%M}.'
        self.send(
            members, 'ALERT', 'Evaluation Committee Assignment', message,
            link_url=f'/requisitions/{requisition.id}/',
        )

    def purchase_order_issued(self, purchase_order):
        self.send(
            self.vendor_users(purchase_order.vendor), 'PO', f'Purchase Order {purchase_order.po_number}',
            f'Purchase order {purchase_order.po_number} has been issued for '
            f'{purchase_order.total_amount}.',
            priority='HIGH', link_url=f'/purchase-orders/{purchase_order.id}/',
        )

    def mismatch_detected(self, purchase_order):
        finance = User.objects.filter(role='FINANCE', is_active_user=True)
        self.send(
            list(finance), 'INVOICE', 'Three-Way Match Failed',
            f'Purchase order {purchase_order.po_number} does not reconcile with its receipts and invoices.',
            priority='HIGH', link_url=f'/purchase-orders/{purchase_order.id}/match/',
        )


class InAppNotifier(Notifier):
    """Stores notifications for the users' in-app inbox"""

    def send(self, users, notification_type, title, message, priority='MEDIUM', link_url=''):
        Notification.objects.bulk_create([
            Notification(
                user=user,
                notification_type=notification_type,
                priority=priority,
                title=title,
                message=message,
                link_url=link_url,
            )
            for user in users
        ])


def notify_after_commit(event, *args):
    """Deliver ``event`` once the surrounding transaction commits.

    Failures are logged by Django and never undo the committed work.
    """
    def deliver():
        getattr(get_notifier(), event)(*args)

    transaction.on_commit(deliver, robust=True)
    logger.debug("queued %s notification", event)


# ============================================================================
# ACCESS POLICY
# ============================================================================

class AccessPolicy:
    def check(self, user, action, obj=None):
        """Raise ``AccessDenied`` unless ``user`` may perform ``action``"""
        raise NotImplementedError


class RoleAccessPolicy(AccessPolicy):
    ACTION_ROLES = {
        'define_criteria': ['PROCUREMENT', 'ADMIN'],
        'assign_committee': ['PROCUREMENT', 'ADMIN'],
        'extend_scoring_deadline': ['PROCUREMENT', 'ADMIN'],
        'submit_quotation': ['VENDOR'],
        'submit_scores': ['COMMITTEE_MEMBER', 'COMMITTEE_A', 'COMMITTEE_B', 'PROCUREMENT', 'ADMIN'],
        'finalize_award': ['PROCUREMENT', 'ADMIN'],
        'respond_to_award': ['VENDOR'],
        'change_award': ['PROCUREMENT', 'ADMIN'],
        'promote_standby': ['PROCUREMENT', 'ADMIN'],
        'route_for_approval': ['PROCUREMENT', 'ADMIN'],
        'configure_thresholds': ['ADMIN'],
        'submit_recommendation': ['COMMITTEE_A', 'COMMITTEE_B'],
        'record_goods_receipt': ['STORES', 'PROCUREMENT', 'ADMIN'],
        'record_invoice': ['VENDOR', 'FINANCE', 'ADMIN'],
        'view_matching': ['FINANCE', 'PROCUREMENT', 'STORES', 'ADMIN'],
        'resolve_mismatch': ['FINANCE', 'PROCUREMENT', 'ADMIN'],
    }

    # actions open to whoever the record names, whatever their role
    OWNER_ACTIONS = {
        'approve_award': 'current_approver_id',
    }

    def check(self, user, action, obj=None):
        if user is None or not user.is_active or not user.is_active_user:
            raise AccessDenied(action=action)
        if user.is_superuser:
            return
        if action in self.OWNER_ACTIONS:
            if obj is None or getattr(obj, self.OWNER_ACTIONS[action]) != user.id:
                raise AccessDenied(action=action)
            return
        if user.role not in self.ACTION_ROLES.get(action, []):
            raise AccessDenied(action=action, role=user.role)


def authorize(user, action, obj=None):
    get_access_policy().check(user, action, obj)
