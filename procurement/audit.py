import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def log_action(user, action, model_name, object_id, object_repr='', details='', changes=None):
    """Helper function to log audit trail"""
    entry = AuditLog.objects.create(
        user=user,
        action=action,
        model_name=model_name,
        object_id=str(object_id),
        object_repr=str(object_repr)[:500],
        details=details,
        changes=changes,
    )
    logger.info("audit %s %s %s by %s", action, model_name, object_id, user or 'System')
    return entry
