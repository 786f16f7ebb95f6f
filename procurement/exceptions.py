"""
Error taxonomy for the award and settlement engines.

Views map each family onto an HTTP status; callers can rely on
``retryable`` to decide whether repeating the whole operation is safe.
"""


class ProcurementError(Exception):
    """Base class for every error the engines raise on purpose"""
    status_code = 500
    code = 'procurement_error'
    retryable = False

    def __init__(self, message=None, **context):
        self.message = message or self.default_message()
        self.context = context
        super().__init__(self.message)

    def default_message(self):
        return 'Procurement operation failed.'

    def as_dict(self):
        data = {'code': self.code, 'error': self.message}
        if self.context:
            data['context'] = {k: str(v) for k, v in self.context.items()}
        return data


# ============================================================================
# VALIDATION
# ============================================================================

class ValidationError(ProcurementError):
    """Malformed input; carries field-level detail"""
    status_code = 400
    code = 'validation_error'

    def __init__(self, errors, message=None):
        if isinstance(errors, str):
            errors = {'__all__': [errors]}
        self.errors = {field: list(msgs) if isinstance(msgs, (list, tuple)) else [msgs]
                       for field, msgs in errors.items()}
        super().__init__(message or 'Invalid input.')

    def as_dict(self):
        data = super().as_dict()
        data['fields'] = self.errors
        return data


# ============================================================================
# STATE CONFLICTS
# ============================================================================

class StateConflict(ProcurementError):
    """Current state forbids the request; re-fetch before retrying"""
    status_code = 409
    code = 'state_conflict'


class AwardInProgress(StateConflict):
    code = 'award_in_progress'

    def default_message(self):
        return 'An award is already in progress for this requisition.'


class DuplicatePurchaseOrder(StateConflict):
    code = 'duplicate_purchase_order'

    def default_message(self):
        return 'A purchase order already exists for this quotation.'


class DocumentNumberConflict(StateConflict):
    """Another request drew the same document number; nothing was written"""
    code = 'document_number_conflict'
    retryable = True

    def default_message(self):
        return 'The document number was taken by a concurrent request. Please retry.'


class InvalidTransition(StateConflict):
    code = 'invalid_transition'

    def __init__(self, entity, current, target):
        super().__init__(
            f'{entity} cannot move from {current} to {target}.',
            entity=entity, current=current, target=target,
        )


class ImmutableRecord(StateConflict):
    code = 'immutable_record'


# ============================================================================
# NOT FOUND
# ============================================================================

class NotFound(ProcurementError):
    status_code = 404
    code = 'not_found'

    def default_message(self):
        return 'Record not found.'


class NoQuotesFound(NotFound):
    code = 'no_quotes_found'

    def default_message(self):
        return 'No quotations found for this requisition.'


class MissingCriteria(NotFound):
    code = 'missing_criteria'

    def default_message(self):
        return 'Evaluation criteria have not been defined for this requisition.'


class NoApproverForRole(NotFound):
    code = 'no_approver_for_role'

    def __init__(self, role):
        self.role = role
        super().__init__(f'No active user holds the {role} role.', role=role)


# ============================================================================
# ROUTING
# ============================================================================

class RoutingError(ProcurementError):
    status_code = 409
    code = 'routing_error'


class AmbiguousTier(RoutingError):
    code = 'ambiguous_tier'


class NoMatchingTier(RoutingError):
    code = 'no_matching_tier'


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

class TransactionTimeout(ProcurementError):
    status_code = 503
    code = 'transaction_timeout'
    retryable = True

    def default_message(self):
        return 'The operation timed out waiting for the database. It is safe to retry.'


class AccessDenied(ProcurementError):
    status_code = 403
    code = 'access_denied'

    def default_message(self):
        return 'You do not have permission to perform this action.'
