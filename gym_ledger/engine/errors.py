"""
Engine exceptions.

Calculator errors (InvalidPackage, InvalidCommission, ValidationError) are
raised before any write. Orchestrator errors raised after the first write are
either TransitionFailed (every completed step was compensated) or
PartiallyApplied (some compensation failed, manual review required).
"""
from typing import Any, List, Optional


class LedgerError(Exception):
    """Base class for every engine error"""

    error_code = 'ledger_error'

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Any] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        return {
            'error': self.message,
            'code': self.error_code,
            'details': self.details,
        }


class InvalidTransition(LedgerError):
    """Action not allowed from the membership's current status"""
    error_code = 'invalid_transition'

    def __init__(self, status, action, message: Optional[str] = None):
        self.status = status
        self.action = action
        super().__init__(
            message or f"Cannot {action} a membership with status '{status}'",
            details={'status': str(status), 'action': str(action)},
        )


class InvalidPackage(LedgerError):
    """Zero/negative duration or price"""
    error_code = 'invalid_package'


class InvalidCommission(LedgerError):
    """Non-positive commission value or zero sessions"""
    error_code = 'invalid_commission'


class ValidationError(LedgerError):
    """Missing or malformed input"""
    error_code = 'validation_error'


class NotFound(ValidationError):
    """Referenced record does not exist"""
    error_code = 'not_found'


class ConflictError(LedgerError):
    """Trainer already booked for an overlapping slot"""
    error_code = 'conflict'


class StoreError(LedgerError):
    """Underlying persistence failure"""
    error_code = 'store_error'

    def __init__(self, message: str, retryable: bool = False, details: Optional[Any] = None):
        self.retryable = retryable
        super().__init__(message, details=details)


class TransitionFailed(LedgerError):
    """A saga step failed and every completed step was compensated"""
    error_code = 'transition_failed'

    def __init__(self, step: str, cause: Exception, compensated: List[str]):
        self.step = step
        self.cause = cause
        self.compensated = compensated
        super().__init__(
            f"Step '{step}' failed: {cause}; all completed steps were rolled back",
            details={
                'failed_step': step,
                'compensated': compensated,
                'compensation_failed': [],
                'needs_manual_review': False,
            },
        )


class PartiallyApplied(LedgerError):
    """A saga step failed and compensation did not fully succeed"""
    error_code = 'partially_applied'

    def __init__(self, step: str, cause: Exception, compensated: List[str], compensation_failed: List[str]):
        self.step = step
        self.cause = cause
        self.compensated = compensated
        self.compensation_failed = compensation_failed
        super().__init__(
            f"Step '{step}' failed: {cause}; compensation failed for "
            f"{', '.join(compensation_failed)}. Manual review required",
            details={
                'failed_step': step,
                'compensated': compensated,
                'compensation_failed': compensation_failed,
                'needs_manual_review': True,
            },
        )
