"""Domain-specific exceptions

Four families reach callers: ValidationError (fix the input), PolicyViolationError
(the request is well formed but the rules forbid it), ConflictError (a concurrent
writer won; retry) and NotFoundError.
"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Input has the wrong shape or range"""

    pass


class InvalidInputError(ValidationError):
    """Numeric or identifier input is malformed"""

    pass


class IdempotencyKeyReuseError(ValidationError):
    """Idempotency key was already used for a different request"""

    pass


class PolicyViolationError(DomainException):
    """Request is valid but violates chama policy or entity state"""

    pass


class LoanLimitExceededError(PolicyViolationError):
    """Requested principal exceeds loan multiplier x savings"""

    pass


class ConcurrentLoanLimitError(PolicyViolationError):
    """Borrower already holds the maximum number of active loans"""

    pass


class GuarantorIneligibleError(PolicyViolationError):
    """Nominated guarantor fails an eligibility rule"""

    pass


class InsufficientCoverageError(PolicyViolationError):
    """Approved guarantees do not cover the total repayable"""

    pass


class OverpaymentError(PolicyViolationError):
    """Payment exceeds the outstanding balance"""

    pass


class InvalidTransitionError(PolicyViolationError):
    """Operation is not legal from the entity's current status"""

    pass


class NotPermittedError(PolicyViolationError):
    """Actor is not allowed to perform this operation"""

    pass


class DuplicateRequestError(PolicyViolationError):
    """An equivalent request already exists"""

    pass


class CycleExhaustedError(PolicyViolationError):
    """Every slot in the rotation cycle has been paid out"""

    pass


class SlotAlreadyPaidError(PolicyViolationError):
    """Rotation slot already has a payout and cannot move"""

    pass


class ConflictError(DomainException):
    """Concurrent modification detected; safe to retry"""

    pass


class NotFoundError(DomainException):
    """Referenced loan, guarantor, cycle, slot or request does not exist"""

    pass


class NotificationError(DomainException):
    """Event delivery to the notification layer failed"""

    pass
