class LessonLinkException(Exception):
    """Base exception for LessonLink application"""
    status_code = 400
    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__


class ValidationError(LessonLinkException):
    """Exception raised for malformed or missing input"""
    status_code = 422
    code = "validation_error"


class NotFoundError(LessonLinkException):
    """Exception raised when a record does not exist"""
    status_code = 404
    code = "not_found"


class AuthorizationError(LessonLinkException):
    """Exception raised for authorization errors"""
    status_code = 403
    code = "forbidden"


class AuthenticationError(LessonLinkException):
    """Exception raised for authentication errors"""
    status_code = 401
    code = "unauthenticated"


class CreditError(LessonLinkException):
    """Exception raised for credit-related errors"""
    status_code = 409
    code = "credit_error"


class InsufficientCreditError(CreditError):
    """Not enough uncommitted hours to cover the booking"""
    code = "insufficient_credit"


class LedgerConflictError(CreditError):
    """Credit ledger kept changing underneath the update"""
    status_code = 503
    code = "ledger_conflict"


class PackageError(LessonLinkException):
    """Exception raised for package-related errors"""
    status_code = 409
    code = "package_error"


class OverConsumptionError(PackageError):
    """Package does not have enough remaining hours"""
    code = "over_consumption"


class NoActivePackageError(PackageError):
    """No active package can cover the booking"""
    code = "no_active_package"


class PauseNotAllowedError(PackageError):
    """Package cannot be paused"""
    code = "pause_not_allowed"


class BookingError(LessonLinkException):
    """Exception raised for booking-related errors"""
    status_code = 409
    code = "booking_error"


class SlotUnavailableError(BookingError):
    """Slot is not open or has already been booked"""
    code = "slot_unavailable"


class ApprovalError(LessonLinkException):
    """Exception raised for approval workflow errors"""
    status_code = 409
    code = "approval_error"


class AlreadyResolvedError(ApprovalError):
    """Approval request has already been resolved"""
    code = "already_resolved"


class ConflictError(LessonLinkException):
    """A pending request already exists for this resource"""
    status_code = 409
    code = "conflict"


class PaymentError(LessonLinkException):
    """Exception raised for payment-related errors"""
    status_code = 502
    code = "payment_error"


class DuplicateTransactionError(PaymentError):
    """Payment transaction has already been recorded"""
    status_code = 200
    code = "duplicate_transaction"


class SignatureVerificationError(PaymentError):
    """Webhook signature verification failed"""
    status_code = 400
    code = "invalid_signature"
