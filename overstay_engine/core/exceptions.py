# ================================
# CUSTOM EXCEPTIONS (core/exceptions.py)
# ================================

class AppException(Exception):
    """Base exception for engine errors surfaced to callers"""

    def __init__(self, detail: str, status_code: int = 400, error_code: str = None):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(detail)

class ValidationError(AppException):
    """Malformed or out-of-range decision parameters"""

    def __init__(self, detail: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(detail, 422, error_code)

class InvalidStateError(AppException):
    """Operation attempted from a status that forbids it"""

    def __init__(self, detail: str, error_code: str = "INVALID_STATE"):
        super().__init__(detail, 409, error_code)

class MissingPaymentMethodError(AppException):
    """No stored customer or payment method at charge time"""

    def __init__(
        self,
        detail: str = "No saved payment method available for off-session charging",
        error_code: str = "MISSING_PAYMENT_METHOD"
    ):
        super().__init__(detail, 422, error_code)

class PaymentProcessorError(AppException):
    """The payment processor could not be used"""

    def __init__(self, detail: str, error_code: str = "PAYMENT_PROCESSOR_ERROR"):
        super().__init__(detail, 502, error_code)

class NotFoundError(AppException):
    """Unknown record or booking"""

    def __init__(self, detail: str, error_code: str = "NOT_FOUND"):
        super().__init__(detail, 404, error_code)
