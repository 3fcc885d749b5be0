"""Error taxonomy raised by payment operations.

Each error carries a stable `code` and the HTTP status the API maps it to.
Precondition errors never change state; see the individual classes for the
exceptions to that rule.
"""


class PaymentError(Exception):
    """Base class for every failure surfaced to callers."""

    code = "PAYMENT_ERROR"
    status_code = 500


class ValidationFailed(PaymentError):
    code = "VALIDATION_FAILED"
    status_code = 400


class DuplicatePayment(PaymentError):
    code = "DUPLICATE_PAYMENT"
    status_code = 409


class DuplicateOrder(PaymentError):
    code = "DUPLICATE_ORDER"
    status_code = 409


class NotFound(PaymentError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidState(PaymentError):
    code = "INVALID_STATE"
    status_code = 409


class ConcurrentUpdate(InvalidState):
    """A compare-and-swap lost against a concurrent writer."""

    code = "CONCURRENT_UPDATE"


class RefundAmountExceeded(PaymentError):
    code = "REFUND_AMOUNT_EXCEEDED"
    status_code = 400


class GatewayError(PaymentError):
    """Provider call failed. Raised by gateway implementations."""

    code = "GATEWAY_ERROR"
    status_code = 502


class GatewayInitiationFailed(GatewayError):
    code = "GATEWAY_INITIATION_FAILED"


class GatewayTimeout(GatewayError):
    code = "GATEWAY_TIMEOUT"
    status_code = 504


class RefundFailed(GatewayError):
    """Refund rejected by the provider; the payment stays `completed`."""

    code = "REFUND_FAILED"


class VerificationFailed(PaymentError):
    """Provider proof did not verify; the payment has been moved to `failed`."""

    code = "VERIFICATION_FAILED"
    status_code = 400


class InvalidSignature(PaymentError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class RateLimited(PaymentError):
    code = "RATE_LIMITED"
    status_code = 429
