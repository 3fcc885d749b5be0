"""Payment and order state tables enforced by the payment service."""

from gstpay.common.errors import InvalidState

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

PAYMENT_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, REFUNDED)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING, COMPLETED, FAILED, CANCELLED},
    PROCESSING: {COMPLETED, FAILED, CANCELLED},
    COMPLETED: {REFUNDED},
    # A verified capture arriving after a rejected attempt supersedes it.
    FAILED: {COMPLETED},
    CANCELLED: set(),
    REFUNDED: set(),
}

# Payment states a client confirmation may start from.
CONFIRMABLE = {PENDING, PROCESSING}
# Payment states whose paired order must mirror them.
SETTLED = {COMPLETED, REFUNDED}

# Order `payment_status` implied by a settled payment status.
ORDER_PAYMENT_STATUS_FOR: dict[str, str] = {
    COMPLETED: "paid",
    REFUNDED: "refunded",
}

ORDER_PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "failed"},
    "failed": {"paid"},
    "paid": {"refunded"},
    "refunded": set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise InvalidState(f"Invalid transition: {current} -> {new}")


def validate_order_payment_transition(current: str, new: str) -> None:
    if new not in ORDER_PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Invalid order payment transition: {current} -> {new}")
