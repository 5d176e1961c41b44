"""Forward-only status machine for Transaction.payment_status."""
from app.models.transaction import PaymentStatus

TERMINAL_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED})
OPEN_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})

# refunded is only reachable through an administrative action, never automatically
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(current: str | PaymentStatus, new: str | PaymentStatus) -> bool:
    return PaymentStatus(new) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def is_terminal(status: str | PaymentStatus) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def sources_for(new: str | PaymentStatus) -> list[str]:
    """Statuses from which `new` may be reached, as stored column values."""
    target = PaymentStatus(new)
    return sorted(s.value for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)
