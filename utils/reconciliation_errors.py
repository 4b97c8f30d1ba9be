"""
Reconciliation Error Taxonomy
Typed exceptions used to decide how a failed webhook is answered and whether it is retried
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for payment reconciliation failures"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SignatureVerificationError(ReconciliationError):
    """Webhook signature missing or invalid - answered with 401, never queued"""

    def __init__(self, gateway: str, reason: str = "invalid signature"):
        self.gateway = gateway
        self.reason = reason
        super().__init__(f"{gateway}: {reason}")


class EventParseError(ReconciliationError):
    """Webhook body could not be understood - answered with 400, never queued"""

    def __init__(self, gateway: str, reason: str):
        self.gateway = gateway
        super().__init__(f"{gateway}: {reason}")


class DuplicateEventError(ReconciliationError):
    """
    A unique idempotency key was already recorded.

    Raised from the IntegrityError of the unique constraint so callers can tell
    "already processed" apart from a real database failure without looking at
    error text.
    """

    def __init__(self, idempotency_key: str, constraint: Optional[str] = None):
        self.idempotency_key = idempotency_key
        self.constraint = constraint
        super().__init__(f"already processed: {idempotency_key}")


class ConfigurationError(ReconciliationError):
    """Operator-fixable misconfiguration, e.g. no free-tier model to downgrade to"""


class StateTransitionError(ReconciliationError):
    """Raised when an invalid status transition is attempted"""


class GatewayAPIError(ReconciliationError):
    """A call to a gateway's HTTP API failed - transient, retried via the queue"""

    def __init__(self, gateway: str, message: str, status_code: Optional[int] = None):
        self.gateway = gateway
        self.status_code = status_code
        super().__init__(f"{gateway}: {message}")


class RefundRejectedError(ReconciliationError):
    """Admin refund request that fails validation - answered with 400, or 404 when nothing matched"""

    def __init__(self, message: str, not_found: bool = False):
        self.not_found = not_found
        super().__init__(message)
