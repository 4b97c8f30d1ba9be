"""
Payment State Transition Validator
==================================

Guards the few status fields that are allowed to change after insert:
- PaymentTransaction: completed -> refunded, nothing else
- WebhookQueueItem: pending -> processing -> completed | pending | failed | expired
"""

import logging
from typing import Dict, Set

from models import PaymentTransactionStatus, WebhookQueueStatus
from utils.reconciliation_errors import StateTransitionError

logger = logging.getLogger(__name__)


class PaymentStateValidator:
    """Validates status transitions for payment transactions and queue items"""

    TRANSACTION_TRANSITIONS: Dict[str, Set[str]] = {
        PaymentTransactionStatus.COMPLETED.value: {PaymentTransactionStatus.REFUNDED.value},
        # Terminal
        PaymentTransactionStatus.REFUNDED.value: set(),
    }

    QUEUE_TRANSITIONS: Dict[str, Set[str]] = {
        WebhookQueueStatus.PENDING.value: {
            WebhookQueueStatus.PROCESSING.value,
            WebhookQueueStatus.EXPIRED.value,
        },
        WebhookQueueStatus.PROCESSING.value: {
            WebhookQueueStatus.COMPLETED.value,
            WebhookQueueStatus.PENDING.value,
            WebhookQueueStatus.FAILED.value,
            WebhookQueueStatus.EXPIRED.value,
        },
        WebhookQueueStatus.COMPLETED.value: set(),
        # Manual requeue by an operator is the only way out of these
        WebhookQueueStatus.FAILED.value: {WebhookQueueStatus.PENDING.value},
        WebhookQueueStatus.EXPIRED.value: {WebhookQueueStatus.PENDING.value},
    }

    @classmethod
    def validate_transaction_transition(cls, current: str, new: str, transaction_id=None) -> None:
        cls._validate(cls.TRANSACTION_TRANSITIONS, "payment_transaction", current, new, transaction_id)

    @classmethod
    def validate_queue_transition(cls, current: str, new: str, item_id=None) -> None:
        cls._validate(cls.QUEUE_TRANSITIONS, "webhook_queue_item", current, new, item_id)

    @staticmethod
    def _validate(table: Dict[str, Set[str]], kind: str, current: str, new: str, ident) -> None:
        if current == new:
            return
        allowed = table.get(current)
        if allowed is None or new not in allowed:
            logger.error(f"🚫 INVALID_TRANSITION: {kind} {ident}: {current} -> {new}")
            raise StateTransitionError(f"Invalid {kind} transition {current} -> {new} (id={ident})")
