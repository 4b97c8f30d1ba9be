"""
Payment Audit Service - append-only audit trail of payment events
Audit rows are written inside the caller's transaction so they commit or roll back with the financial change
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from models import PaymentAuditLog

logger = logging.getLogger(__name__)


class PaymentAuditService:
    """Records payment lifecycle events in payment_audit_logs"""

    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    REFUND_COMPLETED = "refund_completed"
    DISPUTE_OPENED = "dispute_opened"
    WEBHOOK_RECEIVED = "webhook_received"
    CREDITS_AWARDED = "credits_awarded"
    CREDITS_REVERSED = "credits_reversed"

    @staticmethod
    def _log(
        session: Session,
        audit_type: str,
        user_id: Optional[int] = None,
        gateway: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        **details: Any,
    ) -> PaymentAuditLog:
        entry = PaymentAuditLog(
            event_type=audit_type,
            user_id=user_id,
            gateway=gateway,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=currency,
            details={k: v for k, v in details.items() if v is not None} or None,
        )
        session.add(entry)
        logger.debug(f"📝 PAYMENT_AUDIT: {audit_type} user={user_id} gateway={gateway}")
        return entry

    @classmethod
    def log_payment_completed(cls, session: Session, user_id: int, gateway: str, payment_id: str,
                              amount, currency: str, payment_type: str) -> PaymentAuditLog:
        return cls._log(session, cls.PAYMENT_COMPLETED, user_id, gateway, amount, currency,
                        payment_id=payment_id, payment_type=payment_type)

    @classmethod
    def log_payment_failed(cls, session: Session, user_id: Optional[int], gateway: str,
                           payment_id: Optional[str], reason: Optional[str]) -> PaymentAuditLog:
        return cls._log(session, cls.PAYMENT_FAILED, user_id, gateway, payment_id=payment_id, reason=reason)

    @classmethod
    def log_subscription_created(cls, session: Session, user_id: int, gateway: str, plan_id: Optional[str],
                                 subscription_id: Optional[str], billing_period: str) -> PaymentAuditLog:
        return cls._log(session, cls.SUBSCRIPTION_CREATED, user_id, gateway, plan_id=plan_id,
                        subscription_id=subscription_id, billing_period=billing_period)

    @classmethod
    def log_subscription_renewed(cls, session: Session, user_id: int, gateway: str, plan_id: Optional[str],
                                 subscription_id: Optional[str]) -> PaymentAuditLog:
        return cls._log(session, cls.SUBSCRIPTION_RENEWED, user_id, gateway, plan_id=plan_id,
                        subscription_id=subscription_id)

    @classmethod
    def log_subscription_cancelled(cls, session: Session, user_id: int, gateway: str,
                                   subscription_id: Optional[str], status: str) -> PaymentAuditLog:
        return cls._log(session, cls.SUBSCRIPTION_CANCELLED, user_id, gateway,
                        subscription_id=subscription_id, status=status)

    @classmethod
    def log_refund_completed(cls, session: Session, user_id: int, gateway: str, refund_id: str,
                             amount, currency: str, reason: str) -> PaymentAuditLog:
        return cls._log(session, cls.REFUND_COMPLETED, user_id, gateway, amount, currency,
                        refund_id=refund_id, reason=reason)

    @classmethod
    def log_dispute_opened(cls, session: Session, user_id: int, gateway: str, dispute_id: str,
                           amount, currency: str, dispute_reason: Optional[str]) -> PaymentAuditLog:
        return cls._log(session, cls.DISPUTE_OPENED, user_id, gateway, amount, currency,
                        dispute_id=dispute_id, dispute_reason=dispute_reason)

    @classmethod
    def log_webhook_received(cls, session: Session, gateway: str, event_type: str,
                             event_id: Optional[str]) -> PaymentAuditLog:
        return cls._log(session, cls.WEBHOOK_RECEIVED, None, gateway, event_type=event_type, event_id=event_id)

    @classmethod
    def log_credits_awarded(cls, session: Session, user_id: int, credits: int, reference: str) -> PaymentAuditLog:
        return cls._log(session, cls.CREDITS_AWARDED, user_id, credits=credits, reference=reference)

    @classmethod
    def log_credits_reversed(cls, session: Session, user_id: int, credits: int, reference: str) -> PaymentAuditLog:
        return cls._log(session, cls.CREDITS_REVERSED, user_id, credits=credits, reference=reference)

    @staticmethod
    def get_user_history(session: Session, user_id: int, limit: int = 50) -> list:
        return (
            session.query(PaymentAuditLog)
            .filter(PaymentAuditLog.user_id == user_id)
            .order_by(PaymentAuditLog.id.desc())
            .limit(limit)
            .all()
        )

