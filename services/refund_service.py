"""
Refund / Chargeback Resolver
Reverses previously granted credits and records a refund exactly once per transaction

Refunds are single-shot per PaymentTransaction. The balance decrement, the
Refund row, the ledger reversal and the transaction status change commit
together or not at all. Balances are not clamped: reversing credits the user
already spent drives the balance negative.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from gateway.base import GatewayAdapter
from models import (
    CreditTransaction, CreditTransactionType, PaymentTransaction,
    PaymentTransactionStatus, PaymentTransactionType, Refund, RefundInitiator,
    RefundReason, RefundStatus, User
)
from services.domain_events import AccountSuspended, RefundRecorded, domain_event_bus
from services.payment_audit_service import PaymentAuditService
from utils.payment_state_validator import PaymentStateValidator
from utils.reconciliation_errors import DuplicateEventError, ReconciliationError, RefundRejectedError

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    """Outcome of a refund attempt"""
    success: bool
    already_processed: bool
    credits_reversed: int = 0
    refund_id: Optional[int] = None
    transaction_found: bool = True


class RefundResolver:
    """Single-shot refund and chargeback handling"""

    def apply_refund(
        self,
        session: Session,
        user_id: int,
        credits_to_reverse: int,
        gateway: str,
        gateway_refund_id: str,
        transaction_id: int,
        reason: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        initiated_by: str = RefundInitiator.GATEWAY.value,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RefundResult:
        """
        Reverse credits and record a Refund for `transaction_id`.

        1. Any existing Refund for the transaction -> already_processed, nothing mutated
        2. Flip the transaction to refunded only if it still has the status we read;
           losing that race also means already_processed
        3. Decrement the balance by credits_to_reverse (no clamping)
        4. Insert the Refund, unique on (gateway, gateway_refund_id)

        Steps 2-4 run in one SAVEPOINT.
        """
        if credits_to_reverse < 0:
            raise ValueError("credits_to_reverse must not be negative")

        existing = session.execute(
            select(Refund.id).where(Refund.transaction_id == transaction_id).limit(1)
        ).first()
        if existing:
            logger.info(f"🔁 REFUND: Transaction {transaction_id} already refunded (refund {existing[0]})")
            return RefundResult(success=True, already_processed=True, refund_id=existing[0])

        transaction = session.get(PaymentTransaction, transaction_id)
        if transaction is None:
            raise ReconciliationError(f"Payment transaction {transaction_id} not found")

        try:
            refund = self._write_refund(
                session, transaction, user_id, credits_to_reverse, gateway, gateway_refund_id,
                reason, amount, currency, initiated_by, metadata,
            )
        except DuplicateEventError as dup:
            logger.info(f"🔁 REFUND: {dup.idempotency_key} already recorded - skipping")
            return RefundResult(success=True, already_processed=True)

        PaymentAuditService.log_refund_completed(
            session, user_id, gateway, gateway_refund_id, refund.amount, refund.currency, reason
        )
        domain_event_bus.collect(session, RefundRecorded(
            user_id=user_id,
            gateway=gateway,
            gateway_refund_id=gateway_refund_id,
            credits_reversed=credits_to_reverse,
            amount=refund.amount,
            currency=refund.currency,
        ))
        logger.info(
            f"💸 REFUND: {reason} {gateway_refund_id} on transaction {transaction_id} "
            f"reversed {credits_to_reverse} credits for user {user_id}"
        )
        return RefundResult(
            success=True,
            already_processed=False,
            credits_reversed=credits_to_reverse,
            refund_id=refund.id,
        )

    def _write_refund(
        self,
        session: Session,
        transaction: PaymentTransaction,
        user_id: int,
        credits_to_reverse: int,
        gateway: str,
        gateway_refund_id: str,
        reason: str,
        amount: Optional[Decimal],
        currency: Optional[str],
        initiated_by: str,
        metadata: Optional[Dict[str, Any]],
    ) -> Refund:
        PaymentStateValidator.validate_transaction_transition(
            transaction.status, PaymentTransactionStatus.REFUNDED.value, transaction.id
        )
        try:
            with session.begin_nested():
                # Compare-and-set so concurrent refunds of one transaction reverse credits once
                flipped = session.execute(
                    update(PaymentTransaction)
                    .where(
                        PaymentTransaction.id == transaction.id,
                        PaymentTransaction.status == transaction.status,
                        PaymentTransaction.status != PaymentTransactionStatus.REFUNDED.value,
                    )
                    .values(status=PaymentTransactionStatus.REFUNDED.value)
                    .execution_options(synchronize_session="evaluate")
                )
                if flipped.rowcount == 0:
                    raise DuplicateEventError(f"transaction:{transaction.id}", "payment_transactions.status")

                if credits_to_reverse:
                    updated = session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(credits=User.credits - credits_to_reverse)
                        .execution_options(synchronize_session="evaluate")
                    )
                    if updated.rowcount == 0:
                        raise ReconciliationError(f"User {user_id} not found for refund")
                    balance_after = session.execute(
                        select(User.credits).where(User.id == user_id)
                    ).scalar_one()
                    session.add(CreditTransaction(
                        user_id=user_id,
                        amount=-credits_to_reverse,
                        type=CreditTransactionType.REFUND_REVERSAL.value,
                        description=f"{reason} {gateway_refund_id}",
                        reference=f"refund_{gateway}_{gateway_refund_id}",
                        balance_after=balance_after,
                    ))
                    PaymentAuditService.log_credits_reversed(
                        session, user_id, credits_to_reverse, f"refund_{gateway}_{gateway_refund_id}"
                    )

                refund = Refund(
                    transaction_id=transaction.id,
                    user_id=user_id,
                    amount=Decimal(str(amount)) if amount is not None else transaction.amount,
                    currency=currency or transaction.currency,
                    gateway=gateway,
                    gateway_refund_id=gateway_refund_id,
                    reason=reason,
                    initiated_by=initiated_by,
                    status=RefundStatus.COMPLETED.value,
                    credits_reversed=credits_to_reverse or None,
                    refund_metadata=metadata,
                )
                session.add(refund)
                session.flush()
        except IntegrityError as e:
            duplicate = session.execute(
                select(Refund.id).where(Refund.gateway == gateway, Refund.gateway_refund_id == gateway_refund_id)
            ).first()
            if duplicate:
                raise DuplicateEventError(f"{gateway}:{gateway_refund_id}", "uq_refund_gateway_refund_id")
            raise
        return refund

    def handle_gateway_refund(
        self,
        session: Session,
        gateway: str,
        gateway_payment_id: str,
        gateway_refund_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> RefundResult:
        """Customer refunded from the gateway dashboard: reverse credits and mark the payment refunded"""
        transaction = self._find_transaction(session, gateway, gateway_payment_id)
        if transaction is None:
            logger.warning(
                f"⚠️ GATEWAY_REFUND: No {gateway} transaction {gateway_payment_id} for refund {gateway_refund_id}"
            )
            return RefundResult(success=True, already_processed=False, transaction_found=False)

        return self.apply_refund(
            session,
            user_id=transaction.user_id,
            credits_to_reverse=self._credits_to_reverse(transaction),
            gateway=gateway,
            gateway_refund_id=gateway_refund_id,
            transaction_id=transaction.id,
            reason=RefundReason.GATEWAY_REFUND.value,
            amount=amount,
            currency=currency,
            initiated_by=RefundInitiator.GATEWAY.value,
        )

    def handle_chargeback(
        self,
        session: Session,
        gateway: str,
        gateway_payment_id: str,
        dispute_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        dispute_reason: Optional[str] = None,
        dispute_status: Optional[str] = None,
    ) -> RefundResult:
        """
        Chargeback/dispute: same reversal as a refund, plus account suspension.

        The user is suspended even when the refund was already recorded, so a
        re-delivered dispute always leaves is_active False.
        """
        transaction = self._find_transaction(session, gateway, gateway_payment_id)
        if transaction is None:
            logger.warning(f"⚠️ CHARGEBACK: No {gateway} transaction {gateway_payment_id} for dispute {dispute_id}")
            return RefundResult(success=True, already_processed=False, transaction_found=False)

        result = self.apply_refund(
            session,
            user_id=transaction.user_id,
            credits_to_reverse=self._credits_to_reverse(transaction),
            gateway=gateway,
            gateway_refund_id=dispute_id,
            transaction_id=transaction.id,
            reason=RefundReason.CHARGEBACK.value,
            amount=amount,
            currency=currency,
            initiated_by=RefundInitiator.GATEWAY.value,
            metadata={
                "user_suspended": True,
                "dispute_reason": dispute_reason,
                "dispute_status": dispute_status,
            },
        )

        user = session.get(User, transaction.user_id)
        if user is None:
            raise ReconciliationError(f"User {transaction.user_id} not found for chargeback")
        was_active = user.is_active
        user.is_active = False
        session.flush()

        if not result.already_processed:
            PaymentAuditService.log_dispute_opened(
                session, user.id, gateway, dispute_id, amount, currency, dispute_reason
            )
        if was_active:
            domain_event_bus.collect(session, AccountSuspended(
                user_id=user.id,
                gateway=gateway,
                dispute_id=dispute_id,
                dispute_reason=dispute_reason,
            ))
        logger.warning(f"🚨 CHARGEBACK: {gateway} dispute {dispute_id} - user {user.id} suspended")
        return result

    async def admin_refund(
        self,
        session_factory: sessionmaker,
        adapter_lookup: Callable[[str], Optional[GatewayAdapter]],
        transaction_id: int,
        amount: Decimal,
        admin_note: Optional[str] = None,
    ) -> RefundResult:
        """
        Operator-initiated refund of a completed payment.

        The amount is capped at the transaction amount. Credit purchases reverse
        floor(credits_awarded * amount / transaction amount) credits. The gateway
        call runs outside any database transaction; the gateway's own refund
        webhook later finds the Refund row and is a no-op.
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise RefundRejectedError("Refund amount must be positive")

        with managed_session(session_factory) as session:
            transaction = session.get(PaymentTransaction, transaction_id)
            if transaction is None:
                raise RefundRejectedError(f"Payment transaction {transaction_id} not found", not_found=True)
            if transaction.status == PaymentTransactionStatus.REFUNDED.value:
                raise RefundRejectedError(f"Transaction {transaction_id} has already been refunded")
            if transaction.status != PaymentTransactionStatus.COMPLETED.value:
                raise RefundRejectedError(f"Only completed transactions can be refunded (is {transaction.status})")
            if amount > transaction.amount:
                raise RefundRejectedError(
                    f"Refund amount exceeds refundable {transaction.amount} {transaction.currency}"
                )
            if not transaction.gateway_transaction_id:
                raise RefundRejectedError(f"Transaction {transaction_id} has no gateway payment id")
            gateway = transaction.gateway
            gateway_payment_id = transaction.gateway_transaction_id
            currency = transaction.currency
            user_id = transaction.user_id
            credits_to_reverse = 0
            if transaction.type == PaymentTransactionType.CREDITS.value and transaction.credits_awarded:
                credits_to_reverse = int(
                    (transaction.credits_awarded * amount / transaction.amount).to_integral_value(ROUND_FLOOR)
                )

        adapter = adapter_lookup(gateway)
        if adapter is None:
            raise RefundRejectedError(f"Unsupported payment gateway: {gateway}")

        logger.info(f"🔄 ADMIN_REFUND: Refunding {amount} {currency} of {gateway} payment {gateway_payment_id}")
        gateway_refund_id = await adapter.refund_payment(gateway_payment_id, amount, currency)

        with managed_session(session_factory) as session:
            return self.apply_refund(
                session,
                user_id=user_id,
                credits_to_reverse=credits_to_reverse,
                gateway=gateway,
                gateway_refund_id=gateway_refund_id or f"admin_refund_{transaction_id}",
                transaction_id=transaction_id,
                reason=RefundReason.ADMIN_REFUND.value,
                amount=amount,
                currency=currency,
                initiated_by=RefundInitiator.ADMIN.value,
                metadata={"admin_note": admin_note} if admin_note else None,
            )

    @staticmethod
    def _find_transaction(session: Session, gateway: str, gateway_payment_id: str) -> Optional[PaymentTransaction]:
        return session.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.gateway == gateway,
                PaymentTransaction.gateway_transaction_id == gateway_payment_id,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _credits_to_reverse(transaction: PaymentTransaction) -> int:
        # Subscription payments grant plan credits separately; only credit purchases are reversed
        if transaction.type == PaymentTransactionType.CREDITS.value:
            return transaction.credits_awarded or 0
        return 0


# Global instance
refund_resolver = RefundResolver()
