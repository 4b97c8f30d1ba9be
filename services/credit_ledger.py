"""
Credit Ledger - applies credit deltas exactly once per external reference

The balance increment, the PaymentTransaction insert and the ledger row are one
SAVEPOINT. Duplicate delivery is detected by the unique constraints
(payment_transactions.gateway + gateway_transaction_id, credit_transactions.reference)
and reported as already_processed, never as an error.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    CreditTransaction, CreditTransactionType, PaymentTransaction,
    PaymentTransactionStatus, User
)
from services.payment_audit_service import PaymentAuditService
from utils.reconciliation_errors import DuplicateEventError, ReconciliationError

logger = logging.getLogger(__name__)


@dataclass
class PaymentRecord:
    """The PaymentTransaction to record alongside a credit grant"""
    gateway: str
    gateway_transaction_id: str
    amount: Decimal
    currency: str
    type: str
    plan_id: Optional[str] = None
    credit_package_id: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.gateway}:{self.gateway_transaction_id}"


@dataclass
class CreditResult:
    """Outcome of a ledger write"""
    applied_amount: int
    already_processed: bool
    balance_after: Optional[int] = None
    payment_transaction_id: Optional[int] = None


class CreditLedger:
    """Exactly-once credit balance changes"""

    def add_credits(
        self,
        session: Session,
        user_id: int,
        amount: int,
        description: str,
        idempotency_key: str,
        payment: Optional[PaymentRecord] = None,
        credit_type: str = CreditTransactionType.PURCHASE.value,
    ) -> CreditResult:
        """
        Grant `amount` credits once per idempotency key.

        When `payment` is given the PaymentTransaction row is inserted in the same
        unit and its (gateway, gateway_transaction_id) is the key that detects
        duplicates. A repeat call returns applied_amount=0, already_processed=True.
        """
        if amount < 0:
            raise ValueError("add_credits amount must not be negative; use deduct_credits")

        try:
            return self._apply(session, user_id, amount, description, idempotency_key, payment, credit_type)
        except DuplicateEventError as dup:
            logger.info(f"🔁 CREDIT_LEDGER: Duplicate {dup.idempotency_key} for user {user_id} - already processed")
            return CreditResult(applied_amount=0, already_processed=True)

    def deduct_credits(
        self,
        session: Session,
        user_id: int,
        amount: int,
        description: str,
        idempotency_key: str,
        credit_type: str = CreditTransactionType.ADJUSTMENT.value,
    ) -> CreditResult:
        """Remove credits once per idempotency key; the balance may go negative"""
        if amount < 0:
            raise ValueError("deduct_credits amount must not be negative")

        try:
            return self._apply(session, user_id, -amount, description, idempotency_key, None, credit_type)
        except DuplicateEventError as dup:
            logger.info(f"🔁 CREDIT_LEDGER: Duplicate deduction {dup.idempotency_key} - already processed")
            return CreditResult(applied_amount=0, already_processed=True)

    def _apply(
        self,
        session: Session,
        user_id: int,
        delta: int,
        description: str,
        idempotency_key: str,
        payment: Optional[PaymentRecord],
        credit_type: str,
    ) -> CreditResult:
        payment_row = None
        balance_after = None
        try:
            with session.begin_nested():
                if payment is not None:
                    payment_row = PaymentTransaction(
                        user_id=user_id,
                        type=payment.type,
                        gateway=payment.gateway,
                        gateway_transaction_id=payment.gateway_transaction_id,
                        amount=Decimal(str(payment.amount)),
                        currency=payment.currency,
                        plan_id=payment.plan_id,
                        credit_package_id=payment.credit_package_id,
                        credits_awarded=delta if delta else None,
                        status=PaymentTransactionStatus.COMPLETED.value,
                    )
                    session.add(payment_row)
                    session.flush()

                if delta:
                    ledger_row = CreditTransaction(
                        user_id=user_id,
                        amount=delta,
                        type=credit_type,
                        description=description,
                        reference=idempotency_key,
                    )
                    session.add(ledger_row)
                    session.flush()

                    # Atomic increment - no read-modify-write; loaded User objects are synced in place
                    updated = session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(credits=User.credits + delta)
                        .execution_options(synchronize_session="evaluate")
                    )
                    if updated.rowcount == 0:
                        raise ReconciliationError(f"User {user_id} not found for credit change")

                    balance_after = session.execute(
                        select(User.credits).where(User.id == user_id)
                    ).scalar_one()
                    ledger_row.balance_after = balance_after

                    if delta > 0:
                        PaymentAuditService.log_credits_awarded(session, user_id, delta, idempotency_key)
                    else:
                        PaymentAuditService.log_credits_reversed(session, user_id, -delta, idempotency_key)
        except IntegrityError as e:
            raise self._classify_integrity_error(session, e, idempotency_key, payment)

        logger.info(
            f"✅ CREDIT_LEDGER: {'+' if delta >= 0 else ''}{delta} credits for user {user_id} "
            f"({idempotency_key}) balance={balance_after}"
        )
        return CreditResult(
            applied_amount=delta,
            already_processed=False,
            balance_after=balance_after,
            payment_transaction_id=payment_row.id if payment_row is not None else None,
        )

    @staticmethod
    def _classify_integrity_error(
        session: Session,
        error: IntegrityError,
        idempotency_key: str,
        payment: Optional[PaymentRecord],
    ) -> Exception:
        """Turn a unique violation on one of our idempotency keys into DuplicateEventError"""
        if payment is not None:
            exists = session.execute(
                select(PaymentTransaction.id).where(
                    PaymentTransaction.gateway == payment.gateway,
                    PaymentTransaction.gateway_transaction_id == payment.gateway_transaction_id,
                )
            ).first()
            if exists:
                return DuplicateEventError(payment.idempotency_key, "uq_payment_gateway_txn")

        exists = session.execute(
            select(CreditTransaction.id).where(CreditTransaction.reference == idempotency_key)
        ).first()
        if exists:
            return DuplicateEventError(idempotency_key, "uq_credit_transaction_reference")

        logger.error(f"❌ CREDIT_LEDGER: Integrity error not caused by a duplicate ({idempotency_key}): {error}")
        return error

    @staticmethod
    def get_balance(session: Session, user_id: int) -> int:
        balance = session.execute(select(User.credits).where(User.id == user_id)).scalar_one_or_none()
        if balance is None:
            raise ReconciliationError(f"User {user_id} not found")
        return balance

    @staticmethod
    def get_history(session: Session, user_id: int, limit: int = 50) -> List[CreditTransaction]:
        return (
            session.query(CreditTransaction)
            .filter(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.id.desc())
            .limit(limit)
            .all()
        )


# Global instance
credit_ledger = CreditLedger()
