"""
Reconciliation Service
Routes a CanonicalEvent to the ledger, refund resolver or subscription reconciler

This is the single processing path shared by the webhook endpoints and the
retry scheduler. Each event is one database transaction; domain events
collected during it are dispatched after commit.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from gateway.base import CanonicalEvent, EventKind, GatewayAdapter
from gateway.registry import get_adapter
from models import (
    SUBSCRIPTION_ID_COLUMNS, CreditPackage, CreditTransactionType, PaymentTransactionType,
    SystemConfig, User, UserSubscription
)
from services.credit_ledger import CreditLedger, PaymentRecord, credit_ledger
from services.domain_events import CreditsPurchased, PaymentFailed, domain_event_bus
from services.payment_audit_service import PaymentAuditService
from services.refund_service import RefundResolver, refund_resolver
from services.subscription_reconciler import SubscriptionReconciler
from utils.datetime_helpers import utc_now
from utils.reconciliation_errors import EventParseError, ReconciliationError

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of processing one canonical event"""
    kind: str
    already_processed: bool = False
    user_id: Optional[int] = None
    detail: Optional[str] = None


class ReconciliationService:
    """Processes canonical gateway events into internal state"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        adapter_lookup: Callable[[str], Optional[GatewayAdapter]] = get_adapter,
        ledger: Optional[CreditLedger] = None,
        refunds: Optional[RefundResolver] = None,
        subscription_reconciler: Optional[SubscriptionReconciler] = None,
    ):
        self._session_factory = session_factory
        self._adapter_lookup = adapter_lookup
        self.ledger = ledger or credit_ledger
        self.refunds = refunds or refund_resolver
        self.subscriptions = subscription_reconciler or SubscriptionReconciler(adapter_lookup, self.ledger)

    def adapter_for(self, gateway: str) -> GatewayAdapter:
        adapter = self._adapter_lookup(gateway)
        if adapter is None:
            raise ReconciliationError(f"No adapter registered for gateway {gateway!r}")
        return adapter

    async def process_payload(self, gateway: str, event_type: str, payload: Dict[str, Any]) -> ProcessResult:
        """Re-parse a stored payload and process it (retry path)"""
        event = self.adapter_for(gateway).parse_event(payload)
        if event.event_type != event_type:
            logger.warning(f"⚠️ RECONCILE: Stored type {event_type} re-parsed as {event.event_type}")
        return await self.process_event(event)

    async def process_event(self, event: CanonicalEvent) -> ProcessResult:
        adapter = self.adapter_for(event.gateway)
        event = await adapter.resolve_event(event)

        if event.kind == EventKind.IGNORED:
            return ProcessResult(kind=event.kind.value, detail="ignored")

        with managed_session(self._session_factory) as session:
            if event.kind == EventKind.CREDIT_PURCHASE:
                return self._credit_purchase(session, event)
            if event.kind == EventKind.SUBSCRIPTION_STATUS:
                return await self._subscription_status(session, event)
            if event.kind == EventKind.REFUND:
                return self._refund(session, event)
            if event.kind == EventKind.DISPUTE:
                return self._dispute(session, event)
            if event.kind == EventKind.PAYMENT_FAILED:
                return self._payment_failed(session, event)
        raise ReconciliationError(f"Unhandled event kind {event.kind}")

    # ------------------------------------------------------------------
    # User resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _user_by_email(session: Session, email: Optional[str]) -> Optional[int]:
        if not email:
            return None
        return session.execute(
            select(User.id).where(func.lower(User.email) == email.strip().lower())
        ).scalar_one_or_none()

    @staticmethod
    def _user_by_subscription(session: Session, gateway: str, subscription_id: Optional[str]) -> Optional[int]:
        if not subscription_id:
            return None
        column = getattr(UserSubscription, SUBSCRIPTION_ID_COLUMNS[gateway])
        return session.execute(
            select(UserSubscription.user_id).where(column == subscription_id)
        ).scalar_one_or_none()

    def _resolve_user(self, session: Session, event: CanonicalEvent) -> Optional[int]:
        if event.user_id is not None and session.get(User, event.user_id) is not None:
            return event.user_id
        return (
            self._user_by_subscription(session, event.gateway, event.subscription_id)
            or self._user_by_email(session, event.customer_email)
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _credit_purchase(self, session: Session, event: CanonicalEvent) -> ProcessResult:
        if not event.payment_id:
            raise EventParseError(event.gateway, f"{event.event_type} has no payment id")
        user_id = self._resolve_user(session, event)
        if user_id is None:
            raise ReconciliationError(f"{event.gateway} payment {event.payment_id}: cannot resolve user")

        credits = event.credits or 0
        if credits <= 0 and event.package_id:
            package = session.get(CreditPackage, event.package_id)
            credits = package.credits if package is not None else 0
        if credits <= 0:
            raise ReconciliationError(f"{event.gateway} payment {event.payment_id}: no credit amount")

        amount = event.amount if event.amount is not None else Decimal("0")
        currency = event.currency or "USD"
        result = self.ledger.add_credits(
            session,
            user_id,
            credits,
            description=f"Purchased {credits} credits via {event.gateway}",
            idempotency_key=f"credits_{event.gateway}_{event.payment_id}",
            payment=PaymentRecord(
                gateway=event.gateway,
                gateway_transaction_id=event.payment_id,
                amount=amount,
                currency=currency,
                type=PaymentTransactionType.CREDITS.value,
                credit_package_id=event.package_id,
            ),
            credit_type=CreditTransactionType.PURCHASE.value,
        )
        if not result.already_processed:
            PaymentAuditService.log_payment_completed(
                session, user_id, event.gateway, event.payment_id, amount, currency,
                PaymentTransactionType.CREDITS.value,
            )
            domain_event_bus.collect(session, CreditsPurchased(
                user_id=user_id,
                gateway=event.gateway,
                payment_id=event.payment_id,
                credits=credits,
                amount=amount,
                currency=currency,
            ))
        return ProcessResult(event.kind.value, result.already_processed, user_id)

    async def _subscription_status(self, session: Session, event: CanonicalEvent) -> ProcessResult:
        user_id = self._resolve_user(session, event)
        if user_id is None:
            logger.warning(
                f"⚠️ RECONCILE: {event.gateway} {event.event_type} for subscription {event.subscription_id} "
                f"matches no user - skipping"
            )
            return ProcessResult(event.kind.value, detail="user not found")

        payment = None
        if event.payment_id:
            payment = PaymentRecord(
                gateway=event.gateway,
                gateway_transaction_id=event.payment_id,
                amount=event.amount if event.amount is not None else Decimal("0"),
                currency=event.currency or "USD",
                type=PaymentTransactionType.SUBSCRIPTION.value,
                plan_id=event.plan_id,
            )
        result = await self.subscriptions.reconcile(
            session,
            user_id,
            event.gateway,
            event.status,
            event.subscription_id,
            event.plan_id,
            event.billing_period,
            payment=payment,
            cancel_at_period_end=event.cancel_at_period_end,
        )
        return ProcessResult(event.kind.value, result.already_processed, user_id, result.status)

    def _refund(self, session: Session, event: CanonicalEvent) -> ProcessResult:
        if not event.payment_id or not event.refund_id:
            raise EventParseError(event.gateway, f"{event.event_type} lacks payment or refund id")
        result = self.refunds.handle_gateway_refund(
            session, event.gateway, event.payment_id, event.refund_id, event.amount, event.currency
        )
        return ProcessResult(
            event.kind.value, result.already_processed,
            detail=None if result.transaction_found else "transaction not found",
        )

    def _dispute(self, session: Session, event: CanonicalEvent) -> ProcessResult:
        if not event.payment_id or not event.dispute_id:
            raise EventParseError(event.gateway, f"{event.event_type} lacks payment or dispute id")
        result = self.refunds.handle_chargeback(
            session,
            event.gateway,
            event.payment_id,
            event.dispute_id,
            event.amount,
            event.currency,
            event.dispute_reason,
            event.dispute_status,
        )
        return ProcessResult(
            event.kind.value, result.already_processed,
            detail=None if result.transaction_found else "transaction not found",
        )

    def _payment_failed(self, session: Session, event: CanonicalEvent) -> ProcessResult:
        user_id = self._resolve_user(session, event)
        PaymentAuditService.log_payment_failed(session, user_id, event.gateway, event.payment_id, event.failure_reason)
        if user_id is not None:
            domain_event_bus.collect(session, PaymentFailed(
                user_id=user_id,
                gateway=event.gateway,
                payment_id=event.payment_id,
                reason=event.failure_reason,
            ))
        logger.warning(f"⚠️ PAYMENT_FAILED: {event.gateway} {event.payment_id} user={user_id}: {event.failure_reason}")
        return ProcessResult(event.kind.value, user_id=user_id)

    # ------------------------------------------------------------------
    # Webhook bookkeeping
    # ------------------------------------------------------------------

    def record_webhook_received(self, gateway: str, event_type: str, event_id: Optional[str]) -> None:
        """Store last_webhook_at_{gateway} and an audit row for a verified delivery"""
        key = f"last_webhook_at_{gateway}"
        with managed_session(self._session_factory) as session:
            row = session.get(SystemConfig, key)
            now = utc_now().isoformat()
            if row is None:
                session.add(SystemConfig(
                    key=key, value=now, value_type="string",
                    description=f"Last verified {gateway} webhook",
                ))
            else:
                row.value = now
            PaymentAuditService.log_webhook_received(session, gateway, event_type, event_id)
