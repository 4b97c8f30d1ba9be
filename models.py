"""
Payment Reconciliation - Database Schema
========================================

Schema for the billing side of the platform:
- Credit balances and the credit ledger
- Payment transactions from five gateways (Stripe, PayPal, Razorpay, Paystack, MercadoPago)
- Refunds and chargebacks
- Per-user subscription state
- Durable webhook retry queue
- Admin-editable system settings

Idempotency lives in the unique constraints, not in application locks.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, func, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class Gateway(Enum):
    """Supported payment gateways"""
    STRIPE = "stripe"
    PAYPAL = "paypal"
    RAZORPAY = "razorpay"
    PAYSTACK = "paystack"
    MERCADOPAGO = "mercadopago"


class PlanTier(Enum):
    """Plan / model tiers"""
    FREE = "free"
    PRO = "pro"


class PaymentTransactionType(Enum):
    """What a completed payment bought"""
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"


class PaymentTransactionStatus(Enum):
    """Payment transaction lifecycle"""
    COMPLETED = "completed"
    REFUNDED = "refunded"


class CreditTransactionType(Enum):
    """Credit ledger entry types"""
    PURCHASE = "purchase"
    PLAN_GRANT = "plan_grant"
    REFUND_REVERSAL = "refund_reversal"
    ADJUSTMENT = "adjustment"


class RefundReason(Enum):
    """Why money went back to the customer"""
    GATEWAY_REFUND = "gateway_refund"
    CHARGEBACK = "chargeback"
    ADMIN_REFUND = "admin_refund"


class RefundInitiator(Enum):
    """Who started the refund"""
    GATEWAY = "gateway"
    ADMIN = "admin"


class RefundStatus(Enum):
    """Refund processing status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(Enum):
    """Internal subscription status vocabulary"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PENDING = "pending"


class BillingPeriod(Enum):
    """Subscription billing period"""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class WebhookQueueStatus(Enum):
    """Retry queue item lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


# Gateway -> UserSubscription column holding that gateway's subscription id
SUBSCRIPTION_ID_COLUMNS = {
    Gateway.STRIPE.value: "stripe_subscription_id",
    Gateway.PAYPAL.value: "paypal_subscription_id",
    Gateway.RAZORPAY.value: "razorpay_subscription_id",
    Gateway.PAYSTACK.value: "paystack_subscription_code",
    Gateway.MERCADOPAGO.value: "mercadopago_preapproval_id",
}


# ============================================================================
# USERS & CATALOG
# ============================================================================

class User(Base):
    """Platform user - only billing-relevant fields"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Balance is NOT clamped - refunds of spent credits drive it negative
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    plan_type: Mapped[str] = mapped_column(String(50), default=PlanTier.FREE.value, nullable=False)
    plan_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # False means suspended (chargeback)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    subscription = relationship("UserSubscription", back_populates="user", uselist=False)
    agents = relationship("Agent", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', plan='{self.plan_type}', credits={self.credits})>"


class Plan(Base):
    """Subscription plan catalog"""
    __tablename__ = 'plans'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), default=PlanTier.PRO.value, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD", nullable=False)
    monthly_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def is_free(self) -> bool:
        return self.tier == PlanTier.FREE.value


class CreditPackage(Base):
    """One-off credit bundles"""
    __tablename__ = 'credit_packages'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class LlmModel(Base):
    """LLM models agents may be configured with"""
    __tablename__ = 'llm_models'

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), default=PlanTier.FREE.value, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Agent(Base):
    """User agent - only the model selection matters for billing"""
    __tablename__ = 'agents'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    llm_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    user = relationship("User", back_populates="agents")

    __table_args__ = (
        Index('ix_agents_user_id', 'user_id'),
    )


# ============================================================================
# PAYMENTS, CREDITS, REFUNDS
# ============================================================================

class PaymentTransaction(Base):
    """One row per completed monetary event"""
    __tablename__ = 'payment_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # subscription, credits
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    plan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    credit_package_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    credits_awarded: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=PaymentTransactionStatus.COMPLETED.value, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    refunds = relationship("Refund", back_populates="transaction")

    __table_args__ = (
        # Sole idempotency key for "has this payment already been recorded"
        UniqueConstraint('gateway', 'gateway_transaction_id', name='uq_payment_gateway_txn'),
        Index('ix_payment_transactions_user', 'user_id'),
    )


class CreditTransaction(Base):
    """Credit ledger - every balance change leaves a row"""
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # signed
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    balance_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('reference', name='uq_credit_transaction_reference'),
        Index('ix_credit_transactions_user', 'user_id'),
    )


class Refund(Base):
    """Refund or chargeback record - one per payment transaction"""
    __tablename__ = 'refunds'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey('payment_transactions.id'), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_refund_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(20), default=RefundInitiator.GATEWAY.value, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RefundStatus.COMPLETED.value, nullable=False)
    credits_reversed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    refund_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    transaction = relationship("PaymentTransaction", back_populates="refunds")

    __table_args__ = (
        UniqueConstraint('gateway', 'gateway_refund_id', name='uq_refund_gateway_refund_id'),
        Index('ix_refunds_transaction', 'transaction_id'),
    )


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class UserSubscription(Base):
    """Current subscription state - exactly one row per user"""
    __tablename__ = 'user_subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), unique=True, nullable=False)
    plan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.PENDING.value, nullable=False)
    billing_period: Mapped[str] = mapped_column(String(10), default=BillingPeriod.MONTHLY.value, nullable=False)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # One slot per gateway, only one populated at a time
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paypal_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    razorpay_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paystack_subscription_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mercadopago_preapproval_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscription")

    def active_gateway(self) -> Optional[str]:
        """Gateway whose subscription id slot is populated, if any"""
        for gateway, column in SUBSCRIPTION_ID_COLUMNS.items():
            if getattr(self, column):
                return gateway
        return None

    def gateway_subscription_id(self, gateway: str) -> Optional[str]:
        return getattr(self, SUBSCRIPTION_ID_COLUMNS[gateway])


# ============================================================================
# WEBHOOK RETRY QUEUE
# ============================================================================

class WebhookQueueItem(Base):
    """Durably queued webhook awaiting retry"""
    __tablename__ = 'webhook_queue_items'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WebhookQueueStatus.PENDING.value, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # Queue dedup key - distinct from the payment idempotency key
        UniqueConstraint('gateway', 'event_id', name='uq_webhook_queue_gateway_event'),
        Index('ix_webhook_queue_status_next_retry', 'status', 'next_retry_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "gateway": self.gateway,
            "eventType": self.event_type,
            "eventId": self.event_id,
            "payload": self.payload,
            "status": self.status,
            "attemptCount": self.attempt_count,
            "maxAttempts": self.max_attempts,
            "lastError": self.last_error,
            "errorHistory": list(self.error_history or []),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "nextRetryAt": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "userId": self.user_id,
        }


# ============================================================================
# AUDIT & CONFIGURATION
# ============================================================================

class PaymentAuditLog(Base):
    """Append-only audit trail of payment events"""
    __tablename__ = 'payment_audit_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gateway: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('ix_payment_audit_user_event', 'user_id', 'event_type'),
    )


class SystemConfig(Base):
    """System configuration settings"""
    __tablename__ = 'system_config'

    # Primary key
    key = Column(String(100), primary_key=True)

    # Value and metadata
    value = Column(Text, nullable=False)
    value_type = Column(String(20), default='string', nullable=False)  # string, int, float, bool, json
    description = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
