"""
Domain Event Bus
Post-commit publish/subscribe for best-effort side effects

Financial writes record events on the session while the transaction is open;
the events are only dispatched after the transaction commits. Subscriber
failures are logged and never propagate back into the financial path.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Type

from sqlalchemy.orm import Session

from utils.datetime_helpers import utc_now

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_domain_events"


@dataclass
class DomainEvent:
    """Base class for events emitted after a financial write"""
    occurred_at: datetime = field(default_factory=utc_now, init=False)


@dataclass
class CreditsPurchased(DomainEvent):
    user_id: int
    gateway: str
    payment_id: str
    credits: int
    amount: Any
    currency: str


@dataclass
class SubscriptionActivated(DomainEvent):
    user_id: int
    gateway: str
    plan_id: Optional[str]
    plan_name: Optional[str]
    billing_period: str
    current_period_end: Optional[datetime]
    payment_id: Optional[str] = None
    amount: Any = None
    currency: Optional[str] = None


@dataclass
class SubscriptionPastDue(DomainEvent):
    user_id: int
    gateway: str
    gateway_subscription_id: Optional[str]


@dataclass
class SubscriptionCancelled(DomainEvent):
    user_id: int
    gateway: str
    status: str
    agents_migrated: int = 0


@dataclass
class PaymentFailed(DomainEvent):
    user_id: Optional[int]
    gateway: str
    payment_id: Optional[str]
    reason: Optional[str] = None


@dataclass
class RefundRecorded(DomainEvent):
    user_id: int
    gateway: str
    gateway_refund_id: str
    credits_reversed: int
    amount: Any
    currency: str


@dataclass
class AccountSuspended(DomainEvent):
    user_id: int
    gateway: str
    dispute_id: str
    dispute_reason: Optional[str] = None


@dataclass
class OperatorAlert(DomainEvent):
    """Loud, actionable signal for something only an operator can fix"""
    title: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[DomainEvent], Any]


class DomainEventBus:
    """In-process pub/sub keyed by event class"""

    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = {}
        self.stats = {"published": 0, "dispatched": 0, "handler_failures": 0, "discarded": 0}
        # Event loops hold tasks weakly
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def clear_subscribers(self) -> None:
        self._handlers.clear()

    def collect(self, session: Session, event: DomainEvent) -> None:
        """Hold an event on the session until its transaction commits"""
        session.info.setdefault(_PENDING_KEY, []).append(event)
        self.stats["published"] += 1

    def discard_pending(self, session: Session) -> None:
        """Drop events from a transaction that rolled back"""
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            self.stats["discarded"] += len(dropped)
            logger.info(f"🗑️ DOMAIN_EVENTS: Discarded {len(dropped)} event(s) after rollback")

    def dispatch_pending(self, session: Session) -> None:
        """Deliver events collected on a session that just committed"""
        events = session.info.pop(_PENDING_KEY, [])
        for event in events:
            self.dispatch(event)

    def dispatch(self, event: DomainEvent) -> None:
        for event_type, handlers in self._handlers.items():
            if not isinstance(event, event_type):
                continue
            for handler in handlers:
                self._invoke(handler, event)
        self.stats["dispatched"] += 1

    def _invoke(self, handler: Handler, event: DomainEvent) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                self._schedule(result, name, event)
        except Exception as e:
            self.stats["handler_failures"] += 1
            logger.error(f"❌ DOMAIN_EVENTS: {name} failed for {type(event).__name__}: {e}")

    def _schedule(self, awaitable, name: str, event: DomainEvent) -> None:
        async def _guarded():
            try:
                await awaitable
            except Exception as e:
                self.stats["handler_failures"] += 1
                logger.error(f"❌ DOMAIN_EVENTS: {name} failed for {type(event).__name__}: {e}")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_guarded())
            return
        task = loop.create_task(_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


# Global instance - subscribers are registered by services.notification_service
domain_event_bus = DomainEventBus()
