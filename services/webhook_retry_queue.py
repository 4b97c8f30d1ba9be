"""
Webhook Retry Queue
Durable store of webhooks whose inline processing failed

Lifecycle: pending -> processing -> completed | pending (retry) | failed | expired.
Queue dedup is the (gateway, event_id) unique constraint, separate from the
payment idempotency keys because one event can fan out into several writes.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from models import WebhookQueueItem, WebhookQueueStatus
from services.domain_events import OperatorAlert, domain_event_bus
from services.webhook_settings_provider import WebhookSettingsProvider
from utils.datetime_helpers import utc_now
from utils.payment_state_validator import PaymentStateValidator

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def _error_entry(attempt: int, error: str, when) -> Dict[str, Any]:
    return {"attempt": attempt, "error": error[:MAX_ERROR_LENGTH], "timestamp": when.isoformat()}


class WebhookRetryQueue:
    """Queue operations; every method works inside the caller's session"""

    def __init__(self, settings_provider: WebhookSettingsProvider):
        self.settings_provider = settings_provider

    def backoff(self, attempt: int) -> timedelta:
        """Delay after attempt `attempt`; the last table entry repeats past the end"""
        return timedelta(minutes=self.settings_provider.get_settings().backoff_minutes(attempt))

    def enqueue(
        self,
        session: Session,
        gateway: str,
        event_type: str,
        event_id: str,
        payload: Dict[str, Any],
        error: str,
        user_id: Optional[int] = None,
    ) -> Tuple[WebhookQueueItem, bool]:
        """
        Queue a webhook after its first failed attempt.

        Returns (item, created). An event already queued under (gateway, event_id),
        at any status, is returned with created=False.
        """
        existing = self._find(session, gateway, event_id)
        if existing is not None:
            logger.info(f"🔁 WEBHOOK_QUEUE: {gateway}:{event_id} already queued (item {existing.id}, {existing.status})")
            return existing, False

        settings = self.settings_provider.get_settings()
        now = utc_now()
        item = WebhookQueueItem(
            gateway=gateway,
            event_type=event_type,
            event_id=event_id,
            payload=payload,
            status=WebhookQueueStatus.PENDING.value,
            attempt_count=0,
            max_attempts=settings.max_attempts,
            last_error=error[:MAX_ERROR_LENGTH] if error else None,
            error_history=[_error_entry(0, error or "", now)],
            next_retry_at=None,
            expires_at=now + timedelta(hours=settings.expiry_hours),
            user_id=user_id,
        )
        try:
            with session.begin_nested():
                session.add(item)
                session.flush()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            existing = self._find(session, gateway, event_id)
            if existing is None:
                raise
            logger.info(f"🔁 WEBHOOK_QUEUE: {gateway}:{event_id} queued concurrently (item {existing.id})")
            return existing, False

        logger.warning(f"📥 WEBHOOK_QUEUE: Queued {gateway} {event_type} {event_id} for retry: {error}")
        return item, True

    @staticmethod
    def _find(session: Session, gateway: str, event_id: str) -> Optional[WebhookQueueItem]:
        return session.execute(
            select(WebhookQueueItem).where(
                WebhookQueueItem.gateway == gateway, WebhookQueueItem.event_id == event_id
            )
        ).scalar_one_or_none()

    def mark_expired(self, session: Session) -> int:
        """Expire live items past expires_at regardless of attempts left"""
        now = utc_now()
        items = session.execute(
            select(WebhookQueueItem).where(
                WebhookQueueItem.status.in_([WebhookQueueStatus.PENDING.value, WebhookQueueStatus.PROCESSING.value]),
                WebhookQueueItem.expires_at <= now,
            )
        ).scalars().all()
        for item in items:
            PaymentStateValidator.validate_queue_transition(item.status, WebhookQueueStatus.EXPIRED.value, item.id)
            item.status = WebhookQueueStatus.EXPIRED.value
            self._append_error(item, item.attempt_count, "expired before successful processing", now)
            logger.warning(
                f"⌛ WEBHOOK_QUEUE: Item {item.id} ({item.gateway}:{item.event_id}) expired after "
                f"{item.attempt_count} attempt(s)"
            )
        if items:
            session.flush()
        return len(items)

    @staticmethod
    def get_due_items(session: Session, limit: int = 50) -> List[WebhookQueueItem]:
        now = utc_now()
        return list(session.execute(
            select(WebhookQueueItem)
            .where(
                WebhookQueueItem.status == WebhookQueueStatus.PENDING.value,
                (WebhookQueueItem.next_retry_at.is_(None)) | (WebhookQueueItem.next_retry_at <= now),
                WebhookQueueItem.expires_at > now,
            )
            .order_by(WebhookQueueItem.created_at, WebhookQueueItem.id)
            .limit(limit)
        ).scalars())

    @staticmethod
    def mark_processing(session: Session, item: WebhookQueueItem) -> None:
        PaymentStateValidator.validate_queue_transition(item.status, WebhookQueueStatus.PROCESSING.value, item.id)
        item.status = WebhookQueueStatus.PROCESSING.value
        item.attempt_count = (item.attempt_count or 0) + 1
        session.flush()

    @staticmethod
    def mark_completed(session: Session, item: WebhookQueueItem) -> None:
        PaymentStateValidator.validate_queue_transition(item.status, WebhookQueueStatus.COMPLETED.value, item.id)
        item.status = WebhookQueueStatus.COMPLETED.value
        item.processed_at = utc_now()
        item.next_retry_at = None
        session.flush()
        logger.info(
            f"✅ WEBHOOK_QUEUE: Item {item.id} ({item.gateway}:{item.event_id}) completed on attempt "
            f"{item.attempt_count}"
        )

    def mark_failed_attempt(self, session: Session, item: WebhookQueueItem, error: str) -> None:
        """Record a failed attempt: back to pending with backoff, or failed when attempts run out"""
        now = utc_now()
        self._append_error(item, item.attempt_count, error, now)
        item.last_error = error[:MAX_ERROR_LENGTH]

        if item.attempt_count >= item.max_attempts:
            PaymentStateValidator.validate_queue_transition(item.status, WebhookQueueStatus.FAILED.value, item.id)
            item.status = WebhookQueueStatus.FAILED.value
            item.next_retry_at = None
            session.flush()
            logger.error(
                f"❌ WEBHOOK_QUEUE: Item {item.id} ({item.gateway} {item.event_type} {item.event_id}) failed "
                f"permanently after {item.attempt_count} attempts: {error}"
            )
            domain_event_bus.collect(session, OperatorAlert(
                title="Webhook retries exhausted",
                message=f"{item.gateway} {item.event_type} {item.event_id} needs manual intervention",
                context={"queue_item_id": item.id, "last_error": item.last_error, "user_id": item.user_id},
            ))
            return

        PaymentStateValidator.validate_queue_transition(item.status, WebhookQueueStatus.PENDING.value, item.id)
        item.status = WebhookQueueStatus.PENDING.value
        item.next_retry_at = now + self.backoff(item.attempt_count)
        session.flush()
        logger.warning(
            f"🔄 WEBHOOK_QUEUE: Item {item.id} attempt {item.attempt_count}/{item.max_attempts} failed, "
            f"retry at {item.next_retry_at.isoformat()}: {error}"
        )

    @staticmethod
    def _append_error(item: WebhookQueueItem, attempt: int, error: str, when) -> None:
        history = list(item.error_history or [])
        history.append(_error_entry(attempt, error, when))
        item.error_history = history
        flag_modified(item, "error_history")

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @staticmethod
    def get_stats(session: Session) -> Dict[str, int]:
        counts = {status.value: 0 for status in WebhookQueueStatus}
        rows = session.execute(
            select(WebhookQueueItem.status, func.count(WebhookQueueItem.id)).group_by(WebhookQueueItem.status)
        )
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    @staticmethod
    def list_items(session: Session, status: Optional[str] = None, limit: int = 100) -> List[WebhookQueueItem]:
        query = select(WebhookQueueItem).order_by(WebhookQueueItem.id.desc()).limit(limit)
        if status:
            query = query.where(WebhookQueueItem.status == status)
        return list(session.execute(query).scalars())

    def requeue_failed(self, session: Session, item_id: int) -> Optional[WebhookQueueItem]:
        """Manual intervention: give a failed or expired item a fresh set of attempts"""
        item = session.get(WebhookQueueItem, item_id)
        if item is None:
            return None
        PaymentStateValidator.validate_queue_transition(item.status, WebhookQueueStatus.PENDING.value, item.id)
        settings = self.settings_provider.get_settings()
        now = utc_now()
        previous = item.status
        item.status = WebhookQueueStatus.PENDING.value
        item.attempt_count = 0
        item.max_attempts = settings.max_attempts
        item.next_retry_at = None
        item.expires_at = now + timedelta(hours=settings.expiry_hours)
        self._append_error(item, 0, f"manually requeued from {previous}", now)
        session.flush()
        logger.info(f"♻️ WEBHOOK_QUEUE: Item {item.id} requeued from {previous}")
        return item

    @staticmethod
    def purge_completed(session: Session, older_than_days: int = 30) -> int:
        cutoff = utc_now() - timedelta(days=older_than_days)
        result = session.execute(
            delete(WebhookQueueItem).where(
                WebhookQueueItem.status == WebhookQueueStatus.COMPLETED.value,
                WebhookQueueItem.processed_at < cutoff,
            )
        )
        if result.rowcount:
            logger.info(f"🧹 WEBHOOK_QUEUE: Purged {result.rowcount} completed item(s) older than {older_than_days}d")
        return result.rowcount
