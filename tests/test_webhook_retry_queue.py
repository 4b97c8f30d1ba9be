"""
Tests for the durable webhook retry queue
"""

from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select

from database import managed_session
from gateway.razorpay_adapter import RazorpayAdapter
from models import WebhookQueueItem, WebhookQueueStatus
from services.domain_events import OperatorAlert, domain_event_bus
from services.webhook_retry_queue import MAX_ERROR_LENGTH, WebhookRetryQueue
from utils.datetime_helpers import ensure_utc, utc_now
from utils.reconciliation_errors import StateTransitionError

PAYLOAD = {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_1"}}}}


@pytest.fixture
def queue(settings_provider):
    return WebhookRetryQueue(settings_provider)


def _enqueue(session_factory, queue, event_id="evt_1", error="boom"):
    with managed_session(session_factory) as session:
        item, created = queue.enqueue(session, "razorpay", "payment.captured", event_id, PAYLOAD, error, user_id=1)
        return item.id, created


def _item(session_factory, item_id):
    with managed_session(session_factory) as session:
        return session.get(WebhookQueueItem, item_id)


class TestEnqueue:

    def test_first_failure_creates_pending_item(self, session_factory, queue):
        item_id, created = _enqueue(session_factory, queue)

        assert created is True
        item = _item(session_factory, item_id)
        assert item.status == WebhookQueueStatus.PENDING.value
        assert item.attempt_count == 0
        assert item.next_retry_at is None
        assert item.max_attempts == 5
        assert item.error_history[0]["attempt"] == 0
        assert item.error_history[0]["error"] == "boom"
        assert ensure_utc(item.expires_at) > utc_now() + timedelta(hours=23)

    def test_same_event_queued_once(self, session_factory, queue):
        first_id, _ = _enqueue(session_factory, queue)
        second_id, created = _enqueue(session_factory, queue, error="second failure")

        assert created is False
        assert second_id == first_id
        with managed_session(session_factory) as session:
            assert session.execute(select(func.count(WebhookQueueItem.id))).scalar() == 1

    def test_concurrent_insert_returns_winning_item(self, session_factory, queue):
        winner_id, _ = _enqueue(session_factory, queue)
        lookups = []
        real_find = WebhookRetryQueue._find

        def find_after_race(session, gateway, event_id):
            lookups.append(event_id)
            # The first lookup runs before the other delivery commits
            return None if len(lookups) == 1 else real_find(session, gateway, event_id)

        with patch.object(WebhookRetryQueue, "_find", staticmethod(find_after_race)):
            loser_id, created = _enqueue(session_factory, queue, error="lost the race")

        assert created is False
        assert loser_id == winner_id
        assert len(lookups) == 2
        with managed_session(session_factory) as session:
            assert session.execute(select(func.count(WebhookQueueItem.id))).scalar() == 1

    def test_renewals_of_one_subscription_queue_separately(self, session_factory, queue):
        adapter = RazorpayAdapter(webhook_secret="s")

        def renewal(payment_id, created_at):
            return adapter.parse_event({
                "event": "subscription.charged",
                "created_at": created_at,
                "payload": {
                    "subscription": {"entity": {"id": "sub_1", "notes": {"userId": "1"}}},
                    "payment": {"entity": {"id": payment_id, "amount": 99900, "currency": "INR"}},
                },
            })

        month1 = renewal("pay_month1", 1700000000)
        month2 = renewal("pay_month2", 1702592000)
        assert month1.event_id != month2.event_id

        first_id, _ = _enqueue(session_factory, queue, event_id=month1.event_id)
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, first_id)
            queue.mark_processing(session, item)
            queue.mark_completed(session, item)

        second_id, created = _enqueue(session_factory, queue, event_id=month2.event_id)

        assert created is True
        assert second_id != first_id
        assert _item(session_factory, second_id).status == WebhookQueueStatus.PENDING.value

    def test_long_errors_are_truncated(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue, error="x" * (MAX_ERROR_LENGTH + 500))
        assert len(_item(session_factory, item_id).last_error) == MAX_ERROR_LENGTH


class TestAttempts:

    def test_backoff_table(self, queue):
        assert queue.backoff(1) == timedelta(minutes=1)
        assert queue.backoff(2) == timedelta(minutes=5)
        assert queue.backoff(7) == timedelta(minutes=60)

    def test_failed_attempt_schedules_retry(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue)
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            queue.mark_processing(session, item)
            queue.mark_failed_attempt(session, item, "still broken")

        item = _item(session_factory, item_id)
        assert item.status == WebhookQueueStatus.PENDING.value
        assert item.attempt_count == 1
        assert item.last_error == "still broken"
        assert ensure_utc(item.next_retry_at) > utc_now() + timedelta(seconds=50)
        assert [entry["attempt"] for entry in item.error_history] == [0, 1]

    def test_not_due_before_next_retry(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue)
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            queue.mark_processing(session, item)
            queue.mark_failed_attempt(session, item, "still broken")
        with managed_session(session_factory) as session:
            assert queue.get_due_items(session) == []

    def test_exhausted_attempts_fail_and_alert(self, session_factory, queue):
        alerts = Mock()
        domain_event_bus.subscribe(OperatorAlert, alerts)
        item_id, _ = _enqueue(session_factory, queue)

        for attempt in range(5):
            with managed_session(session_factory) as session:
                item = session.get(WebhookQueueItem, item_id)
                queue.mark_processing(session, item)
                queue.mark_failed_attempt(session, item, f"failure {attempt + 1}")

        item = _item(session_factory, item_id)
        assert item.status == WebhookQueueStatus.FAILED.value
        assert item.attempt_count == 5
        assert item.next_retry_at is None
        alerts.assert_called_once()
        assert alerts.call_args[0][0].context["queue_item_id"] == item_id

    def test_completed_item_records_processed_at(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue)
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            queue.mark_processing(session, item)
            queue.mark_completed(session, item)

        item = _item(session_factory, item_id)
        assert item.status == WebhookQueueStatus.COMPLETED.value
        assert item.processed_at is not None


class TestExpiry:

    def test_expired_items_are_marked_and_not_due(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue)
        with managed_session(session_factory) as session:
            session.get(WebhookQueueItem, item_id).expires_at = utc_now() - timedelta(minutes=1)

        with managed_session(session_factory) as session:
            assert queue.mark_expired(session) == 1
            assert queue.get_due_items(session) == []

        item = _item(session_factory, item_id)
        assert item.status == WebhookQueueStatus.EXPIRED.value
        assert item.error_history[-1]["error"] == "expired before successful processing"


class TestAdmin:

    def test_requeue_failed_item(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue)
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            item.status = WebhookQueueStatus.FAILED.value
            item.attempt_count = 5

        with managed_session(session_factory) as session:
            item = queue.requeue_failed(session, item_id)
            assert item.status == WebhookQueueStatus.PENDING.value
            assert item.attempt_count == 0

    def test_requeue_completed_item_is_rejected(self, session_factory, queue):
        item_id, _ = _enqueue(session_factory, queue)
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            queue.mark_processing(session, item)
            queue.mark_completed(session, item)

        with pytest.raises(StateTransitionError):
            with managed_session(session_factory) as session:
                queue.requeue_failed(session, item_id)

    def test_stats_count_by_status(self, session_factory, queue):
        _enqueue(session_factory, queue, "evt_1")
        _enqueue(session_factory, queue, "evt_2")
        with managed_session(session_factory) as session:
            stats = queue.get_stats(session)

        assert stats["pending"] == 2
        assert stats["failed"] == 0
        assert stats["total"] == 2
