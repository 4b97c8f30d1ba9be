"""
Tests for the retry scheduler pass: failed deliveries are replayed through reconciliation
"""

from unittest.mock import patch

import pytest

from database import managed_session
from jobs.webhook_retry_scheduler import JOB_ID, WebhookRetryScheduler
from models import PaymentTransaction, User, WebhookQueueItem, WebhookQueueStatus
from services.reconciliation_service import ReconciliationService
from services.webhook_retry_queue import WebhookRetryQueue


def _credit_payload(user_id, event_id="evt_c"):
    return {
        "id": event_id,
        "type": "payment.captured",
        "kind": "credit_purchase",
        "user_id": user_id,
        "payment_id": f"pay_{event_id}",
        "credits": 500,
        "amount": "5.00",
        "currency": "INR",
    }


@pytest.fixture
def build(session_factory, settings_provider):
    def _build(adapter):
        reconciliation = ReconciliationService(session_factory, lambda gateway: adapter)
        queue = WebhookRetryQueue(settings_provider)
        return reconciliation, queue, WebhookRetryScheduler(queue, reconciliation, session_factory,
                                                             interval_minutes=5, batch_size=10)
    return _build


async def _deliver(session_factory, reconciliation, queue, payload):
    """What the webhook route does on a processing failure"""
    try:
        await reconciliation.process_payload("razorpay", payload["type"], payload)
    except Exception as e:
        with managed_session(session_factory) as session:
            item, _ = queue.enqueue(session, "razorpay", payload["type"], payload["id"], payload, str(e))
            return item.id
    return None


class TestWebhookRetryScheduler:

    @pytest.mark.asyncio
    async def test_first_delivery_failure_is_retried_to_completion(self, session_factory, seeded, adapter_class, build):
        adapter = adapter_class(fail_times=1)
        reconciliation, queue, scheduler = build(adapter)
        payload = _credit_payload(seeded["user_id"])

        item_id = await _deliver(session_factory, reconciliation, queue, payload)
        assert item_id is not None
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            assert item.status == WebhookQueueStatus.PENDING.value
            assert item.attempt_count == 0

        stats = await scheduler.run_once()

        assert stats["processed"] == 1
        assert stats["completed"] == 1
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            assert item.status == WebhookQueueStatus.COMPLETED.value
            assert item.processed_at is not None
            assert item.attempt_count == 1
            assert session.get(User, seeded["user_id"]).credits == 600
            assert session.query(PaymentTransaction).count() == 1

    @pytest.mark.asyncio
    async def test_failing_retry_goes_back_to_pending(self, session_factory, seeded, adapter_class, build):
        reconciliation, queue, scheduler = build(adapter_class(fail_times=10))
        item_id = await _deliver(session_factory, reconciliation, queue, _credit_payload(seeded["user_id"]))

        stats = await scheduler.run_once()

        assert stats["retrying"] == 1
        with managed_session(session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            assert item.status == WebhookQueueStatus.PENDING.value
            assert item.attempt_count == 1
            assert "simulated handler failure" in item.last_error
            assert item.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_redelivery_of_processed_payload_completes_without_double_credit(
        self, session_factory, seeded, adapter_class, build
    ):
        reconciliation, queue, scheduler = build(adapter_class())
        payload = _credit_payload(seeded["user_id"])
        await reconciliation.process_payload("razorpay", payload["type"], payload)
        with managed_session(session_factory) as session:
            queue.enqueue(session, "razorpay", payload["type"], payload["id"], payload, "timeout after commit")

        stats = await scheduler.run_once()

        assert stats["completed"] == 1
        with managed_session(session_factory) as session:
            assert session.get(User, seeded["user_id"]).credits == 600

    @pytest.mark.asyncio
    async def test_pass_skipped_while_busy(self, adapter_class, build):
        _, _, scheduler = build(adapter_class())
        scheduler._is_processing = True

        assert await scheduler.run_once() == {"skipped": True, "reason": "busy"}

    @pytest.mark.asyncio
    async def test_start_registers_single_instance_job(self, adapter_class, build):
        _, _, scheduler = build(adapter_class())
        with patch("jobs.webhook_retry_scheduler.AsyncIOScheduler") as scheduler_cls:
            scheduler_cls.return_value.running = False
            scheduler.start()

        kwargs = scheduler_cls.return_value.add_job.call_args.kwargs
        assert kwargs["id"] == JOB_ID
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        scheduler_cls.return_value.start.assert_called_once()
