"""
Webhook Retry Scheduler
Periodically drains the webhook retry queue back through the reconciliation path

One pass at a time: APScheduler runs the job with max_instances=1 and the
in-process busy flag skips a pass that starts while another is still running
(e.g. a manual admin trigger). Items within a pass are handled sequentially,
each in its own transaction.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import Config
from database import managed_session
from models import WebhookQueueItem, WebhookQueueStatus
from services.reconciliation_service import ReconciliationService
from services.webhook_retry_queue import WebhookRetryQueue

logger = logging.getLogger(__name__)

JOB_ID = "webhook_retry_queue"


class WebhookRetryScheduler:
    """Drives WebhookRetryQueue on a fixed interval"""

    def __init__(
        self,
        queue: WebhookRetryQueue,
        reconciliation: ReconciliationService,
        session_factory: Optional[sessionmaker] = None,
        interval_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.queue = queue
        self.reconciliation = reconciliation
        self._session_factory = session_factory
        self.interval_minutes = interval_minutes or Config.WEBHOOK_RETRY_SCHEDULER_INTERVAL_MINUTES
        self.batch_size = batch_size or Config.WEBHOOK_RETRY_BATCH_SIZE
        self._is_processing = False
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def run_once(self) -> Dict[str, Any]:
        """
        One sweep: expire stale items, then retry due items in order.

        Returns pass statistics; {"skipped": True} when a pass is already running.
        """
        if self._is_processing:
            logger.info("⏭️ WEBHOOK_RETRY: Previous pass still running - skipping")
            return {"skipped": True, "reason": "busy"}

        self._is_processing = True
        start_time = datetime.now()
        stats = {"expired": 0, "processed": 0, "completed": 0, "retrying": 0, "failed": 0}
        try:
            with managed_session(self._session_factory) as session:
                stats["expired"] = self.queue.mark_expired(session)
                due_ids = [item.id for item in self.queue.get_due_items(session, self.batch_size)]

            for item_id in due_ids:
                outcome = await self._process_item(item_id)
                if outcome is None:
                    continue
                stats["processed"] += 1
                stats[outcome] += 1
        finally:
            self._is_processing = False

        elapsed = (datetime.now() - start_time).total_seconds()
        if stats["processed"] or stats["expired"]:
            logger.info(f"🔄 WEBHOOK_RETRY: Pass finished in {elapsed:.2f}s {stats}")
        else:
            logger.debug("🔄 WEBHOOK_RETRY: Nothing due")
        return stats

    async def _process_item(self, item_id: int) -> Optional[str]:
        with managed_session(self._session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            if item is None:
                return None
            self.queue.mark_processing(session, item)
            gateway, event_type, payload = item.gateway, item.event_type, item.payload
            attempt = item.attempt_count

        logger.info(f"🔁 WEBHOOK_RETRY: Item {item_id} {gateway} {event_type} attempt {attempt}")
        error = None
        try:
            await self.reconciliation.process_payload(gateway, event_type, payload)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        with managed_session(self._session_factory) as session:
            item = session.get(WebhookQueueItem, item_id)
            if error is None:
                self.queue.mark_completed(session, item)
                return "completed"
            self.queue.mark_failed_attempt(session, item, error)
            return "failed" if item.status == WebhookQueueStatus.FAILED.value else "retrying"

    async def _scheduled_run(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"❌ WEBHOOK_RETRY: Pass crashed: {e}", exc_info=True)

    def start(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="🔁 Webhook Retry Queue",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"✅ WEBHOOK_RETRY: Scheduler started (every {self.interval_minutes} min, batch {self.batch_size})")

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("📴 WEBHOOK_RETRY: Scheduler stopped")
        self.scheduler = None
