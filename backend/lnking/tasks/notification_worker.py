"""Background worker that retries failed outbound workspace webhooks

Deliveries that failed inside the request's background task are queued by
the notifier; this loop replays them with exponential backoff.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from lnking.core.exceptions import NotificationDispatchFailure
from lnking.core.metrics import downstream_dispatch_counter
from lnking.db.task_queue import (
    dequeue_task, get_task_status, mark_task_completed, mark_task_failed, mark_task_processing
)
from lnking.services.notifier_service import WEBHOOK_TASK_TYPE, deliver_webhook

logger = logging.getLogger(__name__)


async def process_webhook_task(task_data: Dict[str, Any]) -> None:
    """Replay one queued webhook delivery"""
    task_id = task_data.get("task_id")
    payload = task_data.get("payload", {})
    url = payload.get("url")
    body = payload.get("body")
    signature = payload.get("signature")
    trigger = payload.get("trigger", "unknown")

    if not (url and body and signature):
        logger.error(f"Task {task_id} missing url, body or signature in payload")
        mark_task_failed(task_id, "Incomplete webhook task payload", retry=False)
        return

    mark_task_processing(task_id)

    try:
        await asyncio.to_thread(deliver_webhook, url, body, signature)
    except NotificationDispatchFailure as e:
        downstream_dispatch_counter.labels(kind=trigger, status="retry_failure").inc()
        logger.warning(f"Task {task_id} webhook {trigger} to {url} failed again: {e.message}")
        mark_task_failed(task_id, e.message, retry=True)
        return

    downstream_dispatch_counter.labels(kind=trigger, status="retry_success").inc()
    mark_task_completed(task_id)
    logger.info(f"Task {task_id} delivered webhook {trigger} to {url}")


async def _wait_for_retry_after(task_id: str, retry_count: int) -> None:
    task_meta = get_task_status(task_id)
    retry_after_str = task_meta.get("retry_after") if task_meta else None
    if not retry_after_str:
        return

    try:
        retry_after = datetime.fromisoformat(retry_after_str.replace('Z', '+00:00'))
    except (ValueError, TypeError) as e:
        logger.warning(f"Error parsing retry_after for task {task_id}: {e}")
        return

    now = datetime.now(timezone.utc)
    if retry_after > now:
        delay_seconds = (retry_after - now).total_seconds()
        logger.info(
            f"Task {task_id} is retry attempt {retry_count}, "
            f"waiting {delay_seconds:.0f}s before processing (exponential backoff)"
        )
        await asyncio.sleep(delay_seconds)


async def _delayed_process(task_data: Dict[str, Any]) -> None:
    await _wait_for_retry_after(task_data.get("task_id"), task_data.get("retry_count", 0))
    await process_webhook_task(task_data)


async def notification_worker_task() -> None:
    """Main worker loop: poll the webhook retry queue and process tasks concurrently"""
    logger.info("Starting notification worker task")

    while True:
        try:
            task_data = await dequeue_task(WEBHOOK_TASK_TYPE, timeout=5)
            if task_data is None:
                continue

            # Backoff wait happens inside the spawned task so other retries are not held up
            asyncio.create_task(_delayed_process(task_data))

        except asyncio.CancelledError:
            logger.info("Notification worker task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in notification worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)
