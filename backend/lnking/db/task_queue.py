"""Redis-based task queue for retrying failed downstream deliveries

Tasks live in a Redis List per task type, with per-task metadata in a Hash.
Failed tasks are re-enqueued with exponential backoff until max_retries.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from lnking.db.redis import get_async_redis_client, get_redis_client

logger = logging.getLogger(__name__)

# Redis key prefixes
QUEUE_KEY_PREFIX = "task:queue:"
META_KEY_PREFIX = "task:meta:"
PROCESSING_SET_KEY = "task:processing"

# Task TTL (24 hours for completed/failed tasks metadata)
TASK_META_TTL = 24 * 60 * 60

# Backoff ceiling
MAX_RETRY_DELAY = 300  # seconds


def enqueue_task(
    task_type: str,
    payload: Dict[str, Any],
    retry_count: int = 0,
    max_retries: int = 3,
    retry_after: Optional[datetime] = None
) -> str:
    """Enqueue a task to the Redis queue

    Args:
        task_type: Type of task (e.g., 'workspace_webhook')
        payload: JSON-serialisable task payload
        retry_count: Current retry attempt (0 for new tasks)
        max_retries: Maximum number of automatic retries
        retry_after: Earliest time the worker may process the task

    Returns:
        task_id: Unique task identifier
    """
    task_id = str(uuid.uuid4())
    created_at = datetime.now(timezone.utc).isoformat()

    meta = {
        "task_id": task_id,
        "task_type": task_type,
        "payload": json.dumps(payload),
        "retry_count": str(retry_count),
        "max_retries": str(max_retries),
        "created_at": created_at,
        "status": "pending"
    }
    if retry_after is not None:
        meta["retry_after"] = retry_after.isoformat()

    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()
    client.hset(meta_key, mapping=meta)
    client.expire(meta_key, TASK_META_TTL)

    task_data = {
        "task_id": task_id,
        "task_type": task_type,
        "payload": payload,
        "retry_count": retry_count,
        "max_retries": max_retries,
        "created_at": created_at,
        "status": "pending"
    }
    client.lpush(f"{QUEUE_KEY_PREFIX}{task_type}", json.dumps(task_data))

    logger.info(f"Enqueued task {task_id} of type {task_type} (retry_count={retry_count})")
    return task_id


async def dequeue_task(task_type: str, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Dequeue a task from the Redis queue (blocking)

    Returns:
        Task dict if task available, None if timeout
    """
    queue_key = f"{QUEUE_KEY_PREFIX}{task_type}"
    client = get_async_redis_client()

    if client is None:
        logger.error("Async Redis client not available")
        return None

    try:
        result = await client.brpop(queue_key, timeout=timeout)
        if result is None:
            return None

        _, task_json = result
        return json.loads(task_json)
    except Exception as e:
        logger.error(f"Error dequeuing task: {e}", exc_info=True)
        return None


def get_task_status(task_id: str) -> Optional[Dict[str, Any]]:
    """Get task status and metadata"""
    meta = get_redis_client().hgetall(f"{META_KEY_PREFIX}{task_id}")
    if not meta:
        return None

    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    if "retry_count" in meta:
        meta["retry_count"] = int(meta["retry_count"])
    if "max_retries" in meta:
        meta["max_retries"] = int(meta["max_retries"])

    return meta


def mark_task_processing(task_id: str) -> None:
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()

    client.hset(meta_key, mapping={
        "status": "processing",
        "started_at": datetime.now(timezone.utc).isoformat()
    })
    client.sadd(PROCESSING_SET_KEY, task_id)


def mark_task_completed(task_id: str) -> None:
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()

    client.hset(meta_key, mapping={
        "status": "completed",
        "completed_at": datetime.now(timezone.utc).isoformat()
    })
    client.srem(PROCESSING_SET_KEY, task_id)

    logger.info(f"Marked task {task_id} as completed")


def mark_task_failed(task_id: str, error: str, retry: bool = True) -> Optional[str]:
    """Mark task as failed and optionally schedule retry

    Returns:
        New task_id if retry scheduled, None otherwise
    """
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()

    meta = client.hgetall(meta_key)
    if not meta:
        logger.warning(f"Task {task_id} metadata not found")
        return None

    retry_count = int(meta.get("retry_count", "0"))
    max_retries = int(meta.get("max_retries", "3"))
    payload_json = meta.get("payload")

    if not payload_json:
        logger.error(f"Task {task_id} missing payload")
        return None

    client.srem(PROCESSING_SET_KEY, task_id)

    if retry and retry_count < max_retries:
        new_retry_count = retry_count + 1
        delay_seconds = min(MAX_RETRY_DELAY, 2 ** new_retry_count)

        logger.info(
            f"Task {task_id} failed (attempt {retry_count + 1}/{max_retries + 1}), "
            f"scheduling retry in {delay_seconds}s: {error}"
        )

        client.hset(meta_key, mapping={
            "status": "retrying",
            "error": error,
            "retry_delay_seconds": str(delay_seconds)
        })

        return enqueue_task(
            task_type=meta.get("task_type"),
            payload=json.loads(payload_json),
            retry_count=new_retry_count,
            max_retries=max_retries,
            retry_after=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        )

    client.hset(meta_key, mapping={
        "status": "failed",
        "error": error,
        "failed_at": datetime.now(timezone.utc).isoformat()
    })
    logger.warning(f"Task {task_id} failed permanently after {retry_count + 1} attempts: {error}")
    return None
