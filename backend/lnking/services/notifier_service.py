"""Downstream notifier: analytics records and outbound workspace webhooks

Runs after the provider has been answered. Nothing here raises to the
caller; every failure is logged and counted, and failed webhook deliveries
are queued for retry.
"""
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

import httpx

from lnking.core.config import settings
from lnking.core.exceptions import NotificationDispatchFailure
from lnking.core.logging import notifier_logger as logger
from lnking.core.metrics import downstream_dispatch_counter
from lnking.db.task_queue import enqueue_task
from lnking.schemas.events import SaleEvent
from lnking.services.reconciliation_service import DownstreamJob, WebhookReceiver
from lnking.services.signature import sign_payload

# Analytics datasources
SALE_EVENTS_DATASOURCE = "dub_sale_events"
LEAD_EVENTS_DATASOURCE = "dub_lead_events"

# Outbound webhook triggers
SALE_CREATED = "sale.created"
LEAD_CREATED = "lead.created"

SIGNATURE_HEADER = "Lnking-Signature"
WEBHOOK_TASK_TYPE = "workspace_webhook"


def _record_event(datasource: str, event: SaleEvent) -> None:
    if not settings.TINYBIRD_API_KEY:
        raise NotificationDispatchFailure("TINYBIRD_API_KEY not configured")

    try:
        response = httpx.post(
            f"{settings.TINYBIRD_API_URL.rstrip('/')}/v0/events",
            params={"name": datasource},
            content=event.model_dump_json(),
            headers={"Authorization": f"Bearer {settings.TINYBIRD_API_KEY}"},
            timeout=settings.OUTBOUND_WEBHOOK_TIMEOUT
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise NotificationDispatchFailure(f"Failed to record {datasource} event {event.event_id}: {e}") from e


def record_sale(event: SaleEvent) -> None:
    _record_event(SALE_EVENTS_DATASOURCE, event)


def record_lead(event: SaleEvent) -> None:
    _record_event(LEAD_EVENTS_DATASOURCE, event)


def build_envelope(trigger: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": f"evt_{secrets.token_hex(12)}",
        "event": trigger,
        "createdAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "data": data,
    }


def deliver_webhook(url: str, body: str, signature: str) -> None:
    """POST one signed webhook body. Raises NotificationDispatchFailure."""
    try:
        response = httpx.post(
            url,
            content=body.encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: signature,
            },
            timeout=settings.OUTBOUND_WEBHOOK_TIMEOUT
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise NotificationDispatchFailure(f"Webhook delivery to {url} failed: {e}") from e


def send_workspace_webhook(receivers: Iterable[WebhookReceiver], trigger: str, data: Dict[str, Any]) -> int:
    """Deliver ``trigger`` to every receiver subscribed to it.

    Returns:
        Number of receivers the event was sent to on the first attempt
    """
    delivered = 0
    for receiver in receivers:
        if trigger not in receiver.triggers:
            continue

        body = json.dumps(build_envelope(trigger, data))
        signature = sign_payload(receiver.secret, body.encode("utf-8"))
        try:
            deliver_webhook(receiver.url, body, signature)
        except NotificationDispatchFailure as e:
            downstream_dispatch_counter.labels(kind=trigger, status="failure").inc()
            logger.warning(f"{e.message}; queueing retry")
            enqueue_task(
                WEBHOOK_TASK_TYPE,
                {
                    "webhook_id": receiver.id,
                    "trigger": trigger,
                    "url": receiver.url,
                    "body": body,
                    "signature": signature,
                },
                max_retries=settings.OUTBOUND_WEBHOOK_MAX_RETRIES
            )
            continue

        downstream_dispatch_counter.labels(kind=trigger, status="success").inc()
        delivered += 1

    return delivered


def sale_webhook_data(job: DownstreamJob) -> Dict[str, Any]:
    sale = job.sale
    return {
        "eventName": sale.event_name,
        "customer": job.customer,
        "clickedAt": job.customer.get("clickedAt") or job.customer.get("createdAt"),
        "sale": {
            "amount": sale.amount,
            "currency": sale.currency,
            "paymentProcessor": sale.payment_processor,
            "invoiceId": sale.invoice_id,
            "metadata": json.loads(sale.metadata) if sale.metadata else None,
        },
    }


def lead_webhook_data(job: DownstreamJob) -> Dict[str, Any]:
    return {
        "eventName": job.lead.event_name,
        "customer": job.customer,
    }


def run_downstream(job: DownstreamJob) -> None:
    """Record sale, then lead, then send the workspace webhooks.

    Each step is independent: one failing does not stop the next.
    """
    steps = [("sale", lambda: record_sale(job.sale))]
    if job.lead is not None:
        steps.append(("lead", lambda: record_lead(job.lead)))
    steps.append((SALE_CREATED, lambda: send_workspace_webhook(job.receivers, SALE_CREATED, sale_webhook_data(job))))
    if job.lead is not None:
        steps.append((LEAD_CREATED, lambda: send_workspace_webhook(job.receivers, LEAD_CREATED, lead_webhook_data(job))))

    for kind, step in steps:
        try:
            step()
            if kind in ("sale", "lead"):
                downstream_dispatch_counter.labels(kind=kind, status="success").inc()
        except NotificationDispatchFailure as e:
            downstream_dispatch_counter.labels(kind=kind, status="failure").inc()
            logger.error(f"Downstream {kind} for invoice {job.sale.invoice_id} failed: {e.message}")
        except Exception as e:
            downstream_dispatch_counter.labels(kind=kind, status="failure").inc()
            logger.error(f"Unexpected error in downstream {kind} for invoice {job.sale.invoice_id}: {e}", exc_info=True)
