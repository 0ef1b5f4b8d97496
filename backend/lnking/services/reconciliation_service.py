"""Webhook reconciliation: provider notifications -> workspace entitlements

A notification moves Received -> Verified -> Parsed -> one terminal state:
Ignored, Resolved or AlreadyProcessed (Rejected never gets past the
signature check). Lookup and validation misses end in Ignored so the
provider stops redelivering; store failures raise ``UpstreamUnavailable``
so it retries.
"""
import json
import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lnking.core.config import settings
from lnking.core.exceptions import (
    InvalidPayload, MalformedReference, Unauthorized, UnknownAccount, UnknownPlan,
    UpstreamUnavailable,
)
from lnking.core.logging import webhook_logger
from lnking.core.metrics import entitlement_transitions_counter, webhook_events_counter
from lnking.db.redis import acquire_lock, entitlement_lock_key, release_lock
from lnking.models import Customer, Workspace, WorkspaceWebhook
from lnking.schemas.events import LeadEvent, SaleEvent
from lnking.schemas.webhook import ChargePayload, EventKind, NotificationEvent, parse_notification
from lnking.services import reference_codec
from lnking.services.customer_service import resolve_customer
from lnking.services.entitlements import AccountPatch, EntitlementTable
from lnking.services.flutterwave_service import FlutterwaveClient
from lnking.services.idempotency import claim_invoice
from lnking.services.signature import verify_signature

logger = logging.getLogger(__name__)

PAYMENT_PROCESSOR = "flutterwave"
SUCCESSFUL_STATUS = "successful"


class Outcome(str, Enum):
    IGNORED = "ignored"
    RESOLVED = "resolved"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class WebhookReceiver:
    id: str
    url: str
    secret: str
    triggers: Tuple[str, ...]


@dataclass(frozen=True)
class DownstreamJob:
    """Everything the notifier needs once the response has been sent"""
    workspace_id: str
    customer: Dict[str, Any]
    sale: SaleEvent
    lead: Optional[LeadEvent] = None
    receivers: Tuple[WebhookReceiver, ...] = ()


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: Outcome
    job: Optional[DownstreamJob] = field(default=None)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def _customer_snapshot(customer: Customer) -> Dict[str, Any]:
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "externalId": customer.external_id,
        "createdAt": _isoformat(customer.created_at),
        "clickedAt": _isoformat(customer.clicked_at),
    }


def _load_receivers(db: Session, workspace_id: str) -> Tuple[WebhookReceiver, ...]:
    webhooks = db.query(WorkspaceWebhook).filter(
        WorkspaceWebhook.workspace_id == workspace_id,
        WorkspaceWebhook.disabled.is_(False)
    ).all()
    return tuple(
        WebhookReceiver(id=w.id, url=w.url, secret=w.secret, triggers=tuple(w.triggers or ()))
        for w in webhooks
    )


@contextmanager
def entitlement_lock(workspace_id: str):
    """Serialise entitlement writes for one workspace across workers"""
    lock_key = entitlement_lock_key(workspace_id)
    token = acquire_lock(
        lock_key,
        timeout=settings.ENTITLEMENT_LOCK_TIMEOUT,
        wait=settings.ENTITLEMENT_LOCK_WAIT
    )
    if token is None:
        raise UpstreamUnavailable(f"Timed out waiting for entitlement lock on workspace {workspace_id}")
    try:
        yield
    finally:
        release_lock(lock_key, token)


class ReconciliationEngine:
    """Applies verified provider notifications to workspaces."""

    def __init__(self, entitlements: Optional[EntitlementTable] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 namespace: Optional[str] = None, client: Optional[FlutterwaveClient] = None,
                 verify_transactions: Optional[bool] = None):
        self.entitlements = entitlements or EntitlementTable()
        self.clock = clock
        self.namespace = namespace
        self.client = client
        if verify_transactions is None:
            verify_transactions = settings.FLUTTERWAVE_VERIFY_TRANSACTIONS
        self.verify_transactions = verify_transactions

    def handle(self, event: NotificationEvent, db: Session) -> ReconciliationResult:
        try:
            if event.kind == EventKind.CHARGE_COMPLETED:
                return self._handle_charge_completed(event, db)
            if event.kind in (EventKind.SUBSCRIPTION_CANCELLED, EventKind.SUBSCRIPTION_DISABLED):
                return self._handle_subscription_ended(event, db)
            if event.kind == EventKind.SUBSCRIPTION_CREATED:
                # Plan changes arrive through charge.completed; nothing to apply here
                logger.info(f"Subscription created: {event.payload.flw_ref}")
                return ReconciliationResult(Outcome.IGNORED)

            logger.info(f"Unhandled webhook event: {event.raw_event}")
            return ReconciliationResult(Outcome.IGNORED)
        except (SQLAlchemyError, redis.RedisError) as e:
            db.rollback()
            logger.error(f"Store error while handling {event.raw_event}: {e}", exc_info=True)
            raise UpstreamUnavailable(str(e)) from e

    def _commit_patch(self, db: Session, workspace: Workspace, patch: AccountPatch) -> None:
        patch.apply_to(workspace)
        db.commit()
        entitlement_transitions_counter.labels(plan=patch.plan).inc()
        logger.info(f"Workspace {workspace.id} moved to plan {patch.plan}")

    def _is_successful(self, status: Any) -> bool:
        return isinstance(status, str) and status.lower() == SUCCESSFUL_STATUS

    def _verify_charge(self, data: ChargePayload) -> bool:
        """Ask Flutterwave whether the charge really succeeded.

        Transport or HTTP failures raise ``UpstreamUnavailable`` so the
        provider redelivers; a definite "not successful" answer returns False.
        """
        if data.id is None:
            logger.info(f"Cannot verify charge {data.tx_ref}: notification carries no transaction id")
            return False
        response = (self.client or FlutterwaveClient()).verify_transaction(data.id)
        verified = response.get("data") if isinstance(response, dict) else None
        if not isinstance(verified, dict):
            return False
        return self._is_successful(verified.get("status")) and verified.get("tx_ref") == data.tx_ref

    def _handle_charge_completed(self, event: NotificationEvent, db: Session) -> ReconciliationResult:
        data = event.payload

        # charge.completed is also sent for failed charges. A missing status is accepted.
        if data.status is not None and not self._is_successful(data.status):
            logger.info(f"Ignoring charge {data.tx_ref}: status is {data.status!r}")
            return ReconciliationResult(Outcome.IGNORED)

        try:
            reference = reference_codec.decode(data.tx_ref, namespace=self.namespace)
        except MalformedReference as e:
            logger.info(str(e))
            return ReconciliationResult(Outcome.IGNORED)

        try:
            workspace = db.query(Workspace).filter(Workspace.id == reference.workspace_id).first()
            if workspace is None:
                raise UnknownAccount(f"Workspace not found: {reference.workspace_id}")
            patch = self.entitlements.apply_plan(
                reference.plan_name,
                provider_reference_id=data.flw_ref,
                billing_cycle_start=self.clock().day
            )
        except (UnknownAccount, UnknownPlan) as e:
            logger.info(f"Ignoring charge {data.tx_ref}: {e.message}")
            return ReconciliationResult(Outcome.IGNORED)

        email = data.customer.email if data.customer else None
        if not email or not data.flw_ref:
            logger.info(f"Ignoring charge {data.tx_ref}: missing customer email or flw_ref")
            return ReconciliationResult(Outcome.IGNORED)

        if self.verify_transactions and not self._verify_charge(data):
            logger.warning(f"Ignoring charge {data.tx_ref}: Flutterwave did not confirm it as successful")
            return ReconciliationResult(Outcome.IGNORED)

        with entitlement_lock(workspace.id):
            customer, _ = resolve_customer(db, workspace.id, email, data.customer.name,
                                           first_invoice_id=data.flw_ref)
            self._commit_patch(db, workspace, patch)
            if not claim_invoice(data.flw_ref):
                return ReconciliationResult(Outcome.ALREADY_PROCESSED)
            db.refresh(customer)
            receivers = _load_receivers(db, workspace.id)

        # The lead belongs to the charge that created the customer, so a retry of that charge still emits it
        is_first_invoice = customer.first_invoice_id == data.flw_ref

        sale = SaleEvent(
            event_id=secrets.token_hex(8),
            event_name="Yearly Subscription" if reference.interval == "yearly" else "Monthly Subscription",
            timestamp=_isoformat(self.clock()),
            customer_id=customer.id,
            payment_processor=PAYMENT_PROCESSOR,
            amount=data.amount or 0,
            currency=data.currency or "",
            invoice_id=data.flw_ref,
            metadata=json.dumps({
                "tx_ref": data.tx_ref,
                "flw_ref": data.flw_ref,
                "planName": reference.plan_name,
                "interval": reference.interval,
            })
        )
        lead = LeadEvent.from_sale(sale, event_id=secrets.token_hex(8)) if is_first_invoice else None

        return ReconciliationResult(
            Outcome.RESOLVED,
            DownstreamJob(
                workspace_id=workspace.id,
                customer=_customer_snapshot(customer),
                sale=sale,
                lead=lead,
                receivers=receivers
            )
        )

    def _handle_subscription_ended(self, event: NotificationEvent, db: Session) -> ReconciliationResult:
        flw_ref = event.payload.flw_ref
        workspace = None
        if flw_ref:
            workspace = db.query(Workspace).filter(Workspace.flutterwave_subscription_id == flw_ref).first()
        if workspace is None:
            logger.info(f"Workspace not found for subscription: {flw_ref}")
            return ReconciliationResult(Outcome.IGNORED)

        with entitlement_lock(workspace.id):
            self._commit_patch(db, workspace, self.entitlements.free_plan_patch())

        return ReconciliationResult(Outcome.RESOLVED)


def process_webhook(body: bytes, signature: Optional[str], db: Session,
                    engine: Optional[ReconciliationEngine] = None) -> ReconciliationResult:
    """Verify, parse and reconcile one inbound notification.

    Raises:
        Unauthorized: signature missing or wrong; nothing else was touched
        InvalidPayload: body is not a JSON object
        UpstreamUnavailable: store or lock failure, the provider should retry
    """
    if not verify_signature(signature):
        webhook_events_counter.labels(event="unknown", outcome="rejected").inc()
        webhook_logger.warning("Rejected webhook with invalid signature")
        raise Unauthorized("Invalid webhook signature")

    try:
        body_json = json.loads(body)
    except ValueError as e:
        raise InvalidPayload("Invalid payload") from e
    if not isinstance(body_json, dict):
        raise InvalidPayload("Invalid payload")

    event = parse_notification(body_json)
    event_label = event.kind.value

    try:
        result = (engine or ReconciliationEngine()).handle(event, db)
    except Exception:
        webhook_events_counter.labels(event=event_label, outcome="failed").inc()
        webhook_logger.error(f"Webhook {event.raw_event} (flw_ref={event.payload.flw_ref}) failed")
        raise

    webhook_events_counter.labels(event=event_label, outcome=result.outcome.value).inc()
    webhook_logger.info(
        f"Webhook {event.raw_event} (flw_ref={event.payload.flw_ref}, tx_ref={event.payload.tx_ref}) "
        f"-> {result.outcome.value}"
    )
    return result
