"""Billing operations initiated by the merchant: checkout and cancellation"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from lnking.core.config import settings
from lnking.core.exceptions import BillingError, UnknownAccount, UnknownPlan
from lnking.core.metrics import entitlement_transitions_counter
from lnking.models import Workspace
from lnking.schemas.billing import CheckoutParams, UpgradeRequest
from lnking.services import reference_codec
from lnking.services.entitlements import FREE_PLAN, EntitlementTable
from lnking.services.flutterwave_service import FlutterwaveClient
from lnking.services.reconciliation_service import entitlement_lock

logger = logging.getLogger(__name__)


class SubscriptionCancelError(BillingError):
    """Cancellation could not be carried out (no subscription, or the provider declined)"""

    code = "bad_request"


def get_workspace(workspace_id: str, db: Session) -> Workspace:
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if not workspace:
        raise UnknownAccount(f"Workspace not found: {workspace_id}")
    return workspace


def create_checkout(workspace_id: str, request: UpgradeRequest, db: Session,
                    entitlements: Optional[EntitlementTable] = None) -> CheckoutParams:
    """Build the parameters the client needs to open Flutterwave checkout.

    The returned ``txRef`` is what the provider echoes back in charge.completed.

    Raises:
        UnknownAccount: workspace does not exist
        UnknownPlan: plan is not in the catalog (or is the free plan)
        MalformedReference: period or ids cannot be encoded
    """
    workspace = get_workspace(workspace_id, db)
    entitlements = entitlements or EntitlementTable()

    plan = request.plan.lower()
    if plan == FREE_PLAN or plan not in entitlements:
        raise UnknownPlan(request.plan)

    tx_ref = reference_codec.encode(reference_codec.TransactionReference(
        user_id=request.userId,
        workspace_id=workspace.id,
        plan_name=plan,
        interval=request.period
    ))

    logger.info(f"Checkout initiated for workspace {workspace.id}: plan={plan}, period={request.period}")

    return CheckoutParams(
        userId=request.userId,
        email=request.email,
        name=request.name,
        plan=plan,
        period=request.period.lower(),
        txRef=tx_ref,
        flutterwavePublicKey=settings.FLUTTERWAVE_PUBLIC_KEY,
        baseUrl=request.baseUrl or f"{settings.APP_DOMAIN}/{workspace.slug}",
        onboarding=bool(request.onboarding)
    )


def cancel_subscription(workspace_id: str, db: Session, client: Optional[FlutterwaveClient] = None,
                        entitlements: Optional[EntitlementTable] = None) -> None:
    """Cancel the workspace's provider subscription and drop it to the free plan.

    Raises:
        UnknownAccount: workspace does not exist
        SubscriptionCancelError: no subscription, or the provider did not confirm
        UpstreamUnavailable: provider unreachable or returned an error status
    """
    workspace = get_workspace(workspace_id, db)
    if not workspace.flutterwave_subscription_id:
        raise SubscriptionCancelError("No Flutterwave subscription ID")

    client = client or FlutterwaveClient()
    entitlements = entitlements or EntitlementTable()

    response = client.cancel_subscription(workspace.flutterwave_subscription_id)
    if response.get("status") != "success":
        raise SubscriptionCancelError(response.get("message") or "Failed to cancel subscription")

    with entitlement_lock(workspace.id):
        entitlements.free_plan_patch().apply_to(workspace)
        db.commit()
    entitlement_transitions_counter.labels(plan=FREE_PLAN).inc()

    logger.info(f"Cancelled subscription {workspace.flutterwave_subscription_id} for workspace {workspace.id}")
