"""Workspace billing routes: checkout initiation and cancellation"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from lnking.core.exceptions import MalformedReference, UnknownAccount, UnknownPlan, UpstreamUnavailable
from lnking.db.session import get_db
from lnking.schemas.billing import CancelResponse, CheckoutParams, UpgradeRequest
from lnking.services.billing_service import SubscriptionCancelError, cancel_subscription, create_checkout

router = APIRouter(prefix="/api/workspaces/{workspace_id}/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/upgrade", response_model=CheckoutParams)
def upgrade(workspace_id: str, request: UpgradeRequest, db: Session = Depends(get_db)):
    """Return the parameters for a client-side Flutterwave checkout"""
    try:
        return create_checkout(workspace_id, request, db)
    except UnknownAccount as e:
        raise HTTPException(404, e.message)
    except (UnknownPlan, MalformedReference) as e:
        raise HTTPException(400, e.message or "Failed to initiate checkout")


@router.post("/cancel", response_model=CancelResponse)
def cancel(workspace_id: str, db: Session = Depends(get_db)):
    """Cancel the Flutterwave subscription and move the workspace to the free plan"""
    try:
        cancel_subscription(workspace_id, db)
    except UnknownAccount as e:
        raise HTTPException(404, e.message)
    except (SubscriptionCancelError, UpstreamUnavailable) as e:
        logger.warning(f"Cancel failed for workspace {workspace_id}: {e.message}")
        raise HTTPException(400, e.message or "Failed to cancel subscription")

    return CancelResponse(success=True)
