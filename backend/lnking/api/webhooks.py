"""Inbound payment provider webhook routes"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from lnking.core.config import settings
from lnking.core.exceptions import InvalidPayload, Unauthorized
from lnking.db.session import get_db
from lnking.services.notifier_service import run_downstream
from lnking.services.reconciliation_service import process_webhook

router = APIRouter(tags=["webhooks"])
flutterwave_router = APIRouter(prefix="/api/flutterwave", tags=["webhooks"])
logger = logging.getLogger(__name__)


async def flutterwave_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """Handle Flutterwave webhook events

    Every outcome except a bad signature or a store failure answers 200 so the
    provider stops redelivering. Sale/lead records and outbound webhooks run
    after the response.
    """
    # Raw bytes; the signature check must happen before anything is parsed
    payload = await request.body()
    signature = request.headers.get(settings.FLUTTERWAVE_SIGNATURE_HEADER)

    try:
        # Lock waits and store calls block, keep them off the event loop
        result = await run_in_threadpool(process_webhook, payload, signature, db)
    except Unauthorized:
        return PlainTextResponse("Invalid webhook signature", status_code=401)
    except InvalidPayload as e:
        logger.error(f"Invalid webhook payload: {e.message}")
        return JSONResponse({"success": False, "error": e.message}, status_code=400)
    except Exception as e:
        logger.error(f"Error handling webhook: {e}", exc_info=True)
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)

    if result.job is not None:
        background_tasks.add_task(run_downstream, result.job)

    return {"success": True}


router.add_api_route("/webhook", flutterwave_webhook, methods=["POST"])
flutterwave_router.add_api_route("/webhook", flutterwave_webhook, methods=["POST"])
