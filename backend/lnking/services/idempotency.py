"""Exactly-once guard for charge side effects

A charge's downstream events are emitted only by the request that first
creates the processed-event record for its provider reference.
"""
import logging

from lnking.core.config import settings
from lnking.db.redis import processed_event_key, set_if_absent

logger = logging.getLogger(__name__)


def claim_invoice(invoice_id: str) -> bool:
    """Create the processed-event record for ``invoice_id``.

    Returns:
        True if this call created it, False if it already existed
    """
    created = set_if_absent(processed_event_key(invoice_id), settings.PROCESSED_EVENT_TTL_SECONDS)
    if not created:
        logger.info(f"Invoice with ID {invoice_id} already processed, skipping")
    return created
