"""Webhook signature verification (inbound) and signing (outbound)"""
import hashlib
import hmac
import logging
from typing import Optional

from lnking.core.config import settings

logger = logging.getLogger(__name__)


def verify_signature(header_value: Optional[str]) -> bool:
    """Check the provider's shared-secret header.

    Flutterwave sends the configured secret hash verbatim in ``verif-hash``.
    An unset secret rejects everything.
    """
    secret = settings.FLUTTERWAVE_WEBHOOK_HASH
    if not secret:
        logger.warning("FLUTTERWAVE_WEBHOOK_HASH not set - rejecting webhook")
        return False
    if not header_value:
        return False

    return hmac.compare_digest(header_value.encode("utf-8"), secret.encode("utf-8"))


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of an outbound webhook body"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
