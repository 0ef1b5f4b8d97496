"""Flutterwave API client"""
import logging
from typing import Any, Dict, Optional

import httpx

from lnking.core.config import settings
from lnking.core.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class FlutterwaveClient:
    """Thin wrapper over the Flutterwave v3 REST API.

    Every call returns the decoded JSON envelope ``{status, message, data}``.
    Non-2xx responses and transport failures raise ``UpstreamUnavailable``.
    """

    def __init__(self, secret_key: Optional[str] = None, api_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.secret_key = secret_key if secret_key is not None else settings.FLUTTERWAVE_SECRET_KEY
        self.api_url = (api_url or settings.FLUTTERWAVE_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.FLUTTERWAVE_TIMEOUT

    def _request(self, method: str, path: str, failure_message: str) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            response = httpx.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json"
                },
                timeout=self.timeout
            )
        except httpx.RequestError as e:
            logger.error(f"Flutterwave {method} {path} failed: {e}")
            raise UpstreamUnavailable(f"{failure_message}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error(f"Flutterwave {method} {path} returned {response.status_code}: {message}")
            raise UpstreamUnavailable(message or failure_message)

        return data

    def verify_transaction(self, transaction_id) -> Dict[str, Any]:
        return self._request("GET", f"/transactions/{transaction_id}/verify", "Failed to verify transaction")

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/subscriptions/{subscription_id}", "Failed to get subscription")

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        logger.info(f"Cancelling Flutterwave subscription {subscription_id}")
        return self._request("PUT", f"/subscriptions/{subscription_id}/cancel", "Failed to cancel subscription")
