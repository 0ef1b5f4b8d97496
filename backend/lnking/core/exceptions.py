"""Error taxonomy for webhook reconciliation and billing operations.

Only ``Unauthorized``, ``InvalidPayload`` and ``UpstreamUnavailable`` cross the
reconciliation boundary. The lookup/validation errors are raised and caught
inside the engine, which turns them into an acknowledged (ignored) outcome so
the provider stops redelivering.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for billing domain errors."""

    code = "billing_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class Unauthorized(BillingError):
    """Inbound notification failed signature verification."""

    code = "unauthorized"


class InvalidPayload(BillingError):
    """Notification body is not a JSON object."""

    code = "invalid_payload"


class MalformedReference(BillingError):
    """Transaction reference does not match the expected wire format."""

    code = "malformed_reference"

    def __init__(self, reference: Optional[str], reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Invalid tx_ref {reference!r}: {reason}")


class UnknownPlan(BillingError):
    code = "unknown_plan"

    def __init__(self, plan_name: str):
        self.plan_name = plan_name
        super().__init__(f"Unknown plan: {plan_name}")


class UnknownAccount(BillingError):
    code = "unknown_account"


class UnknownEventKind(BillingError):
    code = "unknown_event_kind"


class AlreadyProcessed(BillingError):
    code = "already_processed"


class UpstreamUnavailable(BillingError):
    """Store or provider RPC failure; safe for the caller to retry."""

    code = "upstream_unavailable"


class NotificationDispatchFailure(BillingError):
    """Analytics or outbound webhook delivery failed. Never surfaced to the provider."""

    code = "notification_dispatch_failure"
