"""Pydantic schemas for inbound payment provider notifications"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CHARGE_COMPLETED = "charge.completed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_DISABLED = "subscription.disabled"
    UNKNOWN = "unknown"

    @classmethod
    def from_event_name(cls, name: Optional[str]) -> "EventKind":
        for kind in cls:
            if kind is not cls.UNKNOWN and kind.value == name:
                return kind
        return cls.UNKNOWN


class FlutterwaveCustomer(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: Optional[Union[int, str]] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[Union[int, str]] = None


class ChargePayload(BaseModel):
    """The ``data`` object of a notification.

    Every field is optional so a partial payload parses and is ignored later
    instead of failing the request.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: Optional[Union[int, str]] = None
    tx_ref: Optional[str] = None
    flw_ref: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    status: Optional[Any] = None
    payment_type: Optional[Any] = None
    customer: Optional[FlutterwaveCustomer] = None


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    raw_event: str
    payload: ChargePayload


def _validate_dropping_bad_fields(model, data: Dict[str, Any]):
    """Validate ``data``, discarding only the fields that fail validation."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        bad_fields = {error["loc"][0] for error in e.errors() if error["loc"]}
        logger.warning(f"Dropping malformed {model.__name__} fields: {sorted(map(str, bad_fields))}")
        return model.model_validate({k: v for k, v in data.items() if k not in bad_fields})


def parse_notification(body: Dict[str, Any]) -> NotificationEvent:
    """Build a NotificationEvent from a decoded JSON body."""
    raw_event = body.get("event")
    raw_event = raw_event if isinstance(raw_event, str) else ""

    data = body.get("data")
    data = dict(data) if isinstance(data, dict) else {}
    customer = data.pop("customer", None)

    payload = _validate_dropping_bad_fields(ChargePayload, data)
    if isinstance(customer, dict):
        payload = payload.model_copy(update={
            "customer": _validate_dropping_bad_fields(FlutterwaveCustomer, customer)
        })

    return NotificationEvent(
        kind=EventKind.from_event_name(raw_event),
        raw_event=raw_event,
        payload=payload
    )
