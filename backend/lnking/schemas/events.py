"""Pydantic schemas for analytics records"""
from pydantic import BaseModel


class SaleEvent(BaseModel):
    """Row of the sale events datasource.

    Click attribution columns stay empty for provider-originated sales.
    """
    event_id: str
    event_name: str
    timestamp: str
    customer_id: str
    payment_processor: str = "flutterwave"
    amount: float = 0
    currency: str = ""
    invoice_id: str
    metadata: str = ""
    link_id: str = ""
    domain: str = ""
    click_id: str = ""
    utm_source: str = ""
    utm_medium: str = ""
    utm_campaign: str = ""
    utm_term: str = ""
    utm_content: str = ""
    device: str = ""
    browser: str = ""
    browser_version: str = ""
    os: str = ""
    osVersion: str = ""
    country: str = ""
    city: str = ""
    language: str = ""
    referer: str = ""
    ip_address: str = ""


class LeadEvent(SaleEvent):
    """Lead row: a sale copy with its own event id and name"""

    @classmethod
    def from_sale(cls, sale: SaleEvent, event_id: str) -> "LeadEvent":
        return cls(**{**sale.model_dump(), "event_id": event_id, "event_name": "Sign up"})
