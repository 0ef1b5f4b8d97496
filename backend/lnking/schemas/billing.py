"""Pydantic schemas for billing operations"""
from pydantic import BaseModel
from typing import Optional


class UpgradeRequest(BaseModel):
    plan: str
    period: str  # 'monthly' or 'yearly'
    userId: str
    email: Optional[str] = None
    name: Optional[str] = None
    baseUrl: Optional[str] = None
    onboarding: bool = False


class CheckoutParams(BaseModel):
    userId: str
    email: Optional[str] = None
    name: Optional[str] = None
    plan: str
    period: str
    txRef: str
    flutterwavePublicKey: str
    baseUrl: str
    onboarding: bool


class CancelResponse(BaseModel):
    success: bool
