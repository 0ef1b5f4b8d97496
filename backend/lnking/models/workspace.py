"""Workspace model"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from lnking.models.base import Base


class Workspace(Base):
    """Billing account: current plan tier and usage limits"""
    __tablename__ = "workspaces"

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    plan = Column(String(50), default="free", nullable=False)
    flutterwave_subscription_id = Column(String(255), nullable=True, index=True)  # flw_ref of the last completed charge
    billing_cycle_start = Column(Integer, nullable=True)  # Day of month
    usage_limit = Column(BigInteger, default=1000, nullable=False)
    links_limit = Column(BigInteger, default=25, nullable=False)
    domains_limit = Column(BigInteger, default=3, nullable=False)
    tags_limit = Column(BigInteger, default=5, nullable=False)
    folders_limit = Column(BigInteger, default=0, nullable=False)
    users_limit = Column(BigInteger, default=1, nullable=False)
    ai_limit = Column(BigInteger, default=10, nullable=False)
    sales_limit = Column(BigInteger, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    customers = relationship("Customer", back_populates="workspace", cascade="all, delete-orphan")
    webhooks = relationship("WorkspaceWebhook", back_populates="workspace", cascade="all, delete-orphan")
