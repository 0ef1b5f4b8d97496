"""Customer model"""
from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from lnking.models.base import Base


class Customer(Base):
    """Paying customer of a workspace, keyed by the provider-supplied email"""
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("workspace_id", "external_id", name="uq_customers_workspace_external_id"),
    )

    id = Column(String(64), primary_key=True, index=True)  # "cus_" + random
    workspace_id = Column(String(64), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    external_id = Column(String(255), nullable=True)
    first_invoice_id = Column(String(255), nullable=True)  # flw_ref of the charge that created the customer
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    workspace = relationship("Workspace", back_populates="customers")
