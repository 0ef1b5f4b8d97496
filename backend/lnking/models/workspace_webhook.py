"""WorkspaceWebhook model"""
from sqlalchemy import Column, String, Boolean, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from lnking.models.base import Base


class WorkspaceWebhook(Base):
    """Merchant-registered receiver for outbound event webhooks"""
    __tablename__ = "workspace_webhooks"

    id = Column(String(64), primary_key=True, index=True)
    workspace_id = Column(String(64), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret = Column(String(255), nullable=False)  # HMAC key for the Lnking-Signature header
    triggers = Column(JSON, default=list, nullable=False)  # e.g. ["sale.created", "lead.created"]
    disabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    workspace = relationship("Workspace", back_populates="webhooks")
