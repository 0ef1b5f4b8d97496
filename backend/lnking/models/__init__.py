"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from lnking.models.base import Base
from lnking.models.workspace import Workspace
from lnking.models.customer import Customer
from lnking.models.workspace_webhook import WorkspaceWebhook

# Export all for convenience
__all__ = ["Base", "Workspace", "Customer", "WorkspaceWebhook"]
