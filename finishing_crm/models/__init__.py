"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from finishing_crm.models.companies import Company
from finishing_crm.models.contacts import Contact
from finishing_crm.models.users import User
from finishing_crm.models.distributors import Distributor
from finishing_crm.models.subscriptions import Subscription
from finishing_crm.models.invoices import Product, Invoice, InvoiceItem
from finishing_crm.models.outbox import OutboxJob
from finishing_crm.models.engagement_events import EngagementEvent

__all__ = [
    "Company",
    "Contact",
    "User",
    "Distributor",
    "Subscription",
    "Product",
    "Invoice",
    "InvoiceItem",
    "OutboxJob",
    "EngagementEvent",
]
