"""
Contact model - people at a company, with marketing consent state.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4
import enum

from sqlalchemy import String, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from finishing_crm.lib.db import Base


class MarketingStatus(str, enum.Enum):
    """Marketing email subscription state."""
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PENDING = "pending"
    BOUNCED = "bounced"


class Contact(Base):
    """Contact entity."""
    __tablename__ = "contacts"

    contact_id: Mapped[str] = mapped_column(
        String(50),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    company_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("companies.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    marketing_status: Mapped[MarketingStatus] = mapped_column(
        SQLEnum(
            MarketingStatus,
            name="marketing_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=MarketingStatus.PENDING,
        index=True,
    )
    gdpr_consent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Identifier of the contact in the external CRM
    crm_contact_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def display_name(self) -> str:
        return self.full_name or self.first_name or ""

    def __repr__(self) -> str:
        return f"<Contact(contact_id={self.contact_id}, company_id={self.company_id})>"
