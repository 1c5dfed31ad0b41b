"""
Engagement Event model - append-only log of customer-visible interactions.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import String, Text, DateTime, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from finishing_crm.lib.db import Base, JSONType


class EngagementEvent(Base):
    """
    Engagement Event entity - written once, never updated or deleted.
    """
    __tablename__ = "engagement_events"

    event_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="system")

    # Subject references (no FK: events may predate the company row)
    company_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    campaign_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    offer_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<EngagementEvent(event_id={self.event_id}, type={self.event_type}, company_id={self.company_id})>"
