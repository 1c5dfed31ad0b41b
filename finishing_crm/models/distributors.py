"""
Distributor model - resellers with a pricing tier and portal access.
"""
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from finishing_crm.lib.db import Base


class PricingTier(str, enum.Enum):
    """Distributor discount tier."""
    TIER_1 = "tier_1"  # 40% off
    TIER_2 = "tier_2"  # 30% off
    TIER_3 = "tier_3"  # 20% off


TIER_DISCOUNTS = {
    PricingTier.TIER_1: 40,
    PricingTier.TIER_2: 30,
    PricingTier.TIER_3: 20,
}


class Distributor(Base):
    """Distributor entity keyed by its accounting customer code."""
    __tablename__ = "distributors"

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    company_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        ForeignKey("companies.company_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    pricing_tier: Mapped[Optional[PricingTier]] = mapped_column(
        SQLEnum(
            PricingTier,
            name="pricing_tier",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=True,
    )

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

    def __repr__(self) -> str:
        return f"<Distributor(code={self.code}, tier={self.pricing_tier})>"
