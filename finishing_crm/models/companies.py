"""
Company model - customers, prospects and distributors.
"""
from datetime import date, datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, Date, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from finishing_crm.lib.db import Base


class CompanyCategory(str, enum.Enum):
    """Commercial relationship with the company."""
    CUSTOMER = "customer"
    PROSPECT = "prospect"
    DISTRIBUTOR = "distributor"
    PARTNER = "partner"


class Company(Base):
    """Company entity."""
    __tablename__ = "companies"

    company_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    category: Mapped[CompanyCategory] = mapped_column(
        SQLEnum(
            CompanyCategory,
            name="company_category",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=CompanyCategory.PROSPECT,
        index=True,
    )

    # sales_rep_id of the owning rep
    account_owner: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    last_invoice_at: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)

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
        return f"<Company(company_id={self.company_id}, name={self.company_name})>"
