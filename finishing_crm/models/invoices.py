"""
Product, Invoice and InvoiceItem models - sales history used for commission reporting.
"""
from datetime import date
from decimal import Decimal
from typing import Optional
import enum

from sqlalchemy import String, Integer, Date, Numeric, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finishing_crm.lib.db import Base


class ProductType(str, enum.Enum):
    TOOL = "tool"
    CONSUMABLE = "consumable"
    OTHER = "other"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    VOID = "void"


class Product(Base):
    __tablename__ = "products"

    product_code: Mapped[str] = mapped_column(String(50), primary_key=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[ProductType] = mapped_column(
        SQLEnum(
            ProductType,
            name="product_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ProductType.OTHER,
    )

    def __repr__(self) -> str:
        return f"<Product(product_code={self.product_code}, type={self.type})>"


class Invoice(Base):
    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    company_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("companies.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(
            PaymentStatus,
            name="payment_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=PaymentStatus.UNPAID,
        index=True,
    )
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Invoice(invoice_id={self.invoice_id}, status={self.payment_status})>"


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("invoices.invoice_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_code: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("products.product_code"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="items")
