"""
Sales rep commission for the current calendar month.

Paid invoices dated this month for the rep's own non-distributor companies.
Tools earn 10%, consumables 1%; other product types earn nothing.
"""
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.time import utc_now
from finishing_crm.models.companies import Company, CompanyCategory
from finishing_crm.models.engagement_events import EngagementEvent
from finishing_crm.models.invoices import Invoice, InvoiceItem, PaymentStatus, Product, ProductType
from finishing_crm.models.users import User
from finishing_crm.services.errors import InvalidRequestError, PermissionDeniedError

logger = get_logger(__name__)

COMMISSION_RATES: Dict[ProductType, Decimal] = {
    ProductType.TOOL: Decimal("0.10"),
    ProductType.CONSUMABLE: Decimal("0.01"),
}
TOP_PRODUCTS_LIMIT = 5

# Manual activity logged as engagement events, counted by event_type prefix
ACTIVITY_PREFIXES = {
    "calls": "manual_contact_call",
    "visits": "manual_contact_visit",
    "emails": "manual_contact_email",
    "followups": "manual_contact_followup",
    "meetings": "manual_contact_meeting",
}

CENT = Decimal("0.01")


def month_bounds(today: date) -> Tuple[date, date]:
    """First day of this month and first day of next month."""
    start = today.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def _money(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


class CommissionService:
    def __init__(self, db: Session):
        self.db = db

    def resolve_rep(self, user: User, requested_rep_id: Optional[str]) -> str:
        """
        Directors may look at any rep; everyone else only at themselves.

        Raises:
            PermissionDeniedError: Non-director asking for another rep
            InvalidRequestError: No rep id could be determined
        """
        if requested_rep_id and requested_rep_id != user.sales_rep_id:
            if not user.is_director:
                raise PermissionDeniedError("Only directors can view other reps' commission")
            return requested_rep_id
        if not user.sales_rep_id:
            raise InvalidRequestError("User has no sales_rep_id; pass sales_rep_id explicitly")
        return user.sales_rep_id

    def current_month(self, sales_rep_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        start, end = month_bounds(now.date())

        rows = self.db.execute(
            select(
                InvoiceItem.invoice_id,
                InvoiceItem.product_code,
                InvoiceItem.quantity,
                InvoiceItem.unit_price,
                Product.description,
                Product.type,
            )
            .join(Invoice, Invoice.invoice_id == InvoiceItem.invoice_id)
            .join(Company, Company.company_id == Invoice.company_id)
            .join(Product, Product.product_code == InvoiceItem.product_code)
            .where(
                Invoice.payment_status == PaymentStatus.PAID,
                Invoice.invoice_date >= start,
                Invoice.invoice_date < end,
                Company.account_owner == sales_rep_id,
                Company.category != CompanyCategory.DISTRIBUTOR,
            )
        ).all()

        revenue = {ptype: Decimal("0") for ptype in COMMISSION_RATES}
        products: Dict[str, Dict[str, Any]] = {}
        invoices = set()

        for invoice_id, product_code, quantity, unit_price, description, ptype in rows:
            subtotal = Decimal(quantity) * Decimal(unit_price)
            invoices.add(invoice_id)
            entry = products.setdefault(
                product_code,
                {"product_code": product_code, "name": description or product_code, "units": 0, "revenue": Decimal("0")},
            )
            entry["units"] += quantity
            entry["revenue"] += subtotal
            if ptype in revenue:
                revenue[ptype] += subtotal

        commission = {ptype: revenue[ptype] * rate for ptype, rate in COMMISSION_RATES.items()}
        top_products = sorted(products.values(), key=lambda p: p["revenue"], reverse=True)[:TOP_PRODUCTS_LIMIT]

        result = {
            "sales_rep_id": sales_rep_id,
            "month": start.strftime("%Y-%m"),
            "commission_breakdown": {
                "tools": {
                    "revenue": _money(revenue[ProductType.TOOL]),
                    "commission": _money(commission[ProductType.TOOL]),
                    "rate": float(COMMISSION_RATES[ProductType.TOOL]),
                },
                "consumables": {
                    "revenue": _money(revenue[ProductType.CONSUMABLE]),
                    "commission": _money(commission[ProductType.CONSUMABLE]),
                    "rate": float(COMMISSION_RATES[ProductType.CONSUMABLE]),
                },
            },
            "total_commission": _money(sum(commission.values(), Decimal("0"))),
            "invoices_closed": len(invoices),
            "activities": self._activity_counts(sales_rep_id, start, end),
            "top_products": [{**p, "revenue": _money(p["revenue"])} for p in top_products],
        }
        logger.debug("Commission calculated", extra={"sales_rep_id": sales_rep_id, "month": result["month"]})
        return result

    def _activity_counts(self, sales_rep_id: str, start: date, end: date) -> Dict[str, int]:
        start_at = datetime.combine(start, time.min, tzinfo=timezone.utc)
        end_at = datetime.combine(end, time.min, tzinfo=timezone.utc)
        counts = {}
        for name, prefix in ACTIVITY_PREFIXES.items():
            counts[name] = self.db.execute(
                select(func.count(EngagementEvent.event_id))
                .join(Company, Company.company_id == EngagementEvent.company_id)
                .where(
                    Company.account_owner == sales_rep_id,
                    EngagementEvent.event_type.like(f"{prefix}%"),
                    EngagementEvent.occurred_at >= start_at,
                    EngagementEvent.occurred_at < end_at,
                )
            ).scalar_one()
        return counts
