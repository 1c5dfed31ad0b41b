"""
Tool subscriptions: trial creation, price changes with a ratchet, cancellation.

ratchet_max holds the highest monthly price a subscription has ever had and
never decreases. A price set below it is allowed but flagged.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.time import utc_now
from finishing_crm.models.companies import Company
from finishing_crm.models.subscriptions import Subscription, SubscriptionStatus
from finishing_crm.services.engagement_service import EngagementService
from finishing_crm.services.errors import InvalidRequestError, InvalidTransitionError, NotFoundError

logger = get_logger(__name__)

DEFAULT_TRIAL_DAYS = 30


class SubscriptionService:
    def __init__(self, db: Session, engagement: Optional[EngagementService] = None):
        self.db = db
        self.engagement = engagement or EngagementService(db)

    def get(self, subscription_id: str) -> Subscription:
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def create(
        self,
        company_id: str,
        monthly_price: Decimal,
        tools: Sequence[str],
        contact_id: Optional[str] = None,
        currency: str = "GBP",
        trial_days: int = DEFAULT_TRIAL_DAYS,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Start a trial subscription."""
        if monthly_price <= 0:
            raise InvalidRequestError("monthly_price must be greater than 0")
        if not tools:
            raise InvalidRequestError("tools must not be empty")
        if self.db.get(Company, company_id) is None:
            raise NotFoundError("Company", company_id)

        now = now or utc_now()
        subscription = Subscription(
            company_id=company_id,
            contact_id=contact_id,
            monthly_price=monthly_price,
            ratchet_max=monthly_price,
            currency=currency,
            tools=list(tools),
            status=SubscriptionStatus.TRIAL,
            trial_start_date=now,
            trial_end_date=now + timedelta(days=trial_days),
            notes=notes,
        )
        self.db.add(subscription)
        self.db.commit()

        self.engagement.record(
            "subscription_created",
            company_id=company_id,
            contact_id=contact_id,
            source="admin",
            value=monthly_price,
            meta={"subscription_id": subscription.subscription_id, "tools": list(tools), "trial_days": trial_days},
        )
        logger.info("Subscription created", extra={"subscription_id": subscription.subscription_id})
        return subscription

    def update_price(self, subscription_id: str, new_price: Decimal) -> Dict[str, Any]:
        """
        Change the monthly price.

        Returns:
            {"subscription": Subscription, "ratchet_warning": bool}
        """
        if new_price <= 0:
            raise InvalidRequestError("new_price must be greater than 0")

        subscription = self.get(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise InvalidTransitionError("Cannot change the price of a cancelled subscription")

        old_price = subscription.monthly_price
        subscription.ratchet_max = max(new_price, subscription.ratchet_max or Decimal("0"))
        subscription.monthly_price = new_price
        self.db.commit()

        ratchet_warning = new_price < subscription.ratchet_max
        if new_price != old_price:
            self.engagement.record(
                "subscription_price_increased" if new_price > old_price else "subscription_price_decreased",
                company_id=subscription.company_id,
                source="admin",
                value=new_price,
                meta={
                    "subscription_id": subscription_id,
                    "old_price": str(old_price),
                    "new_price": str(new_price),
                },
            )
        if ratchet_warning:
            logger.warning(
                "Subscription priced below its historical maximum",
                extra={"subscription_id": subscription_id, "ratchet_max": str(subscription.ratchet_max)},
            )
        return {"subscription": subscription, "ratchet_warning": ratchet_warning}

    def add_tool(self, subscription_id: str, tool_code: str) -> Subscription:
        if not tool_code:
            raise InvalidRequestError("tool_code is required")
        subscription = self.get(subscription_id)
        # Reassign so the JSON column is flagged dirty
        subscription.tools = [*(subscription.tools or []), tool_code]
        self.db.commit()
        return subscription

    def activate(self, subscription_id: str) -> Subscription:
        subscription = self.get(subscription_id)
        if subscription.status != SubscriptionStatus.TRIAL:
            raise InvalidTransitionError(f"Cannot activate a subscription in status '{subscription.status.value}'")
        subscription.status = SubscriptionStatus.ACTIVE
        self.db.commit()
        return subscription

    def cancel(self, subscription_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> Subscription:
        subscription = self.get(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise InvalidTransitionError("Subscription is already cancelled")
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = now or utc_now()
        subscription.cancellation_reason = reason
        self.db.commit()
        logger.info("Subscription cancelled", extra={"subscription_id": subscription_id})
        return subscription

    def anomalies(self) -> List[Subscription]:
        """Live subscriptions currently priced below their ratchet maximum."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status != SubscriptionStatus.CANCELLED,
                Subscription.ratchet_max.is_not(None),
                Subscription.monthly_price < Subscription.ratchet_max,
            )
            .order_by(Subscription.company_id)
        )
        return list(self.db.execute(stmt).scalars().all())
