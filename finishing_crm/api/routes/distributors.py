"""
Admin Distributor Routes - listing with portal paths and tier updates.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.lib.links import portal_path
from finishing_crm.models.distributors import PricingTier, TIER_DISCOUNTS
from finishing_crm.services.distributor_service import DistributorRow, DistributorService

router = APIRouter(
    prefix="/api/admin/distributors",
    tags=["admin", "distributors"],
    dependencies=[Depends(get_current_user)],
)


class DistributorResponse(BaseModel):
    code: str
    company_id: Optional[str] = None
    company_name: str
    country: Optional[str] = None
    pricing_tier: Optional[PricingTier] = None
    discount_percent: Optional[int] = None
    portal_path: str


class DistributorListResponse(BaseModel):
    distributors: List[DistributorResponse]


class TierUpdate(BaseModel):
    code: str = Field(..., min_length=1)
    pricing_tier: Optional[PricingTier] = None


class BulkUpdateRequest(BaseModel):
    distributors: List[TierUpdate] = Field(..., min_length=1)


class BulkUpdateResponse(BaseModel):
    updated: int
    unknown_codes: List[str]


@router.get("", response_model=DistributorListResponse)
def list_distributors(
    tier: Optional[PricingTier] = Query(None),
    country: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    distributors = DistributorService(db).list_distributors(
        tier=tier.value if tier else None,
        country=country,
    )
    return {
        "distributors": [
            DistributorResponse(
                code=d.code,
                company_id=d.company_id,
                company_name=d.company_name,
                country=d.country,
                pricing_tier=d.pricing_tier,
                discount_percent=TIER_DISCOUNTS.get(d.pricing_tier) if d.pricing_tier else None,
                portal_path=portal_path(d.code),
            )
            for d in distributors
        ]
    }


@router.post("/bulk-update", response_model=BulkUpdateResponse)
def bulk_update(request: BulkUpdateRequest, db: Session = Depends(get_db)):
    """
    Save the modified rows sent by the tier editor. Rows not sent are untouched.
    """
    rows = [
        DistributorRow(code=item.code, company_name="", pricing_tier=item.pricing_tier)
        for item in request.distributors
    ]
    return DistributorService(db).save_tiers(rows)
