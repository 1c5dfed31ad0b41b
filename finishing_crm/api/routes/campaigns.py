"""
Admin Campaign Routes - queue offer emails.

Provides:
- POST /api/admin/campaigns/enqueue: One job per company with eligible contacts
- POST /api/admin/offers/send: One job for selected contacts of a company
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.services.campaign_service import CampaignService
from finishing_crm.services.offer_service import OfferService

router = APIRouter(
    prefix="/api/admin",
    tags=["admin", "campaigns"],
    dependencies=[Depends(get_current_user)],
)


class EnqueueCampaignRequest(BaseModel):
    company_ids: List[str] = Field(..., min_length=1)
    campaign_key: str = Field(..., min_length=1, max_length=100)
    offer_key: str = Field(..., min_length=1, max_length=100)
    subject: Optional[str] = Field(None, max_length=200)
    preview: Optional[str] = Field(None, max_length=500)


class CompanyOutcomeResponse(BaseModel):
    company_id: str
    status: str
    job_id: Optional[str] = None
    contact_count: int = 0
    reason: Optional[str] = None


class EnqueueCampaignResponse(BaseModel):
    campaign_key: str
    queued: int
    skipped: int
    failed: int
    companies: List[CompanyOutcomeResponse]


class SendOfferRequest(BaseModel):
    company_id: str = Field(..., min_length=1)
    contact_ids: List[str] = Field(..., min_length=1)
    offer_key: str = Field(..., min_length=1, max_length=100)
    campaign_key: Optional[str] = Field(None, max_length=100)
    subject: Optional[str] = Field(None, max_length=200)
    custom_message: Optional[str] = Field(None, max_length=2000)


class SendOfferResponse(BaseModel):
    job_id: str
    campaign_key: str
    eligible_count: int
    ineligible_reasons: Dict[str, str]


@router.post(
    "/campaigns/enqueue",
    response_model=EnqueueCampaignResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def enqueue_campaign(request: EnqueueCampaignRequest, db: Session = Depends(get_db)):
    result = CampaignService(db).enqueue_campaign(
        company_ids=request.company_ids,
        campaign_key=request.campaign_key,
        offer_key=request.offer_key,
        subject=request.subject,
        preview=request.preview,
    )
    return result.to_dict()


@router.post(
    "/offers/send",
    response_model=SendOfferResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def send_offer(request: SendOfferRequest, db: Session = Depends(get_db)):
    result = OfferService(db).send_offer(
        company_id=request.company_id,
        contact_ids=request.contact_ids,
        offer_key=request.offer_key,
        campaign_key=request.campaign_key,
        custom_message=request.custom_message,
        subject=request.subject,
    )
    return result.to_dict()
