"""
Admin Company Routes - companies and their contacts.

Provides:
- GET /api/admin/companies: List (filter by category, search)
- GET /api/admin/companies/{company_id}
- POST /api/admin/companies
- GET /api/admin/companies/{company_id}/contacts
- POST /api/admin/contacts
- PUT /api/admin/contacts/{contact_id}: Marketing status / consent changes
"""
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.models.companies import CompanyCategory
from finishing_crm.models.contacts import MarketingStatus
from finishing_crm.services.company_service import CompanyService

router = APIRouter(
    prefix="/api/admin",
    tags=["admin", "companies"],
    dependencies=[Depends(get_current_user)],
)


class CompanyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_id: str
    company_name: str
    category: CompanyCategory
    account_owner: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None
    last_invoice_at: Optional[date] = None


class CompanyListResponse(BaseModel):
    companies: List[CompanyResponse]


class CreateCompanyRequest(BaseModel):
    company_id: str = Field(..., min_length=1, max_length=50)
    company_name: str = Field(..., min_length=1, max_length=255)
    category: CompanyCategory = CompanyCategory.PROSPECT
    account_owner: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None
    last_invoice_at: Optional[date] = None


class ContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contact_id: str
    company_id: str
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    email: Optional[str] = None
    marketing_status: MarketingStatus
    gdpr_consent_at: Optional[datetime] = None


class ContactListResponse(BaseModel):
    contacts: List[ContactResponse]


class CreateContactRequest(BaseModel):
    company_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    marketing_status: MarketingStatus = MarketingStatus.PENDING
    gdpr_consent_at: Optional[datetime] = None


class UpdateContactRequest(BaseModel):
    marketing_status: Optional[MarketingStatus] = None
    gdpr_consent: Optional[bool] = None
    email: Optional[str] = None
    full_name: Optional[str] = None


@router.get("/companies", response_model=CompanyListResponse)
def list_companies(
    category: Optional[CompanyCategory] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    account_owner: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    companies = CompanyService(db).list_companies(
        category=category,
        search=search,
        account_owner=account_owner,
        limit=limit,
        offset=offset,
    )
    return {"companies": companies}


@router.get("/companies/{company_id}", response_model=CompanyResponse)
def get_company(company_id: str, db: Session = Depends(get_db)):
    return CompanyService(db).get_company(company_id)


@router.post("/companies", response_model=CompanyResponse, status_code=status.HTTP_201_CREATED)
def create_company(request: CreateCompanyRequest, db: Session = Depends(get_db)):
    return CompanyService(db).create_company(**request.model_dump())


@router.get("/companies/{company_id}/contacts", response_model=ContactListResponse)
def list_contacts(company_id: str, db: Session = Depends(get_db)):
    return {"contacts": CompanyService(db).list_contacts(company_id)}


@router.post("/contacts", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
def create_contact(request: CreateContactRequest, db: Session = Depends(get_db)):
    return CompanyService(db).create_contact(**request.model_dump())


@router.put("/contacts/{contact_id}", response_model=ContactResponse)
def update_contact(contact_id: str, request: UpdateContactRequest, db: Session = Depends(get_db)):
    return CompanyService(db).update_contact(contact_id, **request.model_dump(exclude_unset=True))
