"""
Companies and their contacts.
"""
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.time import utc_now
from finishing_crm.models.companies import Company, CompanyCategory
from finishing_crm.models.contacts import Contact, MarketingStatus
from finishing_crm.services.errors import AlreadyExistsError, NotFoundError

logger = get_logger(__name__)


class CompanyService:
    def __init__(self, db: Session):
        self.db = db

    def list_companies(
        self,
        category: Optional[CompanyCategory] = None,
        search: Optional[str] = None,
        account_owner: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Company]:
        stmt = select(Company).order_by(Company.company_name).limit(limit).offset(offset)
        if category is not None:
            stmt = stmt.where(Company.category == category)
        if account_owner:
            stmt = stmt.where(Company.account_owner == account_owner)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(Company.company_name.ilike(pattern), Company.company_id.ilike(pattern)))
        return list(self.db.execute(stmt).scalars().all())

    def get_company(self, company_id: str) -> Company:
        company = self.db.get(Company, company_id)
        if company is None:
            raise NotFoundError("Company", company_id)
        return company

    def create_company(
        self,
        company_id: str,
        company_name: str,
        category: CompanyCategory = CompanyCategory.PROSPECT,
        account_owner: Optional[str] = None,
        country: Optional[str] = None,
        website: Optional[str] = None,
        last_invoice_at: Optional[date] = None,
    ) -> Company:
        if self.db.get(Company, company_id) is not None:
            raise AlreadyExistsError(f"Company '{company_id}' already exists")

        company = Company(
            company_id=company_id,
            company_name=company_name,
            category=category,
            account_owner=account_owner,
            country=country,
            website=website,
            last_invoice_at=last_invoice_at,
        )
        self.db.add(company)
        self.db.commit()
        logger.info("Company created", extra={"company_id": company_id})
        return company

    def list_contacts(self, company_id: str) -> List[Contact]:
        self.get_company(company_id)
        stmt = select(Contact).where(Contact.company_id == company_id).order_by(Contact.full_name, Contact.contact_id)
        return list(self.db.execute(stmt).scalars().all())

    def get_contact(self, contact_id: str) -> Contact:
        contact = self.db.get(Contact, contact_id)
        if contact is None:
            raise NotFoundError("Contact", contact_id)
        return contact

    def create_contact(
        self,
        company_id: str,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        first_name: Optional[str] = None,
        marketing_status: MarketingStatus = MarketingStatus.PENDING,
        gdpr_consent_at: Optional[datetime] = None,
        crm_contact_id: Optional[str] = None,
    ) -> Contact:
        self.get_company(company_id)
        contact = Contact(
            company_id=company_id,
            email=email.strip().lower() if email else None,
            full_name=full_name,
            first_name=first_name or (full_name.split()[0] if full_name else None),
            marketing_status=marketing_status,
            gdpr_consent_at=gdpr_consent_at,
            crm_contact_id=crm_contact_id,
        )
        self.db.add(contact)
        self.db.commit()
        logger.info("Contact created", extra={"contact_id": contact.contact_id, "company_id": company_id})
        return contact

    def update_contact(
        self,
        contact_id: str,
        marketing_status: Optional[MarketingStatus] = None,
        gdpr_consent: Optional[bool] = None,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> Contact:
        """
        Update a contact. gdpr_consent=True stamps consent now; False clears it.
        """
        contact = self.get_contact(contact_id)
        if marketing_status is not None:
            contact.marketing_status = marketing_status
        if gdpr_consent is True and contact.gdpr_consent_at is None:
            contact.gdpr_consent_at = utc_now()
        elif gdpr_consent is False:
            contact.gdpr_consent_at = None
        if email is not None:
            contact.email = email.strip().lower() or None
        if full_name is not None:
            contact.full_name = full_name
        self.db.commit()
        logger.info(
            "Contact updated",
            extra={"contact_id": contact_id, "marketing_status": contact.marketing_status.value},
        )
        return contact
