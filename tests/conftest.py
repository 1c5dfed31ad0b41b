"""
Shared fixtures: an in-memory SQLite database per test, row factories,
fake delivery providers and an ASGI client wired to the test database.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("EMAIL_PROVIDER", "console")
os.environ.setdefault("CRM_API_URL", "")
os.environ.setdefault("CRM_API_TOKEN", "")

from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import finishing_crm.models  # noqa: F401  (registers every table on Base.metadata)
from finishing_crm.api.app import app
from finishing_crm.api.dependencies import get_db, get_email_provider_dependency
from finishing_crm.lib.db import Base
from finishing_crm.lib.jwt import create_access_token
from finishing_crm.lib.metrics import reset_metrics
from finishing_crm.models.companies import Company, CompanyCategory
from finishing_crm.models.contacts import Contact, MarketingStatus
from finishing_crm.models.users import User, UserRole
from finishing_crm.services.email_provider import EmailMessage, EmailProvider, EmailResult

CRON_SECRET = os.environ["CRON_SECRET"]
NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)


class FakeEmailProvider(EmailProvider):
    """
    Records messages and answers with a scripted result per recipient address.
    Addresses without a scripted result are delivered.
    """

    name = "fake"

    def __init__(self, results: Optional[Dict[str, EmailResult]] = None):
        self.results = results or {}
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> EmailResult:
        self.sent.append(message)
        result = self.results.get(message.to)
        if result is not None:
            return result
        return EmailResult(success=True, provider_message_id=f"fake-{len(self.sent)}")

    @property
    def recipients(self) -> List[str]:
        return [m.to for m in self.sent]


class FakeCrmClient:
    """In-memory CRM: counts calls and fails the payment call on demand."""

    def __init__(self, payment_errors: Optional[list] = None):
        self.invoices: List[dict] = []
        self.payments: List[dict] = []
        self.payment_errors = list(payment_errors or [])

    async def create_invoice(self, company_id, order_id, items, currency):
        self.invoices.append({"company_id": company_id, "order_id": order_id, "items": items})
        return {"invoice_id": f"INV-{len(self.invoices)}", "invoice_number": f"N-{len(self.invoices)}"}

    async def record_payment(self, invoice_id, amount, payment_date, reference=None, payment_mode="card"):
        if self.payment_errors:
            raise self.payment_errors.pop(0)
        self.payments.append({"invoice_id": invoice_id, "amount": amount})
        return {"payment_id": f"PAY-{len(self.payments)}"}


@pytest.fixture(autouse=True)
def fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_company(db_session):
    counter = {"n": 0}

    def factory(
        company_id: Optional[str] = None,
        company_name: Optional[str] = None,
        category: CompanyCategory = CompanyCategory.CUSTOMER,
        account_owner: Optional[str] = None,
        last_invoice_at: Optional[date] = None,
    ) -> Company:
        counter["n"] += 1
        company = Company(
            company_id=company_id or f"COMP{counter['n']:03d}",
            company_name=company_name or f"Company {counter['n']}",
            category=category,
            account_owner=account_owner,
            last_invoice_at=last_invoice_at,
        )
        db_session.add(company)
        db_session.commit()
        return company

    return factory


@pytest.fixture
def make_contact(db_session):
    counter = {"n": 0}

    def factory(
        company: Company,
        email: Optional[str] = "auto",
        marketing_status: MarketingStatus = MarketingStatus.SUBSCRIBED,
        consented: bool = True,
        first_name: Optional[str] = "Alex",
        contact_id: Optional[str] = None,
    ) -> Contact:
        counter["n"] += 1
        contact = Contact(
            contact_id=contact_id or f"CONT{counter['n']:03d}",
            company_id=company.company_id,
            email=f"person{counter['n']}@example.com" if email == "auto" else email,
            first_name=first_name,
            full_name=f"{first_name} Smith" if first_name else None,
            marketing_status=marketing_status,
            gdpr_consent_at=NOW - timedelta(days=30) if consented else None,
        )
        db_session.add(contact)
        db_session.commit()
        return contact

    return factory


@pytest.fixture
def make_user(db_session):
    def factory(
        role: UserRole = UserRole.SALES_REP,
        email: Optional[str] = None,
        sales_rep_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            email=email or f"{role.value}-{sales_rep_id or 'x'}@example.com",
            role=role,
            full_name=f"Test {role.value}",
            sales_rep_id=sales_rep_id,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return factory


@pytest.fixture
def director(make_user):
    return make_user(role=UserRole.DIRECTOR, email="director@example.com", sales_rep_id="REP0")


@pytest.fixture
def sales_rep(make_user):
    return make_user(role=UserRole.SALES_REP, email="rep1@example.com", sales_rep_id="REP1")


def auth_headers(user: User) -> Dict[str, str]:
    token = create_access_token(user.user_id, user.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def director_headers(director):
    return auth_headers(director)


@pytest.fixture
def rep_headers(sales_rep):
    return auth_headers(sales_rep)


@pytest.fixture
def cron_headers():
    return {"X-Cron-Secret": CRON_SECRET}


@pytest.fixture
def email_provider():
    return FakeEmailProvider()


@pytest.fixture
async def client(session_factory, email_provider):
    """ASGI client whose requests use the per-test database."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_provider_dependency] = lambda: email_provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
