import pytest

import config
from billing import BillingGuard, CreditLedger
from fakes import FakePerplexity, FakeProvider, InMemoryDatabase
from job_manager import JobManager
from models import Company, Contact, EmailSearchTier
from validator import ContactValidator
from waterfall import EmailWaterfall

TEST_ENV = {
    "NEXT_PUBLIC_SUPABASE_URL": "https://project.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "service-role-key",
    "PERPLEXITY_API_KEY": "pplx-test",
    "APOLLO_API_KEY": "apollo-test",
    "HUNTER_API_KEY": "hunter-test",
    "AEROLEADS_API_KEY": "aeroleads-test",
    "LOG_FILE_ENABLED": "false",
}


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    """Known environment and a fresh settings instance for every test"""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    config._settings = None
    yield
    config._settings = None


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def job_manager(db):
    return JobManager(db)


@pytest.fixture
def billing_guard(db):
    return BillingGuard(CreditLedger(db))


@pytest.fixture
def validator():
    return ContactValidator()


@pytest.fixture
def perplexity():
    return FakePerplexity()


@pytest.fixture
def apollo():
    return FakeProvider(EmailSearchTier.APOLLO.value, "apollo")


@pytest.fixture
def hunter():
    return FakeProvider(EmailSearchTier.HUNTER.value, "hunter")


@pytest.fixture
def aeroleads():
    return FakeProvider(EmailSearchTier.AEROLEADS.value, "aeroleads")


@pytest.fixture
def waterfall(perplexity, apollo, hunter, aeroleads, db, billing_guard, validator):
    return EmailWaterfall([perplexity, apollo, hunter, aeroleads], db, billing_guard, validator)


@pytest.fixture
async def company(db):
    return await db.insert_company(Company(user_id=1, name="Acme Robotics", website="https://www.acmerobotics.com"))


@pytest.fixture
async def contact(db, company):
    return await db.insert_contact(Contact(
        user_id=1, company_id=company.id, name="Sarah Chen", role="Chief Executive Officer", probability=73
    ))
