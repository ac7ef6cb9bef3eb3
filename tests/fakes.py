"""In-memory stand-ins for the Supabase client and the provider APIs"""
import itertools
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from database import ContactNotFoundError
from models import (
    Company,
    Contact,
    ContactCandidate,
    CreditTransaction,
    EmailSearchTier,
    JobStatus,
    ProviderResult,
    SearchJob,
    utc_now,
)
from providers import BaseProviderClient


def fail_once(target: Any, name: str, error: Exception, when: Optional[Callable[..., bool]] = None) -> None:
    """Make the async method ``target.name`` raise ``error`` on its first call matching ``when``"""
    original = getattr(target, name)
    state = {"raised": False}

    async def wrapper(*args, **kwargs):
        if not state["raised"] and (when is None or when(*args, **kwargs)):
            state["raised"] = True
            raise error
        return await original(*args, **kwargs)

    setattr(target, name, wrapper)


class InMemoryDatabase:
    """Implements the DatabaseClient surface over dicts, with the same conditional-write semantics"""

    def __init__(self):
        self.jobs: Dict[str, SearchJob] = {}
        self.companies: Dict[int, Company] = {}
        self.contacts: Dict[int, Contact] = {}
        self.balances: Dict[int, int] = {}
        self.transactions: Dict[str, CreditTransaction] = {}
        self._ids = itertools.count(1)

    # Jobs

    async def insert_job(self, job: SearchJob) -> SearchJob:
        stored = job.model_copy(update={"id": next(self._ids)})
        self.jobs[stored.job_id] = stored
        return stored

    async def fetch_job(self, job_id: str) -> Optional[SearchJob]:
        return self.jobs.get(job_id)

    async def list_jobs(self, user_id: int, limit: int = 10) -> List[SearchJob]:
        jobs = [j for j in self.jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[Union[JobStatus, Sequence[JobStatus]]] = None,
    ) -> Optional[SearchJob]:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        if isinstance(expected_status, JobStatus):
            if job.status != expected_status:
                return None
        elif expected_status and job.status not in expected_status:
            return None

        data = job.model_dump()
        data.update(fields)
        data["updated_at"] = utc_now()
        updated = SearchJob.model_validate(data)
        self.jobs[job_id] = updated
        return updated

    async def fetch_next_pending_job(self, now):
        runnable = [
            j for j in self.jobs.values()
            if j.status == JobStatus.PENDING
            and (j.next_attempt_at is None or j.next_attempt_at <= now)
            and (j.expires_at is None or j.expires_at > now)
        ]
        runnable.sort(key=lambda j: (-j.priority, j.created_at))
        return runnable[0] if runnable else None

    async def fetch_jobs_by_status(self, status, started_before=None, expires_before=None, limit=100):
        jobs = [j for j in self.jobs.values() if j.status == status]
        if started_before is not None:
            jobs = [j for j in jobs if j.started_at is not None and j.started_at < started_before]
        if expires_before is not None:
            jobs = [j for j in jobs if j.expires_at is not None and j.expires_at < expires_before]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    async def delete_jobs_created_before(self, cutoff) -> int:
        old = [job_id for job_id, job in self.jobs.items() if job.created_at < cutoff]
        for job_id in old:
            del self.jobs[job_id]
        return len(old)

    async def count_jobs_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status.value] += 1
        return counts

    # Companies

    async def insert_company(self, company: Company) -> Company:
        stored = company.model_copy(update={"id": next(self._ids), "created_at": company.created_at or utc_now()})
        self.companies[stored.id] = stored
        return stored

    async def list_companies(self, user_id: int, company_ids: Optional[List[int]] = None) -> List[Company]:
        companies = [c for c in self.companies.values() if c.user_id == user_id]
        if company_ids:
            companies = [c for c in companies if c.id in company_ids]
        return sorted(companies, key=lambda c: c.created_at)

    # Contacts

    async def insert_contact(self, contact: Contact) -> Contact:
        stored = contact.model_copy(update={"id": next(self._ids), "created_at": contact.created_at or utc_now()})
        self.contacts[stored.id] = stored
        return stored

    def _owned_contact(self, contact_id: int, user_id: int) -> Optional[Contact]:
        contact = self.contacts.get(contact_id)
        return contact if contact is not None and contact.user_id == user_id else None

    async def list_contacts(self, company_id: int, user_id: int) -> List[Contact]:
        contacts = [c for c in self.contacts.values() if c.company_id == company_id and c.user_id == user_id]
        return sorted(contacts, key=lambda c: c.probability, reverse=True)

    async def update_contact(self, contact_id: int, user_id: int, fields: Dict[str, Any]) -> Contact:
        contact = self._owned_contact(contact_id, user_id)
        if contact is None:
            raise ContactNotFoundError(f"Contact {contact_id} not found")
        data = contact.model_dump()
        data.update(fields)
        updated = Contact.model_validate(data)
        self.contacts[contact_id] = updated
        return updated

    # Credits

    async def fetch_credit_balance(self, user_id: int) -> int:
        return self.balances.get(user_id, 0)

    async def fetch_credit_transaction(self, idempotency_key: str) -> Optional[CreditTransaction]:
        return self.transactions.get(idempotency_key)

    async def insert_credit_transaction(self, transaction: CreditTransaction) -> bool:
        if transaction.idempotency_key in self.transactions:
            return False
        self.transactions[transaction.idempotency_key] = transaction.model_copy(
            update={"id": next(self._ids), "created_at": utc_now()}
        )
        return True

    async def mark_credit_transaction_applied(self, idempotency_key: str, balance_after: int) -> bool:
        transaction = self.transactions.get(idempotency_key)
        if transaction is None or transaction.balance_after is not None:
            return False
        self.transactions[idempotency_key] = transaction.model_copy(update={"balance_after": balance_after})
        return True

    async def adjust_credit_balance(self, user_id: int, delta: int) -> int:
        self.balances[user_id] = self.balances.get(user_id, 0) + delta
        return self.balances[user_id]

    async def close(self):
        pass


class FakeProvider(BaseProviderClient):
    """Waterfall tier answering from a name -> email (or exception) script"""

    def __init__(
        self,
        tier_id: str,
        source_name: str,
        results: Optional[Dict[str, Any]] = None,
        configured: bool = True,
    ):
        super().__init__(api_key="test-key" if configured else None, rate_limit=1000, timeout=5)
        self.tier_id = tier_id
        self.source_name = source_name
        self.results: Dict[str, Any] = results or {}
        self.calls: List[str] = []

    async def search(self, contact: Contact, company: Company) -> ProviderResult:
        self.calls.append(contact.name)
        outcome = self.results.get(contact.name)
        if isinstance(outcome, Exception):
            raise outcome
        if not outcome:
            return self._not_found()
        return ProviderResult(found=True, email=outcome, confidence=80, source=self.source_name)


class FakePerplexity(FakeProvider):
    """Tier A plus the discovery calls the search service makes"""

    def __init__(self, configured: bool = True):
        super().__init__(EmailSearchTier.CONTACT_ENRICHMENT.value, "perplexity", configured=configured)
        self.companies: List[Dict[str, Any]] = []
        self.candidates: Dict[str, List[ContactCandidate]] = {}
        self.scores: Dict[str, int] = {}
        self.discovery_errors: Dict[str, Exception] = {}
        self.scoring_error: Optional[Exception] = None
        self.discovery_calls: List[str] = []

    async def search_companies(self, query: str, user_id: int, limit: int = 5) -> List[Company]:
        return [Company(user_id=user_id, **data) for data in self.companies[:limit]]

    async def find_decision_makers(self, company, target) -> List[ContactCandidate]:
        self.discovery_calls.append(f"{company.name}:{target.tier.value}")
        if company.name in self.discovery_errors:
            raise self.discovery_errors[company.name]
        return list(self.candidates.get(company.name, []))

    async def score_names(self, names: List[str], company_name: str) -> Dict[str, int]:
        if self.scoring_error is not None:
            raise self.scoring_error
        return {name: self.scores[name] for name in names if name in self.scores}
