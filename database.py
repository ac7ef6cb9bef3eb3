"""
Supabase database client and operations
"""
import asyncio
import json
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from pydantic import BaseModel
from supabase import Client, create_client
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import get_settings
from models import Company, Contact, CreditTransaction, JobStatus, SearchJob, utc_now

JOBS_TABLE = "search_jobs"
COMPANIES_TABLE = "companies"
CONTACTS_TABLE = "contacts"
CREDITS_TABLE = "user_credits"
CREDIT_TRANSACTIONS_TABLE = "credit_transactions"

UNIQUE_VIOLATION = "23505"
BALANCE_UPDATE_ATTEMPTS = 5

RETRYABLE_DB_ERRORS = (httpx.TransportError, ConnectionError, TimeoutError)

_JSON_COLUMNS = ("progress", "results", "contact_search_config", "metadata")


class DatabaseError(Exception):
    """Storage is unavailable or rejected an operation"""
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ContactNotFoundError(DatabaseError):
    """Contact row does not exist for this user"""
    pass


class CircuitBreaker:
    """Simple circuit breaker to prevent cascading failures"""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = 0
        self.state = "closed"  # closed, open, half-open

    def _should_attempt_reset(self) -> bool:
        """Check if we should attempt to reset the circuit breaker"""
        return (self.state == "open" and
                time.time() - self.last_failure_time >= self.recovery_timeout)

    async def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection"""
        if self.state == "open":
            if self._should_attempt_reset():
                self.state = "half-open"
                logger.warning("Circuit breaker transitioning to half-open state")
            else:
                raise DatabaseError("Circuit breaker is open - database operations temporarily disabled")

        try:
            result = await func(*args, **kwargs)
            if self.state == "half-open":
                self.state = "closed"
                logger.info("Circuit breaker reset to closed state")
            self.failure_count = 0
            return result
        except APIError:
            # The database answered; a rejected statement says nothing about availability
            raise
        except Exception:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.failure_count >= self.failure_threshold:
                self.state = "open"
                logger.error(f"Circuit breaker opened after {self.failure_count} failures")

            raise


def _iso(value: datetime) -> str:
    return value.isoformat()


def _job_from_row(row: Dict[str, Any]) -> SearchJob:
    for column in _JSON_COLUMNS:
        if isinstance(row.get(column), str):
            row[column] = json.loads(row[column])
    if row.get("metadata") is None:
        row.pop("metadata", None)
    return SearchJob.model_validate(row)


def _to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe column values for an UPDATE payload"""
    columns = {}
    for key, value in fields.items():
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        columns[key] = value
    return columns


def _insert_payload(model) -> Dict[str, Any]:
    data = model.model_dump(mode="json")
    # Let the database generate ids and timestamps
    for key in ("id", "created_at", "updated_at"):
        if data.get(key) is None:
            data.pop(key, None)
    return data


class DatabaseClient:
    """Supabase database client with retries and circuit breaking"""

    def __init__(self):
        self.settings = get_settings()
        self._client: Optional[Client] = None
        self._connection_lock = asyncio.Lock()

        # Circuit breakers for different operation types
        self._write_circuit_breaker = CircuitBreaker(
            failure_threshold=self.settings.db_circuit_failure_threshold,
            recovery_timeout=self.settings.db_circuit_recovery_timeout,
        )
        self._read_circuit_breaker = CircuitBreaker(
            failure_threshold=self.settings.db_circuit_failure_threshold,
            recovery_timeout=self.settings.db_circuit_recovery_timeout,
        )

    async def get_client(self) -> Client:
        """Get or create Supabase client"""
        if self._client is None:
            async with self._connection_lock:
                if self._client is None:
                    try:
                        self._client = create_client(
                            supabase_url=self.settings.supabase_url,
                            supabase_key=self.settings.supabase_service_role_key,
                        )
                        logger.info("Supabase client initialized successfully")
                    except Exception as e:
                        logger.error(f"Failed to initialize Supabase client: {e}")
                        raise DatabaseError(f"Could not connect to Supabase: {e}") from e
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RETRYABLE_DB_ERRORS),
        reraise=True
    )
    async def _run(self, query, write: bool):
        breaker = self._write_circuit_breaker if write else self._read_circuit_breaker
        # Run synchronous Supabase operation in thread pool to avoid blocking
        return await breaker.call(asyncio.to_thread, query.execute)

    async def _execute(self, query, action: str, write: bool = False):
        """Execute a query, converting any failure into DatabaseError"""
        try:
            return await self._run(query, write)
        except DatabaseError:
            raise
        except APIError as e:
            logger.error(f"Database {action} rejected: {e.message}")
            raise DatabaseError(f"{action} failed: {e.message}", code=e.code) from e
        except Exception as e:
            logger.error(f"Database {action} failed: {e}")
            raise DatabaseError(f"{action} failed: {e}") from e

    # ------------------------------------------------------------------
    # Search jobs
    # ------------------------------------------------------------------

    async def insert_job(self, job: SearchJob) -> SearchJob:
        """Persist a new job and return the stored row"""
        client = await self.get_client()
        response = await self._execute(
            client.table(JOBS_TABLE).insert(_insert_payload(job)), "insert job", write=True
        )
        return _job_from_row(response.data[0]) if response.data else job

    async def fetch_job(self, job_id: str) -> Optional[SearchJob]:
        """Get job by its external id"""
        client = await self.get_client()
        response = await self._execute(
            client.table(JOBS_TABLE).select("*").eq("job_id", job_id).limit(1), "fetch job"
        )
        return _job_from_row(response.data[0]) if response.data else None

    async def list_jobs(self, user_id: int, limit: int = 10) -> List[SearchJob]:
        """A user's jobs, newest first"""
        client = await self.get_client()
        response = await self._execute(
            client.table(JOBS_TABLE).select("*").eq("user_id", user_id)
            .order("created_at", desc=True).limit(limit),
            "list jobs",
        )
        return [_job_from_row(row) for row in response.data or []]

    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[Union[JobStatus, Sequence[JobStatus]]] = None,
    ) -> Optional[SearchJob]:
        """
        Update a job row, optionally only while it is in ``expected_status``

        The status condition is part of the UPDATE statement, so two callers
        racing on the same transition cannot both succeed.

        Returns:
            The updated job, or None if no row matched
        """
        client = await self.get_client()
        payload = _to_columns(fields)
        payload["updated_at"] = _iso(utc_now())
        query = client.table(JOBS_TABLE).update(payload).eq("job_id", job_id)

        if isinstance(expected_status, JobStatus):
            query = query.eq("status", expected_status.value)
        elif expected_status:
            query = query.in_("status", [s.value for s in expected_status])

        response = await self._execute(query, f"update job {job_id}", write=True)
        return _job_from_row(response.data[0]) if response.data else None

    async def fetch_next_pending_job(self, now: datetime) -> Optional[SearchJob]:
        """Highest priority runnable pending job, oldest first on ties"""
        client = await self.get_client()
        now_iso = _iso(now)
        response = await self._execute(
            client.table(JOBS_TABLE).select("*").eq("status", JobStatus.PENDING.value)
            .or_(f"next_attempt_at.is.null,next_attempt_at.lte.{now_iso}")
            .order("priority", desc=True).order("created_at").limit(10),
            "fetch next pending job",
        )
        for row in response.data or []:
            job = _job_from_row(row)
            if job.expires_at is None or job.expires_at > now:
                return job
        return None

    async def fetch_jobs_by_status(
        self,
        status: JobStatus,
        started_before: Optional[datetime] = None,
        expires_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SearchJob]:
        client = await self.get_client()
        query = client.table(JOBS_TABLE).select("*").eq("status", status.value)
        if started_before is not None:
            query = query.lt("started_at", _iso(started_before))
        if expires_before is not None:
            query = query.lt("expires_at", _iso(expires_before))
        response = await self._execute(query.order("created_at").limit(limit), f"fetch {status.value} jobs")
        return [_job_from_row(row) for row in response.data or []]

    async def delete_jobs_created_before(self, cutoff: datetime) -> int:
        client = await self.get_client()
        response = await self._execute(
            client.table(JOBS_TABLE).delete().lt("created_at", _iso(cutoff)), "delete old jobs", write=True
        )
        return len(response.data or [])

    async def count_jobs_by_status(self) -> Dict[str, int]:
        """Count jobs in each status"""
        client = await self.get_client()
        status_counts = {}
        for status in JobStatus:
            response = await self._execute(
                client.table(JOBS_TABLE).select("job_id", count="exact").eq("status", status.value).limit(1),
                "count jobs",
            )
            status_counts[status.value] = response.count or 0
        return status_counts

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    async def insert_company(self, company: Company) -> Company:
        client = await self.get_client()
        response = await self._execute(
            client.table(COMPANIES_TABLE).insert(_insert_payload(company)), "insert company", write=True
        )
        return Company.model_validate(response.data[0]) if response.data else company

    async def list_companies(self, user_id: int, company_ids: Optional[List[int]] = None) -> List[Company]:
        """A user's companies, optionally restricted to ``company_ids``"""
        client = await self.get_client()
        query = client.table(COMPANIES_TABLE).select("*").eq("user_id", user_id)
        if company_ids:
            query = query.in_("id", company_ids)
        response = await self._execute(query.order("created_at"), "list companies")
        return [Company.model_validate(row) for row in response.data or []]

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def insert_contact(self, contact: Contact) -> Contact:
        client = await self.get_client()
        response = await self._execute(
            client.table(CONTACTS_TABLE).insert(_insert_payload(contact)), "insert contact", write=True
        )
        return Contact.model_validate(response.data[0]) if response.data else contact

    async def list_contacts(self, company_id: int, user_id: int) -> List[Contact]:
        client = await self.get_client()
        response = await self._execute(
            client.table(CONTACTS_TABLE).select("*").eq("company_id", company_id).eq("user_id", user_id)
            .order("probability", desc=True),
            "list contacts",
        )
        return [Contact.model_validate(row) for row in response.data or []]

    async def update_contact(self, contact_id: int, user_id: int, fields: Dict[str, Any]) -> Contact:
        """
        Update a contact owned by ``user_id``

        Raises:
            ContactNotFoundError: if the row is gone
        """
        client = await self.get_client()
        payload = _to_columns(fields)
        response = await self._execute(
            client.table(CONTACTS_TABLE).update(payload).eq("id", contact_id).eq("user_id", user_id),
            f"update contact {contact_id}",
            write=True,
        )
        if not response.data:
            raise ContactNotFoundError(f"Contact {contact_id} not found")
        return Contact.model_validate(response.data[0])

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    async def fetch_credit_balance(self, user_id: int) -> int:
        """Current balance; users without a row have zero"""
        client = await self.get_client()
        response = await self._execute(
            client.table(CREDITS_TABLE).select("balance").eq("user_id", user_id).limit(1), "fetch credits"
        )
        return int(response.data[0]["balance"]) if response.data else 0

    async def fetch_credit_transaction(self, idempotency_key: str) -> Optional[CreditTransaction]:
        client = await self.get_client()
        response = await self._execute(
            client.table(CREDIT_TRANSACTIONS_TABLE).select("*").eq("idempotency_key", idempotency_key).limit(1),
            "fetch credit transaction",
        )
        return CreditTransaction.model_validate(response.data[0]) if response.data else None

    async def insert_credit_transaction(self, transaction: CreditTransaction) -> bool:
        """
        Record a charge

        Returns:
            False if a transaction with the same idempotency key already exists
        """
        client = await self.get_client()
        try:
            await self._execute(
                client.table(CREDIT_TRANSACTIONS_TABLE).insert(_insert_payload(transaction)),
                "insert credit transaction",
                write=True,
            )
        except DatabaseError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.info(f"Credit transaction {transaction.idempotency_key} already recorded")
                return False
            raise
        return True

    async def mark_credit_transaction_applied(self, idempotency_key: str, balance_after: int) -> bool:
        """
        Record that a charge reached the balance

        Returns:
            False if it was already marked
        """
        client = await self.get_client()
        response = await self._execute(
            client.table(CREDIT_TRANSACTIONS_TABLE).update({"balance_after": balance_after})
            .eq("idempotency_key", idempotency_key).is_("balance_after", "null"),
            "mark credit transaction applied",
            write=True,
        )
        return bool(response.data)

    async def adjust_credit_balance(self, user_id: int, delta: int) -> int:
        """
        Add ``delta`` to a user's balance using compare-and-swap

        Returns:
            The new balance
        """
        client = await self.get_client()
        for _ in range(BALANCE_UPDATE_ATTEMPTS):
            response = await self._execute(
                client.table(CREDITS_TABLE).select("balance").eq("user_id", user_id).limit(1), "fetch credits"
            )
            if not response.data:
                await self._execute(
                    client.table(CREDITS_TABLE).insert({"user_id": user_id, "balance": delta}),
                    "create credit balance",
                    write=True,
                )
                return delta

            current = int(response.data[0]["balance"])
            new_balance = current + delta
            updated = await self._execute(
                client.table(CREDITS_TABLE).update({"balance": new_balance, "updated_at": _iso(utc_now())})
                .eq("user_id", user_id).eq("balance", current),
                "update credits",
                write=True,
            )
            if updated.data:
                return new_balance
            logger.debug(f"Credit balance for user {user_id} changed concurrently, retrying")

        raise DatabaseError(f"Could not update credit balance for user {user_id}")

    async def close(self):
        """Close database connections"""
        if self._client:
            # Supabase client doesn't have explicit close method, but we can clear the reference
            self._client = None
            logger.info("Database client closed")


_db_client: Optional[DatabaseClient] = None


async def get_db_client() -> DatabaseClient:
    """Get the global database client instance"""
    global _db_client
    if _db_client is None:
        _db_client = DatabaseClient()
    return _db_client
