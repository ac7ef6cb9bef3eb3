"""
Job Manager for the Search Job Service
Durable job lifecycle: creation, claiming, progress, retry/backoff and terminal states
"""
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from config import get_settings
from database import DatabaseClient, get_db_client
from models import (
    CreateJobRequest,
    JobProgress,
    JobResults,
    JobStatus,
    SearchJob,
    SearchType,
    utc_now,
)

TOTAL_PHASES = 5
CANCELLED_MESSAGE = "Job cancelled by user"

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.EXPIRED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.EXPIRED: set(),
}


class JobNotFoundError(Exception):
    """Job does not exist or belongs to another user"""
    pass


class InvalidStateTransition(Exception):
    """Requested status change is not allowed from the job's current status"""
    def __init__(self, job_id: str, current: Optional[JobStatus], target: JobStatus, message: Optional[str] = None):
        self.job_id = job_id
        self.current = current
        self.target = target
        current_label = current.value if current else "unknown"
        super().__init__(message or f"Job {job_id} cannot move from {current_label} to {target.value}")


class JobManager:
    """Owns every write to the search_jobs table"""

    def __init__(self, db_client: Optional[DatabaseClient] = None):
        self.settings = get_settings()
        self.db_client = db_client

    async def _ensure_db_client(self):
        """Ensure database client is initialized"""
        if self.db_client is None:
            self.db_client = await get_db_client()

    def _generate_job_id(self, prefix: str = "search") -> str:
        """Generate a unique job ID"""
        return f"{prefix}-{uuid.uuid4().hex}-{int(time.time() * 1000)}"

    async def create_job(self, request: CreateJobRequest) -> SearchJob:
        """
        Create a new pending search job

        Args:
            request: Validated job parameters

        Returns:
            Created job object

        Raises:
            ValueError: If the job parameters are invalid
        """
        await self._ensure_db_client()

        query = request.query.strip()
        if request.search_type == SearchType.COMPANIES and not query:
            raise ValueError("Invalid request: query must be a non-empty string")
        if request.search_type == SearchType.CONTACT_ONLY and not query:
            company_count = len(request.metadata.company_ids)
            query = (
                f"Contact search for {company_count} companies" if company_count
                else "Contact search for all companies"
            )

        if request.search_type == SearchType.CONTACT_ONLY and not request.contact_search_config.enabled_tiers():
            raise ValueError("Contact search requires at least one enabled search tier")

        now = utc_now()
        prefix = "contacts" if request.search_type == SearchType.CONTACT_ONLY else "search"
        job = SearchJob(
            job_id=self._generate_job_id(prefix),
            user_id=request.user_id,
            query=query,
            search_type=request.search_type,
            contact_search_config=request.contact_search_config,
            metadata=request.metadata,
            source=request.source,
            priority=request.priority,
            max_retries=self.settings.job_max_retries if request.max_retries is None else request.max_retries,
            status=JobStatus.PENDING,
            progress=JobProgress(phase="Queued", completed=0, total=TOTAL_PHASES),
            created_at=now,
            expires_at=now + timedelta(hours=self.settings.job_ttl_hours),
        )

        saved = await self.db_client.insert_job(job)
        logger.info(f"Created job {saved.job_id} ({saved.search_type.value}, priority {saved.priority}) for user {saved.user_id}")
        return saved

    async def get_job(self, job_id: str, user_id: Optional[int] = None) -> Optional[SearchJob]:
        """
        Get job by ID

        Args:
            job_id: Job ID to retrieve
            user_id: When given, jobs owned by other users are reported as missing

        Returns:
            Job object if found, None otherwise
        """
        await self._ensure_db_client()

        job = await self.db_client.fetch_job(job_id)
        if job is None:
            return None
        if user_id is not None and job.user_id != user_id:
            logger.warning(f"User {user_id} requested job {job_id} owned by another user")
            return None
        return job

    async def list_jobs(self, user_id: int, limit: int = 10) -> List[SearchJob]:
        """A user's most recent jobs, newest first"""
        await self._ensure_db_client()
        return await self.db_client.list_jobs(user_id, max(1, min(limit, 100)))

    async def get_next_pending_job(self, now: Optional[datetime] = None) -> Optional[SearchJob]:
        """Highest priority pending job whose backoff has elapsed"""
        await self._ensure_db_client()
        return await self.db_client.fetch_next_pending_job(now or utc_now())

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        patch: Optional[Dict[str, Any]] = None,
        expected_status: Optional[JobStatus] = None,
    ) -> SearchJob:
        """
        Move a job to ``status``, applying ``patch`` in the same write

        The write only lands if the job is still in the status the transition
        was validated against.

        Raises:
            JobNotFoundError: unknown job
            InvalidStateTransition: transition not allowed, or the job changed underneath us
        """
        await self._ensure_db_client()

        current = expected_status
        if current is None:
            job = await self.db_client.fetch_job(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            current = job.status

        if status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(job_id, current, status)

        fields = dict(patch or {})
        fields["status"] = status
        updated = await self.db_client.update_job(job_id, fields, expected_status=current)
        if updated is None:
            raise InvalidStateTransition(
                job_id, current, status, f"Job {job_id} is no longer {current.value}"
            )

        logger.debug(f"Job {job_id}: {current.value} -> {status.value}")
        return updated

    async def claim_job(self, job_id: str) -> Optional[SearchJob]:
        """
        Atomically move a pending job to processing

        Returns:
            The claimed job, or None if it was not pending (already claimed,
            cancelled or finished)
        """
        try:
            job = await self.update_status(
                job_id,
                JobStatus.PROCESSING,
                {
                    "started_at": utc_now(),
                    "progress": JobProgress(phase="Starting search", completed=0, total=TOTAL_PHASES),
                },
                expected_status=JobStatus.PENDING,
            )
        except InvalidStateTransition:
            logger.debug(f"Job {job_id} was not claimable")
            return None

        logger.info(f"Claimed job {job_id} (attempt {job.retry_count + 1}/{job.max_retries + 1})")
        return job

    async def update_progress(
        self,
        job_id: str,
        phase: str,
        completed: int,
        total: int = TOTAL_PHASES,
        message: Optional[str] = None,
    ) -> None:
        """Record progress on a running job"""
        await self._ensure_db_client()
        progress = JobProgress(phase=phase, completed=completed, total=total, message=message)
        updated = await self.db_client.update_job(
            job_id, {"progress": progress}, expected_status=JobStatus.PROCESSING
        )
        if updated is None:
            logger.warning(f"Progress update for job {job_id} ignored: job is not processing")

    async def complete_job(self, job_id: str, results: JobResults, result_count: int) -> SearchJob:
        """Mark a processing job completed with its results"""
        job = await self.update_status(
            job_id,
            JobStatus.COMPLETED,
            {
                "results": results,
                "result_count": result_count,
                "error": None,
                "next_attempt_at": None,
                "completed_at": utc_now(),
                "progress": JobProgress(
                    phase="Completed",
                    completed=TOTAL_PHASES,
                    total=TOTAL_PHASES,
                    message=f"Found {result_count} results",
                ),
            },
            expected_status=JobStatus.PROCESSING,
        )
        logger.info(f"Job {job_id} completed with {result_count} results")
        return job

    def _backoff_seconds(self, retry_count: int) -> int:
        delay = self.settings.retry_backoff_base * (2 ** max(0, retry_count - 1))
        return min(delay, self.settings.retry_backoff_max)

    async def record_failure(self, job_id: str, error: str, retryable: bool = True) -> SearchJob:
        """
        Route a failed execution through the retry policy

        While retries remain the job returns to pending with an incremented
        retry count and a ``next_attempt_at`` that doubles each time. Once they
        are used up, or for non-retryable errors, the job is failed for good.

        Args:
            job_id: Job that failed
            error: Message kept on the job for operators
            retryable: False to fail immediately without consuming a retry

        Returns:
            The updated job
        """
        await self._ensure_db_client()

        job = await self.db_client.fetch_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if retryable and job.retry_count < job.max_retries:
            retry_count = job.retry_count + 1
            delay = self._backoff_seconds(retry_count)
            updated = await self.update_status(
                job_id,
                JobStatus.PENDING,
                {
                    "retry_count": retry_count,
                    "error": error,
                    "next_attempt_at": utc_now() + timedelta(seconds=delay),
                    "progress": JobProgress(phase="Error", completed=0, total=TOTAL_PHASES, message=error),
                },
                expected_status=JobStatus.PROCESSING,
            )
            logger.warning(
                f"Job {job_id} failed (attempt {retry_count}/{job.max_retries + 1}), "
                f"retrying in {delay}s: {error}"
            )
            return updated

        updated = await self.update_status(
            job_id,
            JobStatus.FAILED,
            {
                "error": error,
                "completed_at": utc_now(),
                "next_attempt_at": None,
                "progress": JobProgress(phase="Error", completed=0, total=TOTAL_PHASES, message=error),
            },
            expected_status=JobStatus.PROCESSING,
        )
        if retryable:
            logger.error(f"Job {job_id} failed permanently after {job.retry_count + 1} attempts: {error}")
        else:
            logger.error(f"Job {job_id} failed with a non-retryable error: {error}")
        return updated

    async def cancel_job(self, job_id: str, user_id: Optional[int] = None) -> SearchJob:
        """
        Cancel a pending job

        Raises:
            JobNotFoundError: unknown job, or owned by another user
            InvalidStateTransition: the job is no longer pending
        """
        job = await self.get_job(job_id, user_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if job.status != JobStatus.PENDING:
            raise InvalidStateTransition(
                job_id, job.status, JobStatus.FAILED, f"Cannot cancel job with status: {job.status.value}"
            )

        cancelled = await self.update_status(
            job_id,
            JobStatus.FAILED,
            {"error": CANCELLED_MESSAGE, "completed_at": utc_now(), "next_attempt_at": None},
            expected_status=JobStatus.PENDING,
        )
        logger.info(f"Cancelled job {job_id}")
        return cancelled

    async def recover_stuck_jobs(self, threshold_seconds: Optional[int] = None) -> int:
        """
        Send jobs stuck in processing (e.g. after a crash) through the failure path

        Returns:
            Number of jobs recovered
        """
        await self._ensure_db_client()
        threshold = threshold_seconds or self.settings.stuck_job_threshold
        cutoff = utc_now() - timedelta(seconds=threshold)

        stuck_jobs = await self.db_client.fetch_jobs_by_status(JobStatus.PROCESSING, started_before=cutoff)
        recovered = 0
        for job in stuck_jobs:
            try:
                await self.record_failure(job.job_id, f"Job stuck in processing for more than {threshold}s")
                recovered += 1
            except InvalidStateTransition:
                logger.debug(f"Stuck job {job.job_id} finished before recovery")

        if recovered:
            logger.warning(f"Recovered {recovered} stuck jobs")
        return recovered

    async def expire_stale_jobs(self) -> int:
        """Mark pending jobs past their expiry as expired"""
        await self._ensure_db_client()
        now = utc_now()
        stale_jobs = await self.db_client.fetch_jobs_by_status(JobStatus.PENDING, expires_before=now)

        expired = 0
        for job in stale_jobs:
            try:
                await self.update_status(
                    job.job_id,
                    JobStatus.EXPIRED,
                    {"error": "Job expired before it could run", "completed_at": now},
                    expected_status=JobStatus.PENDING,
                )
                expired += 1
            except InvalidStateTransition:
                continue

        if expired:
            logger.info(f"Expired {expired} stale pending jobs")
        return expired

    async def cleanup_old_jobs(self, days_to_keep: Optional[int] = None) -> int:
        """Delete jobs older than the retention window"""
        await self._ensure_db_client()
        days = self.settings.job_retention_days if days_to_keep is None else days_to_keep
        deleted = await self.db_client.delete_jobs_created_before(utc_now() - timedelta(days=days))
        logger.info(f"Cleaned up {deleted} jobs older than {days} days")
        return deleted

    async def get_job_statistics(self) -> Dict[str, Any]:
        """Job counts per status"""
        await self._ensure_db_client()
        status_counts = await self.db_client.count_jobs_by_status()
        return {
            "status_counts": status_counts,
            "total_jobs": sum(status_counts.values()),
            "active_jobs": status_counts.get(JobStatus.PENDING.value, 0)
            + status_counts.get(JobStatus.PROCESSING.value, 0),
        }


_job_manager: Optional[JobManager] = None


def get_job_manager() -> JobManager:
    """Get the global job manager instance"""
    global _job_manager
    if _job_manager is None:
        _job_manager = JobManager()
    return _job_manager
