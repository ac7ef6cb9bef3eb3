"""
Background job processor: polls for pending jobs and runs them one at a time
"""
import asyncio
import time
from typing import Any, Dict, Optional

from loguru import logger

from billing import InsufficientCreditsError
from config import get_settings
from job_manager import JobManager
from models import JobStatus, SearchJob
from search_service import SearchJobService
from sessions import JobSessionStore

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.EXPIRED}


class JobProcessor:
    """
    Drains the search job queue.

    Each tick claims at most one job through the job manager's conditional
    status write, so a job that is already processing can never be picked up
    a second time, whether by the next tick or by a manual run.
    """

    def __init__(
        self,
        job_manager: JobManager,
        service: SearchJobService,
        session_store: Optional[JobSessionStore] = None,
    ):
        self.settings = get_settings()
        self.job_manager = job_manager
        self.service = service
        self.session_store = session_store

        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._last_recovery = 0.0

        self.stats = {
            "jobs_processed": 0,
            "jobs_completed": 0,
            "jobs_retried": 0,
            "jobs_failed": 0,
            "last_tick_at": None,
        }

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _execute_claimed(self, job: SearchJob) -> SearchJob:
        """Run a claimed job and record its outcome"""
        log = logger.bind(job_id=job.job_id)
        if self.session_store is not None and job.metadata.session_id:
            self.session_store.bind(job.job_id, job.metadata.session_id)

        timeout = self.settings.job_timeout
        started = time.time()
        try:
            results = await asyncio.wait_for(self.service.execute(job), timeout=timeout)
        except asyncio.TimeoutError:
            log.error(f"Job {job.job_id} timed out after {timeout}s")
            final = await self.job_manager.record_failure(job.job_id, f"Job timed out after {timeout} seconds")
        except InsufficientCreditsError as e:
            final = await self.job_manager.record_failure(job.job_id, str(e), retryable=False)
        except Exception as e:
            log.error(f"Job {job.job_id} failed: {e.__class__.__name__}: {e}")
            final = await self.job_manager.record_failure(job.job_id, str(e) or e.__class__.__name__)
        else:
            final = await self.job_manager.complete_job(
                job.job_id, results, self.service.result_count(job, results)
            )
            log.info(f"Job {job.job_id} finished in {time.time() - started:.1f}s")

        self.stats["jobs_processed"] += 1
        if final.status == JobStatus.COMPLETED:
            self.stats["jobs_completed"] += 1
        elif final.status == JobStatus.PENDING:
            self.stats["jobs_retried"] += 1
        else:
            self.stats["jobs_failed"] += 1

        if self.session_store is not None and final.status in TERMINAL_STATUSES:
            self.session_store.release(job.job_id)
        return final

    async def process_next_job(self) -> Optional[SearchJob]:
        """
        One scheduler tick: expire stale jobs, then claim and run the next one

        Returns:
            The job after execution, or None if nothing was runnable
        """
        self.stats["last_tick_at"] = time.time()
        await self.job_manager.expire_stale_jobs()

        job = await self.job_manager.get_next_pending_job()
        if job is None:
            return None

        claimed = await self.job_manager.claim_job(job.job_id)
        if claimed is None:
            return None
        return await self._execute_claimed(claimed)

    async def process_job_immediately(self, job_id: str) -> Optional[SearchJob]:
        """
        Run a job now instead of waiting for the next tick

        Returns:
            The job after execution, or None if it was not pending
        """
        claimed = await self.job_manager.claim_job(job_id)
        if claimed is None:
            logger.info(f"Job {job_id} is not pending, not executing")
            return None
        return await self._execute_claimed(claimed)

    async def _recover_if_due(self) -> None:
        now = time.time()
        if now - self._last_recovery < self.settings.stuck_job_threshold:
            return
        self._last_recovery = now
        await self.job_manager.recover_stuck_jobs()

    async def _run_loop(self) -> None:
        logger.info(f"Job processor started (polling every {self.settings.job_polling_interval}s)")
        while not self._shutdown_event.is_set():
            try:
                await self._recover_if_due()
                await self.process_next_job()
            except Exception as e:
                logger.error(f"Job processor tick failed: {e}")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.settings.job_polling_interval,
                )
            except asyncio.TimeoutError:
                continue
        logger.info("Job processor stopped")

    def start(self) -> None:
        """Start polling in a background task"""
        if self.is_running:
            logger.warning("Job processor already running")
            return
        self._shutdown_event = asyncio.Event()
        self._last_recovery = 0.0
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """Stop after the current tick; a running job is allowed to finish"""
        if not self.is_running:
            return
        self._shutdown_event.set()
        await self._task
        self._task = None

    def get_status(self) -> Dict[str, Any]:
        return {"running": self.is_running, **self.stats}
