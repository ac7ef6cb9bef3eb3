"""
HTTP API for creating, inspecting and cancelling search jobs
Jobs are queued for the background processor unless immediate execution is requested
"""
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from job_manager import InvalidStateTransition, JobManager, JobNotFoundError, get_job_manager
from job_processor import JobProcessor
from models import (
    ContactSearchConfig,
    CreateJobRequest,
    JobMetadata,
    JobProgress,
    JobResults,
    JobSource,
    SearchJob,
    SearchType,
    utc_now,
)
from sessions import JobSessionStore


class CreateSearchJobRequest(BaseModel):
    """Request model for creating search jobs"""
    query: str = ""
    search_type: SearchType = SearchType.COMPANIES
    contact_search_config: ContactSearchConfig = Field(default_factory=ContactSearchConfig)
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    source: JobSource = JobSource.FRONTEND
    priority: int = Field(0, ge=0, le=10)
    execute_immediately: bool = False


class ContactSearchJobRequest(BaseModel):
    """Request model for contact searches over saved companies"""
    company_ids: List[int] = Field(default_factory=list)
    contact_search_config: ContactSearchConfig = Field(default_factory=ContactSearchConfig)
    session_id: Optional[str] = None
    priority: int = Field(3, ge=0, le=10)
    execute_immediately: bool = False


class JobCreatedResponse(BaseModel):
    job_id: str
    message: str


class JobStatusResponse(BaseModel):
    """Response model for job status"""
    job_id: str
    query: str
    search_type: SearchType
    status: str
    progress: JobProgress
    results: Optional[JobResults] = None
    result_count: int = 0
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: SearchJob, include_results: bool = True) -> "JobStatusResponse":
        return cls(
            job_id=job.job_id,
            query=job.query,
            search_type=job.search_type,
            status=job.status.value,
            progress=job.progress,
            results=job.results if include_results else None,
            result_count=job.result_count,
            error=job.error,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    jobs: List[JobStatusResponse]
    total: int


def get_manager(request: Request) -> JobManager:
    return getattr(request.app.state, "job_manager", None) or get_job_manager()


def get_processor(request: Request) -> Optional[JobProcessor]:
    return getattr(request.app.state, "processor", None)


def get_sessions(request: Request) -> JobSessionStore:
    return request.app.state.session_store


async def _create_and_maybe_run(
    manager: JobManager,
    processor: Optional[JobProcessor],
    sessions: JobSessionStore,
    request: CreateJobRequest,
    execute_immediately: bool,
) -> JobCreatedResponse:
    try:
        job = await manager.create_job(request)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.metadata.session_id:
        sessions.bind(job.job_id, request.metadata.session_id)

    if execute_immediately and processor is not None:
        logger.info(f"Executing job {job.job_id} immediately")
        try:
            await processor.process_job_immediately(job.job_id)
        except Exception as e:
            # The job record carries the failure; the processor retries it
            logger.error(f"Immediate execution of job {job.job_id} failed: {e}")
        return JobCreatedResponse(job_id=job.job_id, message="Job created and processed")

    return JobCreatedResponse(job_id=job.job_id, message="Job created and queued for processing")


def create_app(
    job_manager: Optional[JobManager] = None,
    processor: Optional[JobProcessor] = None,
    session_store: Optional[JobSessionStore] = None,
) -> FastAPI:
    """Build the API app; collaborators default to the global instances"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan manager"""
        logger.info("Starting Search Job API Service")
        yield
        logger.info("Shutting down Search Job API Service")

    app = FastAPI(
        title="Search Job API",
        description="Create and track company, contact and email search jobs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.job_manager = job_manager
    app.state.processor = processor
    app.state.session_store = session_store if session_store is not None else JobSessionStore()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/ping")
    async def ping():
        """Simple ping endpoint to check service availability"""
        return {
            "ping": "pong",
            "timestamp": utc_now().isoformat(),
            "service": "search-job-api",
        }

    @app.get("/health")
    async def health_check(processor: Optional[JobProcessor] = Depends(get_processor)):
        """Basic health check endpoint"""
        health: Dict[str, Any] = {"status": "healthy", "service": "search-job-api"}
        if processor is not None:
            health["processor"] = processor.get_status()
        return health

    @app.post("/search-jobs", response_model=JobCreatedResponse)
    async def create_search_job(
        body: CreateSearchJobRequest,
        user_id: int = Header(..., alias="X-User-Id"),
        manager: JobManager = Depends(get_manager),
        processor: Optional[JobProcessor] = Depends(get_processor),
        sessions: JobSessionStore = Depends(get_sessions),
    ):
        """Create a search job; the background processor picks it up"""
        request = CreateJobRequest(
            user_id=user_id,
            query=body.query,
            search_type=body.search_type,
            contact_search_config=body.contact_search_config,
            metadata=body.metadata,
            source=body.source,
            priority=body.priority,
        )
        return await _create_and_maybe_run(manager, processor, sessions, request, body.execute_immediately)

    @app.post("/search-jobs/contacts", response_model=JobCreatedResponse)
    async def create_contact_search_job(
        body: ContactSearchJobRequest,
        user_id: int = Header(..., alias="X-User-Id"),
        manager: JobManager = Depends(get_manager),
        processor: Optional[JobProcessor] = Depends(get_processor),
        sessions: JobSessionStore = Depends(get_sessions),
    ):
        """Search contacts and emails for companies the user already has"""
        request = CreateJobRequest(
            user_id=user_id,
            search_type=SearchType.CONTACT_ONLY,
            contact_search_config=body.contact_search_config,
            metadata=JobMetadata(company_ids=body.company_ids, session_id=body.session_id),
            priority=body.priority,
        )
        return await _create_and_maybe_run(manager, processor, sessions, request, body.execute_immediately)

    @app.get("/search-jobs", response_model=JobListResponse)
    async def list_search_jobs(
        limit: int = Query(10, ge=1, le=100),
        user_id: int = Header(..., alias="X-User-Id"),
        manager: JobManager = Depends(get_manager),
    ):
        """List the user's recent jobs"""
        jobs = await manager.list_jobs(user_id, limit)
        return JobListResponse(
            jobs=[JobStatusResponse.from_job(job, include_results=False) for job in jobs],
            total=len(jobs),
        )

    @app.get("/search-jobs/sessions/{session_id}", response_model=JobListResponse)
    async def list_session_jobs(
        session_id: str,
        user_id: int = Header(..., alias="X-User-Id"),
        manager: JobManager = Depends(get_manager),
        sessions: JobSessionStore = Depends(get_sessions),
    ):
        """Jobs started from one client session"""
        jobs = []
        for job_id in sessions.jobs_for(session_id):
            job = await manager.get_job(job_id, user_id)
            if job is not None:
                jobs.append(JobStatusResponse.from_job(job, include_results=False))
        return JobListResponse(jobs=jobs, total=len(jobs))

    @app.get("/search-jobs/{job_id}", response_model=JobStatusResponse)
    async def get_search_job(
        job_id: str,
        user_id: int = Header(..., alias="X-User-Id"),
        manager: JobManager = Depends(get_manager),
    ):
        """Get job status and results"""
        job = await manager.get_job(job_id, user_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobStatusResponse.from_job(job)

    @app.delete("/search-jobs/{job_id}")
    async def cancel_search_job(
        job_id: str,
        user_id: int = Header(..., alias="X-User-Id"),
        manager: JobManager = Depends(get_manager),
        sessions: JobSessionStore = Depends(get_sessions),
    ):
        """Cancel a pending job"""
        try:
            await manager.cancel_job(job_id, user_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidStateTransition as e:
            raise HTTPException(status_code=400, detail=str(e))

        sessions.release(job_id)
        return {"message": "Job cancelled successfully"}

    return app


app = create_app()


if __name__ == "__main__":
    from main import setup_production_logging
    setup_production_logging()

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Search Job API Service on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info", access_log=False)
