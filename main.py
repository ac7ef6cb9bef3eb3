"""
Search job service entry point: component wiring, background daemon and CLI
Runs the job processor next to the HTTP API, with graceful shutdown on signals
"""
# -*- coding: utf-8 -*-
import asyncio
import os
import signal
import sys
from typing import List, Optional

import typer
import uvicorn
from loguru import logger

from aeroleads_client import AeroLeadsClient
from api_service import create_app
from apollo_client import ApolloClient
from billing import BillingGuard, CreditLedger
from config import get_settings
from database import DatabaseClient, get_db_client
from hunter_client import HunterClient
from job_manager import InvalidStateTransition, JobManager, JobNotFoundError
from job_processor import JobProcessor
from models import CreateJobRequest, JobMetadata, JobSource, SearchType
from perplexity_client import PerplexityClient
from search_service import SearchJobService
from sessions import JobSessionStore
from validator import ContactValidator
from waterfall import EmailWaterfall

# CLI Application
app = typer.Typer(help="Search Job Service - company, contact and email search jobs")


class SearchJobComponents:
    """Every collaborator of the job pipeline, wired once per process"""

    def __init__(self, db_client: DatabaseClient):
        self.db_client = db_client
        self.job_manager = JobManager(db_client)
        self.validator = ContactValidator()

        self.perplexity = PerplexityClient()
        # Tier order is the waterfall order
        self.providers = [self.perplexity, ApolloClient(), HunterClient(), AeroLeadsClient()]

        self.billing_guard = BillingGuard(CreditLedger(db_client))
        self.waterfall = EmailWaterfall(self.providers, db_client, self.billing_guard, self.validator)
        self.service = SearchJobService(
            self.job_manager, db_client, self.perplexity, self.waterfall, self.billing_guard, self.validator
        )
        self.session_store = JobSessionStore()
        self.processor = JobProcessor(self.job_manager, self.service, self.session_store)

    async def close(self):
        """Close provider and database connections"""
        cleanup_tasks = [_safe_close(p, p.source_name) for p in self.providers]
        cleanup_tasks.append(_safe_close(self.db_client, "database"))
        await asyncio.gather(*cleanup_tasks, return_exceptions=True)
        logger.info("Service clients cleanup completed")


async def _safe_close(client, name: str):
    """Close a client with a timeout, logging instead of raising"""
    try:
        await asyncio.wait_for(client.close(), timeout=10.0)
        logger.debug(f"{name} client closed")
    except asyncio.TimeoutError:
        logger.warning(f"Timeout while closing {name} client")
    except Exception as e:
        logger.error(f"Error closing {name} client: {e}")


async def build_components() -> SearchJobComponents:
    """Wire the pipeline against the global database client"""
    return SearchJobComponents(await get_db_client())


class SearchJobDaemon:
    """Background processor plus HTTP API in one process"""

    def __init__(self, components: SearchJobComponents):
        self.settings = get_settings()
        self.components = components
        self._shutdown_event = asyncio.Event()

    def _setup_signal_handlers(self):
        """Stop gracefully on the first signal, exit on the second"""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum} ({signal.Signals(signum).name}), initiating graceful shutdown")
            self._shutdown_event.set()

            def force_shutdown(signum, frame):
                logger.warning("Received second shutdown signal, forcing immediate exit")
                sys.exit(1)

            signal.signal(signum, force_shutdown)

        signals_to_handle = [signal.SIGTERM, signal.SIGINT]
        if sys.platform != "win32":
            signals_to_handle.append(signal.SIGHUP)

        for sig in signals_to_handle:
            try:
                signal.signal(sig, signal_handler)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to register signal handler for {signal.Signals(sig).name}: {e}")

    async def run(self, host: str, port: int, with_api: bool = True):
        processor = self.components.processor
        self._setup_signal_handlers()
        processor.start()

        server = None
        server_task = None
        if with_api:
            api = create_app(self.components.job_manager, processor, self.components.session_store)
            config = uvicorn.Config(api, host=host, port=port, log_level="info", access_log=False)
            server = uvicorn.Server(config)
            # Signals are handled here, not by uvicorn
            server.install_signal_handlers = lambda: None
            server_task = asyncio.create_task(server.serve())
            logger.info(f"Search job API listening on {host}:{port}")

        try:
            await self._shutdown_event.wait()
        finally:
            logger.info("Shutting down search job service")
            if server is not None:
                server.should_exit = True
                await server_task
            await processor.stop()
            await self.components.close()
            logger.info("Service shutdown complete")


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port for the HTTP API"),
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host for the HTTP API"),
    no_api: bool = typer.Option(False, "--no-api", help="Run only the background job processor"),
):
    """Run the background job processor and the HTTP API"""
    settings = get_settings()

    async def run_service():
        setup_production_logging()
        daemon = SearchJobDaemon(await build_components())
        await daemon.run(
            host or settings.health_check_host,
            port or settings.health_check_port,
            with_api=not no_api,
        )

    asyncio.run(run_service())


@app.command()
def create_job(
    user_id: int = typer.Argument(..., help="Owner of the job"),
    query: str = typer.Argument("", help="Company search query"),
    contact_only: bool = typer.Option(False, "--contact-only", help="Search contacts for saved companies"),
    company_id: Optional[List[int]] = typer.Option(None, "--company-id", help="Saved company to search (repeatable)"),
    priority: int = typer.Option(0, "--priority", min=0, max=10),
    run_now: bool = typer.Option(False, "--run", help="Execute the job right away"),
):
    """Create a search job"""
    async def run():
        components = await build_components()
        try:
            request = CreateJobRequest(
                user_id=user_id,
                query=query,
                search_type=SearchType.CONTACT_ONLY if contact_only else SearchType.COMPANIES,
                metadata=JobMetadata(company_ids=company_id or []),
                source=JobSource.API,
                priority=priority,
            )
            job = await components.job_manager.create_job(request)
            typer.echo(f"Created job {job.job_id}")

            if run_now:
                final = await components.processor.process_job_immediately(job.job_id)
                if final is not None:
                    typer.echo(f"Job {final.job_id} finished with status {final.status.value}")
        except ValueError as e:
            typer.echo(f"Job creation failed: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await components.close()

    asyncio.run(run())


@app.command()
def run_job(
    job_id: str = typer.Argument(..., help="Pending job to execute now")
):
    """Execute a pending job immediately"""
    async def run():
        components = await build_components()
        try:
            final = await components.processor.process_job_immediately(job_id)
            if final is None:
                typer.echo(f"Job {job_id} is not pending", err=True)
                raise typer.Exit(1)
            typer.echo(f"Job {job_id} finished with status {final.status.value}")
            if final.error:
                typer.echo(f"  Error: {final.error}")
        finally:
            await components.close()

    asyncio.run(run())


@app.command()
def job_status(
    job_id: str = typer.Argument(..., help="Job ID")
):
    """Show job status"""
    async def run():
        components = await build_components()
        try:
            job = await components.job_manager.get_job(job_id)
            if not job:
                typer.echo(f"Job {job_id} not found", err=True)
                raise typer.Exit(1)

            typer.echo(f"Job {job.job_id}:")
            typer.echo(f"  Status: {job.status.value}")
            typer.echo(f"  Query: {job.query}")
            typer.echo(f"  Progress: {job.progress.phase} ({job.progress.completed}/{job.progress.total})")
            typer.echo(f"  Retries: {job.retry_count}/{job.max_retries}")
            typer.echo(f"  Created: {job.created_at}")
            if job.started_at:
                typer.echo(f"  Started: {job.started_at}")
            if job.completed_at:
                typer.echo(f"  Completed: {job.completed_at}")
            if job.results:
                typer.echo(
                    f"  Results: {job.results.total_companies} companies, {job.results.total_contacts} contacts, "
                    f"{job.results.emails_found} emails"
                )
            if job.error:
                typer.echo(f"  Error: {job.error}")
        finally:
            await components.close()

    asyncio.run(run())


@app.command()
def list_jobs(
    user_id: int = typer.Argument(..., help="Owner of the jobs"),
    limit: int = typer.Option(10, "--limit", "-n"),
):
    """List a user's recent jobs"""
    async def run():
        components = await build_components()
        try:
            jobs = await components.job_manager.list_jobs(user_id, limit)
            if not jobs:
                typer.echo("No jobs found")
            for job in jobs:
                typer.echo(f"{job.job_id}: {job.status.value} ({job.created_at}) - {job.query}")
        finally:
            await components.close()

    asyncio.run(run())


@app.command()
def cancel_job(
    job_id: str = typer.Argument(..., help="Job ID to cancel")
):
    """Cancel a pending job"""
    async def run():
        components = await build_components()
        try:
            await components.job_manager.cancel_job(job_id)
            typer.echo(f"Job {job_id} cancelled successfully")
        except (JobNotFoundError, InvalidStateTransition) as e:
            typer.echo(f"Failed to cancel job {job_id}: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await components.close()

    asyncio.run(run())


@app.command()
def cleanup_jobs(
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Keep jobs newer than this many days"),
):
    """Delete old jobs and recover stuck ones"""
    async def run():
        components = await build_components()
        try:
            recovered = await components.job_manager.recover_stuck_jobs()
            expired = await components.job_manager.expire_stale_jobs()
            deleted = await components.job_manager.cleanup_old_jobs(days)
            typer.echo(f"Recovered {recovered} stuck jobs, expired {expired}, deleted {deleted}")
        finally:
            await components.close()

    asyncio.run(run())


@app.command()
def queue_status():
    """Show job counts per status"""
    async def run():
        components = await build_components()
        try:
            status = await components.job_manager.get_job_statistics()
            typer.echo("Job Queue Status:")
            typer.echo(f"  Total jobs: {status['total_jobs']}")
            typer.echo(f"  Active jobs: {status['active_jobs']}")
            for status_name, count in status["status_counts"].items():
                typer.echo(f"  {status_name.capitalize()}: {count}")
        finally:
            await components.close()

    asyncio.run(run())


def _job_records(record) -> bool:
    return bool(record["extra"].get("job_id"))


def setup_production_logging():
    """Setup optimized logging for production background service"""
    settings = get_settings()
    logger.remove()  # Remove default handler

    # Production log format (more compact, structured)
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stdout,
        level=settings.log_level,
        format=log_format,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )

    if not settings.log_file_enabled:
        logger.info(f"Production logging configured (level: {settings.log_level})")
        return

    os.makedirs(settings.log_file_path, exist_ok=True)

    if not settings.debug_mode:
        logger.add(
            f"{settings.log_file_path}/service.log",
            level=settings.log_level,
            format=log_format,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="gz",
            colorize=False,
        )

    logger.add(
        f"{settings.log_file_path}/errors.log",
        level="ERROR",
        format=log_format,
        rotation=settings.log_rotation,
        retention="90 days",
        compression="gz",
        colorize=False,
    )

    # Per-job trail, records logged through logger.bind(job_id=...)
    logger.add(
        f"{settings.log_file_path}/jobs.log",
        level="INFO",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[job_id]} | {message}",
        filter=_job_records,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        compression="gz",
        colorize=False,
    )

    logger.info(f"Production logging configured (level: {settings.log_level})")


if __name__ == "__main__":
    # Setup basic logging for CLI commands
    settings = get_settings()
    logger.remove()

    cli_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    logger.add(
        lambda msg: print(msg, end=""),
        level=settings.log_level,
        format=cli_format,
        colorize=True,
    )

    app()
