"""
Search job execution: company search, decision-maker discovery and the email waterfall
"""
import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from billing import BillingGuard
from config import get_settings
from database import DatabaseClient, DatabaseError
from job_manager import JobManager
from models import (
    Company,
    CompanySummary,
    Contact,
    ContactCandidate,
    ContactEnrichmentResult,
    ContactSummary,
    EnrichmentStatus,
    JobResults,
    SearchJob,
    SearchType,
)
from perplexity_client import PerplexityClient
from validator import ContactValidator, is_placeholder_name
from waterfall import EmailWaterfall, select_contacts_for_enrichment


class NoTargetsError(Exception):
    """Nothing to enrich for this job"""
    pass


class DiscoveryConfigurationError(Exception):
    """The AI discovery provider has no credentials"""
    pass


class CompanyDiscoveryError(Exception):
    """Every contact discovery tier failed for one company"""
    pass


class SearchJobService:
    """Executes a claimed search job and returns its results"""

    def __init__(
        self,
        job_manager: JobManager,
        db_client: DatabaseClient,
        perplexity: PerplexityClient,
        waterfall: EmailWaterfall,
        billing_guard: BillingGuard,
        validator: Optional[ContactValidator] = None,
    ):
        self.settings = get_settings()
        self.job_manager = job_manager
        self.db_client = db_client
        self.perplexity = perplexity
        self.waterfall = waterfall
        self.billing_guard = billing_guard
        self.validator = validator or waterfall.validator

    async def execute(self, job: SearchJob) -> JobResults:
        """
        Run a job that has already been claimed

        Args:
            job: Job in processing status

        Returns:
            JobResults for the job record

        Raises:
            InsufficientCreditsError: balance below the minimum (not retried)
            NoTargetsError, DiscoveryConfigurationError, WaterfallConfigurationError,
            DatabaseError: systemic failures that consume a retry
        """
        log = logger.bind(job_id=job.job_id)
        log.info(f"Executing {job.search_type.value} job {job.job_id}: {job.query}")

        await self.billing_guard.ensure_can_search(job.user_id)
        if not self.perplexity.is_configured:
            raise DiscoveryConfigurationError("Perplexity API key is required for contact discovery")
        self.waterfall.ensure_available()

        companies = await self._load_companies(job)

        await self.job_manager.update_progress(
            job.job_id, "Finding contacts", 3, message=f"Searching contacts at {len(companies)} companies"
        )
        contacts_by_company, failed = await self._discover_all(job, companies)

        await self.job_manager.update_progress(job.job_id, "Finding emails", 4)
        enrichment = await self._enrich_all(job, companies, contacts_by_company)

        results = self._build_results(companies, contacts_by_company, enrichment, failed)
        log.info(
            f"Job {job.job_id}: {results.total_companies} companies, {results.total_contacts} contacts, "
            f"{results.emails_found} emails, {results.credits_charged} credits charged"
        )
        return results

    def result_count(self, job: SearchJob, results: JobResults) -> int:
        if job.search_type == SearchType.CONTACT_ONLY:
            return results.total_contacts
        return results.total_companies

    async def _load_companies(self, job: SearchJob) -> List[Company]:
        if job.search_type == SearchType.CONTACT_ONLY:
            await self.job_manager.update_progress(job.job_id, "Finding companies", 1, message="Loading saved companies")
            companies = await self.db_client.list_companies(job.user_id, job.metadata.company_ids or None)
            if not companies:
                raise NoTargetsError("No companies found for contact search")
            await self.job_manager.update_progress(
                job.job_id, "Saving companies", 2, message=f"Using {len(companies)} saved companies"
            )
            return companies

        await self.job_manager.update_progress(job.job_id, "Finding companies", 1)
        found = await self.perplexity.search_companies(
            job.query, job.user_id, limit=self.settings.max_companies_per_search
        )
        if not found:
            raise NoTargetsError(f"No companies found for query: {job.query}")

        await self.job_manager.update_progress(job.job_id, "Saving companies", 2, message=f"Saving {len(found)} companies")
        return await self._save_companies(job, found)

    async def _save_companies(self, job: SearchJob, found: Sequence[Company]) -> List[Company]:
        """
        Store found companies, reusing the user's row for a name already saved

        A retried job finds the rows of its earlier attempt here, so its
        contacts (and their charge keys) stay the same.
        """
        by_name = {c.name.strip().lower(): c for c in await self.db_client.list_companies(job.user_id)}
        saved: List[Company] = []
        for company in found:
            key = company.name.strip().lower()
            if key in by_name:
                stored = by_name[key]
                if any(c.id == stored.id for c in saved):
                    continue
                logger.bind(job_id=job.job_id).debug(f"Reusing saved company {stored.name} ({stored.id})")
            else:
                stored = await self.db_client.insert_company(company)
                by_name[key] = stored
            saved.append(stored)
        return saved

    async def _discover_all(
        self, job: SearchJob, companies: Sequence[Company]
    ) -> Tuple[Dict[int, List[Contact]], List[str]]:
        """Contact discovery across companies, ``company_batch_size`` at a time"""
        contacts_by_company: Dict[int, List[Contact]] = {}
        failed: List[str] = []
        batch_size = self.settings.company_batch_size

        for i in range(0, len(companies), batch_size):
            batch = companies[i:i + batch_size]
            outcomes = await asyncio.gather(
                *(self.discover_contacts(job, company) for company in batch),
                return_exceptions=True,
            )
            for company, outcome in zip(batch, outcomes):
                if isinstance(outcome, DatabaseError):
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.bind(job_id=job.job_id).error(f"Contact discovery failed for {company.name}: {outcome}")
                    failed.append(company.name)
                    contacts_by_company[company.id] = []
                else:
                    contacts_by_company[company.id] = outcome

        return contacts_by_company, failed

    async def _find_candidates(self, job: SearchJob, company: Company) -> List[ContactCandidate]:
        candidates: List[ContactCandidate] = []
        tiers = job.contact_search_config.enabled_tiers()
        errors = 0
        for target in tiers:
            try:
                candidates.extend(await self.perplexity.find_decision_makers(company, target))
            except Exception as e:
                errors += 1
                logger.bind(job_id=job.job_id).warning(f"{target.tier.value} search failed for {company.name}: {e}")

        if tiers and errors == len(tiers):
            raise CompanyDiscoveryError(f"All contact searches failed for {company.name}")
        return candidates

    async def discover_contacts(self, job: SearchJob, company: Company) -> List[Contact]:
        """
        Find, score and save decision makers for one company

        Placeholder names are dropped before scoring. Candidates scoring at
        the floor and names already stored for the company are skipped.

        Returns:
            All contacts of the company, existing and new
        """
        existing = await self.db_client.list_contacts(company.id, job.user_id)
        found = await self._find_candidates(job, company)
        kept = set(self.validator.filter_names(c.name for c in found))
        candidates = [c for c in found if c.name in kept]

        seen_names = {c.name.lower() for c in existing}
        unique: List[ContactCandidate] = []
        for candidate in candidates:
            key = candidate.name.lower()
            if key not in seen_names:
                seen_names.add(key)
                unique.append(candidate)

        ai_scores: Dict[str, int] = {}
        if unique:
            try:
                ai_scores = await self.perplexity.score_names([c.name for c in unique], company.name)
            except Exception as e:
                logger.bind(job_id=job.job_id).warning(f"Name scoring failed for {company.name}, using neutral scores: {e}")

        search_query = job.query if job.search_type == SearchType.COMPANIES else None
        new_contacts = []
        for candidate in unique:
            name_score = self.validator.score_name(
                candidate.name,
                context=f"{candidate.name}, {candidate.role}" if candidate.role else None,
                ai_score=ai_scores.get(candidate.name),
                company_name=company.name,
                search_query=search_query,
                industry=company.industry,
                role=candidate.role,
            )
            if name_score.score <= self.validator.min_name_score:
                logger.debug(f"Dropping low-confidence name '{candidate.name}' at {company.name}")
                continue

            new_contacts.append(await self.db_client.insert_contact(Contact(
                user_id=job.user_id,
                company_id=company.id,
                name=name_score.name,
                role=candidate.role,
                probability=name_score.score,
            )))

        logger.bind(job_id=job.job_id).info(
            f"{company.name}: {len(new_contacts)} new contacts, {len(existing)} already known"
        )
        return list(existing) + new_contacts

    async def _enrich_all(
        self,
        job: SearchJob,
        companies: Sequence[Company],
        contacts_by_company: Dict[int, List[Contact]],
    ) -> Dict[int, ContactEnrichmentResult]:
        enrichment: Dict[int, ContactEnrichmentResult] = {}
        limit = self.settings.max_email_contacts_per_company
        for company in companies:
            selected = select_contacts_for_enrichment(contacts_by_company.get(company.id, []), limit)
            if not selected:
                continue
            enrichment.update(await self.waterfall.enrich_contacts(selected, company, job.job_id, job.user_id))
        return enrichment

    def _build_results(
        self,
        companies: Sequence[Company],
        contacts_by_company: Dict[int, List[Contact]],
        enrichment: Dict[int, ContactEnrichmentResult],
        failed: List[str],
    ) -> JobResults:
        results = JobResults(failed_companies=failed)
        cost = self.billing_guard.email_search_cost

        for company in companies:
            summary = CompanySummary(id=company.id, name=company.name, website=company.website)
            for contact in contacts_by_company.get(company.id, []):
                if is_placeholder_name(contact.name):
                    continue
                outcome = enrichment.get(contact.id)
                email = contact.email
                source = contact.verification_source
                if outcome is not None and outcome.status == EnrichmentStatus.FOUND:
                    email, source = outcome.email, outcome.source
                    summary.emails_found += 1
                    results.emails_found += 1
                    if outcome.charged:
                        results.credits_charged += cost

                results.contacts.append(ContactSummary(
                    id=contact.id,
                    company_id=company.id,
                    name=contact.name,
                    role=contact.role,
                    email=email,
                    probability=contact.probability,
                    verification_source=source,
                ))
                summary.contacts_found += 1
            results.companies.append(summary)

        results.total_companies = len(results.companies)
        results.total_contacts = len(results.contacts)
        return results
