"""
Multi-provider email waterfall

Tiers run in a fixed order per contact and stop at the first validated email.
Every attempted tier is appended to the contact's completed_searches so it
is never paid for twice for the same contact.
"""
import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from billing import BillingGuard, charge_key
from config import get_settings
from database import ContactNotFoundError, DatabaseClient, DatabaseError
from models import (
    Company,
    Contact,
    ContactEnrichmentResult,
    EmailSearchTier,
    EnrichmentStatus,
    ProviderResult,
    utc_now,
)
from providers import BaseProviderClient
from validator import ContactValidator, is_placeholder_email, is_placeholder_name, split_full_name


class WaterfallConfigurationError(Exception):
    """No provider tier has credentials"""
    pass


def has_valid_email(contact: Contact) -> bool:
    return bool(contact.email) and not is_placeholder_email(contact.email)


def select_contacts_for_enrichment(contacts: Sequence[Contact], limit: int) -> List[Contact]:
    """
    Contacts with an unbilled discovery, then the highest-probability
    contacts that still need an email (at most ``limit`` of those)
    """
    unbilled = [c for c in contacts if c.id is not None and c.pending_charge and has_valid_email(c)]
    candidates = [
        c for c in contacts
        if c.id is not None
        and not has_valid_email(c)
        and not c.has_searched(EmailSearchTier.COMPREHENSIVE)
        and not is_placeholder_name(c.name)
    ]
    candidates.sort(key=lambda c: c.probability, reverse=True)
    return unbilled + candidates[:limit]


class EmailWaterfall:
    """Runs provider tiers for contacts and hands successes to the billing guard"""

    def __init__(
        self,
        providers: Sequence[BaseProviderClient],
        db_client: DatabaseClient,
        billing_guard: BillingGuard,
        validator: Optional[ContactValidator] = None,
    ):
        self.settings = get_settings()
        self.providers = list(providers)
        self.db_client = db_client
        self.billing_guard = billing_guard
        self.validator = validator or ContactValidator()

    def available_providers(self) -> List[BaseProviderClient]:
        return [p for p in self.providers if p.is_configured]

    def ensure_available(self) -> None:
        """Raise if not a single tier can run"""
        if not self.available_providers():
            raise WaterfallConfigurationError("No email provider has credentials configured")

    def _accept(self, result: ProviderResult, contact: Contact) -> Optional[str]:
        """Validated email from a provider result, or None"""
        if not result.found or not result.email:
            return None
        first_name, last_name = split_full_name(contact.name)
        email_score = self.validator.score_email(result.email, first_name, last_name)
        if not email_score.accepted:
            logger.debug(f"{result.source} email {result.email} for {contact.name} rejected: {email_score.reason}")
            return None
        return email_score.email

    async def _record_tier(self, contact: Contact, tier_id: str) -> Contact:
        completed = contact.completed_searches + [tier_id]
        return await self.db_client.update_contact(
            contact.id, contact.user_id, {"completed_searches": completed}
        )

    async def _record_success(
        self, contact: Contact, tier_id: str, email: str, result: ProviderResult, job_id: str
    ) -> Tuple[Contact, bool]:
        """
        Merge the discovered email into the contact. Returns (contact, newly_discovered).

        A new email is saved together with its charge key in pending_charge,
        so a failure before billing completes is settled by the next run.
        """
        fields = {
            "completed_searches": contact.completed_searches + [tier_id],
            "verification_source": result.source,
            "last_validated": utc_now(),
        }
        existing = {e.lower() for e in contact.alternative_emails}
        if contact.email:
            existing.add(contact.email.lower())
        newly_discovered = email.lower() not in existing
        if newly_discovered:
            fields["pending_charge"] = charge_key(job_id, contact.id)

        if not has_valid_email(contact):
            fields["email"] = email
            fields["alternative_emails"] = [e for e in contact.alternative_emails if e.lower() != email.lower()]
        elif newly_discovered:
            fields["alternative_emails"] = contact.alternative_emails + [email]

        if result.role and not contact.role:
            fields["role"] = result.role
        if result.linkedin_url and not contact.linkedin_url:
            fields["linkedin_url"] = result.linkedin_url

        updated = await self.db_client.update_contact(contact.id, contact.user_id, fields)
        return updated, newly_discovered

    async def _clear_pending_charge(self, contact: Contact) -> Contact:
        return await self.db_client.update_contact(contact.id, contact.user_id, {"pending_charge": None})

    async def _mark_exhausted(self, contact: Contact) -> Contact:
        penalty = self.settings.exhaustion_penalty
        return await self.db_client.update_contact(contact.id, contact.user_id, {
            "completed_searches": contact.completed_searches + [EmailSearchTier.COMPREHENSIVE.value],
            "probability": max(0, contact.probability - penalty),
        })

    async def enrich_contact(
        self, contact: Contact, company: Company, job_id: str, user_id: int
    ) -> ContactEnrichmentResult:
        """
        Run the remaining tiers for one contact, strictly in order

        Args:
            contact: Stored contact (must have an id)
            company: The contact's company
            job_id: Job on whose behalf the search runs; part of the charge key
            user_id: Owner of the contact and of the credits

        Returns:
            ContactEnrichmentResult describing what happened
        """
        log = logger.bind(job_id=job_id)
        attempted: List[str] = []

        try:
            if has_valid_email(contact):
                if contact.pending_charge:
                    log.info(f"Settling unbilled discovery for {contact.name} ({contact.pending_charge})")
                    charged = await self.billing_guard.charge(user_id, contact.pending_charge, contact.email)
                    contact = await self._clear_pending_charge(contact)
                    return ContactEnrichmentResult(
                        contact_id=contact.id, status=EnrichmentStatus.FOUND, email=contact.email,
                        source=contact.verification_source, newly_discovered=True, charged=charged,
                    )
                return ContactEnrichmentResult(
                    contact_id=contact.id, status=EnrichmentStatus.SKIPPED, email=contact.email,
                    source=contact.verification_source,
                )
            if contact.has_searched(EmailSearchTier.COMPREHENSIVE):
                return ContactEnrichmentResult(contact_id=contact.id, status=EnrichmentStatus.SKIPPED, exhausted=True)

            for provider in self.providers:
                if contact.has_searched(provider.tier_id):
                    continue
                if not provider.is_configured:
                    log.debug(f"Tier {provider.tier_id} unavailable (no API key), skipping for {contact.name}")
                    continue

                try:
                    result = await provider.search(contact, company)
                except Exception as e:
                    log.warning(f"{provider.source_name} search failed for {contact.name} at {company.name}: {e}")
                    result = ProviderResult(found=False, source=provider.source_name, error=str(e))

                attempted.append(provider.tier_id)
                email = self._accept(result, contact)

                if email is None:
                    contact = await self._record_tier(contact, provider.tier_id)
                    continue

                contact, newly_discovered = await self._record_success(
                    contact, provider.tier_id, email, result, job_id
                )
                charged = False
                if newly_discovered:
                    charged = await self.billing_guard.charge_discovery(user_id, job_id, contact.id, email)
                    contact = await self._clear_pending_charge(contact)
                log.info(f"Found email for {contact.name} via {provider.source_name}: {email}")
                return ContactEnrichmentResult(
                    contact_id=contact.id,
                    status=EnrichmentStatus.FOUND,
                    email=email,
                    source=provider.source_name,
                    tiers_attempted=attempted,
                    newly_discovered=newly_discovered,
                    charged=charged,
                )

            # Tiers without credentials never run, so they do not hold exhaustion back
            available = self.available_providers()
            exhausted = bool(available) and all(contact.has_searched(p.tier_id) for p in available)
            if exhausted:
                contact = await self._mark_exhausted(contact)
                log.info(f"All tiers exhausted for {contact.name}, marked comprehensive_search")

            return ContactEnrichmentResult(
                contact_id=contact.id,
                status=EnrichmentStatus.NOT_FOUND,
                tiers_attempted=attempted,
                exhausted=exhausted,
            )

        except ContactNotFoundError as e:
            log.warning(f"Contact {contact.id} disappeared during enrichment: {e}")
            return ContactEnrichmentResult(
                contact_id=contact.id, status=EnrichmentStatus.ERROR, tiers_attempted=attempted, error=str(e)
            )

    async def enrich_contacts(
        self, contacts: Sequence[Contact], company: Company, job_id: str, user_id: int
    ) -> Dict[int, ContactEnrichmentResult]:
        """
        Enrich distinct contacts concurrently, ``batch_size`` at a time

        Returns:
            Results keyed by contact id
        """
        self.ensure_available()
        results: Dict[int, ContactEnrichmentResult] = {}
        batch_size = self.settings.batch_size

        for i in range(0, len(contacts), batch_size):
            batch = contacts[i:i + batch_size]
            outcomes = await asyncio.gather(
                *(self.enrich_contact(c, company, job_id, user_id) for c in batch),
                return_exceptions=True,
            )
            for contact, outcome in zip(batch, outcomes):
                if isinstance(outcome, DatabaseError):
                    # Storage trouble affects every contact, fail the job
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.bind(job_id=job_id).error(f"Email search failed for {contact.name}: {outcome}")
                    outcome = ContactEnrichmentResult(
                        contact_id=contact.id, status=EnrichmentStatus.ERROR, error=str(outcome)
                    )
                results[contact.id] = outcome

        found = sum(1 for r in results.values() if r.status == EnrichmentStatus.FOUND)
        logger.bind(job_id=job_id).info(f"Email waterfall for {company.name}: {found}/{len(contacts)} emails found")
        return results
