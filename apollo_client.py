"""
Apollo.io people-match client (waterfall Tier B)
"""
from typing import Optional

import httpx
from loguru import logger

from config import get_settings
from models import Company, Contact, EmailSearchTier, ProviderResult
from providers import BaseProviderClient, company_domain

DEFAULT_APOLLO_CONFIDENCE = 75


class ApolloClient(BaseProviderClient):
    """Apollo.io API client"""

    BASE_URL = "https://api.apollo.io/v1"
    tier_id = EmailSearchTier.APOLLO.value
    source_name = "apollo"

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        super().__init__(
            api_key=api_key if api_key is not None else settings.apollo_api_key,
            rate_limit=settings.apollo_rate_limit,
            timeout=settings.apollo_timeout,
            http_client=http_client,
        )

    async def search(self, contact: Contact, company: Company) -> ProviderResult:
        """
        Match a person by name and organization

        Args:
            contact: Contact to look up
            company: The contact's company

        Returns:
            ProviderResult with the matched email, title and LinkedIn URL
        """
        payload = {
            "name": contact.name,
            "organization_name": company.name,
        }
        domain = company_domain(company)
        if domain:
            payload["domain"] = domain

        logger.debug(f"Apollo people match for {contact.name} at {company.name}")
        response = await self._send(
            "POST",
            f"{self.BASE_URL}/people/match",
            headers={"X-Api-Key": self.api_key, "Content-Type": "application/json"},
            json=payload,
        )

        person = response.json().get("person") or {}
        email = person.get("email")
        if not email:
            return self._not_found()

        confidence = person.get("email_confidence") or DEFAULT_APOLLO_CONFIDENCE
        return ProviderResult(
            found=True,
            email=email,
            role=person.get("title"),
            linkedin_url=person.get("linkedin_url"),
            confidence=int(max(0, min(100, confidence))),
            source=self.source_name,
        )
