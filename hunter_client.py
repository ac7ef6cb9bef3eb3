"""
Hunter.io email-finder client (waterfall Tier C)
"""
from typing import Optional

import httpx
from loguru import logger

from config import get_settings
from models import Company, Contact, EmailSearchTier, ProviderResult
from providers import BaseProviderClient, company_domain
from validator import split_full_name

DEFAULT_HUNTER_CONFIDENCE = 50


class HunterClient(BaseProviderClient):
    """Hunter.io API client with rate limiting and error handling"""

    BASE_URL = "https://api.hunter.io/v2"
    tier_id = EmailSearchTier.HUNTER.value
    source_name = "hunter"

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        super().__init__(
            api_key=api_key if api_key is not None else settings.hunter_api_key,
            rate_limit=settings.hunter_rate_limit,
            timeout=settings.hunter_timeout,
            http_client=http_client,
        )

    async def search(self, contact: Contact, company: Company) -> ProviderResult:
        """
        Find the most likely email for a person using the Email Finder API

        Args:
            contact: Contact to look up; the name is split into first word and the rest
            company: The contact's company; the domain is preferred over the name

        Returns:
            ProviderResult, with Hunter's score as confidence
        """
        first_name, last_name = split_full_name(contact.name)
        if not first_name or not last_name:
            logger.debug(f"Hunter needs first and last name, got '{contact.name}'")
            return self._not_found("incomplete name")

        params = {
            "api_key": self.api_key,
            "first_name": first_name,
            "last_name": last_name,
        }
        domain = company_domain(company)
        if domain:
            params["domain"] = domain
        else:
            params["company"] = company.name

        logger.debug(f"Hunter email finder for {contact.name} at {domain or company.name}")
        response = await self._send("GET", f"{self.BASE_URL}/email-finder", params=params)

        data = response.json().get("data") or {}
        email = data.get("email")
        if not email:
            return self._not_found()

        score = data.get("score")
        if isinstance(score, (int, float)) and score > 0:
            # Some plans report the score as a 0-1 fraction
            confidence = score * 100 if score <= 1 else score
        else:
            confidence = DEFAULT_HUNTER_CONFIDENCE

        return ProviderResult(
            found=True,
            email=email,
            role=data.get("position"),
            linkedin_url=data.get("linkedin_url"),
            confidence=int(max(0, min(100, round(confidence)))),
            source=self.source_name,
        )
