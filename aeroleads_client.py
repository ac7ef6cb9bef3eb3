"""
AeroLeads client (optional waterfall Tier D)
"""
from typing import Optional

import httpx
from loguru import logger

from config import get_settings
from models import Company, Contact, EmailSearchTier, ProviderResult
from providers import BaseProviderClient
from validator import split_full_name

DEFAULT_AEROLEADS_CONFIDENCE = 75


class AeroLeadsClient(BaseProviderClient):
    """AeroLeads API client"""

    BASE_URL = "https://aeroleads.com/api"
    tier_id = EmailSearchTier.AEROLEADS.value
    source_name = "aeroleads"

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        super().__init__(
            api_key=api_key if api_key is not None else settings.aeroleads_api_key,
            rate_limit=settings.aeroleads_rate_limit,
            timeout=settings.request_timeout,
            http_client=http_client,
        )

    async def search(self, contact: Contact, company: Company) -> ProviderResult:
        first_name, last_name = split_full_name(contact.name)
        params = {
            "api_key": self.api_key,
            "first_name": first_name,
            "last_name": last_name,
            "company": company.name,
        }

        logger.debug(f"AeroLeads lookup for {contact.name} at {company.name}")
        response = await self._send("GET", f"{self.BASE_URL}/get_email_details", params=params)
        data = response.json()

        # AeroLeads answers either {"success": true, "data": {...}} or a flat object
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        if data.get("success") and nested.get("email"):
            email = nested["email"]
            confidence = nested.get("score") or DEFAULT_AEROLEADS_CONFIDENCE
        elif data.get("email"):
            email = data["email"]
            confidence = DEFAULT_AEROLEADS_CONFIDENCE
        else:
            return self._not_found()

        return ProviderResult(
            found=True,
            email=email,
            confidence=int(max(0, min(100, confidence))),
            source=self.source_name,
        )
