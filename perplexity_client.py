"""
Perplexity AI client: company search, decision-maker discovery and Tier A email search
"""
import json
import re
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from config import get_settings
from models import (
    Company,
    Contact,
    ContactCandidate,
    ContactSearchTier,
    DiscoveryTarget,
    EmailSearchTier,
    ProviderResult,
)
from providers import BaseProviderClient

DEFAULT_AI_EMAIL_CONFIDENCE = 60

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")

NO_FABRICATION = "IMPORTANT: If you cannot find data, return an empty array. Do NOT make up data."

TIER_PROMPTS = {
    ContactSearchTier.CORE_LEADERSHIP: (
        "You are an expert in identifying key leadership personnel at companies.",
        """Identify the core leadership team at {company}. Focus on:
1. C-level executives (CEO, CTO, CFO, COO, etc.)
2. Founders and co-founders
3. Board members and directors""",
    ),
    ContactSearchTier.DEPARTMENT_HEADS: (
        "You are an expert in identifying department leaders at companies.",
        """Identify the key department leaders at {company}. Focus on:
- Engineering/Development/IT
- Sales/Business Development
- Marketing/Communications
- Finance/Accounting
- Operations
- Human Resources
- Product Management""",
    ),
    ContactSearchTier.MIDDLE_MANAGEMENT: (
        "You are an expert in identifying influential middle managers and technical leaders at companies.",
        """Identify important middle managers and key technical leaders at {company}. Focus on:
1. Team leads
2. Senior managers
3. Project managers
4. Key decision-makers below C-level""",
    ),
    ContactSearchTier.CUSTOM: (
        "You are an expert in identifying specific professionals at companies.",
        """Find people at {company} who have roles related to: {target}
Include direct matches, related titles and people who handle {target} responsibilities.""",
    ),
}
TIER_PROMPTS[ContactSearchTier.CUSTOM_2] = TIER_PROMPTS[ContactSearchTier.CUSTOM]


def extract_json(content: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a chat completion"""
    match = re.search(r"\{[\s\S]*\}", content)
    if not match:
        return {}
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.debug(f"Could not decode JSON from Perplexity response: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _first_list(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    for value in data.values():
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


class PerplexityClient(BaseProviderClient):
    """Perplexity AI client with rate limiting and error handling"""

    BASE_URL = "https://api.perplexity.ai"
    tier_id = EmailSearchTier.CONTACT_ENRICHMENT.value
    source_name = "perplexity"

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        super().__init__(
            api_key=api_key if api_key is not None else self.settings.perplexity_api_key,
            rate_limit=self.settings.perplexity_rate_limit,
            timeout=self.settings.request_timeout,
            http_client=http_client,
        )
        self.model = self.settings.perplexity_model

    async def _chat(self, system_prompt: str, user_prompt: str, max_tokens: int = 800) -> str:
        """Run one chat completion and return the message content"""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": 0.1,
            "top_p": 0.9,
            "web_search_options": {
                "search_recency_filter": "year",
                "max_search_results": 5,
            },
        }
        response = await self._send(
            "POST",
            f"{self.BASE_URL}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=payload,
        )
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            logger.warning("No choices in Perplexity response")
            return ""
        return choices[0].get("message", {}).get("content", "") or ""

    async def search_companies(self, query: str, user_id: int, limit: int = 5) -> List[Company]:
        """
        Find companies matching a free-text query

        Args:
            query: Search query, e.g. "boutique accounting firms in Denver"
            user_id: Owner of the resulting company rows
            limit: Maximum number of companies

        Returns:
            Unsaved Company models
        """
        system_prompt = "You are a business research assistant. Find real companies that match the request."
        user_prompt = f"""Find up to {limit} companies matching: {query}

For each company provide name, website, a one-sentence description, industry,
approximate employee count and main services.

{NO_FABRICATION}

Format your response as JSON:
{{"companies": [{{"name": "", "website": "", "description": "", "industry": "", "size": 0, "services": []}}]}}"""

        content = await self._chat(system_prompt, user_prompt, max_tokens=1500)
        companies = []
        for item in _first_list(extract_json(content))[:limit]:
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            size = item.get("size")
            services = item.get("services") or []
            companies.append(Company(
                user_id=user_id,
                name=name,
                website=item.get("website") or None,
                description=item.get("description") or None,
                industry=item.get("industry") or None,
                size=size if isinstance(size, int) else None,
                services=[str(s) for s in services] if isinstance(services, list) else [],
            ))

        logger.info(f"Perplexity company search for '{query}' returned {len(companies)} companies")
        return companies

    async def find_decision_makers(self, company: Company, target: DiscoveryTarget) -> List[ContactCandidate]:
        """Ask for the people at ``company`` matching one discovery tier"""
        system_prompt, template = TIER_PROMPTS[target.tier]
        user_prompt = template.format(company=company.name, target=target.custom_target or "")
        if company.industry:
            user_prompt += f"\nThis company is in the {company.industry} industry."
        user_prompt += f"""

For each person provide their full name (first and last name) and current role.

{NO_FABRICATION}

Format your response as JSON:
{{"contacts": [{{"name": "", "role": ""}}]}}"""

        content = await self._chat(system_prompt, user_prompt)
        candidates = []
        for item in _first_list(extract_json(content)):
            name = " ".join(str(item.get("name") or "").split())
            if not name:
                continue
            role = item.get("role") or item.get("position") or item.get("title")
            candidates.append(ContactCandidate(name=name, role=role, discovery_tier=target.tier))

        logger.debug(f"{target.tier.value} search at {company.name}: {len(candidates)} candidates")
        return candidates

    async def score_names(self, names: List[str], company_name: str) -> Dict[str, int]:
        """
        Rate how plausible each name is as a real person at the company

        Returns a name -> 0..100 map. Names the model skipped are left out.
        """
        if not names:
            return {}

        system_prompt = "You judge whether strings are real person names of employees at a company."
        user_prompt = f"""Company: {company_name}
Names:
{chr(10).join(f"- {name}" for name in names)}

Score each name from 0 (not a real person) to 100 (certainly a real person at this company).
Format your response as JSON: {{"scores": {{"<name>": 0}}}}"""

        content = await self._chat(system_prompt, user_prompt, max_tokens=600)
        raw_scores = extract_json(content).get("scores", {})
        scores = {}
        if isinstance(raw_scores, dict):
            for name, value in raw_scores.items():
                if isinstance(value, (int, float)):
                    scores[name] = int(max(0, min(100, value)))
        return scores

    async def search(self, contact: Contact, company: Company) -> ProviderResult:
        """Tier A: ask the model for the contact's professional email"""
        system_prompt = """You are a contact information researcher. Find professional information about the specified person.

IMPORTANT: If you cannot find data, leave fields empty. Do NOT make up data.

Format your response as JSON with these exact keys:
{"professional_email": "string or empty", "linkedin_url": "string or empty", "location": "string or empty"}"""
        user_prompt = f"Find professional contact information for {contact.name} at {company.name}."

        content = await self._chat(system_prompt, user_prompt, max_tokens=500)
        data = extract_json(content)
        email = data.get("professional_email") or data.get("email")
        if not email and not data:
            match = _EMAIL_RE.search(content)
            email = match.group(0) if match else None

        if not email:
            return self._not_found()

        return ProviderResult(
            found=True,
            email=str(email).strip(),
            linkedin_url=data.get("linkedin_url") or None,
            confidence=DEFAULT_AI_EMAIL_CONFIDENCE,
            source=self.source_name,
        )
