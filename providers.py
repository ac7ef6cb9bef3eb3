"""
Shared plumbing for external discovery providers (rate limiting, errors, retries)
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, stop_after_delay, wait_exponential

from config import get_settings
from models import Company, Contact, ProviderResult


class ProviderError(Exception):
    """Base exception for provider API errors"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Invalid or missing credentials"""
    pass


class ProviderRateLimitError(ProviderError):
    """Exception for rate limit errors"""
    pass


class ProviderServerError(ProviderError):
    """Provider returned a 5xx"""
    pass


class ProviderTimeoutError(ProviderError):
    """A call, retries included, ran past provider_call_timeout"""
    pass


class ProviderNotConfiguredError(ProviderError):
    """Called a provider that has no API key"""
    pass


RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.ConnectError, ProviderRateLimitError)

# Retries stop once this many seconds have passed since the first attempt
RETRY_WINDOW = 10


class BaseProviderClient(ABC):
    """
    Base class for waterfall providers.

    Subclasses set ``tier_id`` (recorded in Contact.completed_searches),
    ``source_name`` (recorded as the verification source) and implement
    ``search``.
    """

    tier_id: str = ""
    source_name: str = ""
    BASE_URL: str = ""

    def __init__(
        self,
        api_key: Optional[str],
        rate_limit: int,
        timeout: float,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.rate_limit = rate_limit
        self.timeout = timeout
        self.call_timeout = get_settings().provider_call_timeout

        # Rate limiting
        self._request_times: List[float] = []
        self._rate_limit_lock = asyncio.Lock()

        # HTTP client
        self._client: Optional[httpx.AsyncClient] = http_client

    @property
    def is_configured(self) -> bool:
        """A provider without credentials is an unavailable tier"""
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": "Search-Job-Service/1.0"},
            )
        return self._client

    async def _enforce_rate_limit(self):
        """Enforce rate limiting to stay within API limits"""
        async with self._rate_limit_lock:
            current_time = asyncio.get_running_loop().time()

            # Remove requests older than 1 minute
            self._request_times = [
                t for t in self._request_times
                if current_time - t < 60
            ]

            if len(self._request_times) >= self.rate_limit:
                oldest_request = min(self._request_times)
                wait_time = 60 - (current_time - oldest_request)
                if wait_time > 0:
                    logger.warning(f"{self.source_name} rate limit reached, waiting {wait_time:.2f} seconds")
                    await asyncio.sleep(wait_time)

            self._request_times.append(current_time)

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Handle API errors and raise appropriate exceptions"""
        if response.status_code == 401:
            raise ProviderAuthError(f"{self.source_name}: invalid API key", 401)
        elif response.status_code == 403:
            raise ProviderAuthError(f"{self.source_name}: API access forbidden - check your plan", 403)
        elif response.status_code == 429:
            raise ProviderRateLimitError(f"{self.source_name}: rate limit exceeded", 429)
        elif response.status_code >= 500:
            raise ProviderServerError(f"{self.source_name}: server error {response.status_code}", response.status_code)
        elif not response.is_success:
            raise ProviderError(
                f"{self.source_name}: API error {response.status_code} - {response.text}",
                response.status_code,
            )

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Rate-limited provider call

        The local rate limit wait comes first and is not counted; the HTTP
        attempts together are capped at ``provider_call_timeout`` seconds.

        Raises:
            ProviderTimeoutError: no answer within the call budget
        """
        if not self.is_configured:
            raise ProviderNotConfiguredError(f"{self.source_name}: no API key configured")

        await self._enforce_rate_limit()
        try:
            return await asyncio.wait_for(self._send_with_retry(method, url, **kwargs), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.source_name}: no response within {self.call_timeout}s", 504
            ) from e

    @retry(
        stop=(stop_after_attempt(3) | stop_after_delay(RETRY_WINDOW)),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        reraise=True,
    )
    async def _send_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Timeouts, connect errors and 429s are retried"""
        client = await self._get_client()
        response = await client.request(method, url, timeout=self.timeout, **kwargs)
        self._handle_api_error(response)
        return response

    def _not_found(self, error: Optional[str] = None) -> ProviderResult:
        return ProviderResult(found=False, source=self.source_name, error=error)

    @abstractmethod
    async def search(self, contact: Contact, company: Company) -> ProviderResult:
        """Look up an email for ``contact`` at ``company``"""

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info(f"{self.source_name} client closed")


def company_domain(company: Company) -> Optional[str]:
    """Bare domain from a company website, e.g. https://www.acme.com/about -> acme.com"""
    if not company.website:
        return None
    host = company.website.strip().lower()
    if "://" in host:
        host = host.split("://", 1)[1]
    host = host.split("/", 1)[0].split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host or None
