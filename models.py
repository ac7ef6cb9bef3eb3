"""
Pydantic models for the Search Job Service
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Timezone-aware current time, comparable with timestamps read back from Postgres"""
    return datetime.now(timezone.utc)


def _unique(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class SearchType(str, Enum):
    COMPANIES = "companies"
    CONTACT_ONLY = "contact-only"


class JobSource(str, Enum):
    FRONTEND = "frontend"
    API = "api"
    CRON = "cron"


class ContactSearchTier(str, Enum):
    """Decision-maker discovery tiers toggled by ContactSearchConfig"""
    CORE_LEADERSHIP = "core_leadership"
    DEPARTMENT_HEADS = "department_heads"
    MIDDLE_MANAGEMENT = "middle_management"
    CUSTOM = "custom"
    CUSTOM_2 = "custom_2"


class EmailSearchTier(str, Enum):
    """Waterfall tier identifiers recorded in Contact.completed_searches"""
    CONTACT_ENRICHMENT = "contact_enrichment"
    APOLLO = "apollo_search"
    HUNTER = "hunter_search"
    AEROLEADS = "aeroleads_search"
    COMPREHENSIVE = "comprehensive_search"


class DiscoveryTarget(BaseModel):
    """One enabled contact discovery tier"""
    tier: ContactSearchTier
    custom_target: Optional[str] = None


class ContactSearchConfig(BaseModel):
    """Which decision-maker tiers to search for each company.

    Unknown keys are rejected so a misspelled tier fails at job creation
    instead of being silently ignored.
    """
    model_config = ConfigDict(extra="forbid")

    enable_core_leadership: bool = True
    enable_department_heads: bool = False
    enable_middle_management: bool = False
    enable_custom_search: bool = False
    custom_search_target: Optional[str] = None
    enable_custom_search_2: bool = False
    custom_search_target_2: Optional[str] = None

    @field_validator("custom_search_target", "custom_search_target_2")
    @classmethod
    def strip_target(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def check_custom_targets(self):
        if self.enable_custom_search and not self.custom_search_target:
            raise ValueError("custom_search_target is required when enable_custom_search is set")
        if self.enable_custom_search_2 and not self.custom_search_target_2:
            raise ValueError("custom_search_target_2 is required when enable_custom_search_2 is set")
        return self

    def enabled_tiers(self) -> List[DiscoveryTarget]:
        """Enabled tiers in fixed search order"""
        tiers = []
        if self.enable_core_leadership:
            tiers.append(DiscoveryTarget(tier=ContactSearchTier.CORE_LEADERSHIP))
        if self.enable_department_heads:
            tiers.append(DiscoveryTarget(tier=ContactSearchTier.DEPARTMENT_HEADS))
        if self.enable_middle_management:
            tiers.append(DiscoveryTarget(tier=ContactSearchTier.MIDDLE_MANAGEMENT))
        if self.enable_custom_search:
            tiers.append(DiscoveryTarget(tier=ContactSearchTier.CUSTOM, custom_target=self.custom_search_target))
        if self.enable_custom_search_2:
            tiers.append(DiscoveryTarget(tier=ContactSearchTier.CUSTOM_2, custom_target=self.custom_search_target_2))
        return tiers


class JobMetadata(BaseModel):
    """Structured job metadata"""
    model_config = ConfigDict(extra="forbid")

    company_ids: List[int] = Field(default_factory=list)
    list_id: Optional[int] = None
    session_id: Optional[str] = None


class JobProgress(BaseModel):
    """Phase label plus completed/total counters"""
    phase: str = "Queued"
    completed: int = 0
    total: int = 5
    message: Optional[str] = None


class CompanySummary(BaseModel):
    id: Optional[int] = None
    name: str
    website: Optional[str] = None
    contacts_found: int = 0
    emails_found: int = 0


class ContactSummary(BaseModel):
    id: Optional[int] = None
    company_id: Optional[int] = None
    name: str
    role: Optional[str] = None
    email: Optional[str] = None
    probability: int = 0
    verification_source: Optional[str] = None


class JobResults(BaseModel):
    """Results payload stored on a completed job"""
    companies: List[CompanySummary] = Field(default_factory=list)
    contacts: List[ContactSummary] = Field(default_factory=list)
    total_companies: int = 0
    total_contacts: int = 0
    emails_found: int = 0
    credits_charged: int = 0
    failed_companies: List[str] = Field(default_factory=list)


class SearchJob(BaseModel):
    """Durable search job record from the search_jobs table"""
    id: Optional[int] = None
    job_id: str
    user_id: int
    query: str
    search_type: SearchType = SearchType.COMPANIES
    contact_search_config: ContactSearchConfig = Field(default_factory=ContactSearchConfig)
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = Field(default_factory=JobProgress)
    results: Optional[JobResults] = None
    result_count: int = 0
    error: Optional[str] = None
    source: JobSource = JobSource.FRONTEND
    priority: int = 0
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(3, ge=0)
    next_attempt_at: Optional[datetime] = None
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_retry_budget(self):
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")
        return self

    @property
    def retries_remaining(self) -> int:
        return self.max_retries - self.retry_count


class CreateJobRequest(BaseModel):
    """Parameters for creating a search job"""
    user_id: int
    query: str = ""
    search_type: SearchType = SearchType.COMPANIES
    contact_search_config: ContactSearchConfig = Field(default_factory=ContactSearchConfig)
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    source: JobSource = JobSource.FRONTEND
    priority: int = Field(0, ge=0, le=10)
    max_retries: Optional[int] = Field(None, ge=0, le=10)


class Company(BaseModel):
    """Company row owned by a user"""
    id: Optional[int] = None
    user_id: int
    name: str
    website: Optional[str] = None
    description: Optional[str] = None
    industry: Optional[str] = None
    size: Optional[int] = None
    services: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Company name cannot be empty")
        return v


class ContactCandidate(BaseModel):
    """A person returned by AI decision-maker discovery, before scoring"""
    name: str
    role: Optional[str] = None
    discovery_tier: Optional[ContactSearchTier] = None


class Contact(BaseModel):
    """Contact row: the enrichment target of the email waterfall"""
    id: Optional[int] = None
    user_id: int
    company_id: Optional[int] = None
    name: str
    role: Optional[str] = None
    email: Optional[str] = None
    alternative_emails: List[str] = Field(default_factory=list)
    completed_searches: List[str] = Field(default_factory=list)
    probability: int = Field(0, ge=0, le=100)
    verification_source: Optional[str] = None
    linkedin_url: Optional[str] = None
    location: Optional[str] = None
    last_validated: Optional[datetime] = None
    # Charge key of a discovered email that has not been billed yet
    pending_charge: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("alternative_emails", "completed_searches")
    @classmethod
    def dedupe(cls, v):
        return _unique(v)

    def has_searched(self, tier: str) -> bool:
        tier = tier.value if isinstance(tier, Enum) else tier
        return tier in self.completed_searches


class ProviderResult(BaseModel):
    """Normalized outcome of a single provider call"""
    found: bool = False
    email: Optional[str] = None
    role: Optional[str] = None
    confidence: int = Field(0, ge=0, le=100)
    linkedin_url: Optional[str] = None
    source: str
    error: Optional[str] = None


class EnrichmentStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    ERROR = "error"


class ContactEnrichmentResult(BaseModel):
    """Waterfall outcome for one contact"""
    contact_id: Optional[int] = None
    status: EnrichmentStatus
    email: Optional[str] = None
    source: Optional[str] = None
    tiers_attempted: List[str] = Field(default_factory=list)
    newly_discovered: bool = False
    charged: bool = False
    exhausted: bool = False
    error: Optional[str] = None


class NameScore(BaseModel):
    """Bounded name confidence with its component breakdown"""
    name: str
    score: int
    components: Dict[str, float] = Field(default_factory=dict)
    penalties: Dict[str, int] = Field(default_factory=dict)
    is_placeholder: bool = False


class EmailScore(BaseModel):
    """Email quality assessment"""
    email: str
    score: int = Field(0, ge=0, le=100)
    is_valid_format: bool = False
    is_placeholder: bool = False
    is_business_domain: bool = False
    accepted: bool = False
    reason: Optional[str] = None


class CreditTransaction(BaseModel):
    """
    Row in credit_transactions; idempotency_key is unique

    balance_after stays null until the deduction has reached the balance.
    """
    id: Optional[int] = None
    user_id: int
    amount: int
    reason: str
    idempotency_key: str
    balance_after: Optional[int] = None
    created_at: Optional[datetime] = None
