"""
Configuration management for the Search Job Service
"""
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Supabase Configuration
    supabase_url: str = Field(alias="NEXT_PUBLIC_SUPABASE_URL")
    supabase_service_role_key: str = Field(alias="SUPABASE_SERVICE_ROLE_KEY")

    # Provider API Keys (a missing key makes that waterfall tier unavailable)
    perplexity_api_key: Optional[str] = Field(None, alias="PERPLEXITY_API_KEY")
    apollo_api_key: Optional[str] = Field(None, alias="APOLLO_API_KEY")
    hunter_api_key: Optional[str] = Field(None, alias="HUNTER_API_KEY")
    aeroleads_api_key: Optional[str] = Field(None, alias="AEROLEADS_API_KEY")

    # Service Configuration
    log_level: str = "INFO"
    batch_size: int = 3  # contacts enriched concurrently
    company_batch_size: int = 3  # companies processed concurrently
    request_timeout: int = 30

    # Provider Timeouts (seconds)
    apollo_timeout: int = 20
    hunter_timeout: int = 15
    provider_call_timeout: int = 30  # one provider call, retries included

    # Rate Limiting (requests per minute)
    perplexity_rate_limit: int = 30
    apollo_rate_limit: int = 50
    hunter_rate_limit: int = 50
    aeroleads_rate_limit: int = 30

    # Perplexity
    perplexity_model: str = "sonar"

    # Search Limits
    max_companies_per_search: int = 5
    max_email_contacts_per_company: int = 3

    # Scoring
    min_name_score: int = 20
    company_name_penalty: int = 20
    search_term_penalty: int = 25
    generic_term_penalty: int = 25
    min_email_score: int = 40
    exhaustion_penalty: int = 1

    # Billing
    email_search_cost: int = 20
    min_credit_balance: int = 20

    # Job Lifecycle
    job_max_retries: int = 3
    job_ttl_hours: int = 24
    job_retention_days: int = 7
    job_timeout: int = 600  # seconds per job execution
    stuck_job_threshold: int = 900  # seconds in processing before recovery, above job_timeout
    retry_backoff_base: int = 30  # seconds, doubled per retry
    retry_backoff_max: int = 900

    # Database Configuration
    db_circuit_failure_threshold: int = 5
    db_circuit_recovery_timeout: int = 60

    # Background Service Configuration
    health_check_port: int = 8000
    health_check_host: str = "0.0.0.0"
    job_polling_interval: int = 5  # seconds
    service_name: str = "search-job-service"

    # Logging Configuration
    log_file_enabled: bool = True
    log_file_path: str = "logs"
    log_rotation: str = "10 MB"
    log_retention: str = "30 days"

    # Development
    debug_mode: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",  # Allow extra fields in env file for compatibility
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard Python logging levels"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("batch_size", "company_batch_size")
    @classmethod
    def validate_batch_size(cls, v):
        """Ensure batch sizes are reasonable"""
        if v < 1 or v > 50:
            raise ValueError("batch size must be between 1 and 50")
        return v

    @field_validator("min_name_score")
    @classmethod
    def validate_min_name_score(cls, v):
        """The name score floor must sit below the 95 ceiling"""
        if v < 0 or v > 95:
            raise ValueError("min_name_score must be between 0 and 95")
        return v

    @field_validator("min_email_score")
    @classmethod
    def validate_min_email_score(cls, v):
        """Ensure score thresholds are valid percentages"""
        if v < 0 or v > 100:
            raise ValueError("Score threshold must be between 0 and 100")
        return v

    @field_validator("job_max_retries")
    @classmethod
    def validate_job_max_retries(cls, v):
        """Ensure retry budget is reasonable"""
        if v < 0 or v > 10:
            raise ValueError("job_max_retries must be between 0 and 10")
        return v

    @field_validator("job_polling_interval", "job_timeout", "request_timeout", "provider_call_timeout")
    @classmethod
    def validate_positive_seconds(cls, v):
        """Intervals and timeouts must be positive"""
        if v < 1:
            raise ValueError("Intervals and timeouts must be at least 1 second")
        return v

    @model_validator(mode="after")
    def validate_stuck_threshold(self):
        """Stuck-job recovery must not reclaim a job still inside its timeout"""
        if self.stuck_job_threshold <= self.job_timeout:
            raise ValueError("stuck_job_threshold must be greater than job_timeout")
        return self


# Global settings instance - lazy loaded
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment"""
    global _settings
    _settings = Settings()
    return _settings
