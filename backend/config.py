"""
Rule Engine Service - Configuration Management

Centralized configuration for environment variables and engine defaults.
This module ensures:
- No hardcoded secrets
- Engine thresholds have a single documented default
- Environment-specific settings (dev/staging/prod)
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy URL. Empty runs the service on in-memory stores."
    )
    DB_CREATE_TABLES: bool = Field(
        default=False,
        description="Create the rule, ledger, suggestion and risk flag tables on startup"
    )

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Key required on internal job/admin endpoints"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of additional (legacy) internal keys"
    )

    # ==================== RULE ENGINE ====================
    DEFAULT_CURRENCY: str = Field(
        default="AED",
        description="Currency assumed when a financial record omits one"
    )
    DEFAULT_TOLERANCE_PERCENT: float = Field(
        default=2.0,
        description="amount_tolerance percentage when a rule does not set one"
    )
    RULES_CONFIG_PATH: str = Field(
        default="",
        description="JSON rule configuration file used when DATABASE_URL is empty"
    )

    # ==================== RECONCILIATION ====================
    MIN_CONFIDENCE_SCORE: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Fallback when the settings store has no min_confidence_score"
    )
    AUTO_MATCH_ENABLED: bool = Field(
        default=True,
        description="Fallback when the settings store has no auto_match_enabled"
    )
    AUTO_APPROVE_THRESHOLD: float = Field(
        default=0.95,
        ge=0.0,
        le=1.0,
        description="Auto-approve threshold used when a job request omits it"
    )
    RECONCILIATION_MAX_PAIRS: int = Field(
        default=250_000,
        gt=0,
        description="Maximum candidate pairs scored in one run"
    )
    RECONCILIATION_TIME_BUDGET_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Wall-clock budget for the candidate scan of one run"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Rule Evaluation & Matching Engine",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend([k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip()])
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.is_production:
            if not self.DATABASE_URL:
                errors.append("DATABASE_URL is required in production")
            if not self.internal_api_keys:
                errors.append("INTERNAL_API_KEY is required in production")
            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        if self.MIN_CONFIDENCE_SCORE > self.AUTO_APPROVE_THRESHOLD:
            errors.append("MIN_CONFIDENCE_SCORE cannot exceed AUTO_APPROVE_THRESHOLD")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")
    logger.info(f"Database: {'configured' if settings.DATABASE_URL else 'in-memory'}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


def validate_environment() -> dict:
    """
    Validate environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
    }

    if not settings.DATABASE_URL:
        status["warnings"].append("DATABASE_URL not set - using in-memory stores")
    if not settings.SENTRY_DSN:
        status["warnings"].append("Error tracking disabled")
    if not settings.internal_api_keys:
        status["warnings"].append("Internal endpoints disabled - no INTERNAL_API_KEY")

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
