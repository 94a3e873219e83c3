"""
Invoice Reconciliation - Configuration Management

Centralized configuration for environment variables, CORS, storage and
matching settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
- Matching thresholds tunable without code changes
"""

from typing import List, FrozenSet
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== STORAGE ====================
    STORAGE_BACKEND: str = Field(
        default="postgres",
        description="Persistence backend: postgres or memory"
    )
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy database URL (postgresql+asyncpg://...)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    UPLOAD_DIR: str = Field(
        default="./uploads",
        description="Directory where uploaded statement files are stored"
    )
    UPLOAD_MAX_SIZE_MB: int = Field(
        default=50,
        description="Maximum upload file size in MB"
    )

    # ==================== MATCHING ====================
    AUTO_MATCH_THRESHOLD: float = Field(
        default=90.0,
        description="Final score at or above which a transaction is auto-matched"
    )
    REVIEW_THRESHOLD: float = Field(
        default=60.0,
        description="Final score at or above which a transaction needs review"
    )
    MATCHABLE_INVOICE_STATUSES: str = Field(
        default="draft,sent,overdue",
        description="Comma-separated invoice statuses eligible for matching"
    )
    PROGRESS_FLUSH_INTERVAL: int = Field(
        default=100,
        description="Accepted rows between batch progress updates"
    )
    PROGRESS_CACHE_MAX_BATCHES: int = Field(
        default=1000,
        description="Finished batches kept in the progress/stats cache"
    )
    TRANSACTION_PAGE_SIZE: int = Field(default=50)
    TRANSACTION_PAGE_MAX: int = Field(default=500)

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
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
        default="Invoice Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def uses_memory_storage(self) -> bool:
        return self.STORAGE_BACKEND.lower() == "memory"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def matchable_invoice_statuses(self) -> FrozenSet[str]:
        return frozenset(
            s.strip().lower() for s in self.MATCHABLE_INVOICE_STATUSES.split(",") if s.strip()
        )

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        Development also allows the local frontend dev servers.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        if not self.is_production:
            origins.extend([
                "http://localhost:3000",
                "http://127.0.0.1:3000",
            ])

        return sorted(set(origins))

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.STORAGE_BACKEND.lower() not in ("postgres", "memory"):
            errors.append(f"STORAGE_BACKEND must be 'postgres' or 'memory', got '{self.STORAGE_BACKEND}'")

        if not self.uses_memory_storage and not self.DATABASE_URL and not (
            self.POSTGRES_HOST and self.POSTGRES_USER
        ):
            errors.append("DATABASE_URL (or POSTGRES_* variables) is required for the postgres backend")

        if self.REVIEW_THRESHOLD > self.AUTO_MATCH_THRESHOLD:
            errors.append("REVIEW_THRESHOLD cannot exceed AUTO_MATCH_THRESHOLD")

        if self.PROGRESS_FLUSH_INTERVAL < 1:
            errors.append("PROGRESS_FLUSH_INTERVAL must be at least 1")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if self.uses_memory_storage:
                errors.append("STORAGE_BACKEND=memory is not allowed in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"
            )

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
            "X-User-Id",
        ],
        "expose_headers": ["X-Request-ID", "Content-Length"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate configuration.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "storage_backend": settings.STORAGE_BACKEND,
        "errors": [],
        "warnings": [],
    }

    if not settings.SENTRY_DSN:
        status["warnings"].append("Error tracking disabled")

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
