"""
Centralized configuration management using Pydantic Settings.
Validates environment variables on startup and provides typed config access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Dict, List, Literal


class Settings(BaseSettings):
    """
    Application settings with validation.
    Loads from environment variables with fallback to .env file.
    """

    # Storage Configuration
    storage_backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="Where routes and instances live: process memory or SQLite"
    )
    database_url: str = Field(
        default="sqlite:///./docflow.db",
        description="SQLAlchemy URL used when storage_backend is sqlite"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL queries"
    )

    # Timeout Configuration
    timeout_check_interval_seconds: int = 60
    use_route_timeout_fallback: bool = Field(
        default=False,
        description="Fall back to the route auto_escalation timeout when a step has none"
    )

    # Route Registry
    seed_default_routes: bool = True

    # Role Resolution
    # JSON mapping in the environment, e.g. ROLE_ASSIGNMENTS='{"u1": ["hod"]}'
    role_assignments: Dict[str, List[str]] = Field(default_factory=dict)
    trust_all_roles: bool = Field(
        default=False,
        description="Treat every user as holding every role (local demos only)"
    )

    # Notifications
    action_url_prefix: str = ""

    # Environment
    environment: str = "development"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def uses_database(self) -> bool:
        return self.storage_backend == "sqlite"

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    def validate_critical_config(self):
        """
        Validate critical configuration on startup.
        Raises ValueError if critical config is missing.
        """
        import structlog
        logger = structlog.get_logger()

        errors = []

        if self.uses_database and not self.database_url:
            errors.append("DATABASE_URL must be set when STORAGE_BACKEND=sqlite")

        if self.timeout_check_interval_seconds <= 0:
            errors.append("TIMEOUT_CHECK_INTERVAL_SECONDS must be positive")

        if self.trust_all_roles and self.is_production():
            errors.append("TRUST_ALL_ROLES cannot be enabled in production")

        if not self.role_assignments and not self.trust_all_roles:
            logger.warning(
                "role_assignments_empty",
                message="ROLE_ASSIGNMENTS not set - no user can act on any step"
            )

        if self.use_route_timeout_fallback:
            logger.info(
                "route_timeout_fallback_enabled",
                message="Steps without timeout_hours inherit the route auto_escalation timeout"
            )

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


# Global settings instance
settings = Settings()
