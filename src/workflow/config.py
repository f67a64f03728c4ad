"""Workflow service configuration using pydantic-settings.

This module defines the WorkflowSettings class that reads configuration
from environment variables with the WORKFLOW_ prefix. Every field has a
default, so the service starts with an in-memory store when nothing is
configured.
"""

from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.workflow.events.emitter import EventSinkType


class WorkflowSettings(BaseSettings):
    """Workflow service configuration from environment variables.

    All environment variables are prefixed with WORKFLOW_ (e.g.,
    WORKFLOW_DATABASE_URL). List values are given as JSON, e.g.
    WORKFLOW_EVENT_SINKS='["logging", "metrics"]'.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; the in-memory store is used when unset
    database_url: Optional[str] = None

    db_min_pool_size: int = 2

    db_max_pool_size: int = 10

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------
    # Actor recorded in the ledger when the request carries no actor header
    default_actor: str = "system"

    # Header set by the auth proxy with the caller's identity
    actor_header: str = "X-Actor"

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    event_sinks: List[EventSinkType] = [
        EventSinkType.LOGGING,
        EventSinkType.METRICS,
    ]

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL scheme when one is given."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("db_min_pool_size")
    @classmethod
    def validate_min_pool_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("db_min_pool_size must be at least 1")
        return v

    @field_validator("default_actor", "actor_header")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> "WorkflowSettings":
        if self.db_max_pool_size < self.db_min_pool_size:
            raise ValueError("db_max_pool_size must be >= db_min_pool_size")
        return self


def get_settings() -> WorkflowSettings:
    """Create and return a WorkflowSettings instance.

    Raises:
        pydantic.ValidationError: If a field is invalid.
    """
    return WorkflowSettings()
