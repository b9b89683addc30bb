"""Unified configuration schema for n8n-backup.

Defines Pydantic models for the YAML config structure with dedicated
sections for the version store, the engine, retention and logging.

Usage:
    from n8n_backup.config_loader import load_hierarchical_config
    from n8n_backup.config_schema import build_config

    unified = build_config(load_hierarchical_config())
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .engine.models import MergeStrategy
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """Version store settings.

    ``url``, ``admin_email`` and ``admin_password`` are only used by the
    ``pocketbase`` backend; ``path`` only by the ``json`` backend.
    """

    backend: Literal["json", "pocketbase"] = Field(
        default="json", description="Version store backend"
    )
    path: str = Field(
        default=".n8n_backup/store",
        description="Directory of the json store",
    )
    url: str | None = Field(default=None, description="PocketBase URL")
    admin_email: str | None = Field(
        default=None, description="PocketBase admin email"
    )
    admin_password: str | None = Field(
        default=None, description="PocketBase admin password"
    )

    model_config = {"frozen": True}


class EngineConfig(BaseModel):
    """Reconciliation engine settings."""

    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Parallel reconcile calls per run (1-64)",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per mutation including the first (1-10)",
    )
    backoff_initial: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=30.0, ge=0)
    request_timeout: float = Field(
        default=30.0, gt=0, description="HTTP read timeout in seconds"
    )
    default_strategy: MergeStrategy = MergeStrategy.SOURCE_WINS

    model_config = {"frozen": True}


class RetentionConfig(BaseModel):
    """Default retention policy for ``n8n-backup retention``.

    Attributes:
        keep_last: Keep the N most recent versions.
        keep_days: Keep versions younger than this many days.
        keep_tags: Keep versions carrying any of these tags.
    """

    keep_last: int | None = Field(default=None, ge=0)
    keep_days: float | None = Field(default=None, gt=0)
    keep_tags: list[str] | None = None

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    profiles_path: str = ".n8n_backup/profiles.json"

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from ``load_hierarchical_config()`` output.

    Missing sections get defaults.

    Raises:
        ConfigurationError: If a section holds invalid values.
    """
    if not raw_data:
        return UnifiedConfig()
    try:
        return UnifiedConfig(**raw_data)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
