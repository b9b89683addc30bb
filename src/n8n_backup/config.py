"""Runtime configuration for the n8n-backup CLI.

Resolves version store, engine and logging settings from CLI args,
environment variables, .env files and the YAML config.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    N8N_BACKUP_STORE_BACKEND: json | pocketbase (optional, default: json)
    N8N_BACKUP_STORE_PATH: json store directory (optional)
    POCKETBASE_URL: PocketBase URL (required for the pocketbase backend)
    POCKETBASE_ADMIN_EMAIL: PocketBase admin email (required for pocketbase)
    POCKETBASE_ADMIN_PASSWORD: PocketBase admin password (required for pocketbase)
    N8N_BACKUP_MAX_CONCURRENCY: parallel reconcile calls (optional, default: 4)
    N8N_BACKUP_MAX_ATTEMPTS: attempts per mutation (optional, default: 3)
    LOG_LEVEL: log level (optional, default: INFO)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from .config_schema import UnifiedConfig
from .engine.models import MergeStrategy, ResourceType, RunOptions
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class Config:
    store_backend: str = "json"
    store_path: Path = Path(".n8n_backup/store")
    pocketbase_url: str = ""
    admin_email: str = ""
    admin_password: str = ""
    profiles_path: Path = Path(".n8n_backup/profiles.json")
    max_concurrency: int = 4
    max_attempts: int = 3
    backoff_initial: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    request_timeout: float = 30.0
    default_strategy: MergeStrategy = MergeStrategy.SOURCE_WINS
    keep_last: int | None = None
    keep_days: float | None = None
    keep_tags: list[str] | None = None
    log_level: str = "INFO"
    log_file: str | None = None
    debug: bool = False

    def run_options(
        self,
        strategy: str | MergeStrategy | None = None,
        max_concurrency: int | None = None,
        timeout: float | None = None,
        resource_types: list[ResourceType] | None = None,
        base_version_id: str | None = None,
        tags: list[str] | None = None,
    ) -> RunOptions:
        """Build ``RunOptions`` from this config plus per-run overrides."""
        return RunOptions(
            strategy=strategy or self.default_strategy,
            max_concurrency=max_concurrency or self.max_concurrency,
            max_attempts=self.max_attempts,
            backoff_initial=self.backoff_initial,
            backoff_factor=self.backoff_factor,
            backoff_max=self.backoff_max,
            timeout=timeout,
            resource_types=resource_types,
            base_version_id=base_version_id,
            tags=tags or [],
        )


def validate_config(config: Config) -> None:
    """Validate configuration values.

    Raises:
        ConfigurationError: On an unknown backend, an invalid PocketBase URL
            or missing PocketBase credentials.
    """
    if config.store_backend not in ("json", "pocketbase"):
        raise ConfigurationError(
            f"Invalid store backend '{config.store_backend}': "
            "must be 'json' or 'pocketbase'"
        )

    if config.store_backend != "pocketbase":
        return

    config.pocketbase_url = config.pocketbase_url.strip()
    if not config.pocketbase_url.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Invalid PocketBase URL '{config.pocketbase_url}': "
            "must start with http:// or https://"
        )
    if not urlparse(config.pocketbase_url).hostname:
        raise ConfigurationError(
            f"Invalid PocketBase URL '{config.pocketbase_url}': "
            "URL must include a hostname"
        )
    config.pocketbase_url = config.pocketbase_url.removesuffix("/")

    if not config.admin_email.strip():
        raise ConfigurationError(
            "PocketBase admin email cannot be empty. "
            "Set POCKETBASE_ADMIN_EMAIL environment variable."
        )
    if not config.admin_password.strip():
        raise ConfigurationError(
            "PocketBase admin password cannot be empty. "
            "Set POCKETBASE_ADMIN_PASSWORD environment variable."
        )


def _env_int(key: str, low: int, high: int) -> int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not low <= value <= high:
        raise ConfigurationError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    store_backend: str | None = None,
    store_path: str | None = None,
    debug: bool = False,
    unified: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    The caller is responsible for calling ``load_dotenv()`` first so .env
    values are visible through ``os.getenv()``.

    Args:
        store_backend: CLI override for the store backend.
        store_path: CLI override for the json store directory.
        debug: Force DEBUG logging.
        unified: YAML configuration (defaults when omitted).

    Returns:
        Validated Config instance.

    Raises:
        ConfigurationError: If a value is invalid after checking all sources.
    """
    unified = unified or UnifiedConfig()
    store = unified.store
    engine = unified.engine

    config = Config(
        store_backend=(
            store_backend
            or os.getenv("N8N_BACKUP_STORE_BACKEND")
            or store.backend
        ).strip(),
        store_path=Path(
            store_path or os.getenv("N8N_BACKUP_STORE_PATH") or store.path
        ).expanduser(),
        pocketbase_url=os.getenv("POCKETBASE_URL") or store.url or "",
        admin_email=os.getenv("POCKETBASE_ADMIN_EMAIL") or store.admin_email or "",
        admin_password=(
            os.getenv("POCKETBASE_ADMIN_PASSWORD") or store.admin_password or ""
        ),
        profiles_path=Path(unified.profiles_path).expanduser(),
        max_concurrency=(
            _env_int("N8N_BACKUP_MAX_CONCURRENCY", 1, 64) or engine.max_concurrency
        ),
        max_attempts=_env_int("N8N_BACKUP_MAX_ATTEMPTS", 1, 10) or engine.max_attempts,
        backoff_initial=engine.backoff_initial,
        backoff_factor=engine.backoff_factor,
        backoff_max=engine.backoff_max,
        request_timeout=engine.request_timeout,
        default_strategy=engine.default_strategy,
        keep_last=unified.retention.keep_last,
        keep_days=unified.retention.keep_days,
        keep_tags=unified.retention.keep_tags,
        log_level=(os.getenv("LOG_LEVEL") or unified.logging.level).upper(),
        log_file=unified.logging.file,
        debug=debug,
    )

    validate_config(config)
    return config
