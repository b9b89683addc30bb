"""
Hierarchical configuration loader for n8n-backup.

Discovers YAML config files by convention, resolves ``!include``
directives, interpolates ``${VAR}`` / ``${VAR:-default}`` references and
merges the files with "project wins" semantics.

Usage:
    from n8n_backup.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "N8N_BACKUP_CONFIG"
PROJECT_DIR = ".n8n_backup"

# ---------------------------------------------------------------------------
# Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty variable yields its default, or ``""`` without one.
    A ``${`` with no closing brace is kept as-is.
    """

    def _substitute(match: re.Match) -> str:
        current = os.environ.get(match.group(1))
        if current:
            return current
        return match.group(2) or ""

    return _ENV_VAR_PATTERN.sub(_substitute, value)


def _interpolate_tree(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, dict):
        return {key: _interpolate_tree(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_interpolate_tree(item) for item in node]
    return node


# ---------------------------------------------------------------------------
# YAML !include support
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """``yaml.SafeLoader`` subclass that understands ``!include``.

    The global SafeLoader stays untouched.  Each load carries the chain of
    files being read so circular includes are reported instead of recursing.
    """


def _include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    target = Path(loader.construct_scalar(node))
    including_file = Path(loader.name).resolve()
    if not target.is_absolute():
        target = including_file.parent / target
    target = target.resolve()

    chain: list[Path] = getattr(loader, "_include_stack", [])
    if target in chain:
        cycle = " -> ".join(str(p) for p in [*chain, target])
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {including_file})"
        )
    return load_yaml(target, _include_stack=[*chain, target])


ConfigLoader.add_constructor("!include", _include)


def load_yaml(path: Path, *, _include_stack: list[Path] | None = None) -> Any:
    """Parse one YAML file with ``!include`` support."""
    path = Path(path).resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery and bootstrapping
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config files, highest precedence first.

    Search order:
        1. ``$N8N_BACKUP_CONFIG`` (explicit path)
        2. ``./.n8n_backup/config.yml``
        3. ``./.n8n_backup/config.yaml``
        4. ``~/.config/n8n_backup/config.yml``
    """
    candidates: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project = Path.cwd() / PROJECT_DIR
    candidates += [
        project / "config.yml",
        project / "config.yaml",
        Path.home() / ".config" / "n8n_backup" / "config.yml",
    ]
    return [path for path in candidates if path.exists()]


_STARTER_CONFIG = """\
# n8n-backup configuration
#
# Values may reference environment variables: ${VAR} or ${VAR:-default}.
# Profiles (n8n instances and API keys) are managed with
# `n8n-backup profile add`, not in this file.
#
# store:
#   backend: json            # json | pocketbase
#   path: .n8n_backup/store
#   url: ${POCKETBASE_URL:-http://127.0.0.1:8090}
#   admin_email: ${POCKETBASE_ADMIN_EMAIL}
#   admin_password: ${POCKETBASE_ADMIN_PASSWORD}
#
# engine:
#   max_concurrency: 4
#   max_attempts: 3
#   backoff_initial: 0.5
#   backoff_factor: 2.0
#   backoff_max: 30
#   request_timeout: 30
#   default_strategy: source-wins
#
# retention:
#   keep_last: 10
#   keep_days: 30
#   keep_tags: [release]
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter if none exists."""
    existing = discover_config_files()
    if existing:
        return existing[0]

    path = target or Path.cwd() / PROJECT_DIR / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge every discovered config file.

    Files are applied from lowest to highest precedence; top-level keys of
    a higher-precedence file replace (not deep-merge) earlier ones.  Env
    var interpolation runs after the merge.

    Returns an empty dict when no config file exists.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        data = load_yaml(path)
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_tree(merged)
