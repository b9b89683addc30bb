"""Version reporting and consistency checks."""

import tomllib
from pathlib import Path

from . import __version__

TOOL_NAME = "n8n-backup"


def get_version_info() -> str:
    """Return the tool name and version, e.g. ``n8n-backup v0.1.0``."""
    return f"{TOOL_NAME} v{__version__}"


def check_version_consistency() -> tuple[bool, str]:
    """Check if the runtime version matches the version in pyproject.toml.

    Only meaningful for source checkouts; an installed wheel has no
    pyproject.toml next to the package.

    Returns:
        Tuple of (is_consistent, message).
    """
    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if not pyproject_path.exists():
        return False, "Cannot find pyproject.toml for version comparison"

    try:
        with open(pyproject_path, "rb") as f:
            source_version = tomllib.load(f).get("project", {}).get(
                "version", "unknown"
            )
    except (OSError, tomllib.TOMLDecodeError) as e:
        return False, f"Failed to read version from pyproject.toml: {e}"

    if __version__ != source_version:
        return False, (
            f"Version mismatch detected! "
            f"Runtime: {__version__}, Source: {source_version}. "
            f"Reinstall with: pip install -e ."
        )

    return True, f"Version verified: {__version__}"
