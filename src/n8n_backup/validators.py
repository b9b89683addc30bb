"""
Input validation functions for n8n-backup.

Provides pre-flight validation for captured objects and profile fields
so malformed data is reported per object instead of being sent to the
platform.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from .engine.models import ObjectSnapshot

# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Workflow name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def _is_blank(value: object) -> bool:
    return not isinstance(value, str) or not value.strip()


def validate_resource_id(snapshot: ObjectSnapshot) -> tuple[bool, str]:
    """Check the one field every object needs before it can be pushed."""
    if _is_blank(snapshot.resource_id):
        return (
            False,
            format_validation_error("Resource id", "cannot be empty"),
        )
    return (True, "")


def validate_snapshot(snapshot: ObjectSnapshot) -> tuple[bool, str]:
    """
    Validate the shape of an object captured by a backup.

    Args:
        snapshot: The object to validate

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Resource id cannot be empty
        - Every object needs a non-empty name
        - Workflows need a ``nodes`` list and a ``connections`` mapping
        - Credentials need a non-empty ``type``
    """
    is_valid, problem = validate_resource_id(snapshot)
    if not is_valid:
        return (False, problem)

    label = snapshot.resource_type.value.capitalize()
    data = snapshot.data
    name = snapshot.name if snapshot.name is not None else data.get("name")
    if _is_blank(name):
        return (
            False,
            format_validation_error(f"{label} name", "cannot be empty"),
        )

    if snapshot.resource_type == "workflow":
        if not isinstance(data.get("nodes"), list):
            return (
                False,
                format_validation_error(
                    "Workflow nodes", "must be a list"
                ),
            )
        if not isinstance(data.get("connections", {}), dict):
            return (
                False,
                format_validation_error(
                    "Workflow connections", "must be a mapping"
                ),
            )

    if snapshot.resource_type == "credential":
        if _is_blank(data.get("type")):
            return (
                False,
                format_validation_error(
                    "Credential type", "cannot be empty"
                ),
            )

    return (True, "")


def validate_profile_url(url: str) -> tuple[bool, str]:
    """
    Validate a platform base URL.

    Args:
        url: The URL to validate

    Returns:
        Tuple of (is_valid, error_message).
    """
    if _is_blank(url):
        return (False, format_validation_error("URL", "cannot be empty"))

    url = url.strip()
    if not url.startswith(("http://", "https://")):
        return (
            False,
            format_validation_error(
                "URL", "must start with http:// or https://"
            ),
        )

    if not urlparse(url).hostname:
        return (
            False,
            format_validation_error("URL", "must include a hostname"),
        )

    return (True, "")


def validate_profile_name(name: str) -> tuple[bool, str]:
    """
    Validate a profile display name.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot exceed 64 characters
    """
    if _is_blank(name):
        return (
            False,
            format_validation_error("Profile name", "cannot be empty"),
        )
    if len(name.strip()) > 64:
        return (
            False,
            format_validation_error(
                "Profile name", "cannot exceed 64 characters"
            ),
        )
    return (True, "")
