"""Compatibility Gate.

Restore and sync runs are only allowed when the source version and the
target platform share the same major and minor version.  Patch levels may
differ.  The check runs once per run, before any object is touched.
"""

from __future__ import annotations

import logging
import re

from n8n_backup.engine.models import GateDecision, GateOutcome
from n8n_backup.errors import InvalidVersionFormat

logger = logging.getLogger(__name__)

# Accepts "1.4.2", "v1.4.2" and "1.4.2-beta.1+build"
_VERSION_PATTERN = re.compile(
    r"^v?(\d+)\.(\d+)\.(\d+)(?:[-+][0-9A-Za-z.+-]*)?$"
)


def parse_version_tag(tag: str) -> tuple[int, int, int]:
    """Parse a semantic version tag into ``(major, minor, patch)``.

    Raises:
        InvalidVersionFormat: If *tag* is not a ``MAJOR.MINOR.PATCH`` string.
    """
    if not isinstance(tag, str):
        raise InvalidVersionFormat(tag)
    match = _VERSION_PATTERN.match(tag.strip())
    if match is None:
        raise InvalidVersionFormat(tag)
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def check_compatibility(source_tag: str, target_tag: str) -> GateDecision:
    """Decide whether a run from *source_tag* to *target_tag* may proceed.

    Args:
        source_tag: Platform version the objects were captured from.
        target_tag: Platform version of the instance being written to.

    Returns:
        ``proceed`` when major and minor match, ``abort`` otherwise.

    Raises:
        InvalidVersionFormat: If either tag does not parse.
    """
    source = parse_version_tag(source_tag)
    target = parse_version_tag(target_tag)

    if source[:2] == target[:2]:
        reason = (
            f"source {source_tag} and target {target_tag} share "
            f"{source[0]}.{source[1]}"
        )
        logger.debug("Compatibility gate: proceed (%s)", reason)
        return GateDecision(
            outcome=GateOutcome.PROCEED,
            reason=reason,
            source_tag=source_tag,
            target_tag=target_tag,
        )

    reason = (
        f"incompatible versions: source {source_tag} "
        f"({source[0]}.{source[1]}.x) vs target {target_tag} "
        f"({target[0]}.{target[1]}.x); major and minor must match"
    )
    logger.warning("Compatibility gate: abort (%s)", reason)
    return GateDecision(
        outcome=GateOutcome.ABORT,
        reason=reason,
        source_tag=source_tag,
        target_tag=target_tag,
    )
