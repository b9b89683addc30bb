"""Retention Evaluator.

Partitions versions into *retain* and *eligible for deletion*.  Rules are
OR-combined: a version is kept when any rule protects it.  The single most
recent version is always kept regardless of policy.  Nothing is deleted
here; cleanup is a separate explicit action.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from n8n_backup.engine.models import (
    KeepLastN,
    KeepNewerThan,
    KeepTagged,
    RetentionPolicy,
    RetentionResult,
    Version,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

LATEST = "latest"


def _rule_label(rule: KeepLastN | KeepNewerThan | KeepTagged) -> str:
    if isinstance(rule, KeepLastN):
        return f"keep-last-{rule.n}"
    if isinstance(rule, KeepNewerThan):
        return f"keep-newer-than-{rule.max_age}"
    return "keep-tagged" + (f"[{','.join(rule.tags)}]" if rule.tags else "")


def _protects(
    rule: KeepLastN | KeepNewerThan | KeepTagged,
    version: Version,
    rank: int,
    now: datetime,
) -> bool:
    if isinstance(rule, KeepLastN):
        return rank < rule.n
    if isinstance(rule, KeepNewerThan):
        return now - parse_timestamp(version.created_at) < rule.max_age
    if rule.tags:
        return any(tag in version.tags for tag in rule.tags)
    return bool(version.tags)


def evaluate(
    versions: Sequence[Version],
    policy: RetentionPolicy,
    now: datetime | None = None,
) -> RetentionResult:
    """Decide which *versions* are retained under *policy*.

    Args:
        versions: Candidate versions, in any order.
        policy: Retention rules (OR semantics).
        now: Reference time for age rules (defaults to current UTC time).

    Returns:
        A ``RetentionResult``; both lists are ordered newest first.
    """
    now = now or datetime.now(timezone.utc)
    ordered = sorted(
        versions,
        key=lambda v: (parse_timestamp(v.created_at), v.id),
        reverse=True,
    )

    retain: list[Version] = []
    eligible: list[Version] = []
    reasons: dict[str, list[str]] = {}

    for rank, version in enumerate(ordered):
        matched = [
            _rule_label(rule)
            for rule in policy.rules
            if _protects(rule, version, rank, now)
        ]
        if rank == 0:
            matched.insert(0, LATEST)
        if matched:
            retain.append(version)
            reasons[version.id] = matched
        else:
            eligible.append(version)

    logger.debug(
        "Retention: %d retained, %d eligible for deletion",
        len(retain),
        len(eligible),
    )
    return RetentionResult(
        retain=retain, eligible_for_deletion=eligible, reasons=reasons
    )


def policy_from_settings(
    keep_last: int | None = None,
    keep_days: float | None = None,
    keep_tags: Sequence[str] | None = None,
) -> RetentionPolicy:
    """Build a policy from flat config/CLI settings.

    ``keep_tags=[]`` protects any tagged version; ``None`` adds no tag rule.
    """
    rules: list[KeepLastN | KeepNewerThan | KeepTagged] = []
    if keep_last is not None:
        rules.append(KeepLastN(n=keep_last))
    if keep_days is not None:
        rules.append(KeepNewerThan(max_age=timedelta(days=keep_days)))
    if keep_tags is not None:
        rules.append(KeepTagged(tags=list(keep_tags)))
    return RetentionPolicy(rules=rules)
