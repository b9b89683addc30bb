"""Report formatting functions.

Provides human-readable and machine-readable output for engine results:

- ``format_summary`` -- post-run summary of a backup/restore/sync.
- ``summary_to_json`` -- structured dict for ``--json`` output.
- ``format_diff`` -- version comparison / restore preview.
- ``format_retention`` -- retention evaluation or cleanup result.
- ``format_versions`` -- version listing table.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from .models import CleanupSummary, ObjectStatus, RetentionResult

if TYPE_CHECKING:
    from .models import DiffResult, Version, VersionReportSummary

# ------------------------------------------------------------------
# Run summary
# ------------------------------------------------------------------


def format_summary(summary: VersionReportSummary, verbose: bool = False) -> str:
    """Format a run summary as human-readable text.

    Sections are only included when they contain at least one entry.
    Successful objects are listed only when *verbose* is set.

    Args:
        summary: The completed run summary.
        verbose: Also list every successful object.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    counts = summary.counts

    lines.append(
        f"{summary.operation.value.capitalize()} {summary.status.value.upper()}"
    )
    if summary.version_id:
        lines.append(f"Version: {summary.version_id}")
    lines.append(f"Started: {summary.started_at}")
    lines.append(f"Duration: {summary.duration_seconds:.2f}s")
    if summary.reason:
        lines.append(f"Reason: {summary.reason}")
    lines.append("")

    lines.append(
        f"Processed {counts.total} objects: "
        f"{counts.created} created, {counts.updated} updated, "
        f"{counts.skipped} skipped, {counts.errors} errors"
    )
    for name, type_counts in summary.by_type.items():
        lines.append(
            f"  {name}: {type_counts.total} total, "
            f"{type_counts.processed} ok, {type_counts.skipped} skipped, "
            f"{type_counts.errors} errors"
        )
    lines.append("")

    metrics = summary.metrics
    if metrics.api_calls:
        lines.append(
            f"API calls: {metrics.api_calls} ({metrics.retries} retries, "
            f"avg {metrics.avg_latency_ms:.0f}ms, max {metrics.max_latency_ms:.0f}ms)"
        )
        lines.append("")

    if summary.changes is not None:
        changes = summary.changes
        lines.append(
            "Changes since base: "
            f"{changes.get('added', 0)} added, "
            f"{changes.get('modified', 0)} modified, "
            f"{changes.get('removed', 0)} removed, "
            f"{changes.get('unchanged', 0)} unchanged"
        )
        lines.append("")

    if verbose:
        succeeded = [
            r for r in summary.reports if r.status == ObjectStatus.SUCCESS
        ]
        if succeeded:
            lines.append("Succeeded:")
            for r in succeeded:
                lines.append(
                    f"  {r.resource_type.value}:{r.resource_id} {r.message}"
                )
            lines.append("")

    if summary.warnings:
        lines.append("Warnings:")
        for warning in summary.warnings:
            lines.append(f"  {warning}")
        lines.append("")

    if summary.errors:
        lines.append("Errors:")
        for error in summary.errors:
            lines.append(f"  {error}")
        lines.append("")

    return "\n".join(lines).rstrip()


def summary_to_json(summary: VersionReportSummary) -> dict:
    """Convert a run summary to a structured dict for JSON serialisation.

    Args:
        summary: The run summary.

    Returns:
        Dict with status, counts, metrics and per-object reports.
    """
    reports = []
    for r in summary.reports:
        entry: dict = {
            "resource_type": r.resource_type.value,
            "resource_id": r.resource_id,
            "status": r.status.value,
            "message": r.message,
        }
        if r.skip_reason.value != "none":
            entry["skip_reason"] = r.skip_reason.value
        if r.action is not None:
            entry["action"] = r.action.value
        if r.error_detail:
            entry["error"] = r.error_detail
        reports.append(entry)

    return {
        "operation": summary.operation.value,
        "status": summary.status.value,
        "version_id": summary.version_id,
        "reason": summary.reason,
        "started_at": summary.started_at,
        "completed_at": summary.completed_at,
        "duration_seconds": summary.duration_seconds,
        "counts": summary.counts.model_dump(),
        "by_type": {
            name: counts.model_dump() for name, counts in summary.by_type.items()
        },
        "metrics": summary.metrics.model_dump(),
        "changes": summary.changes,
        "warnings": list(summary.warnings),
        "errors": list(summary.errors),
        "reports": reports,
    }


# ------------------------------------------------------------------
# Diff
# ------------------------------------------------------------------


def format_diff(result: DiffResult, title: str = "Comparison") -> str:
    """Format a ``DiffResult`` grouped by classification.

    Unchanged objects are summarised by count only.
    """
    lines: list[str] = [title, ""]

    sections = (
        ("ADDED", "+", result.added),
        ("MODIFIED", "~", result.modified),
        ("REMOVED", "-", result.removed),
    )
    for label, marker, snapshots in sections:
        if not snapshots:
            continue
        lines.append(f"[{label}]")
        for snapshot in snapshots:
            lines.append(f"  {marker} {snapshot.label}")
        lines.append("")

    if result.unchanged:
        lines.append(f"Unchanged: {len(result.unchanged)} objects")
        lines.append("")

    if not result.has_changes:
        lines.append("No differences.")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Versions and retention
# ------------------------------------------------------------------


def format_versions(versions: Sequence[Version]) -> str:
    """Format a version listing, one line per version."""
    if not versions:
        return "No versions found."
    lines = []
    for v in versions:
        tags = f" [{', '.join(v.tags)}]" if v.tags else ""
        lines.append(
            f"{v.id}  {v.created_at}  {v.operation.value:<7}  "
            f"{v.status.value:<15}  {v.counts.total:>4} objects"
            f"  n8n {v.source_platform_version or '?'}{tags}"
        )
    return "\n".join(lines)


def format_retention(result: RetentionResult | CleanupSummary) -> str:
    """Format a retention evaluation or a cleanup result."""
    cleanup = result if isinstance(result, CleanupSummary) else None
    evaluation = cleanup.result if cleanup else result
    lines: list[str] = []

    if cleanup is not None:
        mode = "applied" if cleanup.applied else "DRY RUN -- nothing deleted"
        lines.append(f"Cleanup ({mode})")
        lines.append("")

    lines.append(f"Retained: {len(evaluation.retain)}")
    for v in evaluation.retain:
        reasons = ", ".join(evaluation.reasons.get(v.id, []))
        lines.append(f"  {v.id}  {v.created_at}  ({reasons})")
    lines.append("")

    lines.append(f"Eligible for deletion: {len(evaluation.eligible_for_deletion)}")
    for v in evaluation.eligible_for_deletion:
        lines.append(f"  {v.id}  {v.created_at}")
    lines.append("")

    if cleanup is not None and cleanup.applied:
        lines.append(f"Deleted: {len(cleanup.deleted)}")
        for error in cleanup.errors:
            lines.append(f"  failed: {error}")
        lines.append("")

    return "\n".join(lines).rstrip()
