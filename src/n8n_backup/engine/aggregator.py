"""Report Aggregator.

Folds per-object reports into a ``VersionReportSummary`` and turns a
finished summary into the run's ``AuditRecord``.

Overall status rules:

* ``aborted``         -- the Compatibility Gate rejected the run.
* ``failed``          -- the run could not complete (e.g. the fetch step
  failed before any object was processed, or persistence failed).
* ``partial_success`` -- the run completed with at least one object error.
* ``success``         -- the run completed without object errors.

Object errors alone never escalate a completed run to ``failed``.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

from n8n_backup.engine.models import (
    AuditRecord,
    ObjectReport,
    ObjectStatus,
    OperationType,
    PushOutcome,
    ResourceCounts,
    RunMetrics,
    RunStatus,
    VersionReportSummary,
    parse_timestamp,
    utc_now,
)


def count_reports(reports: Sequence[ObjectReport]) -> ResourceCounts:
    """Count reports by terminal state and applied action."""
    statuses = Counter(r.status for r in reports)
    actions = Counter(r.action for r in reports if r.action is not None)
    return ResourceCounts(
        total=len(reports),
        processed=statuses[ObjectStatus.SUCCESS],
        created=actions[PushOutcome.CREATED],
        updated=actions[PushOutcome.UPDATED],
        skipped=statuses[ObjectStatus.SKIPPED],
        errors=statuses[ObjectStatus.ERROR],
    )


def derive_status(
    counts: ResourceCounts,
    aborted: bool = False,
    failed: bool = False,
) -> RunStatus:
    """Overall run status from counts and run-level outcome flags."""
    if aborted:
        return RunStatus.ABORTED
    if failed:
        return RunStatus.FAILED
    if counts.errors:
        return RunStatus.PARTIAL_SUCCESS
    return RunStatus.SUCCESS


def summarize(
    reports: Sequence[ObjectReport],
    operation: OperationType,
    started_at: str,
    completed_at: str | None = None,
    metrics: RunMetrics | None = None,
    warnings: Sequence[str] = (),
    errors: Sequence[str] = (),
    aborted_reason: str | None = None,
    failure_reason: str | None = None,
    changes: dict[str, int] | None = None,
    version_id: str | None = None,
) -> VersionReportSummary:
    """Fold object reports into a run summary.

    Args:
        reports: One report per input object, in input order.
        operation: The operation that produced the reports.
        started_at: ISO 8601 start time of the run.
        completed_at: ISO 8601 completion time (defaults to now).
        metrics: Transport metrics collected during the run.
        warnings: Run-level warnings, listed before object warnings.
        errors: Run-level errors, listed before object errors.
        aborted_reason: Gate rejection reason; forces ``aborted``.
        failure_reason: Reason the run could not complete; forces ``failed``.
        changes: Differential change counts, if computed.
        version_id: Id of the persisted Version, if already known.

    Returns:
        Exactly one ``VersionReportSummary``.
    """
    completed_at = completed_at or utc_now()
    counts = count_reports(reports)

    by_type_reports: dict[str, list[ObjectReport]] = {}
    for report in reports:
        by_type_reports.setdefault(report.resource_type.value, []).append(
            report
        )
    by_type = {
        name: count_reports(by_type_reports[name])
        for name in sorted(by_type_reports)
    }

    all_warnings = list(warnings)
    all_errors = list(errors)
    if aborted_reason:
        all_errors.append(f"aborted: {aborted_reason}")
    if failure_reason:
        all_errors.append(f"failed: {failure_reason}")

    for report in reports:
        label = f"{report.resource_type.value}:{report.resource_id}"
        if report.status == ObjectStatus.SKIPPED:
            all_warnings.append(
                f"{label} skipped ({report.skip_reason.value}): {report.message}"
            )
        elif report.status == ObjectStatus.ERROR:
            detail = f" ({report.error_detail})" if report.error_detail else ""
            all_errors.append(f"{label}: {report.message}{detail}")

    duration = max(
        0.0,
        (
            parse_timestamp(completed_at) - parse_timestamp(started_at)
        ).total_seconds(),
    )

    return VersionReportSummary(
        operation=operation,
        status=derive_status(
            counts,
            aborted=aborted_reason is not None,
            failed=failure_reason is not None,
        ),
        counts=counts,
        by_type=by_type,
        warnings=all_warnings,
        errors=all_errors,
        started_at=started_at,
        completed_at=completed_at,
        duration_seconds=round(duration, 3),
        metrics=metrics or RunMetrics(),
        changes=changes,
        reason=aborted_reason or failure_reason,
        version_id=version_id,
        reports=list(reports),
    )


def build_audit_record(
    summary: VersionReportSummary,
    audit_id: str,
    config: dict[str, Any],
    profile_id: str | None = None,
    target_profile_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditRecord:
    """Create the permanent audit record for a finished run.

    The record carries the full warnings/errors lists and the exact
    configuration used; nothing is trimmed.
    """
    return AuditRecord(
        id=audit_id,
        operation=summary.operation,
        version_id=summary.version_id,
        profile_id=profile_id,
        target_profile_id=target_profile_id,
        status=summary.status,
        started_at=summary.started_at,
        completed_at=summary.completed_at,
        duration_seconds=summary.duration_seconds,
        counts=summary.counts,
        by_type=summary.by_type,
        metrics=summary.metrics,
        warnings=list(summary.warnings),
        errors=list(summary.errors),
        config=dict(config),
        reason=summary.reason,
        details=details or {},
    )
