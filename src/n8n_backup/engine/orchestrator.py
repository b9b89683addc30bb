"""Operation Orchestrator.

Drives one backup, restore or sync run through the state machine::

    PENDING -> FETCHING -> (ABORTED | VALIDATED) -> RECONCILING
            -> SUMMARIZING -> COMPLETE

* ``FETCHING`` loads the input objects (from the platform for backup and
  sync, from the version store for restore) plus, for restore and sync,
  the target's version tag and current objects.
* The Compatibility Gate runs only for restore and sync.  ``ABORTED`` is
  terminal: no mutation is attempted, but an aborted Version and its
  AuditRecord are still persisted.
* ``RECONCILING`` classifies objects (backup) or calls the Per-Object
  Reconciler with bounded concurrency (restore, sync).  Source objects
  are matched to target objects by id, then by unique name, so a re-run
  updates what an earlier run created.  Tags and credentials go first;
  workflows follow with their credential references pointed at the
  target's ids.  Individual object failures never end the run early.
* ``COMPLETE`` persists the Version, its ObjectRecords and the AuditRecord
  in that order.  On a persistence failure the Version is rolled back,
  a ``failed`` audit is written and ``PersistenceError`` carries the
  ``failed`` summary.

Every run produces exactly one summary and one audit record.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from n8n_backup import __version__
from n8n_backup.core.async_utils import (
    CancelToken,
    gather_limited,
    race_cancel,
    run_sync,
)
from n8n_backup.engine.aggregator import build_audit_record, summarize
from n8n_backup.engine.comparator import diff
from n8n_backup.engine.gate import check_compatibility
from n8n_backup.engine.matching import match_targets, retarget
from n8n_backup.engine.models import (
    AuditRecord,
    CleanupSummary,
    DiffResult,
    ObjectKey,
    ObjectRecord,
    ObjectReport,
    ObjectSnapshot,
    ObjectStatus,
    OperationType,
    Profile,
    PushOutcome,
    ResourceCounts,
    ResourceType,
    RetentionPolicy,
    RetentionResult,
    RunOptions,
    RunState,
    RunStatus,
    SkipReason,
    Version,
    VersionReportSummary,
    utc_now,
)
from n8n_backup.engine.reconciler import (
    MetricsRecorder,
    Reconciler,
    RetryPolicy,
    cancelled_report,
    skipped_report,
)
from n8n_backup.engine.retention import evaluate
from n8n_backup.errors import (
    CompatibilityMismatch,
    N8nBackupError,
    PersistenceError,
    RunCancelled,
    TransientTransportError,
)
from n8n_backup.store.base import VersionFilter, new_id
from n8n_backup.validators import validate_snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _RunContext:
    """Mutable bookkeeping for one run."""

    operation: OperationType
    options: RunOptions
    profile: Profile | None = None
    target_profile: Profile | None = None
    parent_version_id: str | None = None
    version_id: str = field(default_factory=new_id)
    started_at: str = field(default_factory=utc_now)
    metrics: MetricsRecorder = field(default_factory=MetricsRecorder)
    warnings: list[str] = field(default_factory=list)
    history: list[RunState] = field(default_factory=lambda: [RunState.PENDING])
    source_tag: str | None = None
    target_tag: str | None = None
    token: CancelToken = field(default_factory=CancelToken)

    @property
    def state(self) -> RunState:
        return self.history[-1]

    def transition(self, state: RunState) -> None:
        logger.debug(
            "%s run %s: %s -> %s",
            self.operation.value,
            self.version_id,
            self.state.value,
            state.value,
        )
        self.history.append(state)


class Orchestrator:
    """Run backup, restore and sync operations against a version store.

    Args:
        client: Platform client (``fetch_objects``, ``push_object``,
            ``get_platform_version``).
        store: A ``VersionStore`` implementation.
        tool_version: Recorded on every Version.
    """

    def __init__(self, client, store, tool_version: str = __version__) -> None:
        self.client = client
        self.store = store
        self.tool_version = tool_version

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run_backup(
        self,
        profile: Profile,
        options: RunOptions | None = None,
        cancel_token: CancelToken | None = None,
    ) -> VersionReportSummary:
        """Capture every object of *profile* into a new Version.

        No mutation is issued against the platform.  With
        ``options.base_version_id`` the summary also carries the
        added/modified/removed/unchanged counts against that version.
        """
        ctx = _RunContext(
            operation=OperationType.BACKUP,
            options=options or RunOptions(),
            profile=profile,
            parent_version_id=(options.base_version_id if options else None),
            token=cancel_token or CancelToken(),
        )
        logger.info("Starting backup of %s (%s)", profile.name, profile.url)

        ctx.transition(RunState.FETCHING)
        try:
            objects = await self._fetch(ctx, profile)
            ctx.source_tag = await self._discover_version(
                ctx, profile, required=False
            )
        except N8nBackupError as exc:
            return await self._finish(ctx, [], [], failure_reason=str(exc))

        changes = None
        if ctx.options.base_version_id:
            changes = await self._differential(ctx, objects)

        ctx.transition(RunState.RECONCILING)
        indexed, duplicates = _partition(objects)
        reports = [_capture_report(obj) for _, obj in indexed]

        return await self._finish(
            ctx,
            _in_input_order(indexed, reports, duplicates),
            _records(ctx.version_id, indexed, reports),
            changes=changes,
        )

    async def run_restore(
        self,
        version_id: str,
        target_profile: Profile,
        options: RunOptions | None = None,
        cancel_token: CancelToken | None = None,
    ) -> VersionReportSummary:
        """Apply the objects of a stored Version to *target_profile*."""
        ctx = _RunContext(
            operation=OperationType.RESTORE,
            options=options or RunOptions(),
            profile=target_profile,
            target_profile=target_profile,
            parent_version_id=version_id,
            token=cancel_token or CancelToken(),
        )
        logger.info(
            "Starting restore of version %s to %s", version_id, target_profile.name
        )

        ctx.transition(RunState.FETCHING)
        try:
            detail = await run_sync(self.store.get_version, version_id)
            ctx.source_tag = detail.version.source_platform_version
            objects = [
                obj
                for obj in detail.snapshots()
                if ctx.options.includes(obj.resource_type)
            ]
            ctx.target_tag = await self._discover_version(ctx, target_profile)
            target_objects = await self._fetch(ctx, target_profile)
        except N8nBackupError as exc:
            return await self._finish(ctx, [], [], failure_reason=str(exc))

        return await self._gate_and_reconcile(
            ctx, objects, target_objects, target_profile
        )

    async def run_sync(
        self,
        source_profile: Profile,
        target_profile: Profile,
        options: RunOptions | None = None,
        cancel_token: CancelToken | None = None,
    ) -> VersionReportSummary:
        """Copy the current objects of *source_profile* onto *target_profile*."""
        ctx = _RunContext(
            operation=OperationType.SYNC,
            options=options or RunOptions(),
            profile=source_profile,
            target_profile=target_profile,
            token=cancel_token or CancelToken(),
        )
        logger.info(
            "Starting sync %s -> %s", source_profile.name, target_profile.name
        )

        ctx.transition(RunState.FETCHING)
        try:
            objects = await self._fetch(ctx, source_profile)
            ctx.source_tag = await self._discover_version(ctx, source_profile)
            ctx.target_tag = await self._discover_version(ctx, target_profile)
            target_objects = await self._fetch(ctx, target_profile)
        except N8nBackupError as exc:
            return await self._finish(ctx, [], [], failure_reason=str(exc))

        return await self._gate_and_reconcile(
            ctx, objects, target_objects, target_profile
        )

    # ------------------------------------------------------------------
    # Retention, cleanup and comparison
    # ------------------------------------------------------------------

    def evaluate_retention(
        self, policy: RetentionPolicy, profile_id: str | None = None
    ) -> RetentionResult:
        """Partition stored versions under *policy*.  Deletes nothing."""
        versions = self.store.list_versions(VersionFilter(profile_id=profile_id))
        return evaluate(versions, policy)

    def run_cleanup(
        self,
        policy: RetentionPolicy,
        apply: bool = False,
        profile_id: str | None = None,
    ) -> CleanupSummary:
        """Evaluate retention and, when *apply* is set, delete eligible versions.

        Always writes one ``cleanup`` audit record, also for dry runs.
        """
        started_at = utc_now()
        result = self.evaluate_retention(policy, profile_id)
        deleted: list[str] = []
        errors: list[str] = []

        if apply:
            for version in result.eligible_for_deletion:
                try:
                    self.store.delete_version(version.id)
                except N8nBackupError as exc:
                    logger.error("Failed to delete version %s: %s", version.id, exc)
                    errors.append(f"{version.id}: {exc}")
                else:
                    deleted.append(version.id)

        status = RunStatus.PARTIAL_SUCCESS if errors else RunStatus.SUCCESS
        completed_at = utc_now()
        audit = AuditRecord(
            id=new_id(),
            operation=OperationType.CLEANUP,
            profile_id=profile_id,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            counts=ResourceCounts(
                total=len(result.retain) + len(result.eligible_for_deletion),
                processed=len(deleted),
                skipped=len(result.retain),
                errors=len(errors),
            ),
            errors=errors,
            config={
                "apply": apply,
                "policy": policy.model_dump(mode="json"),
            },
            details={
                "retained": [v.id for v in result.retain],
                "eligible": [v.id for v in result.eligible_for_deletion],
                "deleted": deleted,
                "reasons": result.reasons,
            },
        )
        self.store.write_audit_record(audit)
        logger.info(
            "Cleanup %s: %d retained, %d eligible, %d deleted",
            "applied" if apply else "dry run",
            len(result.retain),
            len(result.eligible_for_deletion),
            len(deleted),
        )
        return CleanupSummary(
            applied=apply,
            result=result,
            deleted=deleted,
            errors=errors,
            status=status,
            audit_id=audit.id,
        )

    def compare_versions(self, base_id: str, current_id: str) -> DiffResult:
        """Diff the objects of two stored versions."""
        base = self.store.get_version(base_id)
        current = self.store.get_version(current_id)
        return diff(base.snapshots(), current.snapshots())

    async def preview_restore(
        self,
        version_id: str,
        target_profile: Profile,
        resource_types: Sequence[ResourceType] | None = None,
    ) -> DiffResult:
        """Show what restoring *version_id* would change on *target_profile*.

        ``added`` objects would be created, ``modified`` ones updated;
        ``removed`` lists objects that only exist on the target and are
        left alone.  Objects are matched to the target the same way a
        restore matches them.
        """
        detail = await run_sync(self.store.get_version, version_id)
        types = list(resource_types) if resource_types is not None else None
        target_objects = await run_sync(
            self.client.fetch_objects, target_profile, types
        )
        version_objects = [
            obj
            for obj in detail.snapshots()
            if types is None or obj.resource_type in types
        ]
        matches = match_targets(version_objects, target_objects)
        return diff(
            target_objects, [retarget(obj, matches) for obj in version_objects]
        )

    # ------------------------------------------------------------------
    # Run steps
    # ------------------------------------------------------------------

    async def _gate_and_reconcile(
        self,
        ctx: _RunContext,
        objects: list[ObjectSnapshot],
        target_objects: list[ObjectSnapshot],
        target_profile: Profile,
    ) -> VersionReportSummary:
        try:
            decision = check_compatibility(ctx.source_tag, ctx.target_tag)
        except N8nBackupError as exc:
            return await self._finish(ctx, [], [], failure_reason=str(exc))

        if not decision.proceed:
            ctx.transition(RunState.ABORTED)
            mismatch = CompatibilityMismatch(
                decision.source_tag, decision.target_tag, decision.reason
            )
            return await self._finish(ctx, [], [], aborted_reason=str(mismatch))
        ctx.transition(RunState.VALIDATED)

        ctx.transition(RunState.RECONCILING)
        indexed, duplicates = _partition(objects)
        reports = await self._reconcile_all(
            ctx,
            [obj for _, obj in indexed],
            target_objects,
            target_profile,
        )
        return await self._finish(
            ctx,
            _in_input_order(indexed, reports, duplicates),
            _records(ctx.version_id, indexed, reports),
        )

    async def _reconcile_all(
        self,
        ctx: _RunContext,
        objects: list[ObjectSnapshot],
        target_objects: list[ObjectSnapshot],
        target_profile: Profile,
    ) -> list[ObjectReport]:
        """Reconcile tags and credentials first, then workflows.

        When the first phase created objects the target is re-read, so
        workflows reference the ids the platform assigned.

        Returns:
            One report per object, in *objects* order.
        """
        token = ctx.token
        reconciler = Reconciler(
            self.client,
            target_profile,
            retry_policy=RetryPolicy.from_options(ctx.options),
            metrics=ctx.metrics,
            cancel_token=token,
        )
        target_state: dict[ObjectKey, ObjectSnapshot] = {}
        matches: dict[ObjectKey, str] = {}
        working_ids: set[str] = set()

        def _index(current: list[ObjectSnapshot]) -> None:
            target_state.clear()
            target_state.update((obj.key, obj) for obj in current)
            matches.clear()
            matches.update(match_targets(objects, current))
            working_ids.clear()
            working_ids.update(obj.resource_id for obj in objects)
            working_ids.update(key[1] for key in target_state)

        async def _one(obj: ObjectSnapshot) -> ObjectReport:
            if token.cancelled:
                return cancelled_report(obj, token.reason)
            pushed = retarget(obj, matches)
            completed, report = await race_cancel(
                reconciler.reconcile(
                    pushed, target_state, ctx.options.strategy, working_ids
                ),
                token,
            )
            if not completed:
                return cancelled_report(obj, token.reason)
            return _for_source(report, obj, pushed)

        _index(target_objects)
        first = [o for o in objects if o.resource_type != ResourceType.WORKFLOW]
        second = [o for o in objects if o.resource_type == ResourceType.WORKFLOW]

        timer = None
        if ctx.options.timeout is not None:
            timer = asyncio.get_running_loop().call_later(
                ctx.options.timeout,
                token.cancel,
                f"timed out after {ctx.options.timeout:g}s",
            )
        try:
            first_reports = await gather_limited(
                [functools.partial(_one, obj) for obj in first],
                ctx.options.max_concurrency,
            )
            created = any(r.action == PushOutcome.CREATED for r in first_reports)
            if second and created and not token.cancelled:
                try:
                    _index(await self._fetch(ctx, target_profile))
                except N8nBackupError as exc:
                    logger.warning("Could not re-read target: %s", exc)
                    ctx.warnings.append(f"target refresh failed: {exc}")
            second_reports = await gather_limited(
                [functools.partial(_one, obj) for obj in second],
                ctx.options.max_concurrency,
            )
        finally:
            if timer is not None:
                timer.cancel()

        if token.cancelled:
            ctx.warnings.append(f"run cancelled: {token.reason}")
        by_key = {
            obj.key: report
            for obj, report in zip(
                [*first, *second], [*first_reports, *second_reports]
            )
        }
        return [by_key[obj.key] for obj in objects]

    async def _fetch(
        self, ctx: _RunContext, profile: Profile
    ) -> list[ObjectSnapshot]:
        types = ctx.options.resource_types
        objects = await self._call(
            ctx, self.client.fetch_objects, profile, types
        )
        return [obj for obj in objects if ctx.options.includes(obj.resource_type)]

    async def _discover_version(
        self, ctx: _RunContext, profile: Profile, required: bool = True
    ) -> str | None:
        try:
            return await self._call(ctx, self.client.get_platform_version, profile)
        except RunCancelled:
            raise
        except N8nBackupError as exc:
            if required:
                raise
            logger.warning("Could not determine version of %s: %s", profile.url, exc)
            ctx.warnings.append(f"platform version unknown: {exc}")
            return None

    async def _differential(
        self, ctx: _RunContext, objects: list[ObjectSnapshot]
    ) -> dict[str, int] | None:
        try:
            base = await run_sync(self.store.get_version, ctx.options.base_version_id)
        except N8nBackupError as exc:
            logger.warning("Differential base unavailable: %s", exc)
            ctx.warnings.append(f"differential base unavailable: {exc}")
            return None
        base_objects = [
            obj
            for obj in base.snapshots()
            if ctx.options.includes(obj.resource_type)
        ]
        return diff(base_objects, objects).counts()

    async def _call(
        self, ctx: _RunContext, func: Callable[..., T], *args: Any
    ) -> T:
        """Issue one platform read, retrying transient failures.

        Raises:
            RunCancelled: The run's token fired before or during back-off.
        """
        policy = RetryPolicy.from_options(ctx.options)
        attempt = 0
        while True:
            if ctx.token.cancelled:
                raise RunCancelled(ctx.token.reason)
            attempt += 1
            started = time.perf_counter()
            try:
                result = await run_sync(func, *args)
            except TransientTransportError as exc:
                ctx.metrics.record_call((time.perf_counter() - started) * 1000.0)
                if attempt >= policy.max_attempts:
                    raise
                ctx.metrics.record_retry()
                delay = policy.delay_for(attempt, exc.retry_after)
                logger.info(
                    "Transient failure (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    policy.max_attempts,
                    delay,
                    exc,
                )
                if not await ctx.token.sleep(delay):
                    raise RunCancelled(ctx.token.reason) from exc
            else:
                ctx.metrics.record_call((time.perf_counter() - started) * 1000.0)
                return result

    # ------------------------------------------------------------------
    # Summarizing and persistence
    # ------------------------------------------------------------------

    async def _finish(
        self,
        ctx: _RunContext,
        reports: list[ObjectReport],
        records: list[ObjectRecord],
        aborted_reason: str | None = None,
        failure_reason: str | None = None,
        changes: dict[str, int] | None = None,
    ) -> VersionReportSummary:
        if failure_reason:
            logger.error("%s run failed: %s", ctx.operation.value, failure_reason)
        if ctx.state != RunState.ABORTED:
            ctx.transition(RunState.SUMMARIZING)

        summary = summarize(
            reports,
            ctx.operation,
            ctx.started_at,
            metrics=ctx.metrics.snapshot(),
            warnings=ctx.warnings,
            aborted_reason=aborted_reason,
            failure_reason=failure_reason,
            changes=changes,
            version_id=ctx.version_id,
        )

        if ctx.state != RunState.ABORTED:
            ctx.transition(RunState.COMPLETE)
        await self._persist(ctx, summary, records)

        logger.info(
            "%s %s: %d total, %d created, %d updated, %d skipped, %d errors",
            ctx.operation.value.capitalize(),
            summary.status.value,
            summary.counts.total,
            summary.counts.created,
            summary.counts.updated,
            summary.counts.skipped,
            summary.counts.errors,
        )
        return summary

    async def _persist(
        self,
        ctx: _RunContext,
        summary: VersionReportSummary,
        records: list[ObjectRecord],
    ) -> None:
        run_config = {
            "operation": ctx.operation.value,
            "profile_id": ctx.profile.id if ctx.profile else None,
            "target_profile_id": (
                ctx.target_profile.id if ctx.target_profile else None
            ),
            "options": ctx.options.model_dump(mode="json"),
        }
        version = Version(
            id=ctx.version_id,
            created_at=ctx.started_at,
            profile_id=ctx.profile.id if ctx.profile else None,
            operation=ctx.operation,
            source_platform_version=ctx.source_tag,
            tool_version=self.tool_version,
            run_config=run_config,
            counts=summary.counts,
            metrics=summary.metrics,
            changes=summary.changes,
            status=summary.status,
            parent_version_id=ctx.parent_version_id,
            tags=list(ctx.options.tags),
        )

        def _audit(final: VersionReportSummary) -> AuditRecord:
            return build_audit_record(
                final,
                new_id(),
                config=run_config,
                profile_id=version.profile_id,
                target_profile_id=run_config["target_profile_id"],
                details={
                    "states": [state.value for state in ctx.history],
                    "source_platform_version": ctx.source_tag,
                    "target_platform_version": ctx.target_tag,
                    "parent_version_id": ctx.parent_version_id,
                },
            )

        created = False
        try:
            await run_sync(self.store.create_version, version)
            created = True
            if records:
                await run_sync(
                    self.store.append_object_records, version.id, records
                )
            await run_sync(self.store.write_audit_record, _audit(summary))
        except (PersistenceError, OSError) as exc:
            message = f"persistence failed: {exc}"
            logger.error("%s run %s: %s", ctx.operation.value, version.id, message)
            if created:
                # A Version without its records must not be listed as usable.
                try:
                    await run_sync(self.store.delete_version, version.id)
                except (N8nBackupError, OSError) as rollback_exc:
                    logger.error(
                        "Could not roll back version %s: %s",
                        version.id,
                        rollback_exc,
                    )
            failed = summary.model_copy(
                update={
                    "status": RunStatus.FAILED,
                    "reason": message,
                    "errors": [*summary.errors, f"failed: {message}"],
                }
            )
            try:
                await run_sync(self.store.write_audit_record, _audit(failed))
            except (PersistenceError, OSError) as audit_exc:
                logger.error("Could not record failed audit: %s", audit_exc)
            raise PersistenceError(message, summary=failed) from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _partition(
    objects: Sequence[ObjectSnapshot],
) -> tuple[list[tuple[int, ObjectSnapshot]], dict[int, ObjectReport]]:
    """Split *objects* into first occurrences and duplicate-id reports.

    Returns ``(indexed, duplicates)`` where ``indexed`` holds
    ``(input_index, object)`` pairs for first occurrences and
    ``duplicates`` maps input index to a ``skipped/duplicate`` report.
    """
    seen: set[ObjectKey] = set()
    indexed: list[tuple[int, ObjectSnapshot]] = []
    duplicates: dict[int, ObjectReport] = {}
    for index, obj in enumerate(objects):
        if obj.key in seen:
            logger.warning("Duplicate id in input set: %s", obj.label)
            duplicates[index] = skipped_report(
                obj,
                SkipReason.DUPLICATE,
                "duplicate id in input set; first occurrence kept",
            )
            continue
        seen.add(obj.key)
        indexed.append((index, obj))
    return indexed, duplicates


def _in_input_order(
    indexed: list[tuple[int, ObjectSnapshot]],
    reports: list[ObjectReport],
    duplicates: dict[int, ObjectReport],
) -> list[ObjectReport]:
    by_index = dict(duplicates)
    for (index, _), report in zip(indexed, reports):
        by_index[index] = report
    return [by_index[index] for index in sorted(by_index)]


def _records(
    version_id: str,
    indexed: list[tuple[int, ObjectSnapshot]],
    reports: list[ObjectReport],
) -> list[ObjectRecord]:
    return [
        ObjectRecord.from_snapshot(version_id, obj, report)
        for (_, obj), report in zip(indexed, reports)
    ]


def _for_source(
    report: ObjectReport, obj: ObjectSnapshot, pushed: ObjectSnapshot
) -> ObjectReport:
    """Report a retargeted push under the source object's id."""
    if pushed.resource_id == obj.resource_id:
        return report
    return report.model_copy(
        update={
            "resource_id": obj.resource_id,
            "message": f"{report.message} (target id {pushed.resource_id})",
        }
    )


def _capture_report(obj: ObjectSnapshot) -> ObjectReport:
    is_valid, problem = validate_snapshot(obj)
    if not is_valid:
        logger.warning("Captured invalid %s: %s", obj.label, problem)
        return skipped_report(obj, SkipReason.VALIDATION_FAILED, problem)
    return ObjectReport(
        resource_type=obj.resource_type,
        resource_id=obj.resource_id,
        status=ObjectStatus.SUCCESS,
        message="captured",
    )
