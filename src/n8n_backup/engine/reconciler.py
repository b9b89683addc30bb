"""Per-Object Reconciler.

Applies one object to the target platform and classifies the outcome as
an ``ObjectReport``.  The reconciler is the fault-isolation boundary of a
run: every per-object failure is converted into a report here, so one bad
workflow never unwinds the whole restore or sync.

Order of checks for each object:

1. Local id check (``skipped`` / ``validation_failed``, no network call).
   Payload shape is left to the platform, whose rejection is an ``error``.
2. Dependency check against the working set (``skipped`` /
   ``dependency_missing``).
3. Merge strategy decision (``skipped`` when the strategy declines).
4. One mutation (create when absent from the target, update otherwise),
   retried with exponential back-off on transient transport failures.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Collection, Mapping
from dataclasses import dataclass

from n8n_backup.core.async_utils import CancelToken, run_sync
from n8n_backup.engine.models import (
    MergeStrategy,
    ObjectKey,
    ObjectReport,
    ObjectSnapshot,
    ObjectStatus,
    PushOutcome,
    RunMetrics,
    RunOptions,
    SkipReason,
)
from n8n_backup.engine.strategies import decide
from n8n_backup.errors import (
    DependencyMissing,
    PermissionDenied,
    TransientTransportError,
    TransportError,
    UnsupportedOperation,
    ValidationError,
)
from n8n_backup.validators import validate_resource_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retry policy and metrics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_delay: Delay before the first retry, in seconds.
        factor: Multiplier applied for each further retry.
        max_delay: Cap for a single delay.
        jitter: Fraction of the delay randomised in both directions.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_options(cls, options: RunOptions) -> RetryPolicy:
        return cls(
            max_attempts=options.max_attempts,
            initial_delay=options.backoff_initial,
            factor=options.backoff_factor,
            max_delay=options.backoff_max,
        )

    def delay_for(
        self, attempt: int, retry_after: float | None = None
    ) -> float:
        """Delay before retrying after failed attempt number *attempt* (1-based)."""
        if retry_after is not None:
            base = min(retry_after, self.max_delay)
        else:
            base = min(
                self.initial_delay * (self.factor ** (attempt - 1)),
                self.max_delay,
            )
        if self.jitter and base:
            spread = base * self.jitter
            base += random.uniform(-spread, spread)
        return max(0.0, base)


class MetricsRecorder:
    """Accumulates API call metrics for one run.

    All updates happen on the event loop thread, so no locking is needed.
    """

    def __init__(self) -> None:
        self.api_calls = 0
        self.retries = 0
        self.total_latency_ms = 0.0
        self.max_latency_ms = 0.0

    def record_call(self, latency_ms: float) -> None:
        self.api_calls += 1
        self.total_latency_ms += latency_ms
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)

    def record_retry(self) -> None:
        self.retries += 1

    def snapshot(self) -> RunMetrics:
        return RunMetrics(
            api_calls=self.api_calls,
            retries=self.retries,
            total_latency_ms=round(self.total_latency_ms, 3),
            max_latency_ms=round(self.max_latency_ms, 3),
        )


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------


def skipped_report(
    obj: ObjectSnapshot, reason: SkipReason, message: str
) -> ObjectReport:
    return ObjectReport(
        resource_type=obj.resource_type,
        resource_id=obj.resource_id,
        status=ObjectStatus.SKIPPED,
        skip_reason=reason,
        message=message,
    )


def error_report(
    obj: ObjectSnapshot,
    message: str,
    detail: str | None = None,
    attempts: int = 0,
) -> ObjectReport:
    return ObjectReport(
        resource_type=obj.resource_type,
        resource_id=obj.resource_id,
        status=ObjectStatus.ERROR,
        message=message,
        error_detail=detail,
        attempts=attempts,
    )


def cancelled_report(obj: ObjectSnapshot, reason: str | None) -> ObjectReport:
    return error_report(
        obj, "cancelled", detail=reason or "run cancelled before completion"
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class Reconciler:
    """Apply objects to one target profile.

    Args:
        client: Platform client exposing ``push_object(profile, obj, exists)``.
        profile: Target profile.
        retry_policy: Back-off configuration for transient failures.
        metrics: Shared metrics recorder for the run.
        cancel_token: Run cancellation signal; interrupts back-off sleeps.
    """

    def __init__(
        self,
        client,
        profile,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsRecorder | None = None,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.client = client
        self.profile = profile
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or MetricsRecorder()
        self.cancel_token = cancel_token

    async def reconcile(
        self,
        obj: ObjectSnapshot,
        target_state: Mapping[ObjectKey, ObjectSnapshot] | Collection[ObjectKey],
        strategy: MergeStrategy = MergeStrategy.SOURCE_WINS,
        working_ids: Collection[str] | None = None,
    ) -> ObjectReport:
        """Reconcile one object against the target.

        Args:
            obj: The object to apply.
            target_state: Objects (or keys) currently present on the target.
            strategy: Merge strategy variant.
            working_ids: Ids resolvable by dependencies.  Defaults to the
                ids present in *target_state*.

        Returns:
            Exactly one ``ObjectReport``.  Never raises for object-level
            failures.
        """
        try:
            return await self._reconcile(
                obj, target_state, strategy, working_ids
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Unexpected error reconciling %s: %s", obj.label, exc)
            return error_report(obj, "unexpected error", detail=str(exc))

    async def _reconcile(
        self,
        obj: ObjectSnapshot,
        target_state: Mapping[ObjectKey, ObjectSnapshot] | Collection[ObjectKey],
        strategy: MergeStrategy,
        working_ids: Collection[str] | None,
    ) -> ObjectReport:
        is_valid, problem = validate_resource_id(obj)
        if not is_valid:
            logger.warning("Skipping invalid %s: %s", obj.label, problem)
            return skipped_report(obj, SkipReason.VALIDATION_FAILED, problem)

        if working_ids is None:
            working_ids = {key[1] for key in target_state}
        missing = [dep for dep in obj.dependencies if dep not in working_ids]
        if missing:
            exc = DependencyMissing(obj.resource_id, missing)
            logger.warning("Skipping %s: %s", obj.label, exc)
            return skipped_report(
                obj, SkipReason.DEPENDENCY_MISSING, str(exc)
            )

        exists = obj.key in target_state
        decision = decide(strategy, exists)
        if not decision.apply:
            logger.info("Skipping %s: %s", obj.label, decision.message)
            return skipped_report(obj, decision.skip_reason, decision.message)

        return await self._push_with_retry(obj, exists)

    async def _push_with_retry(
        self, obj: ObjectSnapshot, exists: bool
    ) -> ObjectReport:
        policy = self.retry_policy
        token = self.cancel_token
        last_error: Exception | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if token is not None and token.cancelled:
                return cancelled_report(obj, token.reason)

            started = time.perf_counter()
            try:
                outcome = await run_sync(
                    self.client.push_object, self.profile, obj, exists
                )
            except TransientTransportError as exc:
                self.metrics.record_call(_elapsed_ms(started))
                last_error = exc
                if attempt == policy.max_attempts:
                    break
                delay = policy.delay_for(attempt, exc.retry_after)
                self.metrics.record_retry()
                logger.info(
                    "Transient failure on %s (attempt %d/%d), retrying in %.2fs: %s",
                    obj.label,
                    attempt,
                    policy.max_attempts,
                    delay,
                    exc,
                )
                if not await self._sleep(delay):
                    return cancelled_report(
                        obj, token.reason if token else None
                    )
                continue
            except UnsupportedOperation as exc:
                self.metrics.record_call(_elapsed_ms(started))
                logger.info("Unsupported mutation for %s: %s", obj.label, exc)
                return skipped_report(obj, SkipReason.UNSUPPORTED, str(exc))
            except DependencyMissing as exc:
                self.metrics.record_call(_elapsed_ms(started))
                return skipped_report(
                    obj, SkipReason.DEPENDENCY_MISSING, str(exc)
                )
            except (ValidationError, PermissionDenied, TransportError) as exc:
                self.metrics.record_call(_elapsed_ms(started))
                logger.error("Rejected %s: %s", obj.label, exc)
                return error_report(
                    obj,
                    f"rejected by target: {type(exc).__name__}",
                    detail=str(exc),
                    attempts=attempt,
                )

            self.metrics.record_call(_elapsed_ms(started))
            outcome = PushOutcome(outcome)
            logger.debug("%s %s", outcome.value.capitalize(), obj.label)
            return ObjectReport(
                resource_type=obj.resource_type,
                resource_id=obj.resource_id,
                status=ObjectStatus.SUCCESS,
                message=f"{outcome.value} on target",
                action=outcome,
                attempts=attempt,
            )

        logger.error(
            "Giving up on %s after %d attempts: %s",
            obj.label,
            policy.max_attempts,
            last_error,
        )
        return error_report(
            obj,
            f"transient failure persisted after {policy.max_attempts} attempts",
            detail=str(last_error),
            attempts=policy.max_attempts,
        )

    async def _sleep(self, delay: float) -> bool:
        if self.cancel_token is not None:
            return await self.cancel_token.sleep(delay)
        await asyncio.sleep(delay)
        return True


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
