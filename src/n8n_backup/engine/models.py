"""Pydantic models for the reconciliation and versioning engine.

Defines the core data contracts used across all engine modules:

- ``ObjectSnapshot``: One workflow/credential/tag as captured from a platform.
- ``ObjectReport``: Outcome of considering one object in one run.
- ``ObjectRecord``: An object persisted inside a ``Version``.
- ``Version``: Immutable snapshot metadata produced by one run.
- ``AuditRecord``: Permanent record of one operation.
- ``VersionReportSummary``: Folded result of a run.
- ``Profile``: A remote platform instance and its API key.
- ``RetentionPolicy``: OR-combined rules protecting versions from cleanup.
- ``RunOptions``: Per-run knobs (strategy, concurrency, retries, scope).

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, SecretStr


def utc_now() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ResourceType(str, Enum):
    """Kinds of platform objects captured in a version."""

    WORKFLOW = "workflow"
    CREDENTIAL = "credential"
    TAG = "tag"


class ObjectStatus(str, Enum):
    """Terminal state of one object within a run."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    """Why an object was skipped (``none`` for non-skipped objects)."""

    NONE = "none"
    VALIDATION_FAILED = "validation_failed"
    DUPLICATE = "duplicate"
    DEPENDENCY_MISSING = "dependency_missing"
    UNSUPPORTED = "unsupported"


class RunStatus(str, Enum):
    """Overall status of a run."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    ABORTED = "aborted"


class OperationType(str, Enum):
    """Operations that produce an audit record."""

    BACKUP = "backup"
    RESTORE = "restore"
    SYNC = "sync"
    CLEANUP = "cleanup"
    PROFILE_CHANGE = "profile_change"


class RunState(str, Enum):
    """States of the orchestrator state machine."""

    PENDING = "pending"
    FETCHING = "fetching"
    ABORTED = "aborted"
    VALIDATED = "validated"
    RECONCILING = "reconciling"
    SUMMARIZING = "summarizing"
    COMPLETE = "complete"


class PushOutcome(str, Enum):
    """Result of a single mutation against the target platform."""

    CREATED = "created"
    UPDATED = "updated"


class MergeStrategy(str, Enum):
    """How an incoming object is applied when the target may already have it."""

    SOURCE_WINS = "source-wins"
    TARGET_WINS = "target-wins"
    UPDATE_EXISTING = "update-existing"
    ADD_MISSING = "add-missing"


class GateOutcome(str, Enum):
    """Compatibility Gate verdict."""

    PROCEED = "proceed"
    ABORT = "abort"


# ---------------------------------------------------------------------------
# Objects and per-object reports
# ---------------------------------------------------------------------------


ObjectKey = tuple[ResourceType, str]


class ObjectSnapshot(BaseModel):
    """One platform object as captured at a point in time.

    Attributes:
        resource_type: Workflow, credential or tag.
        resource_id: The platform's external id for the object.
        name: Display name, if the platform exposes one.
        data: Captured payload.
        dependencies: External ids of objects this one references
            (e.g. credential ids used by a workflow's nodes).
    """

    resource_type: ResourceType
    resource_id: str
    name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def key(self) -> ObjectKey:
        """``(resource_type, resource_id)`` identity of the object."""
        return (self.resource_type, self.resource_id)

    @property
    def label(self) -> str:
        """Short human label, e.g. ``workflow:abc (Nightly ETL)``."""
        base = f"{self.resource_type.value}:{self.resource_id}"
        return f"{base} ({self.name})" if self.name else base


class ObjectReport(BaseModel):
    """Outcome for one object considered in a run.

    Attributes:
        resource_type: Workflow, credential or tag.
        resource_id: External id of the object.
        status: success, skipped or error.
        message: Human readable explanation.
        skip_reason: Populated when ``status`` is skipped.
        error_detail: Exception text for errors.
        action: created/updated when a mutation was applied.
        attempts: Number of mutation attempts issued (0 when none).
        timestamp: ISO 8601 time the report was produced.
    """

    resource_type: ResourceType
    resource_id: str
    status: ObjectStatus
    message: str = ""
    skip_reason: SkipReason = SkipReason.NONE
    error_detail: str | None = None
    action: PushOutcome | None = None
    attempts: int = 0
    timestamp: str = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @property
    def key(self) -> ObjectKey:
        return (self.resource_type, self.resource_id)


class ObjectRecord(BaseModel):
    """An object owned by exactly one ``Version``."""

    version_id: str
    resource_type: ResourceType
    resource_id: str
    name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    report: ObjectReport

    model_config = {"frozen": True}

    @classmethod
    def from_snapshot(
        cls, version_id: str, snapshot: ObjectSnapshot, report: ObjectReport
    ) -> ObjectRecord:
        return cls(
            version_id=version_id,
            resource_type=snapshot.resource_type,
            resource_id=snapshot.resource_id,
            name=snapshot.name,
            data=snapshot.data,
            dependencies=snapshot.dependencies,
            report=report,
        )

    def to_snapshot(self) -> ObjectSnapshot:
        return ObjectSnapshot(
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            name=self.name,
            data=self.data,
            dependencies=self.dependencies,
        )


# ---------------------------------------------------------------------------
# Summaries, versions, audits
# ---------------------------------------------------------------------------


class ResourceCounts(BaseModel):
    """Per-run (or per-resource-type) object counts."""

    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    model_config = {"frozen": True}


class RunMetrics(BaseModel):
    """Transport metrics collected while reconciling."""

    api_calls: int = 0
    retries: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    model_config = {"frozen": True}

    @property
    def avg_latency_ms(self) -> float:
        if not self.api_calls:
            return 0.0
        return self.total_latency_ms / self.api_calls


class VersionReportSummary(BaseModel):
    """Deterministic fold of all object reports of one run.

    Attributes:
        operation: backup, restore or sync.
        status: Overall run status.
        counts: Global counts.
        by_type: Counts keyed by resource type value.
        warnings: Skipped-object messages and run warnings.
        errors: Error messages (object-level and run-level).
        started_at: ISO 8601 start time.
        completed_at: ISO 8601 completion time.
        duration_seconds: Wall-clock duration.
        metrics: API call / retry / latency metrics.
        changes: added/modified/removed/unchanged counts for a
            differential backup, ``None`` otherwise.
        reason: Abort or failure reason, if any.
        version_id: Id of the Version persisted for the run.
        reports: Every object report, exactly one per input object.
    """

    operation: OperationType
    status: RunStatus
    counts: ResourceCounts = Field(default_factory=ResourceCounts)
    by_type: dict[str, ResourceCounts] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    started_at: str
    completed_at: str
    duration_seconds: float = 0.0
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    changes: dict[str, int] | None = None
    reason: str | None = None
    version_id: str | None = None
    reports: list[ObjectReport] = Field(default_factory=list)

    model_config = {"frozen": True}


class Version(BaseModel):
    """Immutable metadata for the snapshot produced by one run.

    Attributes:
        id: Opaque unique id.
        created_at: ISO 8601 creation time.
        profile_id: Profile the objects were read from (backup/sync) or
            written to (restore).
        operation: backup, restore or sync.
        source_platform_version: Semantic version of the source platform.
        tool_version: n8n-backup version that produced the run.
        run_config: Serialized run options.
        counts: Summary counts.
        metrics: Summary transport metrics.
        changes: Differential-backup change counts, if computed.
        status: Overall run status.
        parent_version_id: Version read as input (restore) or used as
            differential base (backup).
        tags: Protection tags honoured by ``keep-tagged`` retention rules.
    """

    id: str
    created_at: str = Field(default_factory=utc_now)
    profile_id: str | None = None
    operation: OperationType = OperationType.BACKUP
    source_platform_version: str | None = None
    tool_version: str
    run_config: dict[str, Any] = Field(default_factory=dict)
    counts: ResourceCounts = Field(default_factory=ResourceCounts)
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    changes: dict[str, int] | None = None
    status: RunStatus
    parent_version_id: str | None = None
    tags: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class AuditRecord(BaseModel):
    """Permanent, un-truncated record of one operation."""

    id: str
    operation: OperationType
    version_id: str | None = None
    profile_id: str | None = None
    target_profile_id: str | None = None
    status: RunStatus
    started_at: str
    completed_at: str
    duration_seconds: float = 0.0
    counts: ResourceCounts = Field(default_factory=ResourceCounts)
    by_type: dict[str, ResourceCounts] = Field(default_factory=dict)
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class VersionDetail(BaseModel):
    """A Version together with the ObjectRecords it owns."""

    version: Version
    records: list[ObjectRecord] = Field(default_factory=list)

    model_config = {"frozen": True}

    def snapshots(self) -> list[ObjectSnapshot]:
        return [r.to_snapshot() for r in self.records]


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class Profile(BaseModel):
    """A remote platform instance the engine can read from or write to."""

    id: str
    name: str
    url: str
    api_key: SecretStr
    is_default: bool = False
    created_at: str = Field(default_factory=utc_now)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Gate, comparator and retention results
# ---------------------------------------------------------------------------


class GateDecision(BaseModel):
    """Compatibility Gate verdict with a human-readable reason."""

    outcome: GateOutcome
    reason: str
    source_tag: str
    target_tag: str

    model_config = {"frozen": True}

    @property
    def proceed(self) -> bool:
        return self.outcome == GateOutcome.PROCEED


class DiffResult(BaseModel):
    """Classification of two object sets keyed by object identity."""

    added: list[ObjectSnapshot] = Field(default_factory=list)
    modified: list[ObjectSnapshot] = Field(default_factory=list)
    removed: list[ObjectSnapshot] = Field(default_factory=list)
    unchanged: list[ObjectSnapshot] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.removed)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "modified": len(self.modified),
            "removed": len(self.removed),
            "unchanged": len(self.unchanged),
        }


class KeepLastN(BaseModel):
    """Protect the ``n`` most recent versions."""

    kind: Literal["keep_last"] = "keep_last"
    n: int = Field(ge=0)

    model_config = {"frozen": True}


class KeepNewerThan(BaseModel):
    """Protect versions younger than ``max_age``."""

    kind: Literal["keep_newer_than"] = "keep_newer_than"
    max_age: timedelta

    model_config = {"frozen": True}


class KeepTagged(BaseModel):
    """Protect versions carrying any of ``tags`` (any tag when empty)."""

    kind: Literal["keep_tagged"] = "keep_tagged"
    tags: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


RetentionRule = Annotated[
    Union[KeepLastN, KeepNewerThan, KeepTagged],
    Field(discriminator="kind"),
]


class RetentionPolicy(BaseModel):
    """Ordered rule set evaluated with OR semantics."""

    rules: list[RetentionRule] = Field(default_factory=list)

    model_config = {"frozen": True}


class RetentionResult(BaseModel):
    """Partition of versions into retained and deletable sets.

    ``reasons`` maps each retained version id to the rules that protect it.
    """

    retain: list[Version] = Field(default_factory=list)
    eligible_for_deletion: list[Version] = Field(default_factory=list)
    reasons: dict[str, list[str]] = Field(default_factory=dict)

    model_config = {"frozen": True}


class CleanupSummary(BaseModel):
    """Outcome of an explicit cleanup action.

    Attributes:
        applied: Whether eligible versions were actually deleted.
        result: The retention evaluation the cleanup acted on.
        deleted: Ids of versions removed from the store.
        errors: Per-version deletion failures.
        status: ``success`` or ``partial_success`` when a deletion failed.
        audit_id: Id of the ``cleanup`` audit record.
    """

    applied: bool
    result: RetentionResult
    deleted: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.SUCCESS
    audit_id: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Run options
# ---------------------------------------------------------------------------


class RunOptions(BaseModel):
    """Options for a single backup/restore/sync run.

    Attributes:
        strategy: Merge strategy for restore/sync.
        max_concurrency: Parallel reconcile calls.
        max_attempts: Attempts per mutation, including the first.
        backoff_initial: Delay before the first retry, in seconds.
        backoff_factor: Multiplier applied per further retry.
        backoff_max: Upper bound for one retry delay.
        timeout: Overall reconcile deadline in seconds; ``None`` disables.
        resource_types: Restrict the run to these types (all when ``None``).
        base_version_id: Version to diff a backup against.
        tags: Protection tags attached to the new version.
    """

    strategy: MergeStrategy = MergeStrategy.SOURCE_WINS
    max_concurrency: int = Field(default=4, ge=1, le=64)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_initial: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=30.0, ge=0)
    timeout: float | None = Field(default=None, gt=0)
    resource_types: list[ResourceType] | None = None
    base_version_id: str | None = None
    tags: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    def includes(self, resource_type: ResourceType) -> bool:
        return (
            self.resource_types is None
            or resource_type in self.resource_types
        )
