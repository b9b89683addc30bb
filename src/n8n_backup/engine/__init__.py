"""Reconciliation and versioning engine.

Public API for capturing, restoring and synchronising the workflows,
credentials and tags of an n8n instance against a durable version store.

Architecture
------------
Every run is driven by the ``Orchestrator`` through a fixed state
machine.  Restore and sync runs pass the **Compatibility Gate** (same
major.minor platform version) before any object is touched.  Objects are
then applied one by one by the **Per-Object Reconciler**, which converts
every per-object failure into an ``ObjectReport``; a single broken
workflow never fails the run.

Modules:

- ``orchestrator`` -- ``Orchestrator``: backup / restore / sync runs,
  retention cleanup and version comparison.
- ``gate``         -- ``check_compatibility``: major.minor version gate.
- ``comparator``   -- ``diff``: added / modified / removed / unchanged.
- ``strategies``   -- merge strategy variants (source-wins, target-wins,
  update-existing, add-missing).
- ``reconciler``   -- ``Reconciler``: one object, bounded retries.
- ``aggregator``   -- ``summarize``: reports -> run summary and audit.
- ``retention``    -- ``evaluate``: retention policy evaluation.
- ``models``       -- core data contracts.
- ``reporter``     -- human-readable and JSON formatting.

``Orchestrator`` depends on the store package and is imported from
``n8n_backup.engine.orchestrator`` directly.

Usage example
-------------
::

    import asyncio
    from pathlib import Path
    from n8n_backup.core.client import N8nClient
    from n8n_backup.engine import RunOptions, format_summary
    from n8n_backup.engine.orchestrator import Orchestrator
    from n8n_backup.store.json_store import JsonVersionStore
    from n8n_backup.store.profiles import ProfileStore

    profiles = ProfileStore(Path(".n8n_backup/profiles.json"))
    orchestrator = Orchestrator(
        client=N8nClient(),
        store=JsonVersionStore(Path(".n8n_backup/store")),
    )

    summary = asyncio.run(orchestrator.run_backup(profiles.resolve()))
    print(format_summary(summary))

    restored = asyncio.run(
        orchestrator.run_restore(
            summary.version_id,
            profiles.resolve("staging"),
            RunOptions(strategy="add-missing"),
        )
    )
    print(format_summary(restored))
"""

from .aggregator import summarize
from .comparator import diff
from .gate import check_compatibility, parse_version_tag
from .models import (
    DiffResult,
    GateDecision,
    MergeStrategy,
    ObjectReport,
    ObjectSnapshot,
    RetentionPolicy,
    RunOptions,
    RunStatus,
    Version,
    VersionReportSummary,
)
from .reconciler import Reconciler, RetryPolicy
from .reporter import format_diff, format_retention, format_summary, summary_to_json
from .retention import evaluate

__all__ = [
    "DiffResult",
    "GateDecision",
    "MergeStrategy",
    "ObjectReport",
    "ObjectSnapshot",
    "Reconciler",
    "RetentionPolicy",
    "RetryPolicy",
    "RunOptions",
    "RunStatus",
    "Version",
    "VersionReportSummary",
    "check_compatibility",
    "diff",
    "evaluate",
    "format_diff",
    "format_retention",
    "format_summary",
    "parse_version_tag",
    "summarize",
    "summary_to_json",
]
