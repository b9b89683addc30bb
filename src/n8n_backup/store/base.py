"""Version store contract shared by all backends.

The engine treats a store as append-only: versions, their object records
and audit records are written once.  Only the explicit cleanup action
deletes versions, and only ``tag_version`` touches a completed version's
metadata (protection tags).

Persisted layout is keyed by ``(version_id, resource_type, resource_id)``
for object records and by ``audit_id`` for audit records.
"""

from __future__ import annotations

import json
import os
import tempfile
import uuid
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from n8n_backup.engine.models import (
    AuditRecord,
    ObjectRecord,
    OperationType,
    RunStatus,
    Version,
    VersionDetail,
    parse_timestamp,
)


def new_id() -> str:
    """Return a new opaque unique id."""
    return uuid.uuid4().hex


def record_key(record: ObjectRecord) -> str:
    """Storage key of an object record within its version."""
    return f"{record.resource_type.value}/{record.resource_id}"


class VersionFilter(BaseModel):
    """Criteria for ``list_versions``; unset fields match everything."""

    profile_id: str | None = None
    operation: OperationType | None = None
    status: RunStatus | None = None
    limit: int | None = None

    model_config = {"frozen": True}

    def matches(self, version: Version) -> bool:
        if self.profile_id is not None and version.profile_id != self.profile_id:
            return False
        if self.operation is not None and version.operation != self.operation:
            return False
        if self.status is not None and version.status != self.status:
            return False
        return True


def apply_filter(
    versions: Iterable[Version], version_filter: VersionFilter | None
) -> list[Version]:
    """Filter *versions* and order them newest first."""
    version_filter = version_filter or VersionFilter()
    selected = [v for v in versions if version_filter.matches(v)]
    selected.sort(
        key=lambda v: (parse_timestamp(v.created_at), v.id), reverse=True
    )
    if version_filter.limit is not None:
        selected = selected[: version_filter.limit]
    return selected


class VersionStore(Protocol):
    """Protocol that all version store backends must satisfy."""

    def create_version(self, version: Version) -> str:
        """Persist *version* and return its id.

        Raises:
            PersistenceError: If the id already exists or the write fails.
        """
        ...  # pragma: no cover

    def append_object_records(
        self, version_id: str, records: Sequence[ObjectRecord]
    ) -> None:
        """Attach *records* to an existing version."""
        ...  # pragma: no cover

    def write_audit_record(self, record: AuditRecord) -> None:
        """Persist one audit record."""
        ...  # pragma: no cover

    def list_versions(
        self, version_filter: VersionFilter | None = None
    ) -> list[Version]:
        """Return matching versions, newest first."""
        ...  # pragma: no cover

    def get_version(self, version_id: str) -> VersionDetail:
        """Return a version with its object records.

        Raises:
            VersionNotFound: If *version_id* is unknown.
        """
        ...  # pragma: no cover

    def list_audit_records(
        self,
        version_id: str | None = None,
        operation: OperationType | None = None,
    ) -> list[AuditRecord]:
        """Return audit records, oldest first."""
        ...  # pragma: no cover

    def delete_version(self, version_id: str) -> None:
        """Delete a version and its object records (audits are kept)."""
        ...  # pragma: no cover

    def tag_version(self, version_id: str, tag: str) -> Version:
        """Add a protection tag to a version and return the updated version."""
        ...  # pragma: no cover


# ------------------------------------------------------------------
# File helpers
# ------------------------------------------------------------------


def atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* atomically.

    Writes to a temporary file in the same directory then replaces the
    target so readers never see partial data.  Creates the parent
    directory if needed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)
