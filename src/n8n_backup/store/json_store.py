"""File-backed version store.

Stores each version, its object records and each audit record as JSON
files under one root directory::

    <root>/versions/<version_id>.json
    <root>/objects/<version_id>.json     {"records": {"workflow/<id>": {...}}}
    <root>/audits/<audit_id>.json

Key design choices:

* **Atomic writes** -- every file is written to a temp file and then
  ``os.replace()``-d, so readers never see partial data.
* **Append-only** -- re-creating a version id, re-writing an audit id or
  appending an already stored ``(resource_type, resource_id)`` key raises
  ``PersistenceError``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path

from n8n_backup.engine.models import (
    AuditRecord,
    ObjectRecord,
    OperationType,
    Version,
    VersionDetail,
)
from n8n_backup.errors import PersistenceError, VersionNotFound
from n8n_backup.store.base import (
    VersionFilter,
    apply_filter,
    atomic_write_json,
    read_json,
    record_key,
)

logger = logging.getLogger(__name__)


class JsonVersionStore:
    """Version store persisting to a local directory.

    Args:
        root: Directory holding the ``versions/``, ``objects/`` and
            ``audits/`` sub-directories.  Created on first write.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_version(self, version: Version) -> str:
        path = self._version_path(version.id)
        if path.exists():
            raise PersistenceError(
                f"Version '{version.id}' already exists; versions are immutable"
            )
        self._write(path, version.model_dump(mode="json"))
        logger.debug("Created version %s", version.id)
        return version.id

    def append_object_records(
        self, version_id: str, records: Sequence[ObjectRecord]
    ) -> None:
        if not self._version_path(version_id).exists():
            raise PersistenceError(
                f"Cannot append records: version '{version_id}' does not exist"
            )
        path = self._objects_path(version_id)
        stored = self._read(path)["records"] if path.exists() else {}

        for record in records:
            if record.version_id != version_id:
                raise PersistenceError(
                    f"Record {record_key(record)} belongs to version "
                    f"'{record.version_id}', not '{version_id}'"
                )
            key = record_key(record)
            if key in stored:
                raise PersistenceError(
                    f"Record {key} already stored for version '{version_id}'"
                )
            stored[key] = record.model_dump(mode="json")

        self._write(path, {"version_id": version_id, "records": stored})
        logger.debug(
            "Appended %d records to version %s", len(records), version_id
        )

    def write_audit_record(self, record: AuditRecord) -> None:
        path = self._audit_path(record.id)
        if path.exists():
            raise PersistenceError(
                f"Audit record '{record.id}' already exists"
            )
        self._write(path, record.model_dump(mode="json"))

    def delete_version(self, version_id: str) -> None:
        path = self._version_path(version_id)
        if not path.exists():
            raise VersionNotFound(version_id)
        try:
            self._objects_path(version_id).unlink(missing_ok=True)
            path.unlink()
        except OSError as exc:
            raise PersistenceError(
                f"Failed to delete version '{version_id}': {exc}"
            ) from exc
        logger.info("Deleted version %s", version_id)

    def tag_version(self, version_id: str, tag: str) -> Version:
        version = self._load_version(version_id)
        if tag in version.tags:
            return version
        updated = version.model_copy(update={"tags": [*version.tags, tag]})
        self._write(
            self._version_path(version_id), updated.model_dump(mode="json")
        )
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_versions(
        self, version_filter: VersionFilter | None = None
    ) -> list[Version]:
        directory = self.root / "versions"
        if not directory.exists():
            return []
        versions = [
            Version.model_validate(self._read(path))
            for path in directory.glob("*.json")
        ]
        return apply_filter(versions, version_filter)

    def get_version(self, version_id: str) -> VersionDetail:
        version = self._load_version(version_id)
        path = self._objects_path(version_id)
        records: list[ObjectRecord] = []
        if path.exists():
            stored = self._read(path)["records"]
            records = [
                ObjectRecord.model_validate(stored[key])
                for key in sorted(stored)
            ]
        return VersionDetail(version=version, records=records)

    def list_audit_records(
        self,
        version_id: str | None = None,
        operation: OperationType | None = None,
    ) -> list[AuditRecord]:
        directory = self.root / "audits"
        if not directory.exists():
            return []
        audits = [
            AuditRecord.model_validate(self._read(path))
            for path in directory.glob("*.json")
        ]
        if version_id is not None:
            audits = [a for a in audits if a.version_id == version_id]
        if operation is not None:
            audits = [a for a in audits if a.operation == operation]
        audits.sort(key=lambda a: (a.completed_at, a.id))
        return audits

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_version(self, version_id: str) -> Version:
        path = self._version_path(version_id)
        if not path.exists():
            raise VersionNotFound(version_id)
        return Version.model_validate(self._read(path))

    def _version_path(self, version_id: str) -> Path:
        return self.root / "versions" / f"{_safe(version_id)}.json"

    def _objects_path(self, version_id: str) -> Path:
        return self.root / "objects" / f"{_safe(version_id)}.json"

    def _audit_path(self, audit_id: str) -> Path:
        return self.root / "audits" / f"{_safe(audit_id)}.json"

    def _write(self, path: Path, data: dict) -> None:
        try:
            atomic_write_json(path, data)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc

    def _read(self, path: Path) -> dict:
        try:
            return read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc


def _safe(identifier: str) -> str:
    """Reject ids that would escape the store directory."""
    if not identifier or "/" in identifier or "\\" in identifier or ".." in identifier:
        raise PersistenceError(f"Invalid identifier: {identifier!r}")
    return identifier
