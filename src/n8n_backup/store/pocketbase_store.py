"""PocketBase-backed version store.

Uses three collections, each with a few indexed text fields plus a JSON
``payload`` field holding the full model:

* ``versions`` -- ``version_id``, ``profile_id``, ``operation``, ``status``,
  ``created_at``, ``payload``
* ``objects``  -- ``version_id``, ``resource_type``, ``resource_id``,
  ``payload``
* ``audits``   -- ``audit_id``, ``version_id``, ``operation``, ``status``,
  ``payload``

Collections must exist before first use.  PocketBase assigns its own
record ids; the engine's ids live in the indexed fields.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from n8n_backup.core.pocketbase import PocketBaseClient
from n8n_backup.engine.models import (
    AuditRecord,
    ObjectRecord,
    OperationType,
    Version,
    VersionDetail,
)
from n8n_backup.errors import PersistenceError, VersionNotFound
from n8n_backup.store.base import VersionFilter, apply_filter

logger = logging.getLogger(__name__)

VERSIONS = "versions"
OBJECTS = "objects"
AUDITS = "audits"


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class PocketBaseVersionStore:
    """Version store persisting to PocketBase collections.

    Args:
        client: A ``PocketBaseClient``; authenticated lazily on first use.
    """

    def __init__(self, client: PocketBaseClient) -> None:
        self.client = client

    def _ensure_auth(self) -> None:
        if not self.client.is_authenticated():
            self.client.authenticate()

    def _find_version_record(self, version_id: str) -> dict | None:
        items = self.client.list_records(
            VERSIONS, filter=f"version_id = {_quote(version_id)}"
        )
        return items[0] if items else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_version(self, version: Version) -> str:
        self._ensure_auth()
        if self._find_version_record(version.id) is not None:
            raise PersistenceError(
                f"Version '{version.id}' already exists; versions are immutable"
            )
        self.client.create_record(
            VERSIONS,
            {
                "version_id": version.id,
                "profile_id": version.profile_id or "",
                "operation": version.operation.value,
                "status": version.status.value,
                "created_at": version.created_at,
                "payload": version.model_dump(mode="json"),
            },
        )
        return version.id

    def append_object_records(
        self, version_id: str, records: Sequence[ObjectRecord]
    ) -> None:
        self._ensure_auth()
        if self._find_version_record(version_id) is None:
            raise PersistenceError(
                f"Cannot append records: version '{version_id}' does not exist"
            )
        existing = {
            (item["resource_type"], item["resource_id"])
            for item in self.client.list_records(
                OBJECTS, filter=f"version_id = {_quote(version_id)}"
            )
        }
        for record in records:
            key = (record.resource_type.value, record.resource_id)
            if key in existing:
                raise PersistenceError(
                    f"Record {key[0]}/{key[1]} already stored for version '{version_id}'"
                )
            self.client.create_record(
                OBJECTS,
                {
                    "version_id": version_id,
                    "resource_type": key[0],
                    "resource_id": key[1],
                    "payload": record.model_dump(mode="json"),
                },
            )
            existing.add(key)

    def write_audit_record(self, record: AuditRecord) -> None:
        self._ensure_auth()
        self.client.create_record(
            AUDITS,
            {
                "audit_id": record.id,
                "version_id": record.version_id or "",
                "operation": record.operation.value,
                "status": record.status.value,
                "payload": record.model_dump(mode="json"),
            },
        )

    def delete_version(self, version_id: str) -> None:
        self._ensure_auth()
        version_record = self._find_version_record(version_id)
        if version_record is None:
            raise VersionNotFound(version_id)
        for item in self.client.list_records(
            OBJECTS, filter=f"version_id = {_quote(version_id)}"
        ):
            self.client.delete_record(OBJECTS, item["id"])
        self.client.delete_record(VERSIONS, version_record["id"])
        logger.info("Deleted version %s", version_id)

    def tag_version(self, version_id: str, tag: str) -> Version:
        self._ensure_auth()
        version_record = self._find_version_record(version_id)
        if version_record is None:
            raise VersionNotFound(version_id)
        version = Version.model_validate(version_record["payload"])
        if tag in version.tags:
            return version
        updated = version.model_copy(update={"tags": [*version.tags, tag]})
        self.client.update_record(
            VERSIONS,
            version_record["id"],
            {"payload": updated.model_dump(mode="json")},
        )
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_versions(
        self, version_filter: VersionFilter | None = None
    ) -> list[Version]:
        self._ensure_auth()
        versions = [
            Version.model_validate(item["payload"])
            for item in self.client.list_records(VERSIONS, sort="-created_at")
        ]
        return apply_filter(versions, version_filter)

    def get_version(self, version_id: str) -> VersionDetail:
        self._ensure_auth()
        version_record = self._find_version_record(version_id)
        if version_record is None:
            raise VersionNotFound(version_id)
        records = [
            ObjectRecord.model_validate(item["payload"])
            for item in self.client.list_records(
                OBJECTS, filter=f"version_id = {_quote(version_id)}"
            )
        ]
        records.sort(key=lambda r: (r.resource_type.value, r.resource_id))
        return VersionDetail(
            version=Version.model_validate(version_record["payload"]),
            records=records,
        )

    def list_audit_records(
        self,
        version_id: str | None = None,
        operation: OperationType | None = None,
    ) -> list[AuditRecord]:
        self._ensure_auth()
        clauses = []
        if version_id is not None:
            clauses.append(f"version_id = {_quote(version_id)}")
        if operation is not None:
            clauses.append(f"operation = {_quote(operation.value)}")
        audits = [
            AuditRecord.model_validate(item["payload"])
            for item in self.client.list_records(
                AUDITS, filter=" && ".join(clauses) or None
            )
        ]
        audits.sort(key=lambda a: (a.completed_at, a.id))
        return audits
