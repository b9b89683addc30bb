"""Profile persistence.

Profiles are kept in a single JSON file (``profiles.json``).  The store
enforces two invariants after every change:

* exactly one profile holds the default flag whenever any profile exists;
* the first profile added becomes the default.

Every change writes a ``profile_change`` audit record when an audit sink
(any ``VersionStore``) is configured.  API keys are never written to
audit records.
"""

from __future__ import annotations

import logging
from pathlib import Path

from n8n_backup.engine.models import (
    AuditRecord,
    OperationType,
    Profile,
    RunStatus,
    utc_now,
)
from n8n_backup.errors import ProfileError
from n8n_backup.store.base import atomic_write_json, new_id, read_json
from n8n_backup.validators import validate_profile_name, validate_profile_url

logger = logging.getLogger(__name__)


class ProfileStore:
    """Load, save and query platform profiles.

    Args:
        path: Path to the profiles JSON file.
        audit_sink: Optional store receiving ``profile_change`` audits.
    """

    def __init__(self, path: Path, audit_sink=None) -> None:
        self.path = Path(path)
        self.audit_sink = audit_sink

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[Profile]:
        if not self.path.exists():
            return []
        data = read_json(self.path)
        profiles = [
            Profile(
                id=item["id"],
                name=item["name"],
                url=item["url"],
                api_key=item["api_key"],
                is_default=item.get("is_default", False),
                created_at=item["created_at"],
            )
            for item in data.get("profiles", [])
        ]
        return profiles

    def get(self, name_or_id: str) -> Profile:
        for profile in self.list():
            if name_or_id in (profile.id, profile.name):
                return profile
        raise ProfileError(f"Profile '{name_or_id}' not found")

    def default(self) -> Profile | None:
        return next((p for p in self.list() if p.is_default), None)

    def resolve(self, name_or_id: str | None = None) -> Profile:
        """Return the named profile, or the default when *name_or_id* is None.

        Raises:
            ProfileError: If no profile exists or the name is unknown.
        """
        profiles = self.list()
        if not profiles:
            raise ProfileError(
                "No profiles configured. Add one with 'n8n-backup profile add'."
            )
        if name_or_id is not None:
            return self.get(name_or_id)
        default = self.default()
        if default is None:
            raise ProfileError("No default profile set")
        return default

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(
        self,
        name: str,
        url: str,
        api_key: str,
        make_default: bool = False,
    ) -> Profile:
        for check in (validate_profile_name(name), validate_profile_url(url)):
            is_valid, problem = check
            if not is_valid:
                raise ProfileError(problem)
        if not api_key or not api_key.strip():
            raise ProfileError("API key cannot be empty")

        profiles = self.list()
        if any(p.name == name.strip() for p in profiles):
            raise ProfileError(f"Profile '{name}' already exists")

        profile = Profile(
            id=new_id(),
            name=name.strip(),
            url=url.strip().removesuffix("/"),
            api_key=api_key.strip(),
            is_default=make_default or not profiles,
        )
        if profile.is_default:
            profiles = [p.model_copy(update={"is_default": False}) for p in profiles]
        profiles.append(profile)
        self._save(profiles)
        self._audit("add", profile)
        logger.info("Added profile %s (%s)", profile.name, profile.url)
        return profile

    def remove(self, name_or_id: str) -> Profile:
        target = self.get(name_or_id)
        remaining = [p for p in self.list() if p.id != target.id]
        if target.is_default and remaining:
            # Oldest remaining profile inherits the default flag.
            remaining[0] = remaining[0].model_copy(update={"is_default": True})
        self._save(remaining)
        self._audit("remove", target)
        logger.info("Removed profile %s", target.name)
        return target

    def set_default(self, name_or_id: str) -> Profile:
        target = self.get(name_or_id)
        profiles = [
            p.model_copy(update={"is_default": p.id == target.id})
            for p in self.list()
        ]
        self._save(profiles)
        updated = next(p for p in profiles if p.id == target.id)
        self._audit("set_default", updated)
        logger.info("Default profile is now %s", updated.name)
        return updated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _save(self, profiles: list[Profile]) -> None:
        defaults = sum(1 for p in profiles if p.is_default)
        if profiles and defaults != 1:
            raise ProfileError(
                f"Exactly one default profile required, found {defaults}"
            )
        atomic_write_json(
            self.path,
            {
                "version": 1,
                "profiles": [
                    {
                        "id": p.id,
                        "name": p.name,
                        "url": p.url,
                        "api_key": p.api_key.get_secret_value(),
                        "is_default": p.is_default,
                        "created_at": p.created_at,
                    }
                    for p in profiles
                ],
            },
        )

    def _audit(self, action: str, profile: Profile) -> None:
        if self.audit_sink is None:
            return
        now = utc_now()
        self.audit_sink.write_audit_record(
            AuditRecord(
                id=new_id(),
                operation=OperationType.PROFILE_CHANGE,
                profile_id=profile.id,
                status=RunStatus.SUCCESS,
                started_at=now,
                completed_at=now,
                details={
                    "action": action,
                    "name": profile.name,
                    "url": profile.url,
                    "is_default": profile.is_default,
                },
            )
        )
