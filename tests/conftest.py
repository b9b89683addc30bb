"""Shared pytest fixtures for n8n-backup tests."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from n8n_backup.engine.models import (
    ObjectSnapshot,
    Profile,
    PushOutcome,
    ResourceType,
    RunOptions,
)
from n8n_backup.errors import UnsupportedOperation
from n8n_backup.store.json_store import JsonVersionStore


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live n8n instance",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_profile(name: str = "prod", **overrides: Any) -> Profile:
    fields = {
        "id": f"id-{name}",
        "name": name,
        "url": f"https://{name}.example.com",
        "api_key": f"key-{name}",
        "is_default": name == "prod",
    }
    fields.update(overrides)
    return Profile(**fields)


def workflow(
    resource_id: str,
    name: str | None = None,
    credentials: list[str] | None = None,
    **data: Any,
) -> ObjectSnapshot:
    """Build a valid workflow snapshot, optionally using credential ids."""
    nodes = [
        {
            "name": "Start",
            "type": "n8n-nodes-base.manualTrigger",
            "credentials": {
                f"cred{i}": {"id": cred_id} for i, cred_id in enumerate(credentials or [])
            },
        }
    ]
    payload = {
        "id": resource_id,
        "name": name or f"Workflow {resource_id}",
        "nodes": nodes,
        "connections": {},
    }
    payload.update(data)
    return ObjectSnapshot(
        resource_type=ResourceType.WORKFLOW,
        resource_id=resource_id,
        name=payload["name"],
        data=payload,
        dependencies=list(credentials or []),
    )


def credential(resource_id: str, name: str | None = None) -> ObjectSnapshot:
    payload = {
        "id": resource_id,
        "name": name or f"Credential {resource_id}",
        "type": "httpBasicAuth",
    }
    return ObjectSnapshot(
        resource_type=ResourceType.CREDENTIAL,
        resource_id=resource_id,
        name=payload["name"],
        data=payload,
    )


def tag(resource_id: str, name: str | None = None) -> ObjectSnapshot:
    payload = {"id": resource_id, "name": name or f"tag-{resource_id}"}
    return ObjectSnapshot(
        resource_type=ResourceType.TAG,
        resource_id=resource_id,
        name=payload["name"],
        data=payload,
    )


class FakeN8nClient:
    """In-memory stand-in for ``N8nClient``.

    Each profile id maps to a dict of objects keyed by ``(type, id)``.
    ``push_object`` writes into that dict and records every call.  Failures
    can be scripted per object id with ``fail_with`` (a list of exceptions
    raised on successive calls).  With ``assign_ids`` a create stores the
    object under a fresh id, the way the platform does.
    """

    def __init__(
        self,
        instances: dict[str, list[ObjectSnapshot]] | None = None,
        versions: dict[str, str] | None = None,
        assign_ids: bool = False,
    ) -> None:
        self.instances: dict[str, dict] = {
            profile_id: {obj.key: obj for obj in objects}
            for profile_id, objects in (instances or {}).items()
        }
        self.versions = versions or {}
        self.push_calls: list[tuple[str, str, bool]] = []
        self.fetch_calls: list[str] = []
        self.fail_with: dict[str, list[Exception]] = {}
        self.fetch_error: Exception | None = None
        self.assign_ids = assign_ids
        self._next_id = 0
        self._lock = threading.Lock()

    def fetch_objects(self, profile, resource_types=None):
        self.fetch_calls.append(profile.id)
        if self.fetch_error is not None:
            raise self.fetch_error
        objects = list(self.instances.get(profile.id, {}).values())
        if resource_types is not None:
            objects = [o for o in objects if o.resource_type in resource_types]
        return objects

    def get_platform_version(self, profile):
        return self.versions.get(profile.id, "1.4.0")

    def push_object(self, profile, snapshot, exists):
        with self._lock:
            self.push_calls.append((profile.id, snapshot.resource_id, exists))
            failures = self.fail_with.get(snapshot.resource_id)
            if failures:
                raise failures.pop(0)
            if exists and snapshot.resource_type == ResourceType.CREDENTIAL:
                raise UnsupportedOperation("credential update not supported")
            if self.assign_ids and not exists:
                self._next_id += 1
                new = f"{profile.id}-{self._next_id}"
                snapshot = snapshot.model_copy(
                    update={"resource_id": new, "data": {**snapshot.data, "id": new}}
                )
            self.instances.setdefault(profile.id, {})[snapshot.key] = snapshot
        return PushOutcome.UPDATED if exists else PushOutcome.CREATED


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def prod():
    return make_profile("prod")


@pytest.fixture
def staging():
    return make_profile("staging", is_default=False)


@pytest.fixture
def store(tmp_path):
    return JsonVersionStore(tmp_path / "store")


@pytest.fixture
def fast_options():
    """RunOptions without back-off delays."""
    return RunOptions(backoff_initial=0.0, backoff_max=0.0)
