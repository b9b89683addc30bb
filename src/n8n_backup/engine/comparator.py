"""Object Comparator.

Classifies two object sets into added / modified / removed / unchanged,
keyed by ``(resource_type, resource_id)``.  Content equality is structural
over the captured payload: dict key order never matters, and lists stored
under *unordered* field names (tags, nodes, ...) are compared as multisets.

The comparison is pure.  Output lists are sorted by object key so the
result does not depend on input iteration order.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from typing import Any

from n8n_backup.engine.models import DiffResult, ObjectKey, ObjectSnapshot

# Payload fields whose list order carries no meaning on n8n.
DEFAULT_UNORDERED_FIELDS = frozenset({"tags", "nodes", "shared"})


def canonicalize(
    value: Any,
    unordered_fields: frozenset[str] = DEFAULT_UNORDERED_FIELDS,
    ignore_fields: frozenset[str] = frozenset(),
    _field: str | None = None,
) -> Any:
    """Return a canonical, JSON-serialisable form of *value*.

    Dicts are emitted with sorted keys (``ignore_fields`` dropped at every
    depth).  Lists under an unordered field are sorted by the canonical
    JSON of their items.
    """
    if isinstance(value, dict):
        return {
            key: canonicalize(
                value[key], unordered_fields, ignore_fields, _field=key
            )
            for key in sorted(value)
            if key not in ignore_fields
        }
    if isinstance(value, (list, tuple)):
        items = [
            canonicalize(item, unordered_fields, ignore_fields)
            for item in value
        ]
        if _field in unordered_fields:
            items.sort(key=_dumps)
        return items
    return value


def content_hash(
    data: dict[str, Any],
    unordered_fields: frozenset[str] = DEFAULT_UNORDERED_FIELDS,
    ignore_fields: frozenset[str] = frozenset(),
) -> str:
    """SHA-256 of the canonical form of *data*."""
    canonical = canonicalize(data, unordered_fields, ignore_fields)
    return hashlib.sha256(_dumps(canonical).encode("utf-8")).hexdigest()


def same_content(
    left: dict[str, Any],
    right: dict[str, Any],
    unordered_fields: frozenset[str] = DEFAULT_UNORDERED_FIELDS,
    ignore_fields: frozenset[str] = frozenset(),
) -> bool:
    """Structural equality of two payloads."""
    return canonicalize(
        left, unordered_fields, ignore_fields
    ) == canonicalize(right, unordered_fields, ignore_fields)


def diff(
    base_set: Iterable[ObjectSnapshot],
    current_set: Iterable[ObjectSnapshot],
    unordered_fields: frozenset[str] = DEFAULT_UNORDERED_FIELDS,
    ignore_fields: frozenset[str] = frozenset(),
) -> DiffResult:
    """Compare *base_set* against *current_set*.

    Args:
        base_set: The older object set.
        current_set: The newer object set.
        unordered_fields: Field names whose lists compare as multisets.
        ignore_fields: Field names excluded from content comparison.

    Returns:
        A ``DiffResult``.  ``modified`` and ``unchanged`` carry the
        *current* snapshot; ``removed`` carries the base snapshot.
    """
    base = _index(base_set)
    current = _index(current_set)

    added: list[ObjectSnapshot] = []
    modified: list[ObjectSnapshot] = []
    unchanged: list[ObjectSnapshot] = []
    removed: list[ObjectSnapshot] = []

    for key in sorted(current, key=_sort_key):
        snapshot = current[key]
        previous = base.get(key)
        if previous is None:
            added.append(snapshot)
        elif same_content(
            previous.data, snapshot.data, unordered_fields, ignore_fields
        ):
            unchanged.append(snapshot)
        else:
            modified.append(snapshot)

    for key in sorted(base, key=_sort_key):
        if key not in current:
            removed.append(base[key])

    return DiffResult(
        added=added,
        modified=modified,
        removed=removed,
        unchanged=unchanged,
    )


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _index(snapshots: Iterable[ObjectSnapshot]) -> dict[ObjectKey, ObjectSnapshot]:
    # Last occurrence wins for duplicate keys within one set.
    return {s.key: s for s in snapshots}


def _sort_key(key: ObjectKey) -> tuple[str, str]:
    return (key[0].value, key[1])


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))
