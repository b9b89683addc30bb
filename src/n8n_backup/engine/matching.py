"""Match source objects to the objects already on a target instance.

n8n assigns a fresh id when an object is created, so after a first
restore or sync the target holds the same objects under different ids.
Matching resolution, per source object:

1. **Same id** -- a target object of the same type and id.
2. **Unique name** -- otherwise, the only target object of the same type
   carrying the same name, if no other source object claimed it.
3. **Unmatched** -- the object is absent from the target and is created.

``retarget`` rewrites a source object onto its matched target id and
points workflow credential references at the matched credential ids.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from n8n_backup.engine.models import ObjectKey, ObjectSnapshot, ResourceType


def match_targets(
    objects: Iterable[ObjectSnapshot],
    target_objects: Iterable[ObjectSnapshot],
) -> dict[ObjectKey, str]:
    """Map each matched source key to the target id it corresponds to.

    Args:
        objects: Source objects, ids unique per type.
        target_objects: Objects currently on the target.

    Returns:
        ``{(resource_type, source_id): target_id}`` for matched objects.
        Unmatched objects are absent.
    """
    objects = list(objects)
    target_keys: set[ObjectKey] = set()
    by_name: dict[tuple[ResourceType, str], list[str]] = {}
    for target in target_objects:
        target_keys.add(target.key)
        if target.name:
            by_name.setdefault((target.resource_type, target.name), []).append(
                target.resource_id
            )

    matches: dict[ObjectKey, str] = {}
    claimed: set[ObjectKey] = set()
    for obj in objects:
        if obj.key in target_keys:
            matches[obj.key] = obj.resource_id
            claimed.add(obj.key)

    for obj in objects:
        if obj.key in matches or not obj.name:
            continue
        candidates = by_name.get((obj.resource_type, obj.name), [])
        if len(candidates) != 1:
            continue
        target_key = (obj.resource_type, candidates[0])
        if target_key in claimed:
            continue
        claimed.add(target_key)
        matches[obj.key] = candidates[0]
    return matches


def retarget(obj: ObjectSnapshot, matches: Mapping[ObjectKey, str]) -> ObjectSnapshot:
    """Return *obj* as it should be written to the target.

    The id becomes the matched target id.  Workflow credential references
    (and dependencies) follow credentials matched under another id.
    """
    target_id = matches.get(obj.key, obj.resource_id)
    renamed = {
        source_id: new_id
        for (rtype, source_id), new_id in matches.items()
        if rtype == ResourceType.CREDENTIAL and source_id != new_id
    }

    data = obj.data
    dependencies = obj.dependencies
    remap = obj.resource_type == ResourceType.WORKFLOW and any(
        dep in renamed for dep in dependencies
    )
    if target_id == obj.resource_id and not remap:
        return obj

    if remap:
        data = {**data, "nodes": _remap_nodes(data.get("nodes"), renamed)}
        dependencies = [renamed.get(dep, dep) for dep in dependencies]
    if "id" in data:
        data = {**data, "id": target_id}
    return obj.model_copy(
        update={
            "resource_id": target_id,
            "data": data,
            "dependencies": dependencies,
        }
    )


def _remap_nodes(nodes: Any, renamed: Mapping[str, str]) -> Any:
    if not isinstance(nodes, list):
        return nodes
    remapped = []
    for node in nodes:
        credentials = node.get("credentials") if isinstance(node, dict) else None
        if not isinstance(credentials, dict):
            remapped.append(node)
            continue
        remapped.append(
            {
                **node,
                "credentials": {
                    slot: (
                        {**ref, "id": renamed[str(ref["id"])]}
                        if isinstance(ref, dict) and str(ref.get("id")) in renamed
                        else ref
                    )
                    for slot, ref in credentials.items()
                },
            }
        )
    return remapped
