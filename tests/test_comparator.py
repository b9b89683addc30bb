"""Tests for the object comparator."""

from conftest import credential, tag, workflow

from n8n_backup.engine.comparator import (
    canonicalize,
    content_hash,
    diff,
    same_content,
)
from n8n_backup.engine.models import ObjectSnapshot, ResourceType


def _obj(resource_id: str, **data) -> ObjectSnapshot:
    return ObjectSnapshot(
        resource_type=ResourceType.WORKFLOW,
        resource_id=resource_id,
        data=data,
    )


# ---------------------------------------------------------------------------
# canonicalize / same_content
# ---------------------------------------------------------------------------


class TestCanonicalize:
    def test_dict_key_order_ignored(self):
        assert same_content({"a": 1, "b": 2}, {"b": 2, "a": 1})

    def test_unordered_field_compared_as_multiset(self):
        left = {"tags": [{"id": "1"}, {"id": "2"}]}
        right = {"tags": [{"id": "2"}, {"id": "1"}]}
        assert same_content(left, right)

    def test_ordered_list_order_matters(self):
        assert not same_content({"steps": [1, 2]}, {"steps": [2, 1]})

    def test_ignore_fields_dropped_at_any_depth(self):
        left = {"name": "x", "meta": {"updatedAt": "2024-01-01"}}
        right = {"name": "x", "meta": {"updatedAt": "2025-01-01"}}
        assert not same_content(left, right)
        assert same_content(left, right, ignore_fields=frozenset({"updatedAt"}))

    def test_nested_values_canonical(self):
        value = {"b": [{"y": 1, "x": 2}], "a": None}
        assert list(canonicalize(value)) == ["a", "b"]
        assert list(canonicalize(value)["b"][0]) == ["x", "y"]

    def test_content_hash_stable(self):
        assert content_hash({"a": 1, "b": [1]}) == content_hash({"b": [1], "a": 1})
        assert content_hash({"a": 1}) != content_hash({"a": 2})


# ---------------------------------------------------------------------------
# diff
# ---------------------------------------------------------------------------


class TestDiff:
    def test_classification(self):
        base = [_obj("a", x=1), _obj("b", x=1), _obj("c", x=1)]
        current = [_obj("a", x=1), _obj("b", x=2), _obj("d", x=1)]

        result = diff(base, current)

        assert [s.resource_id for s in result.added] == ["d"]
        assert [s.resource_id for s in result.modified] == ["b"]
        assert [s.resource_id for s in result.removed] == ["c"]
        assert [s.resource_id for s in result.unchanged] == ["a"]

    def test_modified_carries_current_removed_carries_base(self):
        result = diff([_obj("a", x=1), _obj("gone", x=9)], [_obj("a", x=2)])
        assert result.modified[0].data == {"x": 2}
        assert result.removed[0].data == {"x": 9}

    def test_self_diff_is_all_unchanged(self):
        objects = [workflow("w1"), workflow("w2"), credential("c1"), tag("t1")]
        result = diff(objects, objects)
        assert result.added == []
        assert result.modified == []
        assert result.removed == []
        assert len(result.unchanged) == len(objects)
        assert not result.has_changes

    def test_order_independent(self):
        base = [_obj("a", x=1), _obj("b", x=1)]
        current = [_obj("c", x=1), _obj("b", x=2), _obj("a", x=1)]
        assert diff(base, current) == diff(list(reversed(base)), list(reversed(current)))

    def test_same_id_different_types_are_distinct(self):
        base = [workflow("1")]
        current = [workflow("1"), tag("1")]
        result = diff(base, current)
        assert [(s.resource_type, s.resource_id) for s in result.added] == [
            (ResourceType.TAG, "1")
        ]

    def test_counts(self):
        result = diff([_obj("a", x=1)], [_obj("a", x=1), _obj("b", x=1)])
        assert result.counts() == {
            "added": 1,
            "modified": 0,
            "removed": 0,
            "unchanged": 1,
        }

    def test_empty_sets(self):
        result = diff([], [])
        assert result.counts() == {
            "added": 0,
            "modified": 0,
            "removed": 0,
            "unchanged": 0,
        }
