"""Durable persistence for versions, object records, audits and profiles."""

from .base import VersionFilter, VersionStore
from .json_store import JsonVersionStore
from .pocketbase_store import PocketBaseVersionStore
from .profiles import ProfileStore

__all__ = [
    "JsonVersionStore",
    "PocketBaseVersionStore",
    "ProfileStore",
    "VersionFilter",
    "VersionStore",
]
