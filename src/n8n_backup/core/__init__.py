"""Transport clients shared between the CLI and the engine."""

from .async_utils import run_sync
from .client import N8nClient
from .pocketbase import PocketBaseClient

__all__ = ["N8nClient", "PocketBaseClient", "run_sync"]
