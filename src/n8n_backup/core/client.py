import logging
import threading
from typing import Any

import requests

from ..engine.models import (
    ObjectSnapshot,
    Profile,
    PushOutcome,
    ResourceType,
)
from ..errors import (
    PermissionDenied,
    TransientTransportError,
    TransportError,
    UnsupportedOperation,
    ValidationError,
)

logger = logging.getLogger(__name__)

# HTTP status codes that should trigger retry
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

_PAGE_LIMIT = 250

_ENDPOINTS = {
    ResourceType.WORKFLOW: "/workflows",
    ResourceType.CREDENTIAL: "/credentials",
    ResourceType.TAG: "/tags",
}

# Fields n8n accepts when creating or replacing a workflow.
_WORKFLOW_WRITE_FIELDS = ("name", "nodes", "connections", "settings", "staticData")


def workflow_dependencies(data: dict[str, Any]) -> list[str]:
    """Return the sorted credential ids referenced by a workflow's nodes."""
    ids: set[str] = set()
    for node in data.get("nodes") or []:
        if not isinstance(node, dict):
            continue
        for ref in (node.get("credentials") or {}).values():
            if isinstance(ref, dict) and ref.get("id"):
                ids.add(str(ref["id"]))
    return sorted(ids)


def to_snapshot(resource_type: ResourceType, item: dict[str, Any]) -> ObjectSnapshot:
    """Build an ``ObjectSnapshot`` from an n8n API item."""
    dependencies = (
        workflow_dependencies(item)
        if resource_type == ResourceType.WORKFLOW
        else []
    )
    return ObjectSnapshot(
        resource_type=resource_type,
        resource_id=str(item.get("id", "")),
        name=item.get("name"),
        data=item,
        dependencies=dependencies,
    )


class N8nClient:
    def __init__(self, request_timeout: float = 30.0):
        self.request_timeout = request_timeout
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = requests.Session()
        return self._thread_local.session

    def _request(
        self,
        profile: Profile,
        method: str,
        path: str,
        *,
        api: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Make an authenticated request against a profile's n8n instance.

        Raises:
            TransientTransportError: timeout, connection failure, 408/429/5xx
            ValidationError: 400/404/409/422
            PermissionDenied: 401/403
            UnsupportedOperation: 405/501
        """
        prefix = "/api/v1" if api else ""
        url = f"{profile.url.rstrip('/')}{prefix}{path}"
        headers = {
            "X-N8N-API-KEY": profile.api_key.get_secret_value(),
            "Accept": "application/json",
        }
        try:
            response = self._get_session().request(
                method,
                url,
                headers=headers,
                timeout=(10, self.request_timeout),
                **kwargs,
            )
        except requests.Timeout as exc:
            raise TransientTransportError(f"{method} {path} timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise TransientTransportError(
                f"{method} {path} connection failed: {exc}"
            ) from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        _raise_for_status(response, f"{method} {path}")
        return response

    def _list(self, profile: Profile, path: str) -> list[dict[str, Any]]:
        """Fetch every item of a paginated list endpoint."""
        items: list[dict[str, Any]] = []
        cursor = None
        while True:
            params: dict[str, Any] = {"limit": _PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            body = self._request(profile, "GET", path, params=params).json()
            if isinstance(body, list):
                return items + body
            items.extend(body.get("data", []))
            cursor = body.get("nextCursor")
            if not cursor:
                return items

    def health_check(self, profile: Profile) -> bool:
        """
        Check whether the instance answers ``/healthz``.
        """
        try:
            self._request(profile, "GET", "/healthz", api=False)
        except TransportError as exc:
            logger.warning("Health check failed for %s: %s", profile.url, exc)
            return False
        return True

    def get_platform_version(self, profile: Profile) -> str:
        """
        Discover the n8n version of a profile's instance.

        Reads ``versionCli`` from ``/rest/settings`` and falls back to the
        ``n8n-version`` response header.

        Raises:
            TransientTransportError: If the instance cannot be reached
            ValidationError: If no version could be determined
        """
        response = self._request(profile, "GET", "/rest/settings", api=False)
        try:
            body = response.json()
        except ValueError:
            body = {}
        settings = body.get("data", body) if isinstance(body, dict) else {}
        version = settings.get("versionCli") if isinstance(settings, dict) else None
        version = version or response.headers.get("n8n-version")
        if not version:
            raise ValidationError(
                f"Could not determine n8n version of {profile.url}"
            )
        return str(version)

    def fetch_objects(
        self,
        profile: Profile,
        resource_types: list[ResourceType] | None = None,
    ) -> list[ObjectSnapshot]:
        """
        Capture workflows, credentials and tags from an instance.

        Credentials are skipped with a warning when the instance's public API
        does not allow listing them.

        Returns:
            Snapshots ordered by resource type, then API order
        """
        snapshots: list[ObjectSnapshot] = []
        for resource_type, path in _ENDPOINTS.items():
            if resource_types is not None and resource_type not in resource_types:
                continue
            try:
                items = self._list(profile, path)
            except UnsupportedOperation as exc:
                logger.warning(
                    "Cannot list %ss on %s: %s", resource_type.value, profile.url, exc
                )
                continue
            snapshots.extend(to_snapshot(resource_type, item) for item in items)
            logger.info(
                "Fetched %d %s(s) from %s", len(items), resource_type.value, profile.url
            )
        return snapshots

    def push_object(
        self, profile: Profile, snapshot: ObjectSnapshot, exists: bool
    ) -> PushOutcome:
        """
        Create or update one object on an instance.

        Args:
            profile: Target profile
            snapshot: Object to write
            exists: Update in place when True, create otherwise

        Returns:
            PushOutcome.CREATED or PushOutcome.UPDATED

        Raises:
            UnsupportedOperation: Credential updates (not offered by the API)
        """
        path = _ENDPOINTS[snapshot.resource_type]
        body = _write_body(snapshot)

        if not exists:
            self._request(profile, "POST", path, json=body)
            return PushOutcome.CREATED

        if snapshot.resource_type == ResourceType.CREDENTIAL:
            raise UnsupportedOperation(
                "n8n public API does not support updating credentials"
            )
        self._request(profile, "PUT", f"{path}/{snapshot.resource_id}", json=body)
        return PushOutcome.UPDATED


def _write_body(snapshot: ObjectSnapshot) -> dict[str, Any]:
    data = snapshot.data
    if snapshot.resource_type == ResourceType.WORKFLOW:
        body = {key: data[key] for key in _WORKFLOW_WRITE_FIELDS if key in data}
        body.setdefault("connections", {})
        body.setdefault("settings", {})
        return body
    if snapshot.resource_type == ResourceType.CREDENTIAL:
        return {
            "name": data.get("name"),
            "type": data.get("type"),
            "data": data.get("data", {}),
        }
    return {"name": data.get("name")}


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        # Could be an HTTP date; fall back to computed back-off
        return None


def _raise_for_status(response: requests.Response, context: str) -> None:
    status = response.status_code
    if status < 400:
        return
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("message") if isinstance(body, dict) else None
    message = f"{context}: HTTP {status} {detail or response.reason or ''}".strip()

    if status in RETRYABLE_STATUS_CODES:
        raise TransientTransportError(
            message, status_code=status, retry_after=_retry_after(response)
        )
    if status in (401, 403):
        raise PermissionDenied(message, status_code=status)
    if status in (405, 501):
        raise UnsupportedOperation(message, status_code=status)
    raise ValidationError(message, status_code=status)
