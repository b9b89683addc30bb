"""PocketBase REST client used as the durable version store backend."""

import logging
import threading
from typing import Any

import requests

from ..errors import PersistenceError

logger = logging.getLogger(__name__)

_PAGE_SIZE = 200


class PocketBaseClient:
    """Thin wrapper over the PocketBase REST API.

    Every record operation requires a prior successful ``authenticate()``
    call.  Failures are raised as ``PersistenceError`` naming the operation
    and collection.
    """

    def __init__(
        self,
        url: str,
        admin_email: str,
        admin_password: str,
        timeout: float = 30.0,
    ):
        self.url = url.rstrip("/")
        self.admin_email = admin_email
        self.admin_password = admin_password
        self.timeout = timeout
        self._token = ""
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = requests.Session()
        return self._thread_local.session

    def _request(
        self, method: str, path: str, context: str, **kwargs: Any
    ) -> Any:
        headers = kwargs.pop("headers", {})
        if self._token:
            headers["Authorization"] = self._token
        try:
            response = self._get_session().request(
                method,
                f"{self.url}{path}",
                headers=headers,
                timeout=(10, self.timeout),
                **kwargs,
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            message = _error_message(exc.response)
            raise PersistenceError(f"{context}: {message}") from exc
        except requests.RequestException as exc:
            raise PersistenceError(f"{context}: {exc}") from exc

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _require_auth(self) -> None:
        if not self.is_authenticated():
            raise PersistenceError(
                "Not authenticated. Call authenticate() first."
            )

    # ------------------------------------------------------------------
    # Health and authentication
    # ------------------------------------------------------------------

    def health_check(self) -> dict[str, Any]:
        """
        Check that the PocketBase server is reachable and healthy.

        Returns:
            Dict with keys: code, message, data
        """
        data = (
            self._request(
                "GET", "/api/health", "PocketBase health check failed"
            )
            or {}
        )
        return {
            "code": data.get("code", 200),
            "message": data.get("message", "OK"),
            "data": data.get("data"),
        }

    def authenticate(self) -> dict[str, Any]:
        """
        Authenticate with admin credentials.

        Tries the legacy ``/api/admins`` endpoint first and falls back to
        the ``_superusers`` collection used by newer PocketBase releases.

        Returns:
            Dict with keys: token, admin (id, email, created, updated)
        """
        body = {
            "identity": self.admin_email,
            "password": self.admin_password,
        }
        try:
            data = self._request(
                "POST",
                "/api/admins/auth-with-password",
                "PocketBase authentication failed",
                json=body,
            )
            admin = data.get("admin") or {}
        except PersistenceError:
            data = self._request(
                "POST",
                "/api/collections/_superusers/auth-with-password",
                "PocketBase authentication failed",
                json=body,
            )
            admin = data.get("record") or {}

        self._token = data.get("token", "")
        logger.info("Authenticated with PocketBase at %s", self.url)
        return {
            "token": self._token,
            "admin": {
                "id": admin.get("id"),
                "email": admin.get("email"),
                "created": admin.get("created"),
                "updated": admin.get("updated"),
            },
        }

    def is_authenticated(self) -> bool:
        return bool(self._token)

    def get_token(self) -> str:
        return self._token

    def logout(self) -> None:
        self._token = ""

    # ------------------------------------------------------------------
    # Collections and records
    # ------------------------------------------------------------------

    def list_collections(self) -> list[dict[str, Any]]:
        self._require_auth()
        data = self._request(
            "GET",
            "/api/collections",
            "Failed to list collections",
            params={"perPage": _PAGE_SIZE},
        )
        return data.get("items", [])

    def create_record(
        self, collection: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        self._require_auth()
        return self._request(
            "POST",
            f"/api/collections/{collection}/records",
            f"Failed to create record in {collection}",
            json=data,
        )

    def get_record(self, collection: str, record_id: str) -> dict[str, Any]:
        self._require_auth()
        return self._request(
            "GET",
            f"/api/collections/{collection}/records/{record_id}",
            f"Failed to get record {record_id} from {collection}",
        )

    def list_records(
        self,
        collection: str,
        filter: str | None = None,
        sort: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List every record of a collection, following pagination.

        Args:
            collection: Collection name
            filter: Optional PocketBase filter expression
            sort: Optional sort expression (e.g. "-created")
        """
        self._require_auth()
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            params: dict[str, Any] = {"page": page, "perPage": _PAGE_SIZE}
            if filter:
                params["filter"] = filter
            if sort:
                params["sort"] = sort
            data = self._request(
                "GET",
                f"/api/collections/{collection}/records",
                f"Failed to list records from {collection}",
                params=params,
            )
            items.extend(data.get("items", []))
            if page >= data.get("totalPages", 1):
                return items
            page += 1

    def update_record(
        self, collection: str, record_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        self._require_auth()
        return self._request(
            "PATCH",
            f"/api/collections/{collection}/records/{record_id}",
            f"Failed to update record {record_id} in {collection}",
            json=data,
        )

    def delete_record(self, collection: str, record_id: str) -> None:
        self._require_auth()
        self._request(
            "DELETE",
            f"/api/collections/{collection}/records/{record_id}",
            f"Failed to delete record {record_id} from {collection}",
        )


def _error_message(response: requests.Response | None) -> str:
    if response is None:
        return "Unknown error"
    try:
        body = response.json()
    except ValueError:
        body = None
    message = body.get("message") if isinstance(body, dict) else None
    return f"HTTP {response.status_code}: {message or response.reason}"
