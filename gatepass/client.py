# =======================================================================================
# gatepass/client.py - REST Client
# =======================================================================================
"""
Thin synchronous client for the gate pass API.

Usage:
    from gatepass.client import GatePassClient

    with GatePassClient("http://localhost:8000") as client:
        client.login("mentor@college.edu", "secret123")
        queue = client.passes_for_approval()
        results = client.bulk_decide([p["id"] for p in queue["passes"]], "mentor", "approve")
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .utils.exceptions import (
    ExpiredError,
    ForbiddenError,
    GatePassError,
    InvalidStateError,
    NetworkError,
    NotFoundError,
    StateConflictError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ERROR_CODES = {
    ValidationError.code: ValidationError,
    StateConflictError.code: StateConflictError,
    InvalidStateError.code: InvalidStateError,
    NotFoundError.code: NotFoundError,
    ExpiredError.code: ExpiredError,
    UnauthorizedError.code: UnauthorizedError,
    ForbiddenError.code: ForbiddenError,
}

HTTP_STATUS_ERRORS = {
    422: ValidationError,
    409: StateConflictError,
    404: NotFoundError,
    410: ExpiredError,
    401: UnauthorizedError,
    403: ForbiddenError,
}


def error_from_response(response: httpx.Response) -> GatePassError:
    """Rebuild the server's error from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = body.get("message") or body.get("detail") or response.reason_phrase or "Request failed"
    details = body.get("details") or {}
    exc_type = ERROR_CODES.get(body.get("error")) or HTTP_STATUS_ERRORS.get(response.status_code, GatePassError)

    if exc_type is ValidationError:
        return ValidationError(message, fields=details)
    return exc_type(message, details=details)


class GatePassClient:
    """Wraps the REST endpoints; raises the same error types the server uses."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.refresh_token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def __enter__(self) -> "GatePassClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, f"/api{path}", headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise NetworkError(f"Could not reach gate pass server: {e}") from e

        if response.is_error:
            raise error_from_response(response)
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    def _store_session(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.token = data["access_token"]
        self.refresh_token = data.get("refresh_token")
        self.user = data.get("user")
        return data

    def login(self, email: str, password: str) -> Dict[str, Any]:
        return self._store_session(self._request("POST", "/auth/login", json={"email": email, "password": password}))

    def register(self, **fields) -> Dict[str, Any]:
        return self._store_session(self._request("POST", "/auth/register", json=fields))

    def refresh(self) -> Dict[str, Any]:
        if not self.refresh_token:
            raise UnauthorizedError("No refresh token available")
        return self._store_session(
            self._request("POST", "/auth/refresh", json={"refresh_token": self.refresh_token})
        )

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/users/me")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    def submit_pass(self, draft: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/passes", json=draft)["data"]

    def get_pass(self, pass_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/passes/{pass_id}")["data"]

    def list_passes(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return self._request("GET", "/passes", params=params)

    def passes_for_approval(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        return self._request("GET", "/passes/for-approval", params={"page": page, "limit": limit})

    def active_passes(self) -> Dict[str, Any]:
        return self._request("GET", "/passes/active")

    def dashboard_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/passes/stats/dashboard")

    def mentor_decide(self, pass_id: int, action: str, comments: Optional[str] = None) -> Dict[str, Any]:
        body = {"action": action, "comments": comments}
        return self._request("PUT", f"/passes/{pass_id}/mentor-approve", json=body)["data"]

    def hod_decide(self, pass_id: int, action: str, comments: Optional[str] = None) -> Dict[str, Any]:
        body = {"action": action, "comments": comments}
        return self._request("PUT", f"/passes/{pass_id}/hod-approve", json=body)["data"]

    def bulk_decide(
        self, pass_ids: List[int], stage: str, action: str, comments: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Apply the same decision to several passes, one request each.

        A failure on one pass does not stop the rest; each result carries
        either the updated pass or the error code and message.
        """
        decide = {"mentor": self.mentor_decide, "hod": self.hod_decide}.get(stage)
        if decide is None:
            raise ValidationError(fields={"stage": "Stage must be mentor or hod"})

        results = []
        for pass_id in pass_ids:
            try:
                results.append({"id": pass_id, "success": True, "pass": decide(pass_id, action, comments)})
            except NetworkError:
                raise
            except GatePassError as e:
                results.append({"id": pass_id, "success": False, "error": e.code, "message": e.message})
        return results

    def cancel(self, pass_id: int) -> Dict[str, Any]:
        return self._request("PATCH", f"/passes/{pass_id}/cancel")["data"]

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------
    def verify(
        self,
        token: str,
        action: str = "exit",
        security_code: Optional[str] = None,
        commit: bool = False,
    ) -> Dict[str, Any]:
        body = {"token": token, "action": action, "security_code": security_code, "commit": commit}
        return self._request("POST", "/passes/verify", json=body)

    def checkout(self, pass_id: int) -> Dict[str, Any]:
        return self._request("PATCH", f"/passes/{pass_id}/checkout")["data"]

    def checkin(self, pass_id: int) -> Dict[str, Any]:
        return self._request("PATCH", f"/passes/{pass_id}/checkin")["data"]

    def get_qr(self, pass_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/passes/{pass_id}/qr")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def notifications(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> Dict[str, Any]:
        params = {"page": page, "limit": limit, "unread_only": unread_only}
        return self._request("GET", "/notifications", params=params)

    def unread_count(self) -> int:
        return self._request("GET", "/notifications/unread-count")["count"]

    def mark_read(self, notification_id: int) -> Dict[str, Any]:
        return self._request("PATCH", f"/notifications/{notification_id}/read")

    def mark_all_read(self) -> int:
        return self._request("PATCH", "/notifications/mark-all-read")["count"]

    def delete_notification(self, notification_id: int) -> None:
        self._request("DELETE", f"/notifications/{notification_id}")
