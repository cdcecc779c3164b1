# sessionledger/daemon/client.py
from typing import Any, Dict, Optional

import httpx

from sessionledger.core.errors import InvalidStateError, LedgerError, SessionNotFoundError, StorageError


class DaemonError(LedgerError):
    """The daemon could not be reached or answered with something unusable."""


_STATUS_ERRORS = {
    404: SessionNotFoundError,
    409: InvalidStateError,
    422: ValueError,
    500: StorageError,
}


class DaemonClient:
    """
    Synchronous client for the daemon's session API.

    Maps the daemon's error statuses back onto the same exceptions the
    in-process SessionLedger raises, so callers handle both the same way.

    Example:
        with DaemonClient("http://127.0.0.1:19200") as client:
            client.open_session("tool-session-42", client="vim")
            client.start("tool-session-42", task_type="debugging")
            client.heartbeat("tool-session-42")
            seal = client.end("tool-session-42")
    """

    def __init__(self, base_url: str, timeout: float = 5.0, http_client: Optional[httpx.Client] = None):
        self.base_url = base_url
        self._http = http_client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "DaemonClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise DaemonError(f"Cannot reach daemon at {self.base_url}: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise DaemonError(f"Daemon returned invalid response (status {response.status_code})") from e

        if response.status_code >= 400:
            detail = data.get("error") or data.get("detail") or "Unknown error"
            raise _STATUS_ERRORS.get(response.status_code, DaemonError)(str(detail))
        return data

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")

    def open_session(self, external_id: Optional[str] = None, client: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "/sessions", json={"external_id": external_id, "client": client})

    def get_session(self, external_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/sessions/{external_id}")

    def start(self, external_id: str, **fields: Any) -> Dict[str, Any]:
        """fields: client, task_type, project, title, metadata"""
        return self._request("POST", f"/sessions/{external_id}/start", json=fields)

    def record_event(self, external_id: str, type: str = "milestone", data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("POST", f"/sessions/{external_id}/events", json={"type": type, "data": data or {}})

    def heartbeat(self, external_id: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("POST", f"/sessions/{external_id}/heartbeat", json={"data": data or {}})

    def end(self, external_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/sessions/{external_id}/end", json={"title": title})

    def close_session(self, external_id: str, seal: bool = False) -> Dict[str, Any]:
        return self._request("DELETE", f"/sessions/{external_id}", params={"seal": str(seal).lower()})

    def seal_active(self) -> Dict[str, Any]:
        return self._request("POST", "/api/seal-active")
