"""HTTP transport that submits snapshots to a remote snapshot server.

The server exposes::

    POST /api/snapshots            {machine_id, machine_name, snapshot_name, data} -> {id}
    GET  /api/snapshots?machine_id -> [SnapshotMeta, ...]

and authenticates every request with an ``x-api-key`` header.
"""

from typing import Protocol

import httpx

from sysdelta.errors import TransportError
from sysdelta.log import get_logger
from sysdelta.models import Snapshot, SnapshotMeta

_log = get_logger("transport")

SNAPSHOTS_PATH = "/api/snapshots"
API_KEY_HEADER = "x-api-key"


class Transport(Protocol):
    def submit(self, snapshot: Snapshot, endpoint: str, credential: str) -> str: ...

    def list_remote(self, filter_key: str, credential: str) -> list[SnapshotMeta]: ...


class HttpTransport:
    """Delivers snapshots to a remote store over HTTP(S).

    Args:
        server_url:   Base URL of the snapshot server, used by list_remote().
        machine_id:   Identifier sent with every upload.
        machine_name: Display name sent with every upload.
        timeout:      HTTP request timeout in seconds. Defaults to 10.
        transport:    Optional httpx transport, e.g. httpx.MockTransport in tests.
    """

    def __init__(
        self,
        server_url: str = "",
        machine_id: str = "",
        machine_name: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._machine_id = machine_id
        self._machine_name = machine_name or machine_id
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def submit(self, snapshot: Snapshot, endpoint: str, credential: str) -> str:
        """POST *snapshot* to *endpoint* and return the id the server assigned.

        Args:
            endpoint:   Base URL of the server; the snapshots path is appended.
            credential: API key sent in the ``x-api-key`` header.

        Raises:
            TransportError: On a network failure or a non-2xx response.
        """
        if not endpoint or not credential:
            raise TransportError("Server URL and API key are required to upload snapshots")

        url = f"{endpoint.rstrip('/')}{SNAPSHOTS_PATH}"
        payload = {
            "machine_id": self._machine_id,
            "machine_name": self._machine_name,
            "snapshot_name": snapshot.name,
            "data": snapshot.to_dict(),
        }

        try:
            with self._client() as client:
                response = client.post(url, json=payload, headers={API_KEY_HEADER: credential})
        except httpx.TimeoutException as exc:
            _log.warning("upload_timeout", url=url, snapshot_name=snapshot.name)
            raise TransportError(f"Upload to {url} timed out") from exc
        except httpx.HTTPError as exc:
            _log.warning("upload_http_error", url=url, error=str(exc))
            raise TransportError(f"Upload to {url} failed: {exc}") from exc

        if not response.is_success:
            message = _error_message(response)
            _log.warning("upload_rejected", status_code=response.status_code, error=message)
            raise TransportError(message, status_code=response.status_code)

        try:
            snapshot_id = str(response.json()["id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError("Server response did not include a snapshot id") from exc

        _log.info("snapshot_uploaded", snapshot_name=snapshot.name, snapshot_id=snapshot_id)
        return snapshot_id

    def list_remote(self, filter_key: str, credential: str) -> list[SnapshotMeta]:
        """List snapshots stored remotely for machine *filter_key*.

        Returns an empty list when the server is not configured or the
        request fails; failures are logged.
        """
        if not self._server_url or not credential:
            return []

        url = f"{self._server_url}{SNAPSHOTS_PATH}"
        params = {"machine_id": filter_key} if filter_key else None
        try:
            with self._client() as client:
                response = client.get(url, params=params, headers={API_KEY_HEADER: credential})
            if not response.is_success:
                _log.warning("list_remote_rejected", status_code=response.status_code)
                return []
            return [SnapshotMeta.from_dict(row) for row in response.json()]
        except httpx.HTTPError as exc:
            _log.warning("list_remote_http_error", url=url, error=str(exc))
            return []
        except (ValueError, KeyError, TypeError) as exc:
            _log.warning("list_remote_bad_payload", url=url, error=str(exc))
            return []


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"
