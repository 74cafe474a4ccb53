"""Minimal HAProxy Data Plane API (v3) client.

Only the calls needed to keep one backend's server list in sync inside a
transaction: begin, upsert server, tune backend health checks, commit, abort.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Protocol
from urllib.parse import quote

import httpx
import pydantic

from .api_models import BackendPayload, ServerPayload, TransactionResponse
from .errors import ProtocolError, TransportError, ValidationError
from .models import BackendServer, HealthCheckPolicy

log = logging.getLogger(__name__)

API_PREFIX = "/v3/services/haproxy"
MAX_ERROR_BODY = 4 << 10
DEFAULT_TIMEOUT_S = 10.0
CANCEL_POLL_S = 0.05


class Client(Protocol):
    """What the syncer needs from a control plane."""

    def begin(self) -> str: ...

    def apply_servers(self, transaction_id: str, servers: Iterable[BackendServer]) -> None: ...

    def apply_health_check_policy(self, transaction_id: str, policy: HealthCheckPolicy) -> None: ...

    def commit(self, transaction_id: str) -> None: ...

    def abort(self, transaction_id: str) -> None: ...


def decode_version(raw: bytes) -> int:
    """Parse a configuration version given either as ``N`` or ``{"version": N}``."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ProtocolError(f"unexpected version payload: {raw[:256]!r}") from e

    if isinstance(data, dict):
        data = data.get("version")
    if isinstance(data, int) and not isinstance(data, bool) and data > 0:
        return data
    raise ProtocolError(f"unexpected version payload: {raw[:256]!r}")


class DataplaneClient:
    """Talks to one HAProxy instance and manages one backend's servers.

    The underlying ``httpx.Client`` pools connections and is safe to share
    between worker threads. Bearer token auth takes precedence over basic auth.

    With a ``cancel`` event, requests run on a small pool so the calling
    thread can give up as soon as the event is set; the abandoned request
    finishes (or times out) in the background and its response is dropped.
    """

    def __init__(
        self,
        base_url: str,
        backend_name: str,
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        cancel: threading.Event | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        headers: dict[str, str] = {"Accept": "application/json"}
        auth: httpx.Auth | None = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif username or password:
            auth = httpx.BasicAuth(username or "", password or "")

        self.backend_name = backend_name
        self._cancel = cancel
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            auth=auth,
            timeout=timeout_s,
            follow_redirects=False,
            transport=transport,
        )
        self._pool: ThreadPoolExecutor | None = None
        if cancel is not None:
            self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="dataplane")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
        self._http.close()

    def __enter__(self) -> "DataplaneClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- transactions ------------------------------------------------------

    def configuration_version(self) -> int:
        resp = self._request("GET", f"{API_PREFIX}/configuration/version")
        return decode_version(resp.content)

    def begin(self) -> str:
        version = self.configuration_version()
        resp = self._request("POST", f"{API_PREFIX}/transactions", params={"version": version})
        try:
            txn = TransactionResponse.model_validate(self._json(resp))
        except pydantic.ValidationError as e:
            raise ProtocolError(f"begin transaction: malformed response: {e}", resp.status_code) from e
        if not txn.id:
            raise ProtocolError("begin transaction: empty transaction id", resp.status_code)
        log.debug("Opened transaction %s at configuration version %d", txn.id, version)
        return txn.id

    def commit(self, transaction_id: str) -> None:
        self._require_id("commit", transaction_id)
        self._request("PUT", f"{API_PREFIX}/transactions/{quote(transaction_id, safe='')}")

    def abort(self, transaction_id: str) -> None:
        self._require_id("abort", transaction_id)
        # Not cancellable: a stopping process still closes what it opened.
        self._request("DELETE", f"{API_PREFIX}/transactions/{quote(transaction_id, safe='')}", cancellable=False)

    # -- backend ------------------------------------------------------------

    def apply_server(self, transaction_id: str, server: BackendServer) -> None:
        """Replace the server in place, creating it if HAProxy does not know it yet."""
        self._require_id("apply server", transaction_id)
        payload = ServerPayload.from_server(server).to_json()
        params = {"transaction_id": transaction_id}
        servers_path = f"{self._backend_path()}/servers"
        try:
            self._request("PUT", f"{servers_path}/{quote(server.name, safe='')}", params=params, json=payload)
        except ProtocolError as e:
            if not e.not_found:
                raise
            log.debug("Server %s not found in backend %s, creating it", server.name, self.backend_name)
            self._request("POST", servers_path, params=params, json=payload)

    def apply_servers(self, transaction_id: str, servers: Iterable[BackendServer]) -> None:
        for server in servers:
            self.apply_server(transaction_id, server)

    def apply_health_check_policy(self, transaction_id: str, policy: HealthCheckPolicy) -> None:
        self._require_id("apply health checks", transaction_id)
        payload = BackendPayload.from_policy(self.backend_name, policy).model_dump()
        self._request("PUT", self._backend_path(), params={"transaction_id": transaction_id}, json=payload)

    # -- plumbing -------------------------------------------------------------

    def _backend_path(self) -> str:
        return f"{API_PREFIX}/configuration/backends/{quote(self.backend_name, safe='')}"

    @staticmethod
    def _require_id(op: str, transaction_id: str) -> None:
        if not transaction_id:
            raise ValidationError(f"{op}: empty transaction id")

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        cancellable: bool = True,
    ) -> httpx.Response:
        if cancellable and self._cancel is not None and self._cancel.is_set():
            raise TransportError(f"{method} {path}: cancelled")
        try:
            if cancellable and self._pool is not None:
                resp = self._send_cancellable(method, path, params, json)
            else:
                resp = self._http.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path}: timed out") from e
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path}: {type(e).__name__}: {e}") from e

        log.debug("%s %s -> %d", method, path, resp.status_code)
        if resp.status_code >= 300:
            body = resp.content[:MAX_ERROR_BODY].decode("utf-8", errors="replace")
            raise ProtocolError(f"{method} {path}: status {resp.status_code}: {body}", resp.status_code, body)
        return resp

    def _send_cancellable(
        self, method: str, path: str, params: dict[str, Any] | None, json: Any
    ) -> httpx.Response:
        assert self._pool is not None and self._cancel is not None
        pending = self._pool.submit(self._http.request, method, path, params=params, json=json)
        while True:
            try:
                return pending.result(timeout=CANCEL_POLL_S)
            except FutureTimeout:
                if pending.done():
                    raise  # the request itself raised TimeoutError
                if self._cancel.is_set():
                    pending.cancel()
                    log.debug("%s %s cancelled in flight", method, path)
                    raise TransportError(f"{method} {path}: cancelled") from None

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise ProtocolError(f"decode response: {e}", resp.status_code) from e
