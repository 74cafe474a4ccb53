from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from .dataplane import Client
from .errors import SyncError
from .k8s_models import Endpoints, EndpointSlice
from .mapping import map_to_backends
from .models import BackendServer, HealthCheckPolicy

log = logging.getLogger(__name__)

STAGE_BEGIN = "begin"
STAGE_BACKENDS = "apply backends"
STAGE_HEALTH = "apply health checks"
STAGE_COMMIT = "commit"


class Syncer:
    """Pushes the desired backend servers to HAProxy in one transaction.

    Either every step commits, or the transaction is aborted. A failed abort
    is logged and never replaces the error that caused it.
    """

    def __init__(
        self,
        client: Client,
        port_override: int = 0,
        send_proxy_v2: bool = False,
        health_checks: HealthCheckPolicy | None = None,
    ):
        self.client = client
        self.port_override = port_override
        self.send_proxy_v2 = send_proxy_v2
        self.health_checks = health_checks or HealthCheckPolicy(send_proxy_v2=send_proxy_v2)

    def desired_backends(
        self,
        slices: Sequence[EndpointSlice],
        endpoints: Sequence[Endpoints],
        host_addresses: Mapping[str, str] | None = None,
    ) -> list[BackendServer]:
        return map_to_backends(slices, endpoints, host_addresses, self.port_override, self.send_proxy_v2)

    def sync(
        self,
        slices: Sequence[EndpointSlice],
        endpoints: Sequence[Endpoints],
        host_addresses: Mapping[str, str] | None = None,
    ) -> list[BackendServer]:
        backends = self.desired_backends(slices, endpoints, host_addresses)
        self.sync_backends(backends, self.health_checks)
        return backends

    def sync_backends(self, backends: Sequence[BackendServer], health: HealthCheckPolicy) -> None:
        try:
            txn = self.client.begin()
        except Exception as e:
            raise SyncError(STAGE_BEGIN, e) from e

        stage = STAGE_BACKENDS
        try:
            self.client.apply_servers(txn, backends)
            stage = STAGE_HEALTH
            self.client.apply_health_check_policy(txn, health)
            stage = STAGE_COMMIT
            self.client.commit(txn)
        except Exception as e:
            self._abort(txn)
            raise SyncError(stage, e) from e

        log.info("Committed transaction %s with %d backend servers", txn, len(backends))

    def _abort(self, txn: str) -> None:
        try:
            self.client.abort(txn)
        except Exception as e:
            log.warning("Aborting transaction %s failed: %s: %s", txn, type(e).__name__, e)
