"""Builds the long-running process from settings."""

from __future__ import annotations

import logging
from threading import Event

from .controller import Controller
from .dataplane import DataplaneClient
from .errors import ControllerError
from .health import HealthServer, create_app
from .mirror import KubernetesMirror
from .models import HealthCheckPolicy
from .settings import Settings
from .syncer import Syncer

log = logging.getLogger(__name__)


def build_client(settings: Settings, cancel: Event | None = None) -> DataplaneClient:
    return DataplaneClient(
        settings.haproxy_base_url,
        settings.haproxy_backend_name,
        username=settings.haproxy_username,
        password=settings.haproxy_password,
        token=settings.haproxy_token,
        timeout_s=settings.request_timeout_s,
        cancel=cancel,
    )


def build_syncer(settings: Settings, client: DataplaneClient) -> Syncer:
    return Syncer(
        client,
        port_override=settings.haproxy_backend_port,
        send_proxy_v2=settings.haproxy_send_proxy_v2,
        health_checks=HealthCheckPolicy(send_proxy_v2=settings.haproxy_send_proxy_v2),
    )


def build_mirror(settings: Settings) -> KubernetesMirror:
    return KubernetesMirror(
        settings.ingress_namespace,
        settings.ingress_service_name,
        kubeconfig=settings.kubeconfig_path,
    )


def run(settings: Settings, stop: Event) -> int:
    """Run until ``stop`` is set. Returns the process exit code."""
    mirror = build_mirror(settings)
    with build_client(settings, cancel=stop) as client:
        controller = Controller(
            mirror,
            build_syncer(settings, client),
            worker_count=settings.worker_count,
            resync_period_s=settings.resync_period_s,
            cache_sync_timeout_s=settings.cache_sync_timeout_s,
        )
        health = HealthServer(create_app(lambda: controller.ready), port=settings.health_port)
        health.start()
        log.info(
            "Syncing %s/%s into backend %s at %s",
            settings.ingress_namespace, settings.ingress_service_name,
            settings.haproxy_backend_name, settings.haproxy_base_url,
        )
        try:
            controller.run(stop)
        except ControllerError as e:
            log.error("Controller failed: %s", e)
            return 1
        finally:
            health.stop()
    return 0
