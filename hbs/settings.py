from __future__ import annotations

import os
import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass

from .errors import ConfigError

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(raw: str) -> float:
    """Seconds from ``"30s"``, ``"1m30s"``, ``"250ms"`` or a bare number of seconds."""
    raw = raw.strip()
    try:
        seconds = float(raw)
    except ValueError:
        if not raw or _DURATION_RE.sub("", raw):
            raise ValueError(f"invalid duration {raw!r}") from None
        seconds = sum(float(n) * _DURATION_UNITS[unit] for n, unit in _DURATION_RE.findall(raw))
    # NaN fails both comparisons; longer waits overflow Event.wait.
    if not 0 <= seconds <= threading.TIMEOUT_MAX:
        raise ValueError(f"duration {raw!r} out of range")
    return seconds


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int | None = None) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"invalid {name} value {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigError(f"invalid {name} value {raw!r}: must be >= {minimum}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"invalid {name} value {raw!r}") from e
    if not 0 < value <= threading.TIMEOUT_MAX:
        raise ConfigError(f"invalid {name} value {raw!r}: must be positive and finite")
    return value


def _env_duration(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise ConfigError(f"invalid {name} value {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    # HAProxy Data Plane API
    haproxy_base_url: str = "http://haproxy:5555"
    haproxy_username: str | None = None
    haproxy_password: str | None = None
    haproxy_token: str | None = None
    haproxy_backend_name: str = "ingress-nginx"
    # 0 keeps each endpoint's own port.
    haproxy_backend_port: int = 0
    haproxy_send_proxy_v2: bool = False
    request_timeout_s: float = 10.0

    # Watched service
    ingress_namespace: str = "ingress-nginx"
    ingress_service_name: str = "ingress-nginx"
    kubeconfig_path: str | None = None

    # Controller
    worker_count: int = 2
    resync_period_s: float = 30.0
    cache_sync_timeout_s: float = 60.0

    # Process
    health_port: int = 8080
    log_level: str = "INFO"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from the environment. Raises ConfigError on bad values."""
    env = os.environ if environ is None else environ

    service_name = env.get("INGRESS_SERVICE_NAME") or Settings.ingress_service_name
    return Settings(
        haproxy_base_url=env.get("HAPROXY_DATAPLANE_URL") or Settings.haproxy_base_url,
        haproxy_username=env.get("HAPROXY_DATAPLANE_USERNAME") or None,
        haproxy_password=env.get("HAPROXY_DATAPLANE_PASSWORD") or None,
        haproxy_token=env.get("HAPROXY_DATAPLANE_TOKEN") or None,
        haproxy_backend_name=env.get("HAPROXY_BACKEND_NAME") or service_name,
        haproxy_backend_port=_env_int(env, "HAPROXY_BACKEND_PORT", 0, minimum=0),
        haproxy_send_proxy_v2=_env_bool(env, "HAPROXY_SEND_PROXY_V2", False),
        request_timeout_s=_env_float(env, "HAPROXY_REQUEST_TIMEOUT_S", Settings.request_timeout_s),
        ingress_namespace=env.get("INGRESS_NAMESPACE") or Settings.ingress_namespace,
        ingress_service_name=service_name,
        kubeconfig_path=env.get("KUBECONFIG") or None,
        worker_count=_env_int(env, "WORKER_COUNT", Settings.worker_count, minimum=1),
        resync_period_s=_env_duration(env, "RESYNC_PERIOD", Settings.resync_period_s),
        cache_sync_timeout_s=_env_float(env, "CACHE_SYNC_TIMEOUT_S", Settings.cache_sync_timeout_s),
        health_port=_env_int(env, "HEALTH_PORT", Settings.health_port, minimum=0),
        log_level=(env.get("LOG_LEVEL") or Settings.log_level).upper(),
    )
