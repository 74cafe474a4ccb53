from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackendServer:
    """Desired state of one server slot in the HAProxy backend."""

    name: str
    address: str
    port: int
    weight: int = 1
    check: bool = True
    send_proxy_v2: bool = False


@dataclass(frozen=True)
class HealthCheckPolicy:
    interval_seconds: int = 5
    rise_count: int = 2
    fall_count: int = 2
    send_proxy_v2: bool = False

    @property
    def check_timeout_ms(self) -> int:
        return self.interval_seconds * 1000
