"""Request/response bodies of the HAProxy Data Plane API (v3)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .models import BackendServer, HealthCheckPolicy


def check_state(enabled: bool) -> str:
    return "enabled" if enabled else "disabled"


class ServerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    address: str
    port: int
    weight: int | None = Field(None, ge=0, le=256)
    check: str | None = None
    send_proxy_v2: str | None = Field(None, alias="send-proxy-v2")

    @classmethod
    def from_server(cls, server: BackendServer) -> "ServerPayload":
        return cls(
            name=server.name,
            address=server.address,
            port=server.port,
            weight=server.weight or None,
            check=check_state(server.check),
            # Omitted when disabled.
            send_proxy_v2=check_state(True) if server.send_proxy_v2 else None,
        )

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class BackendPayload(BaseModel):
    name: str
    check_timeout: int = Field(..., ge=0, description="Milliseconds")

    @classmethod
    def from_policy(cls, backend_name: str, policy: HealthCheckPolicy) -> "BackendPayload":
        return cls(name=backend_name, check_timeout=policy.check_timeout_ms)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    status: str | None = None
    version: int | None = None
