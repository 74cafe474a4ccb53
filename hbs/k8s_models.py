"""Membership objects mirrored from the Kubernetes API.

Only the fields the backend mapper reads are modelled. The models accept the
API's camelCase JSON (as produced by ``ApiClient.sanitize_for_serialization``)
and ignore everything else.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _K8sModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ObjectMeta(_K8sModel):
    name: str = ""
    namespace: str = ""
    resource_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class EndpointConditions(_K8sModel):
    # None means "unknown" and is treated as ready.
    ready: bool | None = None
    serving: bool | None = None
    terminating: bool | None = None


class Endpoint(_K8sModel):
    addresses: list[str] = Field(default_factory=list)
    conditions: EndpointConditions = Field(default_factory=EndpointConditions)
    node_name: str | None = None


class EndpointPort(_K8sModel):
    name: str | None = None
    port: int | None = None
    protocol: str | None = None


class EndpointSlice(_K8sModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    address_type: str = "IPv4"
    endpoints: list[Endpoint] = Field(default_factory=list)
    ports: list[EndpointPort] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name


class EndpointAddress(_K8sModel):
    ip: str = ""
    node_name: str | None = None


class EndpointSubset(_K8sModel):
    addresses: list[EndpointAddress] = Field(default_factory=list)
    not_ready_addresses: list[EndpointAddress] = Field(default_factory=list)
    ports: list[EndpointPort] = Field(default_factory=list)


class Endpoints(_K8sModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    subsets: list[EndpointSubset] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name


class NodeAddress(_K8sModel):
    type: str = ""
    address: str = ""


class NodeStatus(_K8sModel):
    addresses: list[NodeAddress] = Field(default_factory=list)


class Node(_K8sModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: NodeStatus = Field(default_factory=NodeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def internal_ip(self) -> str | None:
        for addr in self.status.addresses:
            if addr.type == "InternalIP" and addr.address:
                return addr.address
        return None
