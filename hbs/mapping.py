"""Translate mirrored endpoint membership into HAProxy backend servers.

Everything here is pure: no I/O, no logging, no exceptions. Missing optional
fields cause an entry to be skipped or defaulted, never an error.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .k8s_models import Endpoints, EndpointSlice
from .models import BackendServer


def resolve_address(raw_address: str, host_identifier: str | None, host_addresses: Mapping[str, str]) -> str:
    """Return the host's mapped address when known, otherwise ``raw_address`` unchanged."""
    if host_identifier:
        ip = host_addresses.get(host_identifier)
        if ip:
            return ip
    return raw_address


def select_port(found: int | None, override: int) -> int:
    """A positive override wins unconditionally; 0 when neither is known."""
    if override > 0:
        return override
    if found is not None:
        return found
    return 0


def server_name(address: str, node_name: str | None, port: int) -> str:
    identifier = node_name if node_name else address
    return f"{identifier}-{port}"


def _server(address: str, node_name: str | None, port: int, host_addresses: Mapping[str, str], send_proxy_v2: bool) -> BackendServer:
    return BackendServer(
        name=server_name(address, node_name, port),
        address=resolve_address(address, node_name, host_addresses),
        port=port,
        weight=1,
        check=True,
        send_proxy_v2=send_proxy_v2,
    )


def build_backends_from_slices(
    slices: Iterable[EndpointSlice],
    host_addresses: Mapping[str, str],
    port_override: int = 0,
    send_proxy_v2: bool = False,
) -> list[BackendServer]:
    servers: list[BackendServer] = []
    for s in slices:
        for port in s.ports:
            if port.port is None:
                continue
            for ep in s.endpoints:
                if ep.conditions.ready is False:
                    continue
                p = select_port(port.port, port_override)
                for addr in ep.addresses:
                    servers.append(_server(addr, ep.node_name, p, host_addresses, send_proxy_v2))
    return servers


def build_backends_from_endpoints(
    endpoints: Iterable[Endpoints],
    host_addresses: Mapping[str, str],
    port_override: int = 0,
    send_proxy_v2: bool = False,
) -> list[BackendServer]:
    servers: list[BackendServer] = []
    for ep in endpoints:
        for subset in ep.subsets:
            for port in subset.ports:
                p = select_port(port.port, port_override)
                # notReadyAddresses are skipped, same as ready=false in slices.
                for addr in subset.addresses:
                    if not addr.ip:
                        continue
                    servers.append(_server(addr.ip, addr.node_name, p, host_addresses, send_proxy_v2))
    return servers


def dedupe_backends(servers: Iterable[BackendServer]) -> list[BackendServer]:
    """Drop later servers whose name was already seen, keeping order.

    An endpoint can briefly show up in two slices while Kubernetes moves it.
    """
    seen: set[str] = set()
    out: list[BackendServer] = []
    for s in servers:
        if s.name in seen:
            continue
        seen.add(s.name)
        out.append(s)
    return out


def map_to_backends(
    slices: Iterable[EndpointSlice],
    endpoints: Iterable[Endpoints],
    host_addresses: Mapping[str, str] | None = None,
    port_override: int = 0,
    send_proxy_v2: bool = False,
) -> list[BackendServer]:
    """Desired backend servers for the current membership.

    EndpointSlices are authoritative; legacy Endpoints are only consulted when
    the slices yield nothing.
    """
    host_addresses = host_addresses or {}
    servers = build_backends_from_slices(slices, host_addresses, port_override, send_proxy_v2)
    if not servers:
        servers = build_backends_from_endpoints(endpoints, host_addresses, port_override, send_proxy_v2)
    return dedupe_backends(servers)
