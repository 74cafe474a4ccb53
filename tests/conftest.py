import os as _os
import sys

import pytest

# Ensure project root is importable when running without an install.
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from hbs.k8s_models import (  # noqa: E402
    Endpoint,
    EndpointAddress,
    EndpointConditions,
    EndpointPort,
    Endpoints,
    EndpointSlice,
    EndpointSubset,
    Node,
    NodeAddress,
    NodeStatus,
    ObjectMeta,
)


def make_slice(name, endpoints, ports=(8080,)):
    """endpoints: list of (addresses, ready, node_name) tuples."""
    return EndpointSlice(
        metadata=ObjectMeta(name=name, namespace="ingress-nginx"),
        endpoints=[
            Endpoint(addresses=list(addrs), conditions=EndpointConditions(ready=ready), node_name=node)
            for addrs, ready, node in endpoints
        ],
        ports=[EndpointPort(port=p) for p in ports],
    )


def make_endpoints(name, subsets):
    """subsets: list of (ips, ports) tuples; ips may be (ip, node_name) pairs."""
    out = []
    for ips, ports in subsets:
        addrs = [EndpointAddress(ip=i[0], node_name=i[1]) if isinstance(i, tuple) else EndpointAddress(ip=i) for i in ips]
        out.append(EndpointSubset(addresses=addrs, ports=[EndpointPort(port=p) for p in ports]))
    return Endpoints(metadata=ObjectMeta(name=name, namespace="ingress-nginx"), subsets=out)


def make_node(name, internal_ip):
    return Node(
        metadata=ObjectMeta(name=name),
        status=NodeStatus(addresses=[NodeAddress(type="InternalIP", address=internal_ip)]),
    )


@pytest.fixture
def ready_slice():
    return make_slice("ingress-nginx-abc", [(["10.0.0.1"], True, None)])
