"""Local cache of the watched service's membership objects.

``InMemoryMirror`` is the store plus change notification; ``KubernetesMirror``
fills it from list+watch loops against the Kubernetes API.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Protocol, Union

import pydantic
from kubernetes import client as k8s_client, config as k8s_config, watch as k8s_watch
from kubernetes.client.exceptions import ApiException

from .errors import ControllerError
from .k8s_models import Endpoints, EndpointSlice, Node

log = logging.getLogger(__name__)

KIND_SLICE = "EndpointSlice"
KIND_ENDPOINTS = "Endpoints"
KIND_NODE = "Node"

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

MirrorObject = Union[EndpointSlice, Endpoints, Node]
Handler = Callable[[str, MirrorObject], None]

_MODELS: dict[str, type[pydantic.BaseModel]] = {
    KIND_SLICE: EndpointSlice,
    KIND_ENDPOINTS: Endpoints,
    KIND_NODE: Node,
}


def kind_of(obj: MirrorObject) -> str:
    for kind, model in _MODELS.items():
        if isinstance(obj, model):
            return kind
    raise TypeError(f"unsupported mirror object {type(obj).__name__}")


class Mirror(Protocol):
    def list_endpoint_slices(self) -> list[EndpointSlice]: ...

    def list_endpoints(self) -> list[Endpoints]: ...

    def host_addresses(self) -> dict[str, str]: ...

    def subscribe(self, handler: Handler) -> None: ...

    def start(self, stop: Event) -> None: ...

    def wait_for_sync(self, timeout: float | None = None) -> bool: ...


class InMemoryMirror:
    """Thread-safe object store that notifies subscribers on every change.

    Handlers run synchronously on the thread that made the change and must
    not block.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._objects: dict[str, dict[str, MirrorObject]] = {kind: {} for kind in _MODELS}
        self._handlers: list[Handler] = []
        self._synced = Event()

    # -- lifecycle ---------------------------------------------------------

    def start(self, stop: Event) -> None:
        self.mark_synced()

    def mark_synced(self) -> None:
        self._synced.set()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        return self._synced.wait(timeout)

    def subscribe(self, handler: Handler) -> None:
        with self.lock:
            self._handlers.append(handler)

    # -- reads -------------------------------------------------------------

    def list_endpoint_slices(self) -> list[EndpointSlice]:
        return self._list(KIND_SLICE)  # type: ignore[return-value]

    def list_endpoints(self) -> list[Endpoints]:
        return self._list(KIND_ENDPOINTS)  # type: ignore[return-value]

    def list_nodes(self) -> list[Node]:
        return self._list(KIND_NODE)  # type: ignore[return-value]

    def host_addresses(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for node in self.list_nodes():
            ip = node.internal_ip()
            if node.name and ip:
                out[node.name] = ip
        return out

    def _list(self, kind: str) -> list[MirrorObject]:
        with self.lock:
            objs = self._objects[kind]
            # Sorted so repeated passes over unchanged state map identically.
            return [objs[name] for name in sorted(objs)]

    # -- writes ------------------------------------------------------------

    def apply(self, obj: MirrorObject) -> None:
        kind = kind_of(obj)
        with self.lock:
            store = self._objects[kind]
            prev = store.get(obj.name)
            store[obj.name] = obj
        if prev is None:
            self._notify(ADDED, obj)
        elif prev != obj:
            self._notify(MODIFIED, obj)

    def delete(self, kind: str, name: str) -> None:
        with self.lock:
            prev = self._objects[kind].pop(name, None)
        if prev is not None:
            self._notify(DELETED, prev)

    def replace(self, kind: str, objs: Iterable[MirrorObject]) -> None:
        """Swap the whole store for ``kind``, notifying only real differences."""
        fresh = {o.name: o for o in objs}
        with self.lock:
            old = self._objects[kind]
            self._objects[kind] = fresh
        for name, prev in old.items():
            if name not in fresh:
                self._notify(DELETED, prev)
        for name, obj in fresh.items():
            prev = old.get(name)
            if prev is None:
                self._notify(ADDED, obj)
            elif prev != obj:
                self._notify(MODIFIED, obj)

    def _notify(self, event_type: str, obj: MirrorObject) -> None:
        with self.lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler(event_type, obj)


@dataclass
class _Resource:
    kind: str
    list_func: Callable[..., Any]
    synced: Event = field(default_factory=Event)


class _Expired(Exception):
    """The watch's resource version is too old; a fresh list is needed."""


class KubernetesMirror(InMemoryMirror):
    """Mirrors the service's EndpointSlices and Endpoints plus all Nodes.

    One daemon thread per resource runs list, then watch from the listed
    resource version, and starts over after errors.
    """

    WATCH_TIMEOUT_S = 60
    RETRY_INTERVAL_S = 2.0

    def __init__(
        self,
        namespace: str,
        service_name: str,
        kubeconfig: str | None = None,
        api_client: Any = None,
    ):
        super().__init__()
        self.namespace = namespace
        self.service_name = service_name
        self.kubeconfig = kubeconfig
        self._api = api_client
        self._resources: list[_Resource] = []
        self._threads: list[Thread] = []

    def _load_api_client(self) -> Any:
        try:
            if self.kubeconfig:
                k8s_config.load_kube_config(config_file=self.kubeconfig)
            else:
                k8s_config.load_incluster_config()
        except (k8s_config.ConfigException, OSError) as e:
            source = self.kubeconfig or "in-cluster config"
            raise ControllerError(f"load Kubernetes config from {source}: {e}") from e
        return k8s_client.ApiClient()

    def start(self, stop: Event) -> None:
        if self._api is None:
            self._api = self._load_api_client()
        core = k8s_client.CoreV1Api(self._api)
        discovery = k8s_client.DiscoveryV1Api(self._api)
        ns, svc = self.namespace, self.service_name

        def list_slices(**kw: Any) -> Any:
            return discovery.list_namespaced_endpoint_slice(
                ns, label_selector=f"kubernetes.io/service-name={svc}", **kw
            )

        def list_endpoints(**kw: Any) -> Any:
            return core.list_namespaced_endpoints(ns, field_selector=f"metadata.name={svc}", **kw)

        def list_nodes(**kw: Any) -> Any:
            return core.list_node(**kw)

        self._resources = [
            _Resource(KIND_SLICE, list_slices),
            _Resource(KIND_ENDPOINTS, list_endpoints),
            _Resource(KIND_NODE, list_nodes),
        ]
        for res in self._resources:
            t = Thread(target=self._run, args=(res, stop), name=f"mirror-{res.kind}", daemon=True)
            t.start()
            self._threads.append(t)
        log.info("Mirroring %s/%s endpoints and cluster nodes", ns, svc)

    def _run(self, res: _Resource, stop: Event) -> None:
        while not stop.is_set():
            try:
                version = self._list_into_store(res)
                if not res.synced.is_set():
                    res.synced.set()
                    if all(r.synced.is_set() for r in self._resources):
                        self.mark_synced()
                self._watch(res, version, stop)
            except _Expired:
                log.info("%s watch expired, relisting", res.kind)
            except ApiException as e:
                if e.status == 410:
                    log.info("%s watch expired, relisting", res.kind)
                    continue
                log.warning("%s list/watch failed: HTTP %s %s", res.kind, e.status, e.reason)
                stop.wait(self.RETRY_INTERVAL_S)
            except Exception as e:
                log.warning("%s list/watch failed: %s: %s", res.kind, type(e).__name__, e)
                stop.wait(self.RETRY_INTERVAL_S)
        log.debug("%s mirror stopped", res.kind)

    def _list_into_store(self, res: _Resource) -> str | None:
        resp = res.list_func()
        objs = []
        for item in resp.items or []:
            obj = self._convert(res.kind, self._api.sanitize_for_serialization(item))
            if obj is not None:
                objs.append(obj)
        self.replace(res.kind, objs)
        return resp.metadata.resource_version if resp.metadata else None

    def _watch(self, res: _Resource, resource_version: str | None, stop: Event) -> None:
        w = k8s_watch.Watch()
        stream = w.stream(
            res.list_func,
            resource_version=resource_version,
            timeout_seconds=self.WATCH_TIMEOUT_S,
            allow_watch_bookmarks=True,
        )
        try:
            for event in stream:
                if stop.is_set():
                    break
                etype = event.get("type")
                raw = event.get("raw_object") or {}
                if etype == "BOOKMARK":
                    continue
                if etype == "ERROR":
                    if raw.get("code") == 410:
                        raise _Expired()
                    raise RuntimeError(f"watch error: {raw.get('message', raw)}")
                obj = self._convert(res.kind, raw)
                if obj is None:
                    continue
                if etype == DELETED:
                    self.delete(res.kind, obj.name)
                else:
                    self.apply(obj)
        finally:
            w.stop()

    @staticmethod
    def _convert(kind: str, data: dict) -> MirrorObject | None:
        try:
            return _MODELS[kind].model_validate(data)  # type: ignore[return-value]
        except pydantic.ValidationError as e:
            log.warning("Skipping malformed %s: %s", kind, e)
            return None
