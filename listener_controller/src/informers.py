from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from listener_controller.src.kube import to_dict
from listener_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupVersionResource:
    group: str
    version: str
    resource: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        if self.group:
            return f"{self.resource}.{self.version}.{self.group}"
        return f"{self.resource}.{self.version}"


def object_key(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        return None
    namespace = metadata.get("namespace")
    return f"{namespace}/{name}" if namespace else name


@dataclass(frozen=True)
class ResourceEventHandler:
    """Callbacks fired after the informer store has been updated."""

    on_add: Callable[[dict[str, Any]], None] | None = None
    on_update: Callable[[dict[str, Any], dict[str, Any]], None] | None = None
    on_delete: Callable[[dict[str, Any]], None] | None = None


class ObjectStore:
    """Thread-safe ``namespace/name`` keyed cache of wire-format objects.

    Objects are replaced, never mutated, so values handed out by
    :meth:`get` and :meth:`list` stay valid snapshots. Callers must
    treat them as read-only and deep-copy before changing anything.
    """

    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, obj: dict[str, Any]) -> dict[str, Any] | None:
        key = object_key(obj)
        if key is None:
            return None
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: dict[str, Any]) -> dict[str, Any] | None:
        key = object_key(obj)
        if key is None:
            return None
        with self._lock:
            return self._items.pop(key, None)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._items.get(key)

    def list(self, namespace: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._items.values())
        if namespace is None:
            return items
        return [o for o in items if (o.get("metadata") or {}).get("namespace") == namespace]

    def replace(
        self, objects: list[dict[str, Any]]
    ) -> tuple[list[dict[str, Any]], list[tuple[dict[str, Any] | None, dict[str, Any]]]]:
        """Swap in a fresh listing; return (deleted, [(old, new), ...])."""
        fresh = {key: obj for obj in objects if (key := object_key(obj)) is not None}
        with self._lock:
            previous = self._items
            self._items = fresh
        deleted = [obj for key, obj in previous.items() if key not in fresh]
        changed = [(previous.get(key), obj) for key, obj in fresh.items()]
        return deleted, changed


class Lister:
    """Cached read interface over a :class:`SharedInformer` store."""

    def __init__(self, store: ObjectStore, resource: str) -> None:
        self._store = store
        self._resource = resource

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        obj = self._store.get(f"{namespace}/{name}")
        if obj is None:
            raise ApiException(status=404, reason=f'{self._resource} "{name}" not found')
        return obj

    def list(self, namespace: str | None = None) -> list[dict[str, Any]]:
        return self._store.list(namespace)


def _resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class SharedInformer:
    """List-then-watch loop over one resource kind feeding a local cache.

    Mirrors the resilience rules of a long-running watch: the initial list
    is retried with jittered exponential backoff, ``410 Gone`` re-lists and
    resumes, ``401``/``403`` stop the informer, anything else backs off.
    """

    def __init__(
        self,
        dynamic_client: Any,
        gvr: GroupVersionResource,
        label_selector: str | None = None,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.dynamic_client = dynamic_client
        self.gvr = gvr
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or LOGGER
        self.store = ObjectStore()
        self.has_synced = threading.Event()
        self._handlers: list[ResourceEventHandler] = []
        self._handlers_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._resource: Any = None

    def lister(self) -> Lister:
        return Lister(self.store, self.gvr.resource)

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        """Register *handler* and replay the current cache to it as adds."""
        with self._handlers_lock:
            self._handlers.append(handler)
        if handler.on_add is not None:
            for obj in self.store.list():
                handler.on_add(obj)

    def request_stop(self) -> None:
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _api_resource(self) -> Any:
        if self._resource is None:
            self._resource = self.dynamic_client.resources.get(
                api_version=self.gvr.api_version, name=self.gvr.resource
            )
        return self._resource

    def _list(self) -> tuple[list[dict[str, Any]], str | None]:
        listing = to_dict(self._api_resource().get(label_selector=self.label_selector))
        items = [item for item in listing.get("items") or [] if isinstance(item, dict)]
        resource_version = (listing.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def _dispatch(self, event_type: str, old: dict[str, Any] | None, new: dict[str, Any]) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                if event_type == "DELETED":
                    if handler.on_delete is not None:
                        handler.on_delete(new)
                elif old is None:
                    if handler.on_add is not None:
                        handler.on_add(new)
                elif handler.on_update is not None:
                    handler.on_update(old, new)
            except Exception:
                self.logger.exception("Event handler failed for %s %s", self.gvr, object_key(new))

    def _sync_from_list(self, items: list[dict[str, Any]]) -> None:
        deleted, changed = self.store.replace(items)
        for obj in deleted:
            self._dispatch("DELETED", None, obj)
        for old, new in changed:
            if old is not None and _resource_version(old) == _resource_version(new):
                continue
            self._dispatch("MODIFIED" if old is not None else "ADDED", old, new)

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        if event_type == "DELETED":
            self.store.delete(obj)
            self._dispatch("DELETED", None, obj)
        elif event_type in {"ADDED", "MODIFIED"}:
            previous = self.store.put(obj)
            self._dispatch(event_type, previous, obj)

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        resource_label = str(self.gvr)

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, resource_version = self._list()
                self._sync_from_list(items)
                self.has_synced.set()
                self.logger.info(
                    "Synced %d %s; watching from resourceVersion %s",
                    len(items),
                    resource_label,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource_label,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial list of %s failed", resource_label)
                METRICS.watch_errors_total.labels(resource=resource_label).inc()
            except Exception:
                self.logger.exception("Unexpected error listing %s", resource_label)
                METRICS.watch_errors_total.labels(resource=resource_label).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource_label).inc()
                watch_stream_count += 1
                stream = self.dynamic_client.watch(
                    self._api_resource(),
                    label_selector=self.label_selector,
                    resource_version=resource_version,
                    timeout=self.watch_timeout_seconds,
                    watcher=watcher,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("raw_object")
                    if not isinstance(obj, dict):
                        continue
                    if _resource_version(obj):
                        resource_version = _resource_version(obj)
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch on %s expired, re-listing", resource_label)
                    try:
                        items, resource_version = self._list()
                        self._sync_from_list(items)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s)",
                                resource_label,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", resource_label)
                        METRICS.watch_errors_total.labels(resource=resource_label).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource_label,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=resource_label).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", resource_label)
                METRICS.watch_errors_total.labels(resource=resource_label).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", resource_label)
                METRICS.watch_errors_total.labels(resource=resource_label).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class InformerFactory:
    """Hands out one shared informer per (resource, selector) for a stop scope."""

    def __init__(
        self,
        dynamic_client: Any,
        stop_event: threading.Event,
        informer_cls: type[SharedInformer] = SharedInformer,
    ) -> None:
        self.dynamic_client = dynamic_client
        self.stop_event = stop_event
        self.informer_cls = informer_cls
        self._informers: dict[tuple[GroupVersionResource, str | None], SharedInformer] = {}
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def get(self, gvr: GroupVersionResource, label_selector: str | None = None) -> SharedInformer:
        key = (gvr, label_selector)
        with self._lock:
            informer = self._informers.get(key)
            if informer is not None:
                return informer
            informer = self.informer_cls(self.dynamic_client, gvr, label_selector=label_selector)
            self._informers[key] = informer
            thread = threading.Thread(
                target=informer.run,
                kwargs={"stop_event": self.stop_event},
                name=f"informer-{gvr.resource}",
                daemon=True,
            )
            self._threads.append(thread)
        thread.start()
        return informer

    @property
    def informers(self) -> list[SharedInformer]:
        with self._lock:
            return list(self._informers.values())

    def all_synced(self) -> bool:
        return all(informer.has_synced.is_set() for informer in self.informers)

    def wait_for_cache_sync(self, timeout: float | None = None) -> bool:
        for informer in self.informers:
            if not informer.has_synced.wait(timeout=timeout):
                return False
        return True

    def shutdown(self, join_timeout: float = 5.0) -> None:
        self.stop_event.set()
        for informer in self.informers:
            informer.request_stop()
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=join_timeout)
