from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Hashable
from typing import Any

from kubernetes.client import ApiException

from listener_controller.src.config import (
    FINALIZER_NAME,
    LISTENER_GROUP,
    LISTENER_PLURAL,
    LISTENER_VERSION,
    ConfigAccessor,
    ControllerConfig,
)
from listener_controller.src.dynamic import DynamicObjectTracker
from listener_controller.src.errors import NotReadyError, is_not_found
from listener_controller.src.informers import (
    GroupVersionResource,
    InformerFactory,
    ResourceEventHandler,
    SharedInformer,
    object_key,
)
from listener_controller.src.kube import (
    KubeClients,
    patch_listener_finalizers,
    patch_listener_status,
)
from listener_controller.src.listener import EventListener
from listener_controller.src.meta import controller_of
from listener_controller.src.metrics import METRICS
from listener_controller.src.reconciler import Reconciler
from listener_controller.src.workqueue import RateLimitingQueue

LISTENER_GVR = GroupVersionResource(LISTENER_GROUP, LISTENER_VERSION, LISTENER_PLURAL)
DEPLOYMENT_GVR = GroupVersionResource("apps", "v1", "deployments")
SERVICE_GVR = GroupVersionResource("", "v1", "services")


def label_selector(labels: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class EventListenerController:
    """Drives :class:`Reconciler` from informer events through a work queue.

    One :meth:`run_forever` call is one controller term: it builds fresh
    informers and a fresh queue, waits for the caches to sync, then runs
    ``config.workers`` threads until stopped. Leader election starts and
    stops terms; nothing survives from one term to the next except the
    listener objects in the cluster.
    """

    def __init__(
        self,
        clients: KubeClients,
        config: ControllerConfig,
        accessor: ConfigAccessor,
        logger: logging.Logger | None = None,
        informer_cls: type[SharedInformer] = SharedInformer,
        cache_sync_poll_seconds: float = 1.0,
    ) -> None:
        self.clients = clients
        self.config = config
        self.accessor = accessor
        self.logger = logger or logging.getLogger(__name__)
        self.informer_cls = informer_cls
        self.cache_sync_poll_seconds = cache_sync_poll_seconds

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._term_lock = threading.Lock()
        self.queue: RateLimitingQueue | None = None
        self.factory: InformerFactory | None = None
        self.reconciler: Reconciler | None = None
        self._listener_informer: SharedInformer | None = None

    def enqueue(self, key: Hashable) -> None:
        queue = self.queue
        if queue is not None:
            queue.add(key)

    def _enqueue_listener(self, obj: dict[str, Any]) -> None:
        key = object_key(obj)
        if key is not None:
            self.enqueue(key)

    def _enqueue_owner(self, obj: dict[str, Any]) -> None:
        key = controller_of(obj)
        if key is not None:
            self.enqueue(key)

    def start(self, stop_event: threading.Event) -> None:
        """Build the queue, informers and reconciler for a new term."""
        with self._term_lock:
            self.queue = RateLimitingQueue(
                base_delay=self.config.queue_base_delay_seconds,
                max_delay=self.config.queue_max_delay_seconds,
            )
            factory = InformerFactory(
                self.clients.dynamic, stop_event, informer_cls=self.informer_cls
            )
            self.factory = factory

        selector = label_selector(self.config.static_labels)
        listeners = factory.get(LISTENER_GVR)
        deployments = factory.get(DEPLOYMENT_GVR, selector)
        services = factory.get(SERVICE_GVR, selector)

        listeners.add_event_handler(
            ResourceEventHandler(
                on_add=self._enqueue_listener,
                on_update=lambda _old, new: self._enqueue_listener(new),
            )
        )
        owner_handler = ResourceEventHandler(
            on_add=self._enqueue_owner,
            on_update=lambda _old, new: self._enqueue_owner(new),
            on_delete=self._enqueue_owner,
        )
        deployments.add_event_handler(owner_handler)
        services.add_event_handler(owner_handler)

        self._listener_informer = listeners
        self.reconciler = Reconciler(
            core_api=self.clients.core,
            apps_api=self.clients.apps,
            dynamic_client=self.clients.dynamic,
            config=self.config,
            accessor=self.accessor,
            listener_lister=listeners.lister(),
            deployment_lister=deployments.lister(),
            service_lister=services.lister(),
            tracker=DynamicObjectTracker(factory, self.enqueue, logger=self.logger),
            logger=self.logger,
        )

    def _patch_finalizers(self, listener: EventListener, finalizers: list[str]) -> None:
        patch_listener_finalizers(
            self.clients.custom,
            listener.namespace,
            listener.name,
            finalizers,
            listener.resource_version,
            group=LISTENER_GROUP,
            version=LISTENER_VERSION,
            plural=LISTENER_PLURAL,
        )

    def _patch_status(self, listener: EventListener, status: dict[str, Any]) -> None:
        try:
            patch_listener_status(
                self.clients.custom,
                listener.namespace,
                listener.name,
                status,
                group=LISTENER_GROUP,
                version=LISTENER_VERSION,
                plural=LISTENER_PLURAL,
            )
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("EventListener %s disappeared before status update", listener.key)
                return
            raise

    def process_key(self, key: str) -> None:
        """Reconcile one ``namespace/name`` key; raise to request a retry."""
        if self.reconciler is None or self._listener_informer is None:
            raise RuntimeError("controller has not been started")
        namespace, _, name = key.partition("/")
        try:
            cached = self._listener_informer.lister().get(namespace, name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug("EventListener %s no longer exists", key)
                return
            raise

        raw = copy.deepcopy(cached)
        listener = EventListener.from_dict(raw)

        if listener.being_deleted:
            if FINALIZER_NAME not in listener.finalizers:
                return
            self.reconciler.finalize_kind(listener)
            self._patch_finalizers(
                listener, [f for f in listener.finalizers if f != FINALIZER_NAME]
            )
            self.logger.info("Finalized EventListener %s", key)
            return

        if FINALIZER_NAME not in listener.finalizers:
            self._patch_finalizers(listener, [*listener.finalizers, FINALIZER_NAME])

        before = copy.deepcopy(raw.get("status") or {})
        try:
            self.reconciler.reconcile_kind(listener)
        finally:
            after = listener.status.to_dict()
            if after != before:
                self._patch_status(listener, after)

    def _worker(self, queue: RateLimitingQueue) -> None:
        while True:
            key, shutdown = queue.get()
            if shutdown:
                return
            if key is None:
                continue
            started = time.monotonic()
            try:
                self.process_key(str(key))
            except NotReadyError as exc:
                METRICS.reconcile_total.labels(result="not_ready").inc()
                self.logger.info("Requeueing %s: %s", key, exc)
                queue.add_rate_limited(key)
            except Exception:
                METRICS.reconcile_total.labels(result="error").inc()
                self.logger.exception("Reconcile of %s failed; requeueing", key)
                queue.add_rate_limited(key)
            else:
                METRICS.reconcile_total.labels(result="success").inc()
                queue.forget(key)
            finally:
                METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
                queue.done(key)

    def request_stop(self) -> None:
        """Stop the current term from another thread."""
        self._external_stop.set()
        with self._term_lock:
            queue = self.queue
            factory = self.factory
        if queue is not None:
            queue.shutdown()
        if factory is not None:
            factory.shutdown(join_timeout=0)

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        informer_stop = threading.Event()
        self.start(informer_stop)
        assert self.queue is not None and self.factory is not None
        queue = self.queue
        factory = self.factory

        workers: list[threading.Thread] = []
        try:
            while not self._should_stop(stop):
                if factory.wait_for_cache_sync(timeout=self.cache_sync_poll_seconds):
                    break
            if self._should_stop(stop):
                return

            self.logger.info(
                "Caches synced; starting %d EventListener workers", self.config.workers
            )
            for index in range(self.config.workers):
                thread = threading.Thread(
                    target=self._worker, args=(queue,), name=f"worker-{index}", daemon=True
                )
                thread.start()
                workers.append(thread)
            self.ready.set()

            while not self._should_stop(stop):
                stop.wait(timeout=self.cache_sync_poll_seconds)
        finally:
            self.ready.clear()
            queue.shutdown()
            factory.shutdown()
            for thread in workers:
                thread.join(timeout=30)
            self.logger.info("EventListener workers stopped")


def build_controller_from_env(
    clients: KubeClients, config: ControllerConfig, accessor: ConfigAccessor
) -> EventListenerController:
    """Construct the controller for a loaded :class:`ControllerConfig`."""
    return EventListenerController(clients=clients, config=config, accessor=accessor)
