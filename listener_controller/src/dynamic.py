from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from listener_controller.src.errors import ReconcileError
from listener_controller.src.informers import (
    GroupVersionResource,
    InformerFactory,
    ResourceEventHandler,
    SharedInformer,
)
from listener_controller.src.listener import Condition
from listener_controller.src.meta import controller_of
from listener_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def get_conditions(
    obj: dict[str, Any], logger: logging.Logger | None = None
) -> tuple[list[Condition] | None, Any]:
    """Read ``status.conditions`` and ``status.url`` from an object of any kind.

    A missing or malformed ``status`` (or ``status.conditions``) is not an
    error: it is logged and ``(None, None)`` is returned. Entries inside a
    present conditions list that are not objects raise :class:`ReconcileError`.
    """
    log = logger or LOGGER
    name = (obj.get("metadata") or {}).get("name")
    status = obj.get("status")
    if not isinstance(status, dict):
        log.warning("Object %s has no readable status yet", name)
        return None, None

    raw_conditions = status.get("conditions")
    if not isinstance(raw_conditions, list):
        log.warning("Object %s has no readable status.conditions yet", name)
        return None, None

    conditions: list[Condition] = []
    for raw in raw_conditions:
        if not isinstance(raw, dict) or not raw.get("type"):
            raise ReconcileError(f"unable to decode status.conditions of {name}: {raw!r}")
        conditions.append(Condition.from_dict(raw))
    return conditions, status.get("url")


class DynamicObjectTracker:
    """Watches custom object kinds discovered at runtime, once per kind.

    Events on objects controlled by an EventListener enqueue that
    listener's key so status changes on the custom object re-trigger
    reconciliation.
    """

    def __init__(
        self,
        factory: InformerFactory,
        enqueue: Callable[[str], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self.factory = factory
        self.enqueue = enqueue
        self.logger = logger or LOGGER
        self._watched: set[GroupVersionResource] = set()
        self._lock = threading.Lock()

    def _enqueue_owner(self, obj: dict[str, Any]) -> None:
        key = controller_of(obj)
        if key is not None:
            self.enqueue(key)

    def is_watching(self, gvr: GroupVersionResource) -> bool:
        with self._lock:
            return gvr in self._watched

    def watched_informers(self) -> list[tuple[GroupVersionResource, SharedInformer]]:
        """The informers of every registered kind, for cleanup after a mode switch."""
        with self._lock:
            watched = list(self._watched)
        return [(gvr, self.factory.get(gvr)) for gvr in watched]

    def watch_on_dynamic_object(self, gvr: GroupVersionResource) -> None:
        with self._lock:
            if gvr in self._watched:
                return
            informer = self.factory.get(gvr)
            informer.add_event_handler(
                ResourceEventHandler(
                    on_add=self._enqueue_owner,
                    on_update=lambda _old, new: self._enqueue_owner(new),
                    on_delete=self._enqueue_owner,
                )
            )
            self._watched.add(gvr)
            METRICS.dynamic_watches.set(len(self._watched))
        self.logger.info("Watching custom objects of %s", gvr)
