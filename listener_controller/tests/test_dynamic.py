from __future__ import annotations

from typing import Any

import pytest

from listener_controller.src.dynamic import DynamicObjectTracker, get_conditions
from listener_controller.src.errors import ReconcileError
from listener_controller.src.informers import GroupVersionResource, ObjectStore, ResourceEventHandler

KSVC = GroupVersionResource("serving.knative.dev", "v1", "services")


class FakeInformer:
    def __init__(self) -> None:
        self.store = ObjectStore()
        self.handlers: list[ResourceEventHandler] = []

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self.handlers.append(handler)


class FakeFactory:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.requested: list[GroupVersionResource] = []
        self.informer = FakeInformer()

    def get(self, gvr: GroupVersionResource, label_selector: str | None = None) -> FakeInformer:
        self.requested.append(gvr)
        if self.fail:
            raise RuntimeError("discovery failed")
        return self.informer


def owned_object(owner: str = "my-el") -> dict[str, Any]:
    return {
        "metadata": {
            "name": "el-my-el",
            "namespace": "ns1",
            "ownerReferences": [
                {
                    "apiVersion": "triggers.tekton.dev/v1beta1",
                    "kind": "EventListener",
                    "name": owner,
                    "controller": True,
                }
            ],
        }
    }


def test_get_conditions_reads_conditions_and_url() -> None:
    obj = {
        "metadata": {"name": "el-my-el"},
        "status": {
            "conditions": [{"type": "Ready", "status": "True", "reason": "Done"}],
            "url": "http://el-my-el.ns1.example.com",
        },
    }

    conditions, url = get_conditions(obj)

    assert conditions is not None
    assert [(c.type, c.status, c.reason) for c in conditions] == [("Ready", "True", "Done")]
    assert url == "http://el-my-el.ns1.example.com"


@pytest.mark.parametrize(
    "obj",
    [
        {"metadata": {"name": "x"}},
        {"metadata": {"name": "x"}, "status": "pending"},
        {"metadata": {"name": "x"}, "status": {"observedGeneration": 1}},
        {"metadata": {"name": "x"}, "status": {"conditions": "Ready"}},
    ],
)
def test_get_conditions_without_status_reports_nothing(obj: dict[str, Any]) -> None:
    assert get_conditions(obj) == (None, None)


def test_get_conditions_rejects_malformed_entries() -> None:
    with pytest.raises(ReconcileError):
        get_conditions({"metadata": {"name": "x"}, "status": {"conditions": ["Ready"]}})


def test_watch_on_dynamic_object_registers_once_per_kind() -> None:
    factory = FakeFactory()
    tracker = DynamicObjectTracker(factory, enqueue=lambda key: None)  # type: ignore[arg-type]
    other = GroupVersionResource("example.dev", "v1", "widgets")

    tracker.watch_on_dynamic_object(KSVC)
    tracker.watch_on_dynamic_object(KSVC)
    tracker.watch_on_dynamic_object(other)

    assert factory.requested == [KSVC, other]
    assert len(factory.informer.handlers) == 2
    assert tracker.is_watching(KSVC)
    assert tracker.is_watching(other)


def test_failed_registration_is_retried() -> None:
    factory = FakeFactory(fail=True)
    tracker = DynamicObjectTracker(factory, enqueue=lambda key: None)  # type: ignore[arg-type]

    with pytest.raises(RuntimeError):
        tracker.watch_on_dynamic_object(KSVC)
    assert not tracker.is_watching(KSVC)

    factory.fail = False
    tracker.watch_on_dynamic_object(KSVC)
    assert tracker.is_watching(KSVC)


def test_handler_enqueues_owning_listener_only() -> None:
    factory = FakeFactory()
    queued: list[str] = []
    tracker = DynamicObjectTracker(factory, enqueue=queued.append)  # type: ignore[arg-type]
    tracker.watch_on_dynamic_object(KSVC)
    (handler,) = factory.informer.handlers

    assert handler.on_add is not None
    assert handler.on_update is not None
    assert handler.on_delete is not None
    handler.on_add(owned_object())
    handler.on_update(owned_object(), owned_object("other-el"))
    handler.on_delete({"metadata": {"name": "unowned", "namespace": "ns1"}})

    assert queued == ["ns1/my-el", "ns1/other-el"]


def test_watched_informers_lists_registered_kinds_only() -> None:
    factory = FakeFactory()
    tracker = DynamicObjectTracker(factory, enqueue=lambda key: None)  # type: ignore[arg-type]
    assert tracker.watched_informers() == []

    tracker.watch_on_dynamic_object(KSVC)
    factory.informer.store.put(owned_object())

    [(gvr, informer)] = tracker.watched_informers()
    assert gvr == KSVC
    assert informer.store.list("ns1") == [owned_object()]
