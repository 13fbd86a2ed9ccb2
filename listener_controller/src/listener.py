from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from listener_controller.src.config import (
    GENERATED_RESOURCE_PREFIX,
    LISTENER_GROUP,
    LISTENER_KIND,
    LISTENER_VERSION,
)
from listener_controller.src.errors import InvalidListenerError

CONDITION_READY = "Ready"
CONDITION_DEPLOYMENT_EXISTS = "DeploymentExists"
CONDITION_SERVICE_EXISTS = "ServiceExists"

DEPLOYMENT_CONDITION_TYPES = ("Available", "Progressing", "ReplicaFailure")

WORKLOAD_CONDITION_TYPES = (CONDITION_DEPLOYMENT_EXISTS, CONDITION_SERVICE_EXISTS)


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class KubernetesResource:
    """Workload-mode overrides from ``spec.resources.kubernetesResource``.

    ``template`` is the pod template in wire form (``metadata``/``spec``).
    """

    replicas: int | None = None
    service_type: str | None = None
    service_port: int | None = None
    template: dict[str, Any] = field(default_factory=dict)

    @property
    def template_metadata(self) -> dict[str, Any]:
        return self.template.get("metadata") or {}

    @property
    def pod_spec(self) -> dict[str, Any]:
        return self.template.get("spec") or {}

    @property
    def containers(self) -> list[dict[str, Any]]:
        return self.pod_spec.get("containers") or []


@dataclass(frozen=True)
class WorkloadMode:
    resource: KubernetesResource = field(default_factory=KubernetesResource)


@dataclass(frozen=True)
class CustomObjectMode:
    """Custom-object mode: ``raw`` is the opaque object template."""

    raw: dict[str, Any] | str

    def decode(self) -> dict[str, Any]:
        if isinstance(self.raw, str):
            try:
                decoded = json.loads(self.raw)
            except ValueError as exc:
                raise InvalidListenerError(f"unable to decode custom resource: {exc}") from exc
        else:
            decoded = copy.deepcopy(self.raw)
        if not isinstance(decoded, dict):
            raise InvalidListenerError("custom resource must decode to an object")
        return decoded


Resources = WorkloadMode | CustomObjectMode


@dataclass
class Condition:
    type: str
    status: str = "Unknown"
    reason: str | None = None
    message: str | None = None
    severity: str | None = None
    last_transition_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", "Unknown")),
            reason=raw.get("reason"),
            message=raw.get("message"),
            severity=raw.get("severity"),
            last_transition_time=raw.get("lastTransitionTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.severity:
            out["severity"] = self.severity
        if self.last_transition_time:
            out["lastTransitionTime"] = self.last_transition_time
        if self.reason:
            out["reason"] = self.reason
        if self.message:
            out["message"] = self.message
        return out

    def is_true(self) -> bool:
        return self.status == "True"


@dataclass
class ListenerStatus:
    """Mutable status of one EventListener, written back by the controller."""

    conditions: list[Condition] = field(default_factory=list)
    address: str | None = None
    generated_resource_name: str | None = None
    observed_generation: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> ListenerStatus:
        raw = raw or {}
        address = None
        url = (raw.get("address") or {}).get("url")
        if isinstance(url, str) and url:
            address = url.split("//", 1)[1] if "//" in url else url
        return cls(
            conditions=[
                Condition.from_dict(item)
                for item in raw.get("conditions") or []
                if isinstance(item, dict)
            ],
            address=address,
            generated_resource_name=(raw.get("configuration") or {}).get("generatedName"),
            observed_generation=raw.get("observedGeneration"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "conditions": [c.to_dict() for c in sorted(self.conditions, key=lambda c: c.type)],
        }
        if self.observed_generation is not None:
            out["observedGeneration"] = self.observed_generation
        if self.address:
            out["address"] = {"url": f"http://{self.address}"}
        if self.generated_resource_name:
            out["configuration"] = {"generatedName": self.generated_resource_name}
        return out

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(self, new: Condition) -> None:
        """Upsert by type, keeping lastTransitionTime when the status did not flip."""
        existing = self.get_condition(new.type)
        if existing is not None and existing.status == new.status:
            new.last_transition_time = existing.last_transition_time or new.last_transition_time
        elif new.last_transition_time is None:
            new.last_transition_time = utc_now_rfc3339()
        self.conditions = [c for c in self.conditions if c.type != new.type]
        self.conditions.append(new)

    def remove_condition(self, condition_type: str) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type]

    def initialize_conditions(self, custom_object: bool = False) -> None:
        managed = (CONDITION_READY,) if custom_object else (CONDITION_READY, *WORKLOAD_CONDITION_TYPES)
        if custom_object:
            for condition_type in (*WORKLOAD_CONDITION_TYPES, *DEPLOYMENT_CONDITION_TYPES):
                self.remove_condition(condition_type)
        else:
            # Conditions copied from a custom object do not apply to a workload.
            allowed = {*managed, *DEPLOYMENT_CONDITION_TYPES}
            self.conditions = [c for c in self.conditions if c.type in allowed]
        for condition_type in managed:
            if self.get_condition(condition_type) is None:
                self.set_condition(Condition(type=condition_type))

    def set_exists_condition(self, condition_type: str, error: BaseException | None) -> None:
        if error is None:
            self.set_condition(
                Condition(type=condition_type, status="True", message=f"{condition_type} exists")
            )
        else:
            self.set_condition(Condition(type=condition_type, status="False", message=str(error)))

    def set_deployment_conditions(self, conditions: list[dict[str, Any]] | None) -> None:
        live = [
            Condition.from_dict(raw)
            for raw in conditions or []
            if isinstance(raw, dict) and raw.get("type") in DEPLOYMENT_CONDITION_TYPES
        ]
        live_types = {c.type for c in live}
        for condition_type in DEPLOYMENT_CONDITION_TYPES:
            if condition_type not in live_types:
                self.remove_condition(condition_type)
        for condition in live:
            self.set_condition(condition)

    def set_conditions_for_dynamic_objects(self, conditions: list[Condition]) -> None:
        for condition in conditions:
            self.set_condition(
                Condition(
                    type=condition.type,
                    status=condition.status,
                    reason=condition.reason,
                    message=condition.message,
                    severity=condition.severity,
                    last_transition_time=condition.last_transition_time,
                )
            )

    def set_ready_condition(self) -> None:
        for condition in sorted(self.conditions, key=lambda c: c.type):
            if condition.type == CONDITION_READY:
                continue
            healthy = (
                condition.status != "True"
                if condition.type == "ReplicaFailure"
                else condition.is_true()
            )
            if not healthy:
                self.set_condition(
                    Condition(
                        type=CONDITION_READY,
                        status="False",
                        message=(
                            f"Condition {condition.type} has status: {condition.status} "
                            f"with message: {condition.message or ''}"
                        ),
                    )
                )
                return
        self.set_condition(
            Condition(type=CONDITION_READY, status="True", message="EventListener is ready")
        )


@dataclass
class EventListener:
    """Typed view of an ``EventListener`` custom object.

    ``resources`` is a closed union: a listener is either in workload mode
    (Deployment + Service) or in custom-object mode, never both.
    """

    name: str
    namespace: str
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: str | None = None
    generation: int | None = None
    resource_version: str | None = None
    service_account_name: str = ""
    namespace_selector_names: list[str] = field(default_factory=list)
    trigger_group_namespace_names: list[list[str]] = field(default_factory=list)
    cloud_event_uri: str = ""
    resources: Resources = field(default_factory=WorkloadMode)
    status: ListenerStatus = field(default_factory=ListenerStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def generated_name(self) -> str:
        return f"{GENERATED_RESOURCE_PREFIX}-{self.name}"

    @property
    def kubernetes_resource(self) -> KubernetesResource | None:
        if isinstance(self.resources, WorkloadMode):
            return self.resources.resource
        return None

    @property
    def is_custom_object(self) -> bool:
        return isinstance(self.resources, CustomObjectMode)

    @property
    def being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{LISTENER_GROUP}/{LISTENER_VERSION}",
            "kind": LISTENER_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> EventListener:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise InvalidListenerError("EventListener is missing metadata.name or metadata.namespace")

        return cls(
            name=name,
            namespace=namespace,
            uid=metadata.get("uid") or "",
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            generation=metadata.get("generation"),
            resource_version=metadata.get("resourceVersion"),
            service_account_name=spec.get("serviceAccountName") or "",
            namespace_selector_names=list(
                (spec.get("namespaceSelector") or {}).get("matchNames") or []
            ),
            trigger_group_namespace_names=[
                list(
                    ((group.get("triggerSelector") or {}).get("namespaceSelector") or {}).get(
                        "matchNames"
                    )
                    or []
                )
                for group in spec.get("triggerGroups") or []
                if isinstance(group, dict)
            ],
            cloud_event_uri=spec.get("cloudEventURI") or "",
            resources=_parse_resources(spec.get("resources") or {}),
            status=ListenerStatus.from_dict(raw.get("status")),
        )


def _parse_resources(raw: dict[str, Any]) -> Resources:
    kubernetes_resource = raw.get("kubernetesResource")
    custom_resource = raw.get("customResource")
    if kubernetes_resource and custom_resource:
        raise InvalidListenerError(
            "resources.kubernetesResource and resources.customResource are mutually exclusive"
        )
    if custom_resource:
        return CustomObjectMode(raw=custom_resource)
    if not kubernetes_resource:
        return WorkloadMode()

    service_port = kubernetes_resource.get("servicePort")
    return WorkloadMode(
        resource=KubernetesResource(
            replicas=kubernetes_resource.get("replicas"),
            service_type=kubernetes_resource.get("serviceType") or None,
            service_port=int(service_port) if service_port is not None else None,
            template=copy.deepcopy((kubernetes_resource.get("spec") or {}).get("template") or {}),
        )
    )


def set_defaults(listener: EventListener, default_service_account: str) -> None:
    """Upgrade-via-defaulting for fields older API versions left empty."""
    if not listener.service_account_name and default_service_account:
        listener.service_account_name = default_service_account

    resource = listener.kubernetes_resource
    if resource is not None and resource.replicas == 0:
        listener.resources = WorkloadMode(resource=replace(resource, replicas=1))
