from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from listener_controller.src.config import (
    ConfigAccessor,
    ControllerConfig,
    default_logging_config_map_data,
    default_observability_config_map_data,
)
from listener_controller.src.custom import guess_resource, make_custom_object
from listener_controller.src.deployment import make_deployment
from listener_controller.src.dynamic import DynamicObjectTracker, get_conditions
from listener_controller.src.errors import NotReadyError, is_not_found, wrap_error
from listener_controller.src.informers import Lister
from listener_controller.src.kube import resource_version, to_dict
from listener_controller.src.listener import (
    CONDITION_DEPLOYMENT_EXISTS,
    CONDITION_READY,
    CONDITION_SERVICE_EXISTS,
    EventListener,
    set_defaults,
)
from listener_controller.src.meta import (
    controller_of,
    fill_unset,
    is_derivative,
    prune_none,
    union_maps,
)
from listener_controller.src.metrics import METRICS
from listener_controller.src.service import listener_hostname, make_service

LOGGER = logging.getLogger(__name__)


def _keep_live_annotations(template: Any, live: Any) -> Any:
    """Pod-template annotations added by others (``kubectl rollout restart``) survive."""
    if not isinstance(template, dict) or not isinstance(live, dict):
        return template
    desired = (template.get("metadata") or {}).get("annotations")
    existing = (live.get("metadata") or {}).get("annotations")
    if desired and existing:
        template["metadata"]["annotations"] = union_maps(existing, desired)
    return template


def _owned_spec(desired: Any, existing: Any) -> Any:
    """The whole spec is controller-owned; unset desired fields keep live values."""
    spec = prune_none(fill_unset(desired, existing))
    if isinstance(spec, dict) and isinstance(existing, dict):
        _keep_live_annotations(spec.get("template"), existing.get("template"))
    return spec


def _owned_template(desired: Any, existing: Any) -> Any:
    """Only ``spec.template`` is controller-owned; other spec fields belong to the operator."""
    spec = copy.deepcopy(existing) if isinstance(existing, dict) else {}
    live = spec.get("template")
    template = prune_none(fill_unset(desired.get("template") or {}, live))
    spec["template"] = _keep_live_annotations(template, live)
    return spec


class Reconciler:
    """Converges the children of one EventListener toward its spec.

    Every method is safe to re-run from any partial-completion point:
    reads come from the informer caches, missing children are created,
    drifted children are updated from a deep copy, and errors propagate
    to the caller so the work queue retries with backoff. The only
    shared mutable state is the :class:`DynamicObjectTracker` registry.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        dynamic_client: Any,
        config: ControllerConfig,
        accessor: ConfigAccessor,
        listener_lister: Lister,
        deployment_lister: Lister,
        service_lister: Lister,
        tracker: DynamicObjectTracker,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.dynamic_client = dynamic_client
        self.config = config
        self.accessor = accessor
        self.listener_lister = listener_lister
        self.deployment_lister = deployment_lister
        self.service_lister = service_lister
        self.tracker = tracker
        self.logger = logger or LOGGER
        self._exclusion = config.exclusion_regex()

    def reconcile_kind(self, listener: EventListener) -> None:
        """Run one reconcile pass, mutating ``listener.status`` in place."""
        status = listener.status
        status.initialize_conditions(custom_object=listener.is_custom_object)
        status.generated_resource_name = listener.generated_name
        status.observed_generation = listener.generation

        set_defaults(listener, self.config.default_service_account)

        if listener.is_custom_object:
            self.reconcile_custom_object(listener)
            return

        deployment_error = self._capture(self.reconcile_deployment, listener)
        service_error = self._capture(self.reconcile_service, listener)
        cleanup_error = self._capture(self._delete_custom_objects, listener)
        error = wrap_error(wrap_error(service_error, deployment_error), cleanup_error)
        if error is not None:
            raise error
        status.set_ready_condition()

    @staticmethod
    def _capture(step: Callable[[EventListener], None], listener: EventListener) -> Exception | None:
        try:
            step(listener)
        except Exception as exc:
            return exc
        return None

    def finalize_kind(self, listener: EventListener) -> None:
        """Delete the namespace's logging ConfigMap when its last listener goes away."""
        remaining = self.listener_lister.list(listener.namespace)
        if len(remaining) != 1:
            self.logger.info(
                "Not deleting logging config map since %d EventListeners are present "
                "in namespace %s",
                len(remaining),
                listener.namespace,
            )
            return

        last_namespace = (remaining[0].get("metadata") or {}).get("namespace")
        if last_namespace == self.config.system_namespace:
            self.logger.info(
                "Not deleting logging config map since EventListener is in the same "
                "namespace (%s) as the controller",
                last_namespace,
            )
            return

        try:
            self.core_api.delete_namespaced_config_map(
                name=self.config.logging_config_map, namespace=listener.namespace
            )
        except ApiException as exc:
            if is_not_found(exc):
                return
            raise
        METRICS.child_writes_total.labels(kind="ConfigMap", verb="delete").inc()
        self.logger.info(
            "Deleted logging config map since last EventListener in namespace %s was deleted",
            listener.namespace,
        )

    def _ensure_config_map(self, namespace: str, name: str, data: dict[str, str]) -> None:
        try:
            self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
            return
        except ApiException as exc:
            if not is_not_found(exc):
                self.logger.error("Error retrieving ConfigMap %s/%s: %s", namespace, name, exc.reason)
                raise

        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": namespace},
            "data": data,
        }
        try:
            self.core_api.create_namespaced_config_map(namespace=namespace, body=body)
        except ApiException as exc:
            if exc.status == 409:
                return
            self.logger.error(
                "Failed to create ConfigMap %s/%s: %s. EventListener won't start.",
                namespace,
                name,
                exc.reason,
            )
            raise
        METRICS.child_writes_total.labels(kind="ConfigMap", verb="create").inc()
        self.logger.info("Created ConfigMap %s in namespace %s", name, namespace)

    def _update_if_changed(
        self,
        existing: dict[str, Any],
        desired: dict[str, Any],
        kind: str,
        update: Callable[[dict[str, Any]], Any],
        merge_spec: Callable[[Any, Any], Any] | None = None,
    ) -> dict[str, Any] | None:
        """Update *existing* from *desired* when they differ; return the stored object.

        Labels are fully owned, annotations only ever gain keys, and the
        spec is compared with :func:`is_derivative`. Nothing is written
        when all three already match.
        """
        existing_meta = existing.get("metadata") or {}
        desired_meta = desired.get("metadata") or {}
        labels = dict(desired_meta.get("labels") or {})
        annotations = union_maps(existing_meta.get("annotations"), desired_meta.get("annotations"))
        owner_references = desired_meta.get("ownerReferences")

        if (
            (existing_meta.get("labels") or {}) == labels
            and (existing_meta.get("annotations") or {}) == annotations
            and is_derivative(owner_references, existing_meta.get("ownerReferences"))
            and is_derivative(desired.get("spec"), existing.get("spec"))
        ):
            return None

        body = copy.deepcopy(existing)
        body.setdefault("metadata", {})
        body["metadata"]["labels"] = labels
        body["metadata"]["annotations"] = annotations
        if owner_references is not None:
            body["metadata"]["ownerReferences"] = copy.deepcopy(owner_references)
        merge = merge_spec or _owned_spec
        body["spec"] = merge(desired.get("spec") or {}, existing.get("spec"))

        stored = to_dict(update(body))
        METRICS.child_writes_total.labels(kind=kind, verb="update").inc()
        if resource_version(stored) != existing_meta.get("resourceVersion"):
            self.logger.info(
                "Updated EventListener %s %s in namespace %s",
                kind,
                existing_meta.get("name"),
                existing_meta.get("namespace"),
            )
        return stored

    def reconcile_service(self, listener: EventListener) -> None:
        desired = make_service(listener, self.config, self._exclusion)
        name = listener.generated_name
        namespace = listener.namespace
        status = listener.status

        try:
            existing = self.service_lister.get(namespace, name)
        except ApiException as exc:
            if not is_not_found(exc):
                self.logger.error("Error retrieving Service %s/%s: %s", namespace, name, exc.reason)
                raise
            try:
                self.core_api.create_namespaced_service(namespace=namespace, body=prune_none(desired))
            except ApiException as create_exc:
                status.set_exists_condition(CONDITION_SERVICE_EXISTS, create_exc)
                self.logger.error("Error creating EventListener Service %s/%s", namespace, name)
                raise
            METRICS.child_writes_total.labels(kind="Service", verb="create").inc()
            status.set_exists_condition(CONDITION_SERVICE_EXISTS, None)
            status.address = listener_hostname(listener, self.config)
            self.logger.info("Created EventListener Service %s in namespace %s", name, namespace)
            return

        existing_spec = existing.get("spec") or {}
        desired_spec = desired["spec"]
        desired_spec["clusterIP"] = existing_spec.get("clusterIP")
        if desired_spec.get("type") == "NodePort" and existing_spec.get("type") == "NodePort":
            existing_ports = existing_spec.get("ports") or []
            for index, port in enumerate(desired_spec["ports"]):
                if index < len(existing_ports) and existing_ports[index].get("nodePort"):
                    port["nodePort"] = existing_ports[index]["nodePort"]

        status.set_exists_condition(CONDITION_SERVICE_EXISTS, None)
        status.address = listener_hostname(listener, self.config)
        self._update_if_changed(
            existing,
            desired,
            "Service",
            lambda body: self.core_api.replace_namespaced_service(
                name=name, namespace=namespace, body=body
            ),
        )

    def reconcile_deployment(self, listener: EventListener) -> None:
        namespace = listener.namespace
        self._ensure_config_map(
            namespace, self.config.logging_config_map, default_logging_config_map_data()
        )
        self._ensure_config_map(
            namespace, self.config.observability_config_map, default_observability_config_map_data()
        )

        desired = make_deployment(listener, self.accessor, self.config, self._exclusion)
        name = listener.generated_name
        status = listener.status

        try:
            existing = self.deployment_lister.get(namespace, name)
        except ApiException as exc:
            if not is_not_found(exc):
                self.logger.error("Error retrieving Deployment %s/%s: %s", namespace, name, exc.reason)
                raise
            try:
                created = to_dict(
                    self.apps_api.create_namespaced_deployment(
                        namespace=namespace, body=prune_none(desired)
                    )
                )
            except ApiException as create_exc:
                status.set_exists_condition(CONDITION_DEPLOYMENT_EXISTS, create_exc)
                self.logger.error("Error creating EventListener Deployment %s/%s", namespace, name)
                raise
            METRICS.child_writes_total.labels(kind="Deployment", verb="create").inc()
            status.set_deployment_conditions((created.get("status") or {}).get("conditions"))
            status.set_exists_condition(CONDITION_DEPLOYMENT_EXISTS, None)
            self.logger.info("Created EventListener Deployment %s in namespace %s", name, namespace)
            return

        status.set_deployment_conditions((existing.get("status") or {}).get("conditions"))
        status.set_exists_condition(CONDITION_DEPLOYMENT_EXISTS, None)

        if desired["spec"]["replicas"] is None:
            desired["spec"]["replicas"] = (existing.get("spec") or {}).get("replicas")

        self._update_if_changed(
            existing,
            desired,
            "Deployment",
            lambda body: self.apps_api.replace_namespaced_deployment(
                name=name, namespace=namespace, body=body
            ),
        )

    def _delete_workload(self, listener: EventListener) -> None:
        """Remove a Deployment/Service left behind by a switch to custom-object mode."""
        namespace = listener.namespace
        name = listener.generated_name
        for kind, lister, delete in (
            ("Deployment", self.deployment_lister, self.apps_api.delete_namespaced_deployment),
            ("Service", self.service_lister, self.core_api.delete_namespaced_service),
        ):
            try:
                lister.get(namespace, name)
            except ApiException as exc:
                if is_not_found(exc):
                    continue
                raise
            try:
                delete(name=name, namespace=namespace)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
                continue
            METRICS.child_writes_total.labels(kind=kind, verb="delete").inc()
            self.logger.info(
                "Deleted EventListener %s %s in namespace %s after switch to custom object",
                kind,
                name,
                namespace,
            )

    def _delete_custom_objects(self, listener: EventListener) -> None:
        """Remove custom objects left behind by a switch back to workload mode."""
        namespace = listener.namespace
        for gvr, informer in self.tracker.watched_informers():
            owned = [
                obj
                for obj in informer.store.list(namespace)
                if controller_of(obj) == listener.key
            ]
            if not owned:
                continue
            resource = self.dynamic_client.resources.get(
                api_version=gvr.api_version, name=gvr.resource
            )
            for obj in owned:
                name = obj["metadata"]["name"]
                try:
                    resource.delete(name=name, namespace=namespace)
                except ApiException as exc:
                    if not is_not_found(exc):
                        raise
                    continue
                METRICS.child_writes_total.labels(kind=gvr.resource, verb="delete").inc()
                self.logger.info(
                    "Deleted EventListener %s %s in namespace %s after switch to workload",
                    gvr.resource,
                    name,
                    namespace,
                )

    def reconcile_custom_object(self, listener: EventListener) -> None:
        namespace = listener.namespace
        self._ensure_config_map(
            namespace, self.config.logging_config_map, default_logging_config_map_data()
        )

        desired = make_custom_object(listener, self.accessor, self.config, self._exclusion)
        kind = desired["kind"]
        gvr = guess_resource(desired["apiVersion"], kind)

        try:
            self.tracker.watch_on_dynamic_object(gvr)
        except Exception:
            self.logger.exception("Failed to watch custom objects of %s", gvr)
            raise

        resource = self.dynamic_client.resources.get(api_version=gvr.api_version, kind=kind)
        name = desired["metadata"]["name"]
        try:
            existing = to_dict(resource.get(name=name, namespace=namespace))
        except ApiException as exc:
            if not is_not_found(exc):
                self.logger.error("Error retrieving %s %s/%s: %s", kind, namespace, name, exc.reason)
                raise
            resource.create(body=prune_none(desired), namespace=namespace)
            METRICS.child_writes_total.labels(kind=kind, verb="create").inc()
            self.logger.info("Created EventListener %s %s in namespace %s", kind, name, namespace)
            self._delete_workload(listener)
            return

        self._delete_workload(listener)

        stored = self._update_if_changed(
            existing,
            desired,
            kind,
            lambda body: resource.replace(body=body, namespace=namespace),
            merge_spec=_owned_template,
        )

        conditions, url = get_conditions(stored or existing, self.logger)
        if conditions is None:
            return

        ready = next((c for c in conditions if c.type == CONDITION_READY), None)
        if ready is not None and not ready.is_true():
            raise NotReadyError(name, ready.status, ready.message)

        listener.status.set_conditions_for_dynamic_objects(conditions)
        if url:
            _, separator, host = str(url).partition("//")
            listener.status.address = host if separator else str(url)
