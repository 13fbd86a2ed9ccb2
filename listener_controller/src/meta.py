from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from typing import Any

from listener_controller.src.config import LISTENER_GROUP, LISTENER_KIND
from listener_controller.src.listener import EventListener


def generate_labels(name: str, static_labels: Mapping[str, str]) -> dict[str, str]:
    """Labels every generated object carries; also used as the pod selector."""
    return {**static_labels, "eventlistener": name}


def union_maps(*maps: Mapping[str, str] | None) -> dict[str, str]:
    """Merge maps left to right; later keys win."""
    out: dict[str, str] = {}
    for item in maps:
        if item:
            out.update(item)
    return out


def filter_labels(labels: Mapping[str, str] | None, exclusion: re.Pattern[str] | None) -> dict[str, str]:
    if not labels:
        return {}
    if exclusion is None:
        return dict(labels)
    return {k: v for k, v in labels.items() if not exclusion.search(k)}


def object_meta(
    listener: EventListener,
    filtered_labels: Mapping[str, str],
    static_labels: Mapping[str, str],
) -> dict[str, Any]:
    return {
        "name": listener.generated_name,
        "namespace": listener.namespace,
        "labels": union_maps(filtered_labels, generate_labels(listener.name, static_labels)),
        "annotations": dict(listener.annotations),
        "ownerReferences": [listener.owner_reference()],
    }


def controller_of(obj: Mapping[str, Any]) -> str | None:
    """Return the ``namespace/name`` key of the EventListener controlling *obj*."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    for ref in metadata.get("ownerReferences") or []:
        if not ref.get("controller"):
            continue
        api_version = str(ref.get("apiVersion", ""))
        if ref.get("kind") == LISTENER_KIND and api_version.split("/")[0] == LISTENER_GROUP:
            if namespace and ref.get("name"):
                return f"{namespace}/{ref['name']}"
    return None


def is_derivative(desired: Any, existing: Any) -> bool:
    """Return True when *existing* already satisfies everything *desired* asks for.

    ``None`` in *desired* means "don't care" so server-populated defaults
    never count as drift. Empty collections in *desired* must be empty or
    absent in *existing*; lists compare element-wise at equal length.
    """
    if desired is None:
        return True
    if isinstance(desired, Mapping):
        if existing is None:
            return not desired
        if not isinstance(existing, Mapping):
            return False
        if not desired:
            return not existing
        return all(is_derivative(value, existing.get(key)) for key, value in desired.items())
    if isinstance(desired, list):
        if existing is None:
            return not desired
        if not isinstance(existing, list) or len(desired) != len(existing):
            return False
        return all(is_derivative(d, e) for d, e in zip(desired, existing, strict=True))
    return desired == existing


def fill_unset(desired: Any, existing: Any) -> Any:
    """Copy *desired*, taking *existing* values wherever *desired* holds ``None``.

    Only mappings are walked; lists are controller-owned and kept as-is.
    """
    if not isinstance(desired, Mapping):
        return copy.deepcopy(desired)
    current = existing if isinstance(existing, Mapping) else {}
    out: dict[str, Any] = {}
    for key, value in desired.items():
        if value is None:
            if current.get(key) is not None:
                out[key] = copy.deepcopy(current[key])
        else:
            out[key] = fill_unset(value, current.get(key))
    return out


def prune_none(obj: Any) -> Any:
    if isinstance(obj, Mapping):
        return {k: prune_none(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, list):
        return [prune_none(v) for v in obj]
    return obj
