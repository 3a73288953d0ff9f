"""Idempotent create-or-update of derived objects."""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from kubernetes.utils.quantity import parse_quantity

from profile_manager.core.models import ResourceKind, kind_of
from profile_manager.errors import AlreadyOwnedError, NotFoundError
from profile_manager.providers.k8s_store import K8sStore

# Server-populated metadata we never compare on.
_VOLATILE_METADATA = ("resourceVersion", "generation", "managedFields", "creationTimestamp", "uid", "selfLink")


class OperationResult(str, Enum):
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"
    STOP = "stop"  # not an error: ends the convergence cycle cleanly


def new_object(kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"name": name}
    if kind.namespaced and namespace:
        metadata["namespace"] = namespace
    return {"apiVersion": kind.api_version, "kind": kind.kind, "metadata": metadata}


def add_label(obj: Dict[str, Any], key: str, value: str) -> None:
    md = obj.setdefault("metadata", {})
    labels = md.get("labels") or {}
    labels[key] = value
    md["labels"] = labels


def add_annotation(obj: Dict[str, Any], key: str, value: str) -> None:
    md = obj.setdefault("metadata", {})
    annotations = md.get("annotations") or {}
    annotations[key] = value
    md["annotations"] = annotations


def has_label(obj: Dict[str, Any], key: str) -> bool:
    return key in ((obj.get("metadata") or {}).get("labels") or {})


def controller_ref(owner: Dict[str, Any]) -> Dict[str, Any]:
    md = owner.get("metadata") or {}
    ref: Dict[str, Any] = {
        "apiVersion": owner.get("apiVersion"),
        "kind": owner.get("kind"),
        "name": md.get("name"),
        "controller": True,
        "blockOwnerDeletion": True,
    }
    if md.get("uid"):
        ref["uid"] = md.get("uid")
    return ref


def get_controller_ref(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("controller"):
            return ref
    return None


def _same_owner(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    if a.get("kind") != b.get("kind") or a.get("name") != b.get("name"):
        return False
    if (a.get("apiVersion") or "").split("/")[0] != (b.get("apiVersion") or "").split("/")[0]:
        return False
    # uid is only comparable when both sides carry one.
    if a.get("uid") and b.get("uid"):
        return a.get("uid") == b.get("uid")
    return True


def is_controlled_by(obj: Dict[str, Any], owner: Dict[str, Any]) -> bool:
    ref = get_controller_ref(obj)
    return ref is not None and _same_owner(ref, controller_ref(owner))


def set_controller_reference(obj: Dict[str, Any], owner: Dict[str, Any]) -> None:
    """
    Make `owner` the controller of `obj` (used for cascading deletion).

    Non-controller owner references are kept. Raises AlreadyOwnedError if a different
    controller is already recorded.
    """
    want = controller_ref(owner)
    md = obj.setdefault("metadata", {})
    refs = list(md.get("ownerReferences") or [])
    existing = get_controller_ref(obj)
    if existing is not None and not _same_owner(existing, want):
        raise AlreadyOwnedError(
            f"{obj.get('kind')} {md.get('name')!r} is already controlled by "
            f"{existing.get('kind')} {existing.get('name')!r}"
        )
    refs = [r for r in refs if not (r.get("controller") and _same_owner(r, want))]
    refs.append(want)
    md["ownerReferences"] = refs


def keep_equal_quantities(desired: Dict[str, Any], current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Return `desired` with each quantity swapped for the stored spelling when both parse to
    the same value ("0.5" vs "500m"). The API server canonicalizes quantities, so a
    textual diff would rewrite the object on every pass.
    """
    out = dict(desired)
    for key, value in desired.items():
        stored = (current or {}).get(key)
        if stored is None or stored == value:
            continue
        try:
            same = parse_quantity(stored) == parse_quantity(value)
        except ValueError:
            continue
        if same:
            out[key] = stored
    return out


def _comparable(obj: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(obj)
    md = out.get("metadata") or {}
    for key in _VOLATILE_METADATA:
        md.pop(key, None)
    out.pop("status", None)
    return out


def create_or_update(
    store: K8sStore,
    obj: Dict[str, Any],
    mutate: Callable[[Dict[str, Any]], None],
) -> Tuple[OperationResult, Dict[str, Any]]:
    """
    Read `obj` by name; create it if absent, otherwise apply `mutate` and write it back.

    The write is a single conditional replace carrying the resourceVersion we read, so a
    concurrent writer surfaces as ConflictError (retried by the scheduler) instead of a
    lost update. Nothing is written when `mutate` leaves the object unchanged.
    """
    kind = kind_of(obj)
    md = obj.get("metadata") or {}
    try:
        current = store.get(kind, md.get("name"), md.get("namespace"))
    except NotFoundError:
        desired = copy.deepcopy(obj)
        mutate(desired)
        return OperationResult.CREATED, store.create(desired)

    desired = copy.deepcopy(current)
    mutate(desired)
    if _comparable(desired) == _comparable(current):
        return OperationResult.UNCHANGED, current
    return OperationResult.UPDATED, store.replace(desired)
