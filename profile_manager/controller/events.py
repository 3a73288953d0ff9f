"""Event → work-key mapping for the controller runner."""

from __future__ import annotations

from typing import Any, Dict, List, NamedTuple, Optional

from profile_manager.controller.upsert import get_controller_ref
from profile_manager.core.models import CONTRIBUTOR, PROFILE, ResourceKind


class WorkKey(NamedTuple):
    kind: str  # PROFILE.kind or CONTRIBUTOR.kind
    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}:{self.namespace}/{self.name}"
        return f"{self.kind}:{self.name}"


def _md(manifest: Dict[str, Any]) -> Dict[str, Any]:
    return manifest.get("metadata") or {}


def profile_key_for_contributor(manifest: Dict[str, Any]) -> Optional[WorkKey]:
    """
    A Contributor change re-converges the Profile that owns its namespace (the roster
    lives in Profile status). Profile name == namespace.
    """
    namespace = _md(manifest).get("namespace")
    if not namespace:
        return None
    return WorkKey(PROFILE.kind, namespace)


def owner_key(manifest: Dict[str, Any], owner_kind: ResourceKind) -> Optional[WorkKey]:
    """
    Map an event on a derived object to its controller owner, if the controller is of
    `owner_kind`. Profiles are cluster-scoped; Contributors share the object's namespace.
    """
    ref = get_controller_ref(manifest)
    if ref is None or ref.get("kind") != owner_kind.kind:
        return None
    if (ref.get("apiVersion") or "").split("/")[0] != owner_kind.api_version.split("/")[0]:
        return None
    namespace = _md(manifest).get("namespace") if owner_kind.namespaced else None
    return WorkKey(owner_kind.kind, ref.get("name") or "", namespace)


def keys_for_event(kind: ResourceKind, manifest: Dict[str, Any]) -> List[WorkKey]:
    """All work keys an event on an object of `kind` should enqueue."""
    md = _md(manifest)
    if kind == PROFILE:
        return [WorkKey(PROFILE.kind, md.get("name") or "")]
    if kind == CONTRIBUTOR:
        keys = [WorkKey(CONTRIBUTOR.kind, md.get("name") or "", md.get("namespace"))]
        pk = profile_key_for_contributor(manifest)
        if pk is not None:
            keys.append(pk)
        return keys
    out: List[WorkKey] = []
    for owner_kind in (PROFILE, CONTRIBUTOR):
        k = owner_key(manifest, owner_kind)
        if k is not None:
            out.append(k)
    return out
