"""
Pytest config.

Local imports like `import profile_manager` rely on the repo root being on sys.path. In
some environments (e.g. when invoking a global `pytest` entrypoint), that doesn't happen
reliably during collection, so we pin it here.

Also provides `FakeStore`: an in-memory K8sStore with the semantics the reconcilers rely
on (resourceVersion bumps, 409s on stale writes and duplicate creates, label selectors).
"""

from __future__ import annotations

import copy
import itertools
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import pytest  # noqa: E402

from profile_manager.config import ManagerConfig, load_config  # noqa: E402
from profile_manager.core.models import ResourceKind, kind_of  # noqa: E402
from profile_manager.errors import (  # noqa: E402
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

_Key = Tuple[str, str, str, str]


class FakeStore:
    def __init__(self) -> None:
        self.objects: Dict[_Key, Dict[str, Any]] = {}
        self.writes: List[Tuple[str, str, str]] = []
        self.fail_create: Dict[str, Exception] = {}
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)

    @staticmethod
    def _key(kind: ResourceKind, name: str, namespace: Optional[str]) -> _Key:
        return (kind.api_version, kind.kind, (namespace or "") if kind.namespaced else "", name)

    def _key_of(self, manifest: Dict[str, Any]) -> _Key:
        md = manifest.get("metadata") or {}
        return self._key(kind_of(manifest), md.get("name") or "", md.get("namespace"))

    def _next_rv(self) -> str:
        return str(next(self._rv))

    def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        obj = self.objects.get(self._key(kind, name, namespace))
        if obj is None:
            raise NotFoundError(f"{kind.kind} {namespace or ''}/{name} not found")
        return copy.deepcopy(obj)

    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        out = []
        for (api_version, k, ns, _name), obj in sorted(self.objects.items()):
            if (api_version, k) != (kind.api_version, kind.kind):
                continue
            if namespace and kind.namespaced and ns != namespace:
                continue
            obj_labels = (obj.get("metadata") or {}).get("labels") or {}
            if any(obj_labels.get(lk) != lv for lk, lv in (labels or {}).items()):
                continue
            out.append(copy.deepcopy(obj))
        return out

    def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        kind = kind_of(manifest)
        if kind.kind in self.fail_create:
            raise self.fail_create[kind.kind]
        key = self._key_of(manifest)
        if key in self.objects:
            raise AlreadyExistsError(f"{kind.kind} {key[3]} already exists")
        obj = copy.deepcopy(manifest)
        md = obj.setdefault("metadata", {})
        md["uid"] = f"uid-{next(self._uid)}"
        md["resourceVersion"] = self._next_rv()
        self.objects[key] = obj
        self.writes.append(("create", kind.kind, md.get("name")))
        return copy.deepcopy(obj)

    def replace(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        key = self._key_of(manifest)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{key[1]} {key[3]} not found")
        rv = (manifest.get("metadata") or {}).get("resourceVersion")
        if rv and rv != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{key[1]} {key[3]}: stale resourceVersion {rv}")
        obj = copy.deepcopy(manifest)
        md = obj.setdefault("metadata", {})
        md["uid"] = current["metadata"]["uid"]
        md["resourceVersion"] = self._next_rv()
        # status is a subresource: replace never touches it
        obj.pop("status", None)
        if "status" in current:
            obj["status"] = copy.deepcopy(current["status"])
        self.objects[key] = obj
        self.writes.append(("replace", key[1], key[3]))
        return copy.deepcopy(obj)

    def patch_status(
        self,
        kind: ResourceKind,
        name: str,
        status: Dict[str, Any],
        *,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = self._key(kind, name, namespace)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{kind.kind} {name} not found")
        if resource_version and resource_version != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind.kind} {name}: stale resourceVersion {resource_version}")
        merged = dict(current.get("status") or {})
        merged.update(copy.deepcopy(status))
        current["status"] = merged
        current["metadata"]["resourceVersion"] = self._next_rv()
        self.writes.append(("patch_status", kind.kind, name))
        return copy.deepcopy(current)

    def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> None:
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise NotFoundError(f"{kind.kind} {name} not found")
        del self.objects[key]
        self.writes.append(("delete", kind.kind, name))

    def delete_collection(self, kind: ResourceKind, *, namespace: str, labels: Dict[str, str]) -> None:
        if not labels:
            raise ValidationError("delete_collection requires a label selector")
        for obj in self.list(kind, namespace=namespace, labels=labels):
            self.delete(kind, obj["metadata"]["name"], namespace)

    def exists(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> bool:
        return self._key(kind, name, namespace) in self.objects


def profile_manifest(
    name: str,
    owner: str,
    *,
    owner_kind: str = "User",
    quota: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"owner": {"kind": owner_kind, "name": owner}}
    if quota is not None:
        spec["resourceQuotaSpec"] = quota
    return {"apiVersion": "kubeflow.org/v1alpha1", "kind": "Profile", "metadata": {"name": name}, "spec": spec}


def contributor_manifest(
    name: str,
    namespace: str,
    user: str,
    *,
    role: str = "Contributor",
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    md: Dict[str, Any] = {"name": name, "namespace": namespace}
    if labels:
        md["labels"] = dict(labels)
    return {
        "apiVersion": "kubeflow.org/v1alpha1",
        "kind": "Contributor",
        "metadata": md,
        "spec": {"name": user, "role": role},
    }


@pytest.fixture(autouse=True)
def _clear_config_cache() -> Iterator[None]:
    load_config.cache_clear()
    yield
    load_config.cache_clear()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def config() -> ManagerConfig:
    return ManagerConfig(cluster_admins=frozenset({"admin@example.com"}))
