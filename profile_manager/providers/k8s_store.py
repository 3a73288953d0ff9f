"""Kubernetes-backed object store used by the reconcilers and the access API."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from profile_manager.core.models import ResourceKind, kind_of
from profile_manager.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ProfileManagerError,
    StoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_dynamic_client = None
_init_lock = threading.Lock()


@runtime_checkable
class K8sStore(Protocol):
    def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]: ...

    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]: ...

    def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]: ...

    def replace(self, manifest: Dict[str, Any]) -> Dict[str, Any]: ...

    def patch_status(
        self,
        kind: ResourceKind,
        name: str,
        status: Dict[str, Any],
        *,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> None: ...

    def delete_collection(self, kind: ResourceKind, *, namespace: str, labels: Dict[str, str]) -> None: ...


def label_selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def translate_api_error(e: Exception, *, op: str) -> ProfileManagerError:
    """
    Map a kubernetes client error onto our taxonomy.

    409 means AlreadyExists on create and a stale resourceVersion everywhere else.
    """
    if isinstance(e, ProfileManagerError):
        return e
    status = getattr(e, "status", None)
    reason = getattr(e, "reason", None) or str(e)
    if status == 404:
        return NotFoundError(reason)
    if status == 409:
        if op == "create":
            return AlreadyExistsError(reason)
        return ConflictError(reason)
    if status in (400, 422):
        return ValidationError(reason)
    return StoreError(f"{op} failed: {reason}", status=status)


def _get_dynamic_client():
    """
    Return a cached DynamicClient.

    Config loading (in-cluster, falling back to kubeconfig) and API discovery are
    expensive, so both are done once per process.
    """
    global _dynamic_client

    if _dynamic_client is not None:
        return _dynamic_client

    with _init_lock:
        if _dynamic_client is not None:
            return _dynamic_client

        from kubernetes import client, config, dynamic

        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()

        _dynamic_client = dynamic.DynamicClient(client.ApiClient())
        return _dynamic_client


class DefaultK8sStore:
    """
    K8sStore on top of `kubernetes.dynamic`.

    Every request carries `request_timeout` so a stalled API server fails the call
    instead of blocking a worker forever.
    """

    def __init__(self, *, request_timeout: float = 30.0, dynamic_client: Any = None) -> None:
        self.request_timeout = request_timeout
        self._client = dynamic_client
        self._resources: Dict[ResourceKind, Any] = {}

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _get_dynamic_client()
        return self._client

    def _resource(self, kind: ResourceKind) -> Any:
        res = self._resources.get(kind)
        if res is None:
            try:
                res = self.client.resources.get(api_version=kind.api_version, kind=kind.kind)
            except Exception as e:
                raise StoreError(f"resource {kind.api_version}/{kind.kind} not available: {e}") from e
            self._resources[kind] = res
        return res

    @staticmethod
    def _ns(kind: ResourceKind, namespace: Optional[str]) -> Optional[str]:
        return namespace if kind.namespaced else None

    def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        try:
            obj = self._resource(kind).get(
                name=name, namespace=self._ns(kind, namespace), _request_timeout=self.request_timeout
            )
        except Exception as e:
            raise translate_api_error(e, op="get") from e
        return obj.to_dict()

    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        try:
            obj = self._resource(kind).get(
                namespace=self._ns(kind, namespace),
                label_selector=label_selector(labels),
                _request_timeout=self.request_timeout,
            )
        except Exception as e:
            raise translate_api_error(e, op="list") from e
        return list(obj.to_dict().get("items") or [])

    def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        kind = kind_of(manifest)
        namespace = (manifest.get("metadata") or {}).get("namespace")
        try:
            obj = self._resource(kind).create(
                body=manifest, namespace=self._ns(kind, namespace), _request_timeout=self.request_timeout
            )
        except Exception as e:
            raise translate_api_error(e, op="create") from e
        return obj.to_dict()

    def replace(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        # The server rejects the write with 409 if metadata.resourceVersion is stale.
        kind = kind_of(manifest)
        md = manifest.get("metadata") or {}
        try:
            obj = self._resource(kind).replace(
                body=manifest,
                name=md.get("name"),
                namespace=self._ns(kind, md.get("namespace")),
                _request_timeout=self.request_timeout,
            )
        except Exception as e:
            raise translate_api_error(e, op="replace") from e
        return obj.to_dict()

    def patch_status(
        self,
        kind: ResourceKind,
        name: str,
        status: Dict[str, Any],
        *,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        try:
            obj = self._resource(kind).status.patch(
                body=body,
                name=name,
                namespace=self._ns(kind, namespace),
                content_type="application/merge-patch+json",
                _request_timeout=self.request_timeout,
            )
        except Exception as e:
            raise translate_api_error(e, op="patch_status") from e
        return obj.to_dict()

    def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> None:
        try:
            self._resource(kind).delete(
                name=name, namespace=self._ns(kind, namespace), _request_timeout=self.request_timeout
            )
        except Exception as e:
            raise translate_api_error(e, op="delete") from e

    def delete_collection(self, kind: ResourceKind, *, namespace: str, labels: Dict[str, str]) -> None:
        selector = label_selector(labels)
        if not selector:
            # An empty selector would wipe the whole namespace.
            raise ValidationError("delete_collection requires a label selector")
        try:
            self._resource(kind).delete(
                namespace=self._ns(kind, namespace),
                label_selector=selector,
                _request_timeout=self.request_timeout,
            )
        except Exception as e:
            raise translate_api_error(e, op="delete_collection") from e

    def watch(self, kind: ResourceKind, *, timeout_seconds: int = 300) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event_type, manifest) until the server closes the watch."""
        for event in self.client.watch(self._resource(kind), timeout=timeout_seconds):
            raw = event.get("raw_object")
            if not isinstance(raw, dict):
                obj = event.get("object")
                raw = obj.to_dict() if obj is not None else {}
            yield str(event.get("type") or ""), raw
