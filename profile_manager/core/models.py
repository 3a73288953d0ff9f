"""Canonical domain models (Profile, Contributor, Binding) and the resource kinds we manage.

Entities travel through the store as plain manifest dicts; these models are the typed
view used by the reconcilers and the access API. Unknown manifest fields are ignored
(`extra="ignore"`) because the cluster adds metadata we don't own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

GROUP = "kubeflow.org"
API_VERSION = f"{GROUP}/v1alpha1"

USER_KIND = "User"
RBAC_API_GROUP = "rbac.authorization.k8s.io"

PROFILE_SUCCEED = "Successful"
PROFILE_FAILED = "Failed"
PROFILE_UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ResourceKind:
    api_version: str
    kind: str
    namespaced: bool


PROFILE = ResourceKind(API_VERSION, "Profile", namespaced=False)
CONTRIBUTOR = ResourceKind(API_VERSION, "Contributor", namespaced=True)
NAMESPACE = ResourceKind("v1", "Namespace", namespaced=False)
SERVICE_ACCOUNT = ResourceKind("v1", "ServiceAccount", namespaced=True)
RESOURCE_QUOTA = ResourceKind("v1", "ResourceQuota", namespaced=True)
ROLE_BINDING = ResourceKind(f"{RBAC_API_GROUP}/v1", "RoleBinding", namespaced=True)
AUTHORIZATION_POLICY = ResourceKind("security.istio.io/v1beta1", "AuthorizationPolicy", namespaced=True)

ALL_KINDS = (
    PROFILE,
    CONTRIBUTOR,
    NAMESPACE,
    SERVICE_ACCOUNT,
    RESOURCE_QUOTA,
    ROLE_BINDING,
    AUTHORIZATION_POLICY,
)


def kind_of(manifest: Dict[str, Any]) -> ResourceKind:
    api_version = manifest.get("apiVersion")
    kind = manifest.get("kind")
    for k in ALL_KINDS:
        if k.api_version == api_version and k.kind == kind:
            return k
    raise ValueError(f"unsupported resource kind: {api_version}/{kind}")


class ContributorRole(str, Enum):
    OWNER = "Owner"
    CONTRIBUTOR = "Contributor"

    @classmethod
    def parse(cls, value: Any) -> Optional["ContributorRole"]:
        """Return the role for `value`, or None for anything outside the closed set."""
        for role in cls:
            if role.value == value:
                return role
        return None


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Subject(_Model):
    kind: str = ""
    name: str = ""
    api_group: Optional[str] = Field(default=None, alias="apiGroup")


class RoleRef(_Model):
    kind: str = "ClusterRole"
    name: str = ""
    api_group: Optional[str] = Field(default=None, alias="apiGroup")


class LocalObjectReference(_Model):
    name: str


class ProfileCondition(_Model):
    type: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None


class ProfileSpec(_Model):
    owner: Subject = Field(default_factory=Subject)
    resource_quota_spec: Optional[Dict[str, Any]] = Field(default=None, alias="resourceQuotaSpec")


class ProfileStatus(_Model):
    conditions: List[ProfileCondition] = Field(default_factory=list)
    contributors: List[LocalObjectReference] = Field(default_factory=list)


class Profile(_Model):
    name: str
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    spec: ProfileSpec = Field(default_factory=ProfileSpec)
    status: ProfileStatus = Field(default_factory=ProfileStatus)

    @property
    def owner_is_user(self) -> bool:
        return self.spec.owner.kind == USER_KIND

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "Profile":
        md = manifest.get("metadata") or {}
        return cls(
            name=md.get("name") or "",
            uid=md.get("uid"),
            resource_version=md.get("resourceVersion"),
            labels=dict(md.get("labels") or {}),
            annotations=dict(md.get("annotations") or {}),
            spec=ProfileSpec.model_validate(manifest.get("spec") or {}),
            status=ProfileStatus.model_validate(manifest.get("status") or {}),
        )

    def to_manifest(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": PROFILE.api_version,
            "kind": PROFILE.kind,
            "metadata": metadata,
            "spec": self.spec.dump(),
        }


class ContributorSpec(_Model):
    name: str = ""
    role: str = ""


class Contributor(_Model):
    name: str
    namespace: str
    uid: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: ContributorSpec = Field(default_factory=ContributorSpec)

    @property
    def role(self) -> Optional[ContributorRole]:
        return ContributorRole.parse(self.spec.role)

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "Contributor":
        md = manifest.get("metadata") or {}
        return cls(
            name=md.get("name") or "",
            namespace=md.get("namespace") or "",
            uid=md.get("uid"),
            labels=dict(md.get("labels") or {}),
            spec=ContributorSpec.model_validate(manifest.get("spec") or {}),
        )

    def to_manifest(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.uid:
            metadata["uid"] = self.uid
        return {
            "apiVersion": CONTRIBUTOR.api_version,
            "kind": CONTRIBUTOR.kind,
            "metadata": metadata,
            "spec": self.spec.dump(),
        }


class Binding(_Model):
    """
    Access-API transfer object: one grant/revoke request or one listing row.

    Never stored; always translated to/from Contributor entities.
    """

    user: Optional[Subject] = None
    referred_namespace: str = Field(default="", alias="referredNamespace")
    role_ref: Optional[RoleRef] = Field(default=None, alias="RoleRef")
    status: Optional[str] = None
