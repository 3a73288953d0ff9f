"""
Access decisions for the management API.

Stateless per call: every operation reads the store fresh and relies on the store's
optimistic concurrency to resolve races with the reconcilers. Nothing is cached.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Set

import pydantic

from profile_manager.config import ManagerConfig
from profile_manager.core.identity import (
    LABEL_CONTRIBUTOR_ROLE,
    LABEL_OWNER_ID,
    ROLE_ADMIN,
    ROLE_EDIT,
    identity_hash,
    local_name,
)
from profile_manager.core.models import (
    CONTRIBUTOR,
    PROFILE,
    USER_KIND,
    Binding,
    Contributor,
    ContributorRole,
    ContributorSpec,
    Profile,
    ProfileSpec,
    RoleRef,
    Subject,
)
from profile_manager.errors import UnauthorizedError, ValidationError, ignore_not_found
from profile_manager.providers.k8s_store import K8sStore

logger = logging.getLogger(__name__)

# Profile name becomes a namespace name (RFC 1123 label).
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

_SEMANTIC_ROLES = {
    ContributorRole.OWNER: ROLE_ADMIN,
    ContributorRole.CONTRIBUTOR: ROLE_EDIT,
}


def parse_binding(body: Any) -> Binding:
    if not isinstance(body, dict):
        raise ValidationError("binding must be a JSON object")
    try:
        return Binding.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid binding: {e}") from e


def parse_profile(body: Any) -> Profile:
    """
    Validate a create-profile request body (`{metadata: {name, labels?, annotations?},
    spec: {owner, ...}}`).
    """
    if not isinstance(body, dict):
        raise ValidationError("profile must be a JSON object")
    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    name = str(metadata.get("name") or "").strip()
    if not name:
        raise ValidationError("metadata.name is required")
    if len(name) > 63 or not _DNS_LABEL.match(name):
        raise ValidationError(f"invalid profile name {name!r}: must be a valid namespace name")
    try:
        spec = ProfileSpec.model_validate(body.get("spec") or {})
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid profile spec: {e}") from e
    if not spec.owner.kind or not spec.owner.name:
        raise ValidationError("spec.owner.kind and spec.owner.name are required")
    try:
        return Profile(
            name=name,
            labels=metadata.get("labels") or {},
            annotations=metadata.get("annotations") or {},
            spec=spec,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid profile metadata: {e}") from e


class AccessManager:
    def __init__(self, store: K8sStore, config: ManagerConfig) -> None:
        self.store = store
        self.config = config

    def caller_identity(self, header_value: Optional[str]) -> str:
        """Strip the configured prefix (if present) from the identity header value."""
        value = header_value or ""
        prefix = self.config.userid_prefix
        if prefix and value.startswith(prefix):
            value = value[len(prefix):]
        return value

    def load_profile(self, name: str) -> Profile:
        return Profile.from_manifest(self.store.get(PROFILE, name))

    def compute_admin_set(self, namespace: str, *, profile: Optional[Profile] = None) -> Set[str]:
        """
        Static cluster admins, plus the Profile owner (kind User), plus every Owner-role
        Contributor in the namespace.
        """
        if profile is None:
            profile = self.load_profile(namespace)
        admins = set(self.config.cluster_admins)
        if profile.owner_is_user and profile.spec.owner.name:
            admins.add(profile.spec.owner.name)
        for item in self.store.list(CONTRIBUTOR, namespace=namespace):
            contributor = Contributor.from_manifest(item)
            if contributor.role == ContributorRole.OWNER and contributor.spec.name:
                admins.add(contributor.spec.name)
        return admins

    def authorize(self, caller: str, namespace: str, *, profile: Optional[Profile] = None) -> bool:
        if not caller:
            return False
        return caller in self.compute_admin_set(namespace, profile=profile)

    def _require_admin(self, caller: str, profile: Profile, action: str) -> None:
        if not self.authorize(caller, profile.name, profile=profile):
            logger.info("denied %s in %s for %r", action, profile.name, caller)
            raise UnauthorizedError(f"{caller or 'anonymous'} may not {action} in {profile.name}")

    def is_cluster_admin(self, user: str) -> bool:
        return bool(user) and user in self.config.cluster_admins

    def create_profile(self, body: Any) -> Profile:
        profile = parse_profile(body)
        created = self.store.create(profile.to_manifest())
        logger.info("created profile %s (owner=%s)", profile.name, profile.spec.owner.name)
        return Profile.from_manifest(created)

    def remove_profile(self, name: str, caller: str) -> None:
        profile = self.load_profile(name)
        self._require_admin(caller, profile, "remove profile")
        ignore_not_found(self.store.delete, PROFILE, name)
        logger.info("removed profile %s (by %s)", name, caller)

    def add_contributor(self, binding: Binding, caller: str = "") -> Contributor:
        user = binding.user
        if user is None or user.kind != USER_KIND:
            raise ValidationError("only users can be added as contributors")
        if not user.name:
            raise ValidationError("user.name is required")
        namespace = binding.referred_namespace
        if not namespace:
            raise ValidationError("referredNamespace is required")

        if self.config.require_auth_for_add_contributor:
            self._require_admin(caller, self.load_profile(namespace), "add contributor")

        contributor = Contributor(
            name=local_name(user.name),
            namespace=namespace,
            labels={
                LABEL_OWNER_ID: identity_hash(user.name),
                LABEL_CONTRIBUTOR_ROLE: ROLE_EDIT,
            },
            spec=ContributorSpec(name=user.name, role=ContributorRole.CONTRIBUTOR.value),
        )
        self.store.create(contributor.to_manifest())
        logger.info("added contributor %s to %s", user.name, namespace)
        return contributor

    def remove_contributor(self, binding: Binding, caller: str) -> None:
        user = binding.user
        if user is None or not user.name:
            raise ValidationError("user.name is required")
        namespace = binding.referred_namespace
        if not namespace:
            raise ValidationError("referredNamespace is required")

        profile = self.load_profile(namespace)
        self._require_admin(caller, profile, "remove contributor")
        self.store.delete_collection(CONTRIBUTOR, namespace=namespace, labels={LABEL_OWNER_ID: identity_hash(user.name)})
        logger.info("removed contributor %s from %s (by %s)", user.name, namespace, caller)

    def read_bindings(
        self,
        *,
        namespace: Optional[str] = None,
        user: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[Binding]:
        labels: Dict[str, str] = {}
        if user:
            labels[LABEL_OWNER_ID] = identity_hash(user)
        if role:
            labels[LABEL_CONTRIBUTOR_ROLE] = role

        bindings: List[Binding] = []
        for item in self.store.list(CONTRIBUTOR, namespace=namespace or None, labels=labels or None):
            contributor = Contributor.from_manifest(item)
            semantic = _SEMANTIC_ROLES.get(contributor.role) if contributor.role is not None else None
            if semantic is None:
                logger.debug("skipping contributor %s/%s with unknown role", contributor.namespace, contributor.name)
                continue
            bindings.append(
                Binding(
                    user=Subject(kind=USER_KIND, name=contributor.spec.name),
                    referred_namespace=contributor.namespace,
                    role_ref=RoleRef(kind="ClusterRole", name=semantic),
                )
            )
        return bindings
