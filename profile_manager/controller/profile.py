"""
Profile convergence.

Per Profile (cluster-scoped, name == tenant namespace):
1. recompute the contributor roster into status (always, first)
2. namespace (with the adoption safety check)
3. owner Contributor (owner kind User only)
4. resource quota
5. control-plane AuthorizationPolicy (Istio feature only)
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from profile_manager.config import ManagerConfig
from profile_manager.controller.engine import Reconciler, ReconcileOutcome, Step, nop_step, run_steps
from profile_manager.controller.upsert import (
    OperationResult,
    add_annotation,
    add_label,
    create_or_update,
    has_label,
    is_controlled_by,
    keep_equal_quantities,
    new_object,
    set_controller_reference,
)
from profile_manager.core.identity import (
    ANNOTATION_OWNER,
    LABEL_CONTRIBUTOR_ROLE,
    LABEL_OWNER_ID,
    LABEL_PART_OF,
    PART_OF_PROFILE,
    ROLE_ADMIN,
    identity_hash,
)
from profile_manager.core.models import (
    AUTHORIZATION_POLICY,
    CONTRIBUTOR,
    NAMESPACE,
    PROFILE,
    PROFILE_FAILED,
    PROFILE_SUCCEED,
    RESOURCE_QUOTA,
    ContributorRole,
    Profile,
    ProfileCondition,
)
from profile_manager.errors import NotFoundError, ProfileManagerError, ReconcileError
from profile_manager.providers.k8s_store import K8sStore

logger = logging.getLogger(__name__)

STEP_CONTRIBUTORS = "contributors"
STEP_NAMESPACE = "namespace"
STEP_OWNER_CONTRIBUTOR = "owner contributor"
STEP_RESOURCE_QUOTA = "resource quota"
STEP_AUTHORIZATION_POLICY = "authorization policy"

RESOURCE_QUOTA_NAME = "kf-resource-quota"
AUTHORIZATION_POLICY_NAME = "control-plane-access"
CONDITION_READY = "Ready"

LABEL_ISTIO_INJECTION = "istio-injection"
LABEL_PIPELINES_ENABLED = "pipelines.kubeflow.org/enabled"

PRINCIPAL_NOTEBOOK_CONTROLLER = "cluster.local/ns/kubeflow/sa/notebook-controller-service-account"

# Knative activator/controller probes must reach these on every workload.
_PROBE_PATHS = ["/healthz", "/metrics", "/wait-for-drain"]


def build_namespace_labels(config: ManagerConfig) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    if config.enable_istio:
        labels[LABEL_ISTIO_INJECTION] = "true"
    if config.enable_pipelines:
        labels[LABEL_PIPELINES_ENABLED] = "true"
    labels.update(config.namespace_labels or {})
    return labels


def control_plane_policy_spec() -> Dict[str, Any]:
    return {
        "action": "ALLOW",
        "rules": [
            {"to": [{"operation": {"paths": list(_PROBE_PATHS)}}]},
            {
                # notebook-controller needs the kernels API of notebook servers
                "from": [{"source": {"principals": [PRINCIPAL_NOTEBOOK_CONTROLLER]}}],
                "to": [{"operation": {"methods": ["GET"], "paths": ["*/api/kernels"]}}],
            },
        ],
    }


class ProfileReconciler(Reconciler[Profile]):
    name = "profile"

    def __init__(self, store: K8sStore, config: ManagerConfig, *, steps: Optional[List[Step[Profile]]] = None) -> None:
        self.store = store
        self.config = config
        self.namespace_labels = build_namespace_labels(config)
        super().__init__(steps)

    def build_steps(self) -> List[Step[Profile]]:
        return [
            Step(STEP_NAMESPACE, self.reconcile_namespace),
            Step(STEP_OWNER_CONTRIBUTOR, self.reconcile_owner_contributor),
            Step(STEP_RESOURCE_QUOTA, self.reconcile_resource_quota),
            (
                Step(STEP_AUTHORIZATION_POLICY, self.reconcile_authorization_policy)
                if self.config.enable_istio
                else nop_step(STEP_AUTHORIZATION_POLICY)
            ),
        ]

    def load(self, name: str, namespace: Optional[str] = None) -> Profile:
        return Profile.from_manifest(self.store.get(PROFILE, name))

    def converge(self, profile: Profile) -> ReconcileOutcome:
        # Roster freshness is decoupled from whether the rest of the cycle succeeds.
        try:
            profile = self.sync_contributors(profile)
        except Exception as e:
            raise ReconcileError(STEP_CONTRIBUTORS, e) from e

        try:
            outcome = run_steps(profile, self.steps)
        except ReconcileError as e:
            # Error text carries request details; keep the condition stable across retries.
            logger.warning("profile %s: %s", profile.name, str(e))
            self.record_ready_condition(profile, PROFILE_FAILED, f"failed to reconcile {e.step}")
            raise
        if not outcome.stopped:
            self.record_ready_condition(profile, PROFILE_SUCCEED, "")
        return outcome

    def sync_contributors(self, profile: Profile) -> Profile:
        """
        Write the sorted, de-duplicated names of all Contributors in the tenant namespace
        into `status.contributors`.
        """
        items = self.store.list(CONTRIBUTOR, namespace=profile.name)
        names = sorted({(i.get("metadata") or {}).get("name") for i in items} - {None, ""})
        if [c.name for c in profile.status.contributors] == names:
            return profile
        updated = self.store.patch_status(
            PROFILE,
            profile.name,
            {"contributors": [{"name": n} for n in names]},
            resource_version=profile.resource_version,
        )
        logger.debug("profile %s: contributors=%s", profile.name, names)
        return Profile.from_manifest(updated)

    def record_ready_condition(self, profile: Profile, status: str, message: str) -> None:
        """Best-effort; a failed condition write never masks the convergence result."""
        ready = ProfileCondition(type=CONDITION_READY, status=status, message=message or None)
        others = [c for c in profile.status.conditions if c.type != CONDITION_READY]
        conditions = others + [ready]
        if [c.dump() for c in profile.status.conditions] == [c.dump() for c in conditions]:
            return
        try:
            self.store.patch_status(
                PROFILE,
                profile.name,
                {"conditions": [c.dump() for c in conditions]},
                resource_version=profile.resource_version,
            )
        except ProfileManagerError as e:
            logger.warning("profile %s: failed to record %s condition: %s", profile.name, status, str(e))

    def owns_namespace(self, namespace: Dict[str, Any], profile: Profile) -> bool:
        annotations = (namespace.get("metadata") or {}).get("annotations") or {}
        if annotations.get(ANNOTATION_OWNER) == profile.spec.owner.name:
            return True
        return is_controlled_by(namespace, profile.to_manifest())

    def reconcile_namespace(self, profile: Profile) -> OperationResult:
        owner = profile.to_manifest()

        try:
            current: Optional[Dict[str, Any]] = self.store.get(NAMESPACE, profile.name)
        except NotFoundError:
            current = None

        if (
            current is not None
            and not self.config.enable_namespace_adoption
            and not self.owns_namespace(current, profile)
        ):
            logger.warning("profile %s: refusing to update namespace not owned by profile", profile.name)
            return OperationResult.STOP

        def mutate(obj: Dict[str, Any]) -> None:
            set_controller_reference(obj, owner)
            for key, value in self.namespace_labels.items():
                # Never overwrite a key someone else already set.
                if not has_label(obj, key):
                    add_label(obj, key, value)
            add_annotation(obj, ANNOTATION_OWNER, profile.spec.owner.name)

        res, _ = create_or_update(self.store, new_object(NAMESPACE, profile.name), mutate)
        return res

    def reconcile_owner_contributor(self, profile: Profile) -> OperationResult:
        if not profile.owner_is_user:
            logger.debug("profile %s: owner is not kind User, skipping owner contributor", profile.name)
            return OperationResult.UNCHANGED

        owner = profile.to_manifest()
        owner_name = profile.spec.owner.name

        def mutate(obj: Dict[str, Any]) -> None:
            set_controller_reference(obj, owner)
            add_label(obj, LABEL_OWNER_ID, identity_hash(owner_name))
            add_label(obj, LABEL_CONTRIBUTOR_ROLE, ROLE_ADMIN)
            obj["spec"] = {"name": owner_name, "role": ContributorRole.OWNER.value}

        res, _ = create_or_update(self.store, new_object(CONTRIBUTOR, profile.name, profile.name), mutate)
        logger.debug("profile %s: owner contributor %s", profile.name, res.value)
        return res

    def desired_quota_spec(self, profile: Profile) -> Dict[str, Any]:
        # Profile > configured default > empty. Empty deliberately clears old limits.
        if profile.spec.resource_quota_spec is not None:
            return copy.deepcopy(profile.spec.resource_quota_spec)
        if self.config.default_resource_quota_spec is not None:
            return copy.deepcopy(self.config.default_resource_quota_spec)
        return {}

    def reconcile_resource_quota(self, profile: Profile) -> OperationResult:
        owner = profile.to_manifest()
        spec = self.desired_quota_spec(profile)

        def mutate(obj: Dict[str, Any]) -> None:
            set_controller_reference(obj, owner)
            add_label(obj, LABEL_PART_OF, PART_OF_PROFILE)
            desired = copy.deepcopy(spec)
            current_hard = (obj.get("spec") or {}).get("hard")
            if isinstance(desired.get("hard"), dict) and isinstance(current_hard, dict):
                desired["hard"] = keep_equal_quantities(desired["hard"], current_hard)
            obj["spec"] = desired

        res, _ = create_or_update(
            self.store, new_object(RESOURCE_QUOTA, RESOURCE_QUOTA_NAME, profile.name), mutate
        )
        return res

    def reconcile_authorization_policy(self, profile: Profile) -> OperationResult:
        owner = profile.to_manifest()

        def mutate(obj: Dict[str, Any]) -> None:
            set_controller_reference(obj, owner)
            add_label(obj, LABEL_PART_OF, PART_OF_PROFILE)
            obj["spec"] = control_plane_policy_spec()

        res, _ = create_or_update(
            self.store, new_object(AUTHORIZATION_POLICY, AUTHORIZATION_POLICY_NAME, profile.name), mutate
        )
        logger.debug("profile %s: authorization policy %s", profile.name, res.value)
        return res
