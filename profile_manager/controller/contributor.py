"""
Contributor convergence: per Contributor, a ServiceAccount, a RoleBinding to the
contributor ClusterRole, and (Istio feature) public/private AuthorizationPolicies.

All derived objects share the Contributor's name/namespace (policies add a suffix) and
are controller-owned by it, so deleting the Contributor cascades.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from profile_manager.config import ManagerConfig
from profile_manager.controller.engine import Reconciler, ReconcileOutcome, Step, nop_step
from profile_manager.controller.upsert import (
    OperationResult,
    add_annotation,
    add_label,
    create_or_update,
    new_object,
    set_controller_reference,
)
from profile_manager.core.identity import (
    ANNOTATION_OWNER,
    ANNOTATION_OWNER_NAME,
    ANNOTATION_ROLE,
    LABEL_OWNER_ID,
    LABEL_VISIBILITY,
    VISIBILITY_PUBLIC,
    identity_hash,
)
from profile_manager.core.models import (
    AUTHORIZATION_POLICY,
    CONTRIBUTOR,
    RBAC_API_GROUP,
    ROLE_BINDING,
    SERVICE_ACCOUNT,
    USER_KIND,
    Contributor,
    ContributorRole,
)
from profile_manager.errors import ReconcileError, ValidationError
from profile_manager.providers.k8s_store import K8sStore

logger = logging.getLogger(__name__)

STEP_ROLE = "role"
STEP_SERVICE_ACCOUNT = "service account"
STEP_ROLE_BINDING = "role binding"
STEP_AUTHORIZATION_POLICY = "authorization policy"

PRINCIPAL_INGRESS_GATEWAY = "cluster.local/ns/istio-system/sa/istio-ingressgateway-service-account"


def public_policy_name(contributor: Contributor) -> str:
    return f"{contributor.name}-public"


def private_policy_name(contributor: Contributor) -> str:
    return f"{contributor.name}-private"


def service_account_principal(contributor: Contributor) -> str:
    return f"cluster.local/ns/{contributor.namespace}/sa/{contributor.name}"


class ContributorReconciler(Reconciler[Contributor]):
    name = "contributor"

    def __init__(
        self, store: K8sStore, config: ManagerConfig, *, steps: Optional[List[Step[Contributor]]] = None
    ) -> None:
        self.store = store
        self.config = config
        super().__init__(steps)

    def build_steps(self) -> List[Step[Contributor]]:
        return [
            Step(STEP_SERVICE_ACCOUNT, self.reconcile_service_account),
            Step(STEP_ROLE_BINDING, self.reconcile_role_binding),
            (
                Step(STEP_AUTHORIZATION_POLICY, self.reconcile_authorization_policies)
                if self.config.enable_istio
                else nop_step(STEP_AUTHORIZATION_POLICY)
            ),
        ]

    def load(self, name: str, namespace: Optional[str] = None) -> Contributor:
        return Contributor.from_manifest(self.store.get(CONTRIBUTOR, name, namespace))

    def converge(self, contributor: Contributor) -> ReconcileOutcome:
        # Unknown roles grant nothing; not retried until the Contributor changes.
        if contributor.role is None:
            allowed = ", ".join(r.value for r in ContributorRole)
            cause = ValidationError(
                f"contributor {contributor.namespace}/{contributor.name}: "
                f"role {contributor.spec.role!r} is not one of {allowed}"
            )
            raise ReconcileError(STEP_ROLE, cause)
        return super().converge(contributor)

    def reconcile_service_account(self, contributor: Contributor) -> OperationResult:
        owner = contributor.to_manifest()
        identity = contributor.spec.name

        def mutate(obj: Dict[str, Any]) -> None:
            set_controller_reference(obj, owner)
            add_label(obj, LABEL_OWNER_ID, identity_hash(identity))
            add_annotation(obj, ANNOTATION_OWNER_NAME, identity)

        res, _ = create_or_update(
            self.store, new_object(SERVICE_ACCOUNT, contributor.name, contributor.namespace), mutate
        )
        return res

    def reconcile_role_binding(self, contributor: Contributor) -> OperationResult:
        owner = contributor.to_manifest()
        identity = contributor.spec.name

        def mutate(obj: Dict[str, Any]) -> None:
            set_controller_reference(obj, owner)
            add_label(obj, LABEL_OWNER_ID, identity_hash(identity))
            add_annotation(obj, ANNOTATION_OWNER_NAME, identity)
            # Older readers list contributors from these two annotations.
            add_annotation(obj, ANNOTATION_OWNER, identity)
            add_annotation(obj, ANNOTATION_ROLE, contributor.spec.role)
            obj["roleRef"] = {
                "kind": "ClusterRole",
                "apiGroup": RBAC_API_GROUP,
                "name": self.config.contributor_cluster_role,
            }
            obj["subjects"] = [{"kind": USER_KIND, "apiGroup": RBAC_API_GROUP, "name": identity}]

        res, _ = create_or_update(self.store, new_object(ROLE_BINDING, contributor.name, contributor.namespace), mutate)
        return res

    def _header_condition(self, contributor: Contributor) -> Dict[str, Any]:
        return {
            "key": f"request.headers[{self.config.userid_header}]",
            "values": [f"{self.config.userid_prefix}{contributor.spec.name}"],
        }

    def public_policy_spec(self, contributor: Contributor) -> Dict[str, Any]:
        return {
            "action": "ALLOW",
            "selector": {"matchLabels": {LABEL_VISIBILITY: VISIBILITY_PUBLIC}},
            "rules": [
                {
                    "from": [{"source": {"principals": [PRINCIPAL_INGRESS_GATEWAY]}}],
                    "when": [self._header_condition(contributor)],
                }
            ],
        }

    def private_policy_spec(self, contributor: Contributor) -> Dict[str, Any]:
        return {
            "action": "ALLOW",
            "selector": {"matchLabels": {LABEL_OWNER_ID: identity_hash(contributor.spec.name)}},
            "rules": [
                {
                    "from": [
                        {
                            "source": {
                                "principals": [PRINCIPAL_INGRESS_GATEWAY, service_account_principal(contributor)]
                            }
                        }
                    ],
                    "when": [self._header_condition(contributor)],
                }
            ],
        }

    def reconcile_authorization_policies(self, contributor: Contributor) -> OperationResult:
        owner = contributor.to_manifest()
        results = []
        for name, spec in (
            (public_policy_name(contributor), self.public_policy_spec(contributor)),
            (private_policy_name(contributor), self.private_policy_spec(contributor)),
        ):

            def mutate(obj: Dict[str, Any], spec: Dict[str, Any] = spec) -> None:
                set_controller_reference(obj, owner)
                obj["spec"] = spec

            res, _ = create_or_update(self.store, new_object(AUTHORIZATION_POLICY, name, contributor.namespace), mutate)
            logger.debug("contributor %s/%s: policy %s %s", contributor.namespace, contributor.name, name, res.value)
            results.append(res)

        for r in (OperationResult.CREATED, OperationResult.UPDATED):
            if r in results:
                return r
        return OperationResult.UNCHANGED
