from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

DEFAULT_USERID_HEADER = "kubeflow-userid"
DEFAULT_CONTRIBUTOR_CLUSTER_ROLE = "kubeflow-edit"
DEFAULT_BASE_URL = "/kfam"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def parse_labels(raw: str) -> Dict[str, str]:
    """
    Parse `k=v,k2=v2` into a dict. Entries without `=` are ignored.
    """
    out: Dict[str, str] = {}
    for item in _split_csv(raw):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            continue
        out[key.strip()] = value.strip()
    return out


def parse_quota_spec(raw: str) -> Optional[Dict[str, Any]]:
    """
    Parse a ResourceQuotaSpec given as YAML or JSON (JSON is valid YAML).

    Example: `{"hard": {"cpu": "4", "memory": "8Gi"}}`
    """
    s = (raw or "").strip()
    if not s:
        return None
    data = yaml.safe_load(s)
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("resource quota spec must be a mapping")
    return data


@dataclass(frozen=True)
class ManagerConfig:
    # Caller identity extraction
    userid_header: str = DEFAULT_USERID_HEADER
    userid_prefix: str = ""

    # Static cluster admins (always part of every tenant's admin set)
    cluster_admins: FrozenSet[str] = frozenset()

    # Feature flags
    enable_istio: bool = True  # network-policy integration
    enable_pipelines: bool = False
    enable_namespace_adoption: bool = False

    # Desired-state defaults
    default_resource_quota_spec: Optional[Dict[str, Any]] = None
    namespace_labels: Dict[str, str] = field(default_factory=dict)
    contributor_cluster_role: str = DEFAULT_CONTRIBUTOR_CLUSTER_ROLE

    # Access API
    base_url: str = DEFAULT_BASE_URL
    require_auth_for_add_contributor: bool = False

    # Store
    request_timeout_seconds: float = 30.0


@lru_cache(maxsize=1)
def load_config() -> ManagerConfig:
    """
    Load manager configuration from environment variables (ConfigMap friendly).

    Recognized vars:
    - USERID_HEADER=kubeflow-userid
    - USERID_PREFIX=accounts.google.com:
    - CLUSTER_ADMINS=alice@example.com,bob@example.com
    - ENABLE_ISTIO=1
    - ENABLE_PIPELINES=0
    - ENABLE_NAMESPACE_ADOPTION=0
    - DEFAULT_RESOURCE_QUOTA_SPEC='{"hard": {"cpu": "4"}}'
    - NAMESPACE_LABELS=team=ml,env=dev
    - CONTRIBUTOR_CLUSTER_ROLE=kubeflow-edit
    - KFAM_BASE_URL=/kfam
    - REQUIRE_AUTH_FOR_ADD_CONTRIBUTOR=0
    - K8S_REQUEST_TIMEOUT_SECONDS=30
    """
    header = (os.getenv("USERID_HEADER") or "").strip() or DEFAULT_USERID_HEADER
    role = (os.getenv("CONTRIBUTOR_CLUSTER_ROLE") or "").strip() or DEFAULT_CONTRIBUTOR_CLUSTER_ROLE
    base_url = (os.getenv("KFAM_BASE_URL", DEFAULT_BASE_URL) or "").strip().rstrip("/")

    return ManagerConfig(
        userid_header=header,
        userid_prefix=os.getenv("USERID_PREFIX") or "",
        cluster_admins=frozenset(_split_csv(os.getenv("CLUSTER_ADMINS", ""))),
        enable_istio=_env_bool("ENABLE_ISTIO", True),
        enable_pipelines=_env_bool("ENABLE_PIPELINES", False),
        enable_namespace_adoption=_env_bool("ENABLE_NAMESPACE_ADOPTION", False),
        default_resource_quota_spec=parse_quota_spec(os.getenv("DEFAULT_RESOURCE_QUOTA_SPEC", "")),
        namespace_labels=parse_labels(os.getenv("NAMESPACE_LABELS", "")),
        contributor_cluster_role=role,
        base_url=base_url,
        require_auth_for_add_contributor=_env_bool("REQUIRE_AUTH_FOR_ADD_CONTRIBUTOR", False),
        request_timeout_seconds=max(1.0, _env_float("K8S_REQUEST_TIMEOUT_SECONDS", 30.0)),
    )
