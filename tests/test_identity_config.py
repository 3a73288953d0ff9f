from __future__ import annotations

import hashlib
import re

import pytest

from profile_manager.config import DEFAULT_BASE_URL, ManagerConfig, load_config, parse_labels, parse_quota_spec
from profile_manager.core.identity import identity_hash, local_name


def test_identity_hash_is_stable_label_safe_hex() -> None:
    h = identity_hash("starlord@guardians.net")
    assert re.fullmatch(r"[0-9a-f]{32}", h)
    assert h == identity_hash("starlord@guardians.net")
    assert h == hashlib.md5(b"starlord@guardians.net").hexdigest()
    assert h != identity_hash("gamora@guardians.net")


def test_local_name_is_part_before_at() -> None:
    assert local_name("starlord@guardians.net") == "starlord"
    assert local_name("alice@a.com") == local_name("alice@b.com")
    assert local_name("no-domain") == "no-domain"
    assert local_name("") == ""


def test_parse_labels_ignores_malformed_entries() -> None:
    assert parse_labels("team=ml, env = dev ,bogus,=x") == {"team": "ml", "env": "dev"}
    assert parse_labels("") == {}


def test_parse_quota_spec_accepts_json_and_yaml() -> None:
    assert parse_quota_spec('{"hard": {"cpu": "4"}}') == {"hard": {"cpu": "4"}}
    assert parse_quota_spec("hard:\n  memory: 8Gi\n") == {"hard": {"memory": "8Gi"}}
    assert parse_quota_spec("") is None
    with pytest.raises(ValueError):
        parse_quota_spec("- just\n- a list\n")


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "USERID_HEADER",
        "USERID_PREFIX",
        "CLUSTER_ADMINS",
        "ENABLE_ISTIO",
        "KFAM_BASE_URL",
        "DEFAULT_RESOURCE_QUOTA_SPEC",
        "NAMESPACE_LABELS",
        "ENABLE_PIPELINES",
        "ENABLE_NAMESPACE_ADOPTION",
        "CONTRIBUTOR_CLUSTER_ROLE",
        "REQUIRE_AUTH_FOR_ADD_CONTRIBUTOR",
        "K8S_REQUEST_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()
    assert cfg == ManagerConfig()
    assert cfg.userid_header == "kubeflow-userid"
    assert cfg.enable_istio is True
    assert cfg.base_url == DEFAULT_BASE_URL
    assert cfg.default_resource_quota_spec is None


def test_load_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("USERID_HEADER", "x-user")
    monkeypatch.setenv("USERID_PREFIX", "accounts.google.com:")
    monkeypatch.setenv("CLUSTER_ADMINS", "a@example.com, b@example.com")
    monkeypatch.setenv("ENABLE_ISTIO", "0")
    monkeypatch.setenv("ENABLE_PIPELINES", "true")
    monkeypatch.setenv("DEFAULT_RESOURCE_QUOTA_SPEC", '{"hard": {"cpu": "2"}}')
    monkeypatch.setenv("NAMESPACE_LABELS", "team=ml")
    monkeypatch.setenv("KFAM_BASE_URL", "/access/")
    monkeypatch.setenv("K8S_REQUEST_TIMEOUT_SECONDS", "nope")

    cfg = load_config()
    assert cfg.userid_header == "x-user"
    assert cfg.userid_prefix == "accounts.google.com:"
    assert cfg.cluster_admins == frozenset({"a@example.com", "b@example.com"})
    assert cfg.enable_istio is False
    assert cfg.enable_pipelines is True
    assert cfg.default_resource_quota_spec == {"hard": {"cpu": "2"}}
    assert cfg.namespace_labels == {"team": "ml"}
    assert cfg.base_url == "/access"
    assert cfg.request_timeout_seconds == 30.0
